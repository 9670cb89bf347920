# backend/coveredrx/services/formulary.py
import json
import logging
import os
from typing import Dict, List, Optional

from pydantic import ValidationError

from coveredrx.schemas import FormularyEntry, FormularyLookup, FormularyPlan

log = logging.getLogger("formulary")

# brand or colloquial name -> formulary generic key
COMMON_NAME_MAP = {
    "tylenol": "acetaminophen",
    "advil": "ibuprofen",
    "humira": "adalimumab",
    "lipitor": "atorvastatin",
    "prinivil": "lisinopril",
    "zestril": "lisinopril",
    "synthroid": "levothyroxine",
    "glucophage": "metformin",
    "prilosec": "omeprazole",
    "zoloft": "sertraline",
    "norvasc": "amlodipine",
}

MAX_TIER_FALLBACK_ALTERNATIVES = 3


def load_plan_files(directory: str) -> Dict[str, FormularyPlan]:
    """Read every *.json plan file in directory. Bad files are logged and skipped."""
    plans: Dict[str, FormularyPlan] = {}
    try:
        filenames = sorted(os.listdir(directory))
    except OSError as e:
        log.error("Could not read formulary directory %s: %s", directory, e)
        return plans

    for filename in filenames:
        if not filename.endswith(".json"):
            continue
        path = os.path.join(directory, filename)
        try:
            with open(path, "r", encoding="utf-8") as f:
                plan = FormularyPlan(**json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as e:
            log.error("Skipping formulary file %s: %s", filename, e)
            continue
        if plan.plan_id in plans:
            log.warning("Duplicate plan_id %s in %s replaces an earlier file", plan.plan_id, filename)
        plans[plan.plan_id] = plan
        log.info("Loaded %s (%s) with %d drugs", plan.plan_name, plan.plan_id, len(plan.formulary))

    log.info("Loaded %d formularies", len(plans))
    return plans


class FormularyIndex:
    """
    Read-only plan -> drug -> coverage lookup. Built once at startup and
    shared by reference; nothing mutates it afterwards.
    """

    def __init__(self, plans: Optional[Dict[str, FormularyPlan]] = None):
        self._plans: Dict[str, FormularyPlan] = dict(plans or {})

    @classmethod
    def from_directory(cls, directory: str) -> "FormularyIndex":
        return cls(load_plan_files(directory))

    def plan_ids(self) -> List[str]:
        return list(self._plans.keys())

    def plan(self, plan_id: str) -> Optional[FormularyPlan]:
        return self._plans.get(plan_id)

    def lookup(self, plan_id: str, drug_name: str, _follow_alias: bool = True) -> FormularyLookup:
        plan = self._plans.get(plan_id)
        if plan is None:
            log.warning("Plan not found: %s", plan_id)
            return FormularyLookup(found=False)

        query = (drug_name or "").lower().strip()
        if not query:
            return FormularyLookup(found=False, plan=plan)

        # 1) exact key
        for key, entry in plan.formulary.items():
            if key.lower() == query:
                log.debug("Exact match: %s", key)
                return FormularyLookup(found=True, entry=entry, matched_key=key, plan=plan)

        # 2) generic name
        for key, entry in plan.formulary.items():
            if entry.generic_name and entry.generic_name.lower() == query:
                log.debug("Matched by generic name: %s", key)
                return FormularyLookup(found=True, entry=entry, matched_key=key, plan=plan)

        # 3) brand names
        for key, entry in plan.formulary.items():
            for brand in entry.brand_names:
                if brand.lower() == query:
                    log.debug("Matched by brand name: %s -> %s", brand, key)
                    return FormularyLookup(found=True, entry=entry, matched_key=key, plan=plan)

        # 4) common-name table, followed once
        mapped = COMMON_NAME_MAP.get(query)
        if mapped and _follow_alias:
            log.debug("Trying mapped name: %s -> %s", query, mapped)
            result = self.lookup(plan_id, mapped, _follow_alias=False)
            if result.found:
                return result

        # 5) loose substring
        for key, entry in plan.formulary.items():
            k = key.lower()
            generic = (entry.generic_name or "").lower()
            if query in k or k in query or (generic and query in generic):
                log.debug("Partial match: %s", key)
                return FormularyLookup(found=True, entry=entry, matched_key=key, plan=plan)

        log.info("%s not found in %s", drug_name, plan.plan_name)
        return FormularyLookup(found=False, plan=plan)

    def suggest_alternatives(self, plan_id: str, drug_name: str,
                             entry: Optional[FormularyEntry] = None) -> List[FormularyEntry]:
        plan = self._plans.get(plan_id)
        if plan is None:
            return []

        if entry is None:
            found = self.lookup(plan_id, drug_name)
            if not found.found:
                return []
            entry = found.entry

        alternatives: List[FormularyEntry] = []
        for alt_name in entry.alternatives:
            alt = self.lookup(plan_id, alt_name)
            if alt.found and alt.entry is not entry and alt.entry not in alternatives:
                alternatives.append(alt.entry)

        if not alternatives:
            for candidate in plan.formulary.values():
                if len(alternatives) >= MAX_TIER_FALLBACK_ALTERNATIVES:
                    break
                if candidate.tier < entry.tier and not candidate.prior_auth:
                    alternatives.append(candidate)

        return alternatives
