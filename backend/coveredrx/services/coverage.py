# backend/coveredrx/services/coverage.py
"""
Coverage orchestration

NORMALIZING -> (REJECTED | RESOLVING) -> (FAST_PATH_DONE | ARBITRATING)
            -> AUGMENTING? -> DONE

Per request, nothing shared except the read-only formulary index and the
research cache owned by the augmenter.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Generic, List, Optional, TypeVar

from coveredrx.schemas import (
    AlternativeMedication,
    CopayEstimate,
    CoverageCheckRequest,
    CoverageResponse,
    FormularyLookup,
    Medication,
    NormalizationResult,
    PriorAuthRequirement,
    SuggestedAlternative,
    ToolhouseCoverageResponse,
    WebResearchResult,
)
from coveredrx.services.formulary import FormularyIndex
from coveredrx.services.normalize import MedicationNormalizer
from coveredrx.services.toolhouse import RemoteCoverageResolver, is_failure
from coveredrx.services.web_research import ALTERNATIVES, PA_STRATEGIES, PRICING, WebResearchAugmenter

log = logging.getLogger("coverage")

T = TypeVar("T")

REJECT_BELOW_CONFIDENCE = 0.3
FAST_PATH_ABOVE_CONFIDENCE = 0.9
# one threshold for both paths; see DESIGN.md
HIGH_COPAY_THRESHOLD = 100.0
PA_APPROVAL_TIME = "1-3 business days"

COMMON_DRUGS = (
    "lisinopril", "metformin", "atorvastatin", "omeprazole",
    "sertraline", "amlodipine", "humira", "adalimumab",
)

LOCAL_FAST = "local_formulary_fast"
LOCAL = "local_formulary"
NOT_FOUND = "not_found_parallel"


@dataclass
class Settled(Generic[T]):
    """Outcome of one concurrent branch: a value or the error it raised."""
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def settle(awaitable: Awaitable[T]) -> Settled[T]:
    try:
        return Settled(value=await awaitable)
    except Exception as e:
        return Settled(error=e)


def is_common_drug(medication: Medication) -> bool:
    names = [medication.name, medication.generic_name, medication.brand_name]
    lowered = [n.lower() for n in names if n]
    return any(drug in name for drug in COMMON_DRUGS for name in lowered)


def arbitrate(remote: Settled[ToolhouseCoverageResponse], local: Optional[ToolhouseCoverageResponse],
              drug_name: str) -> ToolhouseCoverageResponse:
    """
    Remote wins only with a definitive answer that is not a failure sentinel;
    then a found local entry; then a synthesized not-found.
    """
    if remote.ok and remote.value is not None:
        candidate = remote.value
        if candidate.is_covered is not None and candidate.tier is not None and not is_failure(candidate):
            log.info("Using remote result (complete data found)")
            return candidate
    elif not remote.ok:
        log.error("Remote resolver raised: %s", remote.error)

    if local is not None:
        log.info("Using local formulary result")
        return local

    log.info("Neither remote nor local lookup found %s", drug_name)
    return ToolhouseCoverageResponse(
        is_covered=False,
        tier=None,
        copay=None,
        explanation=(f"{drug_name} not found in available formularies. "
                     f"Please contact your insurance provider for coverage details."),
        data_source=NOT_FOUND,
    )


def choose_research(coverage: ToolhouseCoverageResponse) -> str:
    if not coverage.is_covered or (coverage.copay is not None and coverage.copay > HIGH_COPAY_THRESHOLD):
        return ALTERNATIVES
    if coverage.prior_auth_required:
        return PA_STRATEGIES
    return PRICING


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class CoverageOrchestrator:

    def __init__(self, formulary: FormularyIndex, normalizer: Optional[MedicationNormalizer] = None,
                 resolver: Optional[RemoteCoverageResolver] = None,
                 augmenter: Optional[WebResearchAugmenter] = None):
        self.formulary = formulary
        self.normalizer = normalizer if normalizer is not None else MedicationNormalizer()
        self.resolver = resolver if resolver is not None else RemoteCoverageResolver()
        self.augmenter = augmenter if augmenter is not None else WebResearchAugmenter()

    async def check_coverage(self, request: CoverageCheckRequest) -> CoverageResponse:
        log.info("Starting coverage check for %r on %s", request.medication_name, request.insurance_plan.id)
        started = time.perf_counter()
        try:
            return await self._check(request, started)
        except Exception as e:
            elapsed = _elapsed_ms(started)
            log.error("Error in coverage check after %dms: %s", elapsed, e, exc_info=True)
            return CoverageResponse(
                medication=Medication(name=request.medication_name, generic_name=request.medication_name),
                insurance_plan=request.insurance_plan,
                is_covered=False,
                tier=None,
                estimated_copay=None,
                prior_auth=PriorAuthRequirement(required=False),
                last_updated=_now_iso(),
                disclaimer=(f"Error checking coverage after {elapsed}ms: {e}. "
                            f"Please verify with your insurance provider."),
            )

    async def _check(self, request: CoverageCheckRequest, started: float) -> CoverageResponse:
        # NORMALIZING
        normalized = await self.normalizer.normalize(request.medication_name)
        if normalized.confidence < REJECT_BELOW_CONFIDENCE:
            log.warning("Very low normalization confidence %.2f for %r", normalized.confidence,
                        request.medication_name)
            return self._rejected(request)

        medication = normalized.medication
        plan_id = request.insurance_plan.id

        # RESOLVING
        local_task = asyncio.ensure_future(settle(self._lookup_local(plan_id, medication.name)))

        if is_common_drug(medication) and normalized.confidence > FAST_PATH_ABOVE_CONFIDENCE:
            log.info("Common drug with high confidence, checking local formulary first")
            local_settled = await local_task
            fast = self._local_coverage(request, medication, local_settled, LOCAL_FAST)
            if fast is not None:
                log.info("Found in local formulary, skipping remote lookup (%dms)", _elapsed_ms(started))
                return await self._finish(request, normalized, fast, started, "Fast local lookup")

        # ARBITRATING
        remote_task = settle(self.resolver.resolve(
            medication.name, plan_id, request.patient_zip_code, request.pharmacy_zip_code))
        local_settled, remote_settled = await asyncio.gather(local_task, remote_task)
        local = self._local_coverage(request, medication, local_settled, LOCAL)
        coverage = arbitrate(remote_settled, local, medication.name)
        log.info("Parallel lookup completed in %dms using %s", _elapsed_ms(started), coverage.data_source)

        return await self._finish(request, normalized, coverage, started, "AI-powered coverage check")

    async def _lookup_local(self, plan_id: str, drug_name: str) -> FormularyLookup:
        return self.formulary.lookup(plan_id, drug_name)

    def _local_coverage(self, request: CoverageCheckRequest, medication: Medication,
                        settled: Settled[FormularyLookup], data_source: str) -> Optional[ToolhouseCoverageResponse]:
        if not settled.ok:
            log.error("Local formulary lookup raised: %s", settled.error)
            return None
        lookup = settled.value
        if lookup is None or not lookup.found or lookup.entry is None:
            return None

        entry = lookup.entry
        carrier = request.insurance_plan.carrier or (lookup.plan.carrier if lookup.plan else "")
        suggested = [
            SuggestedAlternative(
                name=alt.generic_name,
                tier=alt.tier,
                copay=alt.copay,
                prior_auth=alt.prior_auth,
                reason=f"Lower-cost alternative to {medication.name}",
            )
            for alt in self.formulary.suggest_alternatives(request.insurance_plan.id, lookup.matched_key, entry)
        ]
        return ToolhouseCoverageResponse(
            is_covered=True,
            tier=entry.tier,
            copay=entry.copay,
            prior_auth_required=entry.prior_auth,
            prior_auth_details=(entry.prior_auth_criteria or "Prior authorization required by plan")
            if entry.prior_auth else None,
            quantity_limits=entry.quantity_limits,
            quantity_limit_details=entry.quantity_limit_details,
            step_therapy_required=entry.step_therapy,
            step_therapy_alternatives=entry.step_therapy_alternatives or None,
            suggested_alternatives=suggested or None,
            pharmacy_notes="Specialty pharmacy required" if entry.specialty_pharmacy_required else None,
            explanation=f"Found in local {carrier + ' ' if carrier else ''}formulary as {lookup.matched_key}",
            data_source=data_source,
        )

    async def _augment(self, drug_name: str, coverage: ToolhouseCoverageResponse) -> Optional[WebResearchResult]:
        research_type = choose_research(coverage)
        log.info("Starting %s web research for %s", research_type, drug_name)
        try:
            if research_type == ALTERNATIVES:
                return await self.augmenter.find_alternatives(drug_name, coverage.copay)
            return await self.augmenter.research(drug_name, research_type)
        except Exception as e:
            log.error("Web research failed, continuing without it: %s", e)
            return None

    async def _finish(self, request: CoverageCheckRequest, normalized: NormalizationResult,
                      coverage: ToolhouseCoverageResponse, started: float, label: str) -> CoverageResponse:
        web_research = None
        if request.include_web_research:
            web_research = await self._augment(normalized.medication.name, coverage)
        return self._assemble(request, normalized, coverage, web_research, started, label)

    def _assemble(self, request: CoverageCheckRequest, normalized: NormalizationResult,
                  coverage: ToolhouseCoverageResponse, web_research: Optional[WebResearchResult],
                  started: float, label: str) -> CoverageResponse:
        prior_auth = PriorAuthRequirement(
            required=coverage.prior_auth_required,
            reason=coverage.prior_auth_details or None,
            estimated_approval_time=PA_APPROVAL_TIME if coverage.prior_auth_required else None,
        )

        alternatives = None
        if coverage.suggested_alternatives:
            alternatives = [AlternativeMedication(**alt.model_dump()) for alt in coverage.suggested_alternatives]

        estimated_copay = None
        if coverage.copay is not None:
            estimated_copay = CopayEstimate(min=coverage.copay, max=coverage.copay, currency="USD")

        elapsed = _elapsed_ms(started)
        disclaimer = (f"{label} completed in {elapsed}ms. "
                      f"Medication normalized with {round(normalized.confidence * 100)}% confidence. "
                      f"{coverage.explanation}").strip()
        if web_research is not None:
            disclaimer += (f" Web research found {len(web_research.alternatives)} additional alternatives "
                           f"and {len(web_research.price_comparisons)} price comparisons.")

        log.info("Coverage check completed in %dms (%s)", elapsed, coverage.data_source)
        return CoverageResponse(
            medication=normalized.medication,
            insurance_plan=request.insurance_plan,
            is_covered=bool(coverage.is_covered),
            tier=coverage.tier,
            estimated_copay=estimated_copay,
            prior_auth=prior_auth,
            alternative_medications=alternatives,
            web_research=web_research,
            last_updated=_now_iso(),
            disclaimer=disclaimer,
        )

    def _rejected(self, request: CoverageCheckRequest) -> CoverageResponse:
        return CoverageResponse(
            medication=Medication(name=request.medication_name, generic_name="Unknown",
                                  strength="Unknown", dosage_form="unknown"),
            insurance_plan=request.insurance_plan,
            is_covered=False,
            tier=None,
            estimated_copay=None,
            prior_auth=PriorAuthRequirement(required=False),
            last_updated=_now_iso(),
            disclaimer=(f'"{request.medication_name}" is not recognized as a valid medication. '
                        f"Please check the spelling or consult with your healthcare provider."),
        )

    async def perform_web_research(self, medication_name: str, research_type: str = ALTERNATIVES) -> WebResearchResult:
        log.info("Performing %s research for %s", research_type, medication_name)
        return await self.augmenter.research(medication_name, research_type)

    async def health_check(self) -> Dict[str, bool]:
        groq, toolhouse, web = await asyncio.gather(
            asyncio.to_thread(self.normalizer.health_check),
            asyncio.to_thread(self.resolver.health_check),
            asyncio.to_thread(self.augmenter.health_check),
        )
        return {"groq": groq, "toolhouse": toolhouse, "webResearch": web}

    def plans(self) -> List[Dict[str, Any]]:
        summaries = []
        for plan_id in self.formulary.plan_ids():
            plan = self.formulary.plan(plan_id)
            summaries.append({"planId": plan.plan_id, "planName": plan.plan_name,
                              "carrier": plan.carrier, "type": plan.type})
        return summaries
