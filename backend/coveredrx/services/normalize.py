# backend/coveredrx/services/normalize.py
import asyncio
import logging
import re
from typing import Any, Dict, Optional

from coveredrx import config
from coveredrx.schemas import Medication, NormalizationResult
from coveredrx.services.json_extract import extract_json
from coveredrx.services.llm import LLMClient

log = logging.getLogger("normalize")

INVALID_MEDICATION_MARKER = "INVALID_MEDICATION"

# Floor for any structurally valid answer; keeps benign low scores out of the
# "not recognized" branch downstream.
MIN_PARSED_CONFIDENCE = 0.5
INVALID_BELOW = 0.2
DEFAULT_PARSED_CONFIDENCE = 0.8
NAME_ONLY_CONFIDENCE = 0.8
UNPARSEABLE_CONFIDENCE = 0.2
REJECTED_CONFIDENCE = 0.1
BACKEND_DOWN_CONFIDENCE = 0.1
BACKEND_DOWN_KNOWN_DRUG_CONFIDENCE = 0.7

WELL_KNOWN_GENERICS = (
    "acetaminophen", "ibuprofen", "lisinopril", "metformin", "atorvastatin",
    "amlodipine", "omeprazole", "sertraline", "levothyroxine",
)

NAME_FIELD_RE = re.compile(r'"name"\s*:\s*"([^"]+)"')

SYSTEM_PROMPT = (
    "You are a medical AI assistant. Always return valid JSON responses. "
    "Use web search if you need current drug information."
)


def build_prompt(user_input: str) -> str:
    return f"""You are a pharmaceutical expert. The user entered: "{user_input}"

Normalize this medication and return JSON with this exact structure:
{{
  "name": "Standard medication name",
  "genericName": "Generic name",
  "brandName": "Brand name if applicable",
  "strength": "Strength with units (e.g., 10mg)",
  "dosageForm": "tablet, capsule, liquid, ...",
  "ndc": "NDC code if available",
  "confidence": 0.95
}}

If the input is not a real medication (random characters, nonsense, a non-drug word),
return {{"name": "{INVALID_MEDICATION_MARKER}", "confidence": 0.0}}.

Always return valid JSON only."""


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def echo_medication(user_input: str) -> Medication:
    return Medication(name=user_input, generic_name=user_input, strength="Unknown", dosage_form="tablet")


def fallback_confidence(user_input: str) -> float:
    lowered = user_input.lower()
    if any(generic in lowered for generic in WELL_KNOWN_GENERICS):
        return BACKEND_DOWN_KNOWN_DRUG_CONFIDENCE
    return BACKEND_DOWN_CONFIDENCE


def interpret_reply(user_input: str, content: str, search_note: Optional[str] = None) -> NormalizationResult:
    """Turn raw backend text into a NormalizationResult. Pure; never raises."""
    data = extract_json(content)

    if data is None:
        match = NAME_FIELD_RE.search(content or "")
        if match and match.group(1).strip():
            name = match.group(1).strip()
            if name.upper() == INVALID_MEDICATION_MARKER:
                return NormalizationResult(medication=echo_medication(user_input),
                                           confidence=REJECTED_CONFIDENCE, search_results=search_note)
            log.warning("Unparseable reply, recovered name %r by pattern", name)
            return NormalizationResult(
                medication=Medication(name=name, generic_name=name, dosage_form="tablet"),
                confidence=NAME_ONLY_CONFIDENCE,
                search_results=search_note,
            )
        log.warning("Unparseable reply for %r, echoing input", user_input)
        return NormalizationResult(medication=echo_medication(user_input),
                                   confidence=UNPARSEABLE_CONFIDENCE, search_results=search_note)

    return _from_parsed(user_input, data, search_note)


def _from_parsed(user_input: str, data: Dict[str, Any], search_note: Optional[str]) -> NormalizationResult:
    name = _clean(data.get("name"))
    try:
        confidence = float(data.get("confidence", DEFAULT_PARSED_CONFIDENCE))
    except (TypeError, ValueError):
        confidence = DEFAULT_PARSED_CONFIDENCE

    if not name or name.upper() == INVALID_MEDICATION_MARKER or confidence < INVALID_BELOW:
        log.info("Backend rejected %r (name=%r, confidence=%.2f)", user_input, name, confidence)
        return NormalizationResult(medication=echo_medication(user_input),
                                   confidence=REJECTED_CONFIDENCE, search_results=search_note)

    medication = Medication(
        name=name,
        generic_name=_clean(data.get("genericName")) or name,
        brand_name=_clean(data.get("brandName")),
        strength=_clean(data.get("strength")),
        dosage_form=_clean(data.get("dosageForm")) or "tablet",
        ndc=_clean(data.get("ndc")),
    )
    confidence = min(1.0, max(confidence, MIN_PARSED_CONFIDENCE))
    return NormalizationResult(medication=medication, confidence=confidence, search_results=search_note)


class MedicationNormalizer:

    def __init__(self, llm: Optional[LLMClient] = None, model: Optional[str] = None):
        self.llm = llm if llm is not None else LLMClient()
        self.model = model or config.NORMALIZER_MODEL

    async def normalize(self, user_input: str) -> NormalizationResult:
        log.info("Normalizing medication: %r", user_input)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(user_input)},
        ]
        try:
            completion = await asyncio.to_thread(self.llm.complete, messages, self.model)
        except Exception as e:
            confidence = fallback_confidence(user_input)
            log.error("Normalization backend failed for %r: %s (fallback confidence %.1f)",
                      user_input, e, confidence)
            return NormalizationResult(medication=echo_medication(user_input),
                                       confidence=confidence, search_results=f"Error: {e}")

        note = "Used web search for current data" if completion.used_web_search else None
        result = interpret_reply(user_input, completion.content, note)
        log.info("Normalized %r -> %s (confidence %.2f)", user_input, result.medication.name, result.confidence)
        return result

    def health_check(self) -> bool:
        return self.llm.health_check()
