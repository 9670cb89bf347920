# backend/coveredrx/services/web_research.py
"""
Best-effort research through the web-search-capable text-generation backend:
cash prices, alternative drugs and prior-authorization appeal strategies.

Replies vary wildly in shape. Everything is folded into one flat
WebResearchResult; nothing here raises to the caller.
"""
import asyncio
import logging
import re
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from coveredrx import config
from coveredrx.schemas import AlternativeDrug, PAStrategy, PriceComparison, WebResearchResult
from coveredrx.services.json_extract import extract_json
from coveredrx.services.llm import LLMClient

log = logging.getLogger("web_research")

ALTERNATIVES = "alternatives"
PRICING = "pricing"
PA_STRATEGIES = "pa-strategies"
RESEARCH_TYPES = (ALTERNATIVES, PRICING, PA_STRATEGIES)

CURRENCY_CHARS_RE = re.compile(r"[$,\s]|USD", re.IGNORECASE)


class ResearchCache:
    """
    (operation, drug name) -> result with a TTL and an LRU size cap.
    Expired entries are dropped when read, not swept.
    """

    def __init__(self, ttl_seconds: float = 3600.0, max_entries: int = 256,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[Tuple[str, str], Tuple[WebResearchResult, float]]" = OrderedDict()

    def get(self, key: Tuple[str, str]) -> Optional[WebResearchResult]:
        cached = self._entries.get(key)
        if cached is None:
            return None
        result, stored_at = cached
        if self.clock() - stored_at > self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return result

    def put(self, key: Tuple[str, str], result: WebResearchResult) -> None:
        self._entries[key] = (result, self.clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# --- reply normalization -----------------------------------------------------

def coerce_price(value: Any) -> Optional[float]:
    """12, "12.5", "$1,234.50", "USD 4" -> float; anything else -> None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = CURRENCY_CHARS_RE.sub("", value)
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _price_entry(pharmacy: str, raw_price: Any, discounts: Optional[List[str]] = None) -> Optional[PriceComparison]:
    price = coerce_price(raw_price)
    if price is None:
        return None
    return PriceComparison(pharmacy=str(pharmacy), price=price, discounts=[str(d) for d in (discounts or [])])


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    if isinstance(value, str) and value:
        return [value]
    return []


def _drug_section(data: Dict[str, Any], drug_name: str) -> Optional[Dict[str, Any]]:
    for key, value in data.items():
        if isinstance(value, dict) and key.lower() == drug_name.lower():
            return value
    return None


def _prices_from_drug_section(section: Dict[str, Any]) -> List[Optional[PriceComparison]]:
    found: List[Optional[PriceComparison]] = []
    prices = section.get("prices")

    if isinstance(prices, list):
        for item in prices:
            if not isinstance(item, dict):
                continue
            dosage = item.get("dosage")
            if item.get("price") is not None and item.get("pharmacy"):
                found.append(_price_entry(item["pharmacy"], item["price"], [dosage] if dosage else []))
            elif isinstance(item.get("pharmacies"), list):
                for pharmacy in item["pharmacies"]:
                    if isinstance(pharmacy, dict) and pharmacy.get("price") is not None and pharmacy.get("name"):
                        found.append(_price_entry(pharmacy["name"], pharmacy["price"], [dosage] if dosage else []))
            elif item.get("price") is not None and dosage:
                found.append(_price_entry(f"GoodRx ({dosage})", item["price"]))

    elif isinstance(prices, dict):
        for dosage, detail in prices.items():
            if not isinstance(detail, dict):
                continue
            if detail.get("average_retail_price") is not None:
                found.append(_price_entry(f"Average Retail ({dosage})", detail["average_retail_price"]))
            if detail.get("price_with_goodrx_coupon") is not None:
                discount = detail.get("discount")
                found.append(_price_entry(f"GoodRx ({dosage})", detail["price_with_goodrx_coupon"],
                                          [discount] if discount else []))

    pharmacies = section.get("pharmacies")
    if isinstance(pharmacies, dict):
        for pharmacy, detail in pharmacies.items():
            if not isinstance(detail, dict):
                continue
            if detail.get("price") is not None:
                found.append(_price_entry(pharmacy, detail["price"]))
            coupon = detail.get("price_with_coupon")
            if coupon is not None and coupon != detail.get("price"):
                discount = detail.get("discount")
                found.append(_price_entry(f"{pharmacy} (with coupon)", coupon, [discount] if discount else []))

    return found


def collect_price_comparisons(data: Dict[str, Any], drug_name: str) -> List[PriceComparison]:
    found: List[Optional[PriceComparison]] = []

    if isinstance(data.get("priceComparisons"), list):
        for item in data["priceComparisons"]:
            if isinstance(item, dict):
                found.append(_price_entry(item.get("pharmacy") or "Cash Price", item.get("price"),
                                          _as_str_list(item.get("discounts"))))
    elif isinstance(data.get("prices"), list):
        for item in data["prices"]:
            if isinstance(item, dict):
                found.append(_price_entry(item.get("pharmacy") or item.get("description") or "Cash Price",
                                          item.get("price")))
    elif data.get("price") is not None:
        found.append(_price_entry("GoodRx", data["price"]))
    else:
        section = _drug_section(data, drug_name)
        if section is not None:
            found.extend(_prices_from_drug_section(section))

    return [p for p in found if p is not None]


def collect_alternatives(data: Dict[str, Any]) -> List[AlternativeDrug]:
    alternatives = []
    for item in data.get("alternatives") or []:
        if isinstance(item, str):
            item = {"name": item}
        if not isinstance(item, dict) or not item.get("name"):
            continue
        fields = dict(item)
        for price_field in ("cashPrice", "savings"):
            if price_field in fields:
                fields[price_field] = coerce_price(fields[price_field])
        if "priorAuthRequired" in fields and not isinstance(fields["priorAuthRequired"], bool):
            fields.pop("priorAuthRequired")
        try:
            alternatives.append(AlternativeDrug(**fields))
        except ValidationError as e:
            log.debug("Dropping malformed alternative %r: %s", item, e)
    return alternatives


def collect_pa_strategies(data: Dict[str, Any]) -> List[PAStrategy]:
    strategies = []
    for item in data.get("paStrategies") or []:
        if isinstance(item, str):
            item = {"strategy": item}
        if not isinstance(item, dict) or not item.get("strategy"):
            continue
        strategies.append(PAStrategy(
            strategy=str(item["strategy"]),
            success_rate=str(item["successRate"]) if item.get("successRate") is not None else None,
            requirements=_as_str_list(item.get("requirements")),
        ))
    return strategies


# --- prompts -----------------------------------------------------------------

def _alternatives_prompt(drug_name: str, current_copay: Optional[float]) -> str:
    copay_note = f" The patient's current copay is ${current_copay:.2f}." if current_copay is not None else ""
    return f"Search GoodRx for {drug_name} pricing and cheaper alternatives as JSON.{copay_note}"


def _pricing_prompt(drug_name: str) -> str:
    return f"""Search for current cash prices of {drug_name} at major pharmacies. Find:

1. GoodRx prices and discount codes
2. CVS, Walgreens, Rite Aid and other major pharmacy prices
3. Online pharmacy prices (if available)
4. Manufacturer discount programs or coupons
5. Generic vs brand name pricing differences

Return as JSON:
{{
  "priceComparisons": [{{"pharmacy": "pharmacy name", "price": 0.0, "discounts": ["available discounts"]}}],
  "alternatives": [{{"name": "generic or alternative name", "cashPrice": 0.0, "savings": 0.0}}],
  "patientPrograms": ["manufacturer programs", "discount cards"],
  "summary": "price comparison summary",
  "sources": ["source websites"]
}}"""


def _pa_prompt(drug_name: str) -> str:
    return f"""Research prior authorization (PA) requirements and strategies for {drug_name}. Search for:

1. Common PA denial reasons for this medication
2. Successful appeal strategies and documentation requirements
3. Alternative medications that don't require PA
4. Step therapy requirements and how to meet them
5. Clinical criteria that improve approval rates

Return as JSON:
{{
  "paStrategies": [{{"strategy": "description", "successRate": "rate", "requirements": ["requirement"]}}],
  "alternatives": [{{"name": "alternative drug", "genericName": "generic name", "priorAuthRequired": false}}],
  "summary": "summary of the PA landscape for this drug",
  "sources": ["medical literature", "insurance resources"]
}}"""


ALTERNATIVES_SYSTEM = "You search GoodRx for medication pricing. Return only JSON with current prices."
PRICING_SYSTEM = ("You are a pharmacy price research specialist. Search for the most current pricing "
                  "information and return valid JSON.")
PA_SYSTEM = ("You are a healthcare policy researcher specializing in prior authorization. Provide "
             "evidence-based strategies and return valid JSON.")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebResearchAugmenter:

    def __init__(self, llm: Optional[LLMClient] = None, model: Optional[str] = None,
                 alternatives_model: Optional[str] = None, cache: Optional[ResearchCache] = None):
        self.llm = llm if llm is not None else LLMClient()
        self.model = model or config.RESEARCH_MODEL
        self.alternatives_model = alternatives_model or config.NORMALIZER_MODEL
        if cache is None:
            cache = ResearchCache(ttl_seconds=config.RESEARCH_CACHE_TTL_SECONDS,
                                  max_entries=config.RESEARCH_CACHE_MAX_ENTRIES)
        self.cache = cache

    async def _run(self, kind: str, drug_name: str, query: str, system_prompt: str, user_prompt: str,
                   model: str, build: Callable[[Dict[str, Any]], Dict[str, Any]],
                   max_tokens: Optional[int] = None) -> WebResearchResult:
        key = (kind, drug_name)
        cached = self.cache.get(key)
        if cached is not None:
            log.info("Using cached %s result for %s", kind, drug_name)
            return cached

        started = time.perf_counter()
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            completion = await asyncio.to_thread(self.llm.complete, messages, model, 0.1, max_tokens)
            data = extract_json(completion.content)
            if data is None:
                raise ValueError("reply did not contain a JSON object")
            fields = build(data)
        except Exception as e:
            elapsed = int((time.perf_counter() - started) * 1000)
            log.error("%s research for %s failed after %dms: %s", kind, drug_name, elapsed, e)
            return WebResearchResult(
                query=query,
                search_time=elapsed,
                timestamp=_now_iso(),
                summary=f"{query} failed: {e}. Please try again.",
            )

        elapsed = int((time.perf_counter() - started) * 1000)
        result = WebResearchResult(query=query, search_time=elapsed, timestamp=_now_iso(), **fields)
        self.cache.put(key, result)
        log.info("%s research for %s completed in %dms", kind, drug_name, elapsed)
        return result

    async def find_alternatives(self, drug_name: str, current_copay: Optional[float] = None) -> WebResearchResult:
        def build(data: Dict[str, Any]) -> Dict[str, Any]:
            return {
                "alternatives": collect_alternatives(data),
                "price_comparisons": collect_price_comparisons(data, drug_name),
                "patient_programs": _as_str_list(data.get("discounts") or data.get("programs")
                                                 or data.get("patientPrograms")),
                "summary": data.get("summary") or f"Found GoodRx pricing for {drug_name}",
                "sources": _as_str_list(data.get("sources")) or ["GoodRx"],
            }

        return await self._run(ALTERNATIVES, drug_name, f"GoodRx pricing for {drug_name}",
                               ALTERNATIVES_SYSTEM, _alternatives_prompt(drug_name, current_copay),
                               self.alternatives_model, build, max_tokens=500)

    async def find_price_comparison(self, drug_name: str) -> WebResearchResult:
        def build(data: Dict[str, Any]) -> Dict[str, Any]:
            return {
                "alternatives": collect_alternatives(data),
                "price_comparisons": collect_price_comparisons(data, drug_name),
                "patient_programs": _as_str_list(data.get("patientPrograms")),
                "summary": data.get("summary") or f"Price comparison completed for {drug_name}",
                "sources": _as_str_list(data.get("sources")),
            }

        return await self._run(PRICING, drug_name, f"Price comparison for {drug_name}",
                               PRICING_SYSTEM, _pricing_prompt(drug_name), self.model, build)

    async def research_pa_strategies(self, drug_name: str) -> WebResearchResult:
        def build(data: Dict[str, Any]) -> Dict[str, Any]:
            return {
                "alternatives": collect_alternatives(data),
                "pa_strategies": collect_pa_strategies(data),
                "summary": data.get("summary") or f"PA research completed for {drug_name}",
                "sources": _as_str_list(data.get("sources")),
            }

        return await self._run(PA_STRATEGIES, drug_name, f"Prior authorization strategies for {drug_name}",
                               PA_SYSTEM, _pa_prompt(drug_name), self.model, build)

    async def research(self, drug_name: str, research_type: str = ALTERNATIVES) -> WebResearchResult:
        if research_type == PRICING:
            return await self.find_price_comparison(drug_name)
        if research_type == PA_STRATEGIES:
            return await self.research_pa_strategies(drug_name)
        return await self.find_alternatives(drug_name)

    def clear_cache(self) -> None:
        self.cache.clear()
        log.info("Cache cleared")

    def health_check(self) -> bool:
        try:
            completion = self.llm.complete([{"role": "user", "content": "Search for the current date and return it."}],
                                           model=self.model, max_tokens=50)
            return bool(completion.content)
        except Exception as e:
            log.error("Health check failed: %s", e)
            return False
