"""
Tests for web research: price normalization across reply shapes, the research
cache and failure handling.
"""

import asyncio
import json

import pytest

from coveredrx.schemas import WebResearchResult
from coveredrx.services.web_research import (
    ALTERNATIVES,
    PA_STRATEGIES,
    PRICING,
    ResearchCache,
    WebResearchAugmenter,
    coerce_price,
    collect_alternatives,
    collect_pa_strategies,
    collect_price_comparisons,
)
from fakes import ScriptedLLM


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_augmenter(llm, clock=None, ttl=3600.0, max_entries=256):
    cache = ResearchCache(ttl_seconds=ttl, max_entries=max_entries, clock=clock or FakeClock())
    return WebResearchAugmenter(llm=llm, model="research-model", alternatives_model="fast-model", cache=cache)


def stored(query):
    return WebResearchResult(query=query, search_time=5, timestamp="2026-01-01T00:00:00+00:00", summary=query)


# =============================================================================
# Price normalization
# =============================================================================

class TestCoercePrice:

    @pytest.mark.parametrize("raw, expected", [
        (12, 12.0),
        (4.5, 4.5),
        ("12.50", 12.5),
        ("$1,234.50", 1234.5),
        ("USD 4", 4.0),
        (" $7 ", 7.0),
    ])
    def test_numeric_forms(self, raw, expected):
        assert coerce_price(raw) == pytest.approx(expected)

    @pytest.mark.parametrize("raw", [None, True, "call for price", "", [], {}])
    def test_non_prices(self, raw):
        assert coerce_price(raw) is None


class TestCollectPriceComparisons:
    """Every reply shape the research backend has been seen to produce."""

    def test_price_comparisons_list(self):
        data = {"priceComparisons": [{"pharmacy": "CVS", "price": "$12.50", "discounts": ["GoodRx coupon"]}]}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price, p.discounts) for p in prices] == [("CVS", 12.5, ["GoodRx coupon"])]

    def test_prices_list_with_descriptions(self):
        data = {"prices": [{"price": 2.0, "description": "GoodRx discount"}, {"price": 9.99}]}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price) for p in prices] == [("GoodRx discount", 2.0), ("Cash Price", 9.99)]

    def test_single_price(self):
        prices = collect_price_comparisons({"price": "$1,234.50"}, "humira")
        assert [(p.pharmacy, p.price) for p in prices] == [("GoodRx", 1234.5)]

    def test_drug_keyed_prices_with_pharmacy(self):
        data = {"Lisinopril": {"prices": [{"dosage": "10mg", "price": "$4.50", "pharmacy": "CVS"}]}}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price, p.discounts) for p in prices] == [("CVS", 4.5, ["10mg"])]

    def test_drug_keyed_nested_pharmacies(self):
        data = {"lisinopril": {"prices": [{"dosage": "10mg", "pharmacies": [
            {"name": "Walgreens", "price": "$5.00"},
            {"name": "Costco", "price": 3},
        ]}]}}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price) for p in prices] == [("Walgreens", 5.0), ("Costco", 3.0)]

    def test_drug_keyed_dosage_only(self):
        data = {"lisinopril": {"prices": [{"dosage": "20mg", "price": "6.10"}]}}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price) for p in prices] == [("GoodRx (20mg)", 6.1)]

    def test_drug_keyed_prices_by_dosage(self):
        data = {"lisinopril": {"prices": {"10mg": {
            "average_retail_price": "$20.00",
            "price_with_goodrx_coupon": "$3.50",
            "discount": "82% off",
        }}}}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price, p.discounts) for p in prices] == [
            ("Average Retail (10mg)", 20.0, []),
            ("GoodRx (10mg)", 3.5, ["82% off"]),
        ]

    def test_drug_keyed_pharmacy_map_with_coupons(self):
        data = {"lisinopril": {"pharmacies": {
            "CVS": {"price": "$15.00", "price_with_coupon": "$4.00", "discount": "73% off"},
            "Walmart": {"price": 4, "price_with_coupon": 4},
        }}}
        prices = collect_price_comparisons(data, "lisinopril")
        assert [(p.pharmacy, p.price) for p in prices] == [
            ("CVS", 15.0), ("CVS (with coupon)", 4.0), ("Walmart", 4.0),
        ]

    def test_uncoercible_prices_are_dropped(self):
        data = {"priceComparisons": [{"pharmacy": "CVS", "price": "call for price"},
                                     {"pharmacy": "Rite Aid", "price": 8}]}
        assert [p.pharmacy for p in collect_price_comparisons(data, "x")] == ["Rite Aid"]

    def test_unrelated_shape_is_empty(self):
        assert collect_price_comparisons({"summary": "nothing", "other": {"a": 1}}, "lisinopril") == []


class TestCollectOtherSections:

    def test_alternatives_accept_strings_and_objects(self):
        data = {"alternatives": ["losartan", {"name": "enalapril", "cashPrice": "$3.00", "savings": "5"},
                                 {"cashPrice": 1}, 42]}
        alternatives = collect_alternatives(data)
        assert [a.name for a in alternatives] == ["losartan", "enalapril"]
        assert alternatives[1].cash_price == 3.0
        assert alternatives[1].savings == 5.0

    def test_non_boolean_prior_auth_flag_is_dropped(self):
        alternatives = collect_alternatives({"alternatives": [{"name": "apixaban", "priorAuthRequired": "maybe"}]})
        assert alternatives[0].prior_auth_required is None

    def test_pa_strategies(self):
        data = {"paStrategies": [
            {"strategy": "Document failed methotrexate trial", "successRate": 80, "requirements": "chart notes"},
            "Request peer-to-peer review",
            {"successRate": "10%"},
        ]}
        strategies = collect_pa_strategies(data)
        assert [s.strategy for s in strategies] == ["Document failed methotrexate trial", "Request peer-to-peer review"]
        assert strategies[0].success_rate == "80"
        assert strategies[0].requirements == ["chart notes"]


# =============================================================================
# Cache
# =============================================================================

class TestResearchCache:

    def test_round_trip(self):
        cache = ResearchCache(clock=FakeClock())
        cache.put((PRICING, "lisinopril"), stored("a"))
        assert cache.get((PRICING, "lisinopril")).query == "a"
        assert cache.get((ALTERNATIVES, "lisinopril")) is None

    def test_expired_entries_are_dropped_on_read(self):
        clock = FakeClock()
        cache = ResearchCache(ttl_seconds=60, clock=clock)
        cache.put((PRICING, "lisinopril"), stored("a"))

        clock.now += 61
        assert cache.get((PRICING, "lisinopril")) is None
        assert len(cache) == 0

    def test_least_recently_used_is_evicted(self):
        cache = ResearchCache(max_entries=2, clock=FakeClock())
        cache.put((PRICING, "a"), stored("a"))
        cache.put((PRICING, "b"), stored("b"))
        cache.get((PRICING, "a"))
        cache.put((PRICING, "c"), stored("c"))

        assert len(cache) == 2
        assert cache.get((PRICING, "b")) is None
        assert cache.get((PRICING, "a")) is not None

    def test_clear(self):
        cache = ResearchCache(clock=FakeClock())
        cache.put((PRICING, "a"), stored("a"))
        cache.clear()
        assert len(cache) == 0


# =============================================================================
# Augmenter
# =============================================================================

class TestWebResearchAugmenter:

    def test_injected_empty_cache_is_used(self):
        cache = ResearchCache(ttl_seconds=10, max_entries=2, clock=FakeClock())
        augmenter = WebResearchAugmenter(llm=ScriptedLLM('{"summary": "ok"}'), cache=cache)

        assert augmenter.cache is cache
        asyncio.run(augmenter.find_price_comparison("x"))
        assert len(cache) == 1

    def test_zero_copay_is_mentioned(self):
        llm = ScriptedLLM('{"summary": "ok"}')
        asyncio.run(make_augmenter(llm).find_alternatives("metformin", current_copay=0.0))
        assert "$0.00" in llm.calls[0]["messages"][1]["content"]

    def test_missing_copay_is_not_mentioned(self):
        llm = ScriptedLLM('{"summary": "ok"}')
        asyncio.run(make_augmenter(llm).find_alternatives("metformin"))
        assert "current copay" not in llm.calls[0]["messages"][1]["content"]

    def test_find_alternatives(self):
        reply = "```json\n" + json.dumps({
            "prices": [{"price": "$4.00", "description": "GoodRx coupon"}],
            "alternatives": [{"name": "losartan", "cashPrice": 6}],
            "discounts": ["GoodRx Gold"],
        }) + "\n```"
        llm = ScriptedLLM(reply)
        result = asyncio.run(make_augmenter(llm).find_alternatives("lisinopril", current_copay=45.0))

        assert result.query == "GoodRx pricing for lisinopril"
        assert [p.price for p in result.price_comparisons] == [4.0]
        assert [a.name for a in result.alternatives] == ["losartan"]
        assert result.patient_programs == ["GoodRx Gold"]
        assert result.sources == ["GoodRx"]
        assert llm.calls[0]["model"] == "fast-model"
        assert llm.calls[0]["max_tokens"] == 500
        assert "$45.00" in llm.calls[0]["messages"][1]["content"]

    def test_price_comparison(self):
        reply = json.dumps({"priceComparisons": [{"pharmacy": "Costco", "price": 3.2}],
                            "summary": "Cheapest at Costco", "sources": ["goodrx.com"]})
        llm = ScriptedLLM(reply)
        result = asyncio.run(make_augmenter(llm).find_price_comparison("atorvastatin"))

        assert result.summary == "Cheapest at Costco"
        assert result.sources == ["goodrx.com"]
        assert llm.calls[0]["model"] == "research-model"

    def test_pa_strategies(self):
        reply = 'Here is what I found: {"paStrategies": [{"strategy": "Submit step therapy records"}]}'
        result = asyncio.run(make_augmenter(ScriptedLLM(reply)).research_pa_strategies("humira"))

        assert [s.strategy for s in result.pa_strategies] == ["Submit step therapy records"]
        assert result.summary == "PA research completed for humira"

    @pytest.mark.parametrize("research_type, query", [
        (ALTERNATIVES, "GoodRx pricing for x"),
        (PRICING, "Price comparison for x"),
        (PA_STRATEGIES, "Prior authorization strategies for x"),
        ("something-else", "GoodRx pricing for x"),
    ])
    def test_research_dispatch(self, research_type, query):
        result = asyncio.run(make_augmenter(ScriptedLLM('{"summary": "ok"}')).research("x", research_type))
        assert result.query == query

    def test_repeat_query_is_served_from_cache(self):
        llm = ScriptedLLM('{"summary": "first"}', '{"summary": "second"}')
        augmenter = make_augmenter(llm)

        first = asyncio.run(augmenter.find_price_comparison("metformin"))
        again = asyncio.run(augmenter.find_price_comparison("metformin"))

        assert len(llm.calls) == 1
        assert again.summary == first.summary == "first"

    def test_cache_entry_expires(self):
        clock = FakeClock()
        llm = ScriptedLLM('{"summary": "first"}', '{"summary": "second"}')
        augmenter = make_augmenter(llm, clock=clock, ttl=3600)

        asyncio.run(augmenter.find_price_comparison("metformin"))
        clock.now += 3601
        result = asyncio.run(augmenter.find_price_comparison("metformin"))

        assert len(llm.calls) == 2
        assert result.summary == "second"

    def test_cache_is_keyed_by_operation(self):
        llm = ScriptedLLM('{"summary": "ok"}')
        augmenter = make_augmenter(llm)
        asyncio.run(augmenter.find_price_comparison("metformin"))
        asyncio.run(augmenter.research_pa_strategies("metformin"))
        assert len(llm.calls) == 2

    def test_backend_failure_returns_empty_result(self):
        result = asyncio.run(make_augmenter(ScriptedLLM(RuntimeError("rate limited"))).find_price_comparison("x"))

        assert result.alternatives == []
        assert result.price_comparisons == []
        assert result.summary == "Price comparison for x failed: rate limited. Please try again."

    def test_unparseable_reply_returns_empty_result(self):
        result = asyncio.run(make_augmenter(ScriptedLLM("no data today")).find_alternatives("x"))
        assert "failed" in result.summary
        assert result.alternatives == []

    def test_failures_are_not_cached(self):
        llm = ScriptedLLM(RuntimeError("timeout"), '{"summary": "recovered"}')
        augmenter = make_augmenter(llm)

        asyncio.run(augmenter.find_price_comparison("x"))
        result = asyncio.run(augmenter.find_price_comparison("x"))

        assert result.summary == "recovered"
        assert len(llm.calls) == 2

    def test_clear_cache(self):
        llm = ScriptedLLM('{"summary": "ok"}')
        augmenter = make_augmenter(llm)
        asyncio.run(augmenter.find_price_comparison("x"))
        augmenter.clear_cache()
        asyncio.run(augmenter.find_price_comparison("x"))
        assert len(llm.calls) == 2

    def test_health_check(self):
        assert make_augmenter(ScriptedLLM("2026-10-17")).health_check() is True
        assert make_augmenter(ScriptedLLM(RuntimeError("down"))).health_check() is False
