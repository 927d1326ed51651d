"""
Tests for price-target normalization and the provider fallback chain.

Covers:
- Completion rules for one-sided and mean-only targets
- Clamping against the current price
- Provider priority and error collection
- Historical close resolution
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from equity_insight.aggregation.fallback import first_success
from equity_insight.aggregation.historical_price import HistoricalPriceResolver
from equity_insight.aggregation.price_targets import (
    PriceTargetAggregator,
    normalize_targets,
    round2,
    to_number,
)
from equity_insight.exceptions import FallbackExhaustedError, ProviderError


def make_source(name, **methods):
    source = MagicMock()
    source.source_name = name
    for method, behaviour in methods.items():
        if isinstance(behaviour, Exception):
            setattr(source, method, AsyncMock(side_effect=behaviour))
        else:
            setattr(source, method, AsyncMock(return_value=behaviour))
    return source


class TestHelpers:
    def test_to_number(self):
        assert to_number("12.5") == 12.5
        assert to_number(None) is None
        assert to_number(True) is None
        assert to_number("n/a") is None
        assert to_number(float("nan")) is None

    def test_round2_half_up(self):
        assert round2(1.005 + 1e-9) == 1.01
        assert round2(195.2195) == 195.22
        assert round2(None) is None


class TestNormalizeTargets:
    def test_mean_only_spreads_fifteen_percent(self):
        result = normalize_targets({"targetMean": 229.67, "source": "finnhub"})
        assert result["targetHigh"] == 264.12
        assert result["targetLow"] == 195.22
        assert result["targetMean"] == 229.67
        assert result["source"] == "finnhub"

    def test_current_price_below_low_lowers_the_low(self):
        result = normalize_targets({"targetMean": 229.67}, current_price=188.15)
        assert result["targetHigh"] == 264.12
        assert result["targetLow"] == 178.74

    def test_current_price_inside_range_leaves_targets(self):
        result = normalize_targets({"targetMean": 229.67}, current_price=220.0)
        assert result["targetHigh"] == 264.12
        assert result["targetLow"] == 195.22

    @pytest.mark.parametrize(
        "raw,current",
        [
            ({"targetHigh": 110, "targetLow": 90, "targetMean": 100}, 150),
            ({"targetHigh": 50}, 75.33),
            ({"targetMean": 10}, 12.0),
        ],
    )
    def test_high_below_price_clamps_to_five_percent_above(self, raw, current):
        assert normalize_targets(raw, current)["targetHigh"] == round2(current * 1.05)

    def test_low_above_price_clamps_to_five_percent_below(self):
        result = normalize_targets({"targetHigh": 120, "targetLow": 100, "targetMean": 110}, 90)
        assert result["targetLow"] == 85.5
        assert result["targetHigh"] == 120

    def test_median_stands_in_for_mean(self):
        result = normalize_targets({"targetMedian": 50})
        assert result["targetMean"] == 50
        assert result["targetMedian"] == 50
        assert result["targetHigh"] == 57.5
        assert result["targetLow"] == 42.5

    def test_high_and_mean_derive_low(self):
        result = normalize_targets({"targetHigh": 200, "targetMean": 150})
        assert result["targetLow"] == 135.0

    def test_high_only(self):
        assert normalize_targets({"targetHigh": 120})["targetLow"] == 100.0

    def test_low_and_mean_derive_high(self):
        assert normalize_targets({"targetLow": 80, "targetMean": 100})["targetHigh"] == 110.0

    def test_low_only(self):
        assert normalize_targets({"targetLow": 100})["targetHigh"] == 120.0

    def test_nothing_numeric_stays_empty(self):
        result = normalize_targets({"targetHigh": None, "targetMean": "n/a"})
        assert result == {
            "source": "aggregated",
            "targetHigh": None,
            "targetLow": None,
            "targetMean": None,
            "targetMedian": None,
        }

    def test_string_numbers_accepted(self):
        result = normalize_targets({"targetHigh": "300", "targetLow": "200", "targetMean": "250"})
        assert (result["targetHigh"], result["targetLow"], result["targetMean"]) == (300, 200, 250)


class TestFirstSuccess:
    @pytest.mark.asyncio
    async def test_returns_first_winner_and_skips_rest(self):
        later = AsyncMock(return_value="late")
        name, value = await first_success(
            [
                ("a", AsyncMock(side_effect=ProviderError("A", "down"))),
                ("b", AsyncMock(return_value="ok")),
                ("c", later),
            ]
        )
        assert (name, value) == ("b", "ok")
        later.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_answer_counts_as_failure(self):
        with pytest.raises(FallbackExhaustedError) as exc_info:
            await first_success([("a", AsyncMock(return_value={}))], accept=bool)
        assert exc_info.value.errors == ["[A] unusable answer"]

    @pytest.mark.asyncio
    async def test_provider_tag_not_duplicated(self):
        with pytest.raises(FallbackExhaustedError) as exc_info:
            await first_success(
                [
                    ("finnhub", AsyncMock(side_effect=ProviderError("FINNHUB", "HTTP 429"))),
                    ("yahoo", AsyncMock(side_effect=ValueError("bad frame"))),
                ]
            )
        assert exc_info.value.errors == ["[FINNHUB] HTTP 429", "[YAHOO] bad frame"]

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self):
        with pytest.raises(RuntimeError):
            await first_success([("a", AsyncMock(side_effect=RuntimeError("bug")))])


class TestPriceTargetAggregator:
    @pytest.mark.asyncio
    async def test_first_provider_short_circuits(self):
        finnhub = make_source("finnhub", get_price_target={"source": "finnhub", "targetMean": 100})
        yahoo = make_source("yahoo", get_price_target={"source": "yahoo", "targetMean": 200})

        result = await PriceTargetAggregator(finnhub, yahoo).get("AAPL", 95)

        assert result["source"] == "finnhub"
        assert result["targetHigh"] == 115.0
        yahoo.get_price_target.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_through_failures_and_empty_answers(self):
        finnhub = make_source("finnhub", get_price_target=ProviderError("FINNHUB", "HTTP 403"))
        yahoo = make_source("yahoo", get_price_target={"source": "yahoo", "targetHigh": None})
        alpha = make_source("alphavantage", get_price_target={"source": "alphavantage", "targetMean": 50})

        result = await PriceTargetAggregator(finnhub, yahoo, alpha).get("AAPL")

        assert result["source"] == "alphavantage"
        assert result["targetMean"] == 50

    @pytest.mark.asyncio
    async def test_all_fail_reports_every_reason(self):
        finnhub = make_source("finnhub", get_price_target=ProviderError("FINNHUB", "HTTP 429"))
        yahoo = make_source("yahoo", get_price_target=ProviderError("YAHOO", "no analyst targets"))
        alpha = make_source("alphavantage", get_price_target=ProviderError("ALPHAVANTAGE", "Missing API key"))

        with pytest.raises(FallbackExhaustedError) as exc_info:
            await PriceTargetAggregator(finnhub, yahoo, alpha).get("ZZZZ")

        message = str(exc_info.value)
        assert "[FINNHUB] HTTP 429" in message
        assert "[YAHOO] no analyst targets" in message
        assert "[ALPHAVANTAGE] Missing API key" in message


class TestHistoricalPriceResolver:
    @pytest.mark.asyncio
    async def test_source_recorded_with_history_suffix(self, memory_cache):
        yahoo = make_source("yahoo", get_close_on=ProviderError("YAHOO", "empty history"))
        alpha = make_source("alphavantage", get_close_on={"price": 185.64, "date": "2024-01-05"})
        resolver = HistoricalPriceResolver(memory_cache, yahoo, alpha)

        result = await resolver.resolve("AAPL", "2024-01-06")

        assert result.price == 185.64
        assert result.source == "alphavantage_history"
        assert result.date == "2024-01-05"

    @pytest.mark.asyncio
    async def test_cached_result_skips_providers(self, memory_cache):
        yahoo = make_source("yahoo", get_close_on={"price": 10.0, "date": "2024-01-05"})
        resolver = HistoricalPriceResolver(memory_cache, yahoo)

        first = await resolver.resolve("AAPL", "2024-01-05")
        second = await resolver.resolve("AAPL", "2024-01-05")

        assert first == second
        assert yahoo.get_close_on.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_price_is_rejected(self, memory_cache):
        yahoo = make_source("yahoo", get_close_on={"price": 0, "date": "2024-01-05"})
        with pytest.raises(FallbackExhaustedError):
            await HistoricalPriceResolver(memory_cache, yahoo).resolve("AAPL", "2024-01-05")
