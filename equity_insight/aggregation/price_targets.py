"""
Analyst price-target aggregation.

Providers are tried in priority order (Finnhub, Yahoo, Alpha Vantage); the first
answer with at least one numeric high/low/mean wins and is completed by
normalize_targets():

    1. mean falls back to median
    2. mean only            -> high = mean * 1.15, low = mean * 0.85
    3. high + mean, no low  -> low = min(mean * 0.90, high / 1.1)
       (a zero mean uses high / 1.1)
    4. low + mean, no high  -> high = max(mean * 1.10, low * 1.1)
       (a zero mean uses low * 1.1)
    5. still one-sided      -> low = high / 1.2  |  high = low * 1.2
    6. clamp: high < price  -> high = price * 1.05
              low > price   -> low = price * 0.95
    7. round to cents
"""

import math
from typing import Any

import structlog

from equity_insight.aggregation.fallback import first_success
from equity_insight.data.interfaces import PriceTargetSource

logger = structlog.get_logger(__name__)

TARGET_FIELDS = ("targetHigh", "targetLow", "targetMean")


def to_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def round2(value: float | None) -> float | None:
    """Round half up to two decimals; None stays None."""
    if value is None:
        return None
    return math.floor(value * 100 + 0.5) / 100


def has_numeric_target(raw: Any) -> bool:
    return isinstance(raw, dict) and any(
        to_number(raw.get(field)) is not None for field in TARGET_FIELDS
    )


def normalize_targets(
    raw: dict[str, Any] | None, current_price: Any = None
) -> dict[str, Any]:
    raw = raw or {}
    mean = to_number(raw.get("targetMean"))
    if mean is None:
        mean = to_number(raw.get("targetMedian"))
    high = to_number(raw.get("targetHigh"))
    low = to_number(raw.get("targetLow"))

    if mean is not None:
        if high is None and low is None:
            high = mean * 1.15
            low = mean * 0.85
        elif high is not None and low is None:
            low = min(mean * 0.9, high / 1.1) if mean else high / 1.1
        elif low is not None and high is None:
            high = max(mean * 1.1, low * 1.1) if mean else low * 1.1
    if high is not None and low is None:
        low = high / 1.2
    if low is not None and high is None:
        high = low * 1.2

    current = to_number(current_price)
    if current is not None:
        if high is not None and current > high:
            high = current * 1.05
        if low is not None and current < low:
            low = current * 0.95

    return {
        "source": raw.get("source") or "aggregated",
        "targetHigh": round2(high),
        "targetLow": round2(low),
        "targetMean": round2(mean),
        "targetMedian": round2(to_number(raw.get("targetMedian"))),
    }


class PriceTargetAggregator:
    """Runs the provider chain and completes the winning answer."""

    def __init__(self, *sources: PriceTargetSource):
        self.sources = list(sources)

    async def get(self, ticker: str, current_price: Any = None) -> dict[str, Any]:
        """Normalized target; raises FallbackExhaustedError when every provider fails."""
        attempts = [
            (source.source_name, lambda source=source: source.get_price_target(ticker))
            for source in self.sources
        ]
        name, raw = await first_success(attempts, accept=has_numeric_target)
        logger.info("price_target_resolved", ticker=ticker, source=name)
        return normalize_targets(raw, current_price)
