"""
Momentum metrics from a daily price/volume series.

Series source: Alpha Vantage daily adjusted, then Yahoo chart history; each
provider's series is cached on its own for a day, sorted newest-first and
capped to MAX_LOOKBACK_ROWS. Metrics are cached per (ticker, baseline date).

All indicator helpers take a newest-first list of ``{date, close, high, low,
volume}`` rows and return None when the series is too short for them.
"""

import math
from typing import Any

import pandas as pd
import structlog

from equity_insight.aggregation.fallback import first_success
from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import PriceSeriesSource
from equity_insight.exceptions import EquityInsightError

logger = structlog.get_logger(__name__)

SERIES_TTL_SECONDS = 24 * 3600
METRICS_TTL_SECONDS = 12 * 3600
MAX_LOOKBACK_ROWS = 400
MIN_ROWS = 60

# Trading-day offsets
M3, M6, M12 = 63, 126, 252

ETF_MAP = {
    "SOXX": ("NVDA", "AMD", "TSM", "ASML", "AVGO", "QCOM", "MU", "INTC", "SMCI"),
    "XLV": ("UNH", "LLY", "JNJ", "ABBV", "PFE", "MRK", "TMO"),
    "XLF": ("JPM", "GS", "BAC", "C", "MS", "BLK"),
    "QQQ": ("AAPL", "MSFT", "GOOGL", "META", "AMZN", "NFLX", "ADBE", "CRM", "NOW", "SNOW"),
}
DEFAULT_ETF = "SPY"


def pick_etf(ticker: str) -> str:
    upper = ticker.upper()
    for etf, members in ETF_MAP.items():
        if upper in members:
            return etf
    return DEFAULT_ETF


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def prepare_series(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Deduplicate by date, sort newest-first and cap the lookback."""
    if not rows:
        return []
    frame = pd.DataFrame(rows, columns=["date", "close", "high", "low", "volume"])
    frame = frame.dropna(subset=["date"]).drop_duplicates(subset="date", keep="last")
    frame = frame.sort_values("date", ascending=False).head(MAX_LOOKBACK_ROWS)
    frame[["close", "high", "low", "volume"]] = (
        frame[["close", "high", "low", "volume"]].astype(float).fillna(0.0)
    )
    return frame.to_dict("records")


def slice_by_date(series: list[dict[str, Any]], baseline_date: str | None) -> list[dict[str, Any]]:
    """Drop rows after the baseline date; the first remaining row is the reference session."""
    if not baseline_date:
        return series
    for index, row in enumerate(series):
        if row["date"][:10] <= baseline_date:
            return series[index:]
    return []


def percent_change(series: list[dict[str, Any]], offset: int) -> float | None:
    if offset < 0 or len(series) <= offset:
        return None
    base = series[offset]["close"]
    if not base:
        return None
    return series[0]["close"] / base - 1


def simple_moving_average(series: list[dict[str, Any]], period: int) -> float | None:
    if len(series) < period:
        return None
    return sum(row["close"] for row in series[:period]) / period


def calc_rsi(series: list[dict[str, Any]], period: int = 14) -> float | None:
    """RSI from simple averages of the last ``period`` day-over-day moves."""
    if len(series) <= period:
        return None
    gains = losses = 0.0
    for i in range(period):
        diff = series[i]["close"] - series[i + 1]["close"]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def calc_atr(series: list[dict[str, Any]], period: int = 14) -> float | None:
    if len(series) <= period:
        return None
    ranges = []
    for i in range(period):
        current, prev = series[i], series[i + 1]
        ranges.append(
            max(
                current["high"] - current["low"],
                abs(current["high"] - prev["close"]),
                abs(current["low"] - prev["close"]),
            )
        )
    return sum(ranges) / len(ranges)


def average_volume(series: list[dict[str, Any]], period: int) -> float | None:
    if len(series) < period:
        return None
    return sum(row["volume"] for row in series[:period]) / period


def classify_trend(above50: bool | None, above200: bool | None, m3: float | None) -> str:
    if above50 and above200 and m3 is not None and m3 > 0.10:
        return "strong"
    if above50 is False and above200 is False and m3 is not None and m3 < -0.05:
        return "weak"
    return "neutral"


def momentum_score(
    returns: dict[str, float | None],
    rsi14: float | None,
    volume_ratio: float | None,
    above50: bool | None,
    above200: bool | None,
) -> int:
    score = 50.0
    if returns["m3"] is not None:
        score += clamp(returns["m3"] * 200, -20, 20)
    if returns["m6"] is not None:
        score += clamp(returns["m6"] * 150, -15, 15)
    if returns["m12"] is not None:
        score += clamp(returns["m12"] * 100, -10, 10)
    if rsi14 is not None:
        score += clamp((rsi14 - 50) / 2, -10, 10)
    if volume_ratio is not None:
        score += clamp((volume_ratio - 1) * 20, -10, 10)
    for above in (above50, above200):
        if above is True:
            score += 5
        elif above is False:
            score -= 5
    # half-up, matching the price-target rounding
    return int(math.floor(clamp(score, 0, 100) + 0.5))


def compute_metrics(sliced: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Indicator bundle for a sliced newest-first series; None below MIN_ROWS."""
    if len(sliced) < MIN_ROWS:
        return None
    latest = sliced[0]
    returns = {
        "m3": percent_change(sliced, M3),
        "m6": percent_change(sliced, M6),
        "m12": percent_change(sliced, M12),
    }
    ma20 = simple_moving_average(sliced, 20)
    ma50 = simple_moving_average(sliced, 50)
    ma200 = simple_moving_average(sliced, 200)
    rsi14 = calc_rsi(sliced, 14)
    atr14 = calc_atr(sliced, 14)
    vol5 = average_volume(sliced, 5)
    vol30 = average_volume(sliced, 30)
    volume_ratio = vol5 / vol30 if vol5 and vol30 else None
    above50 = latest["close"] > ma50 if ma50 is not None else None
    above200 = latest["close"] > ma200 if ma200 is not None else None

    return {
        "score": momentum_score(returns, rsi14, volume_ratio, above50, above200),
        "trend": classify_trend(above50, above200, returns["m3"]),
        "returns": returns,
        "price": latest["close"],
        "moving_averages": {"ma20": ma20, "ma50": ma50, "ma200": ma200},
        "rsi14": rsi14,
        "atr14": atr14,
        "volume_ratio": volume_ratio,
        "price_vs_ma": {"above50": above50, "above200": above200},
        "reference_date": latest["date"],
    }


class MomentumEngine:
    def __init__(self, cache: CacheStore, *sources: PriceSeriesSource):
        self.cache = cache
        self.sources = list(sources)

    async def _cached_series(self, source: PriceSeriesSource, ticker: str) -> list[dict[str, Any]]:
        key = FetchKey("series", ticker, tag=source.source_name)
        cached = await self.cache.get(key, SERIES_TTL_SECONDS)
        if cached:
            return cached
        series = prepare_series(await source.get_daily_series(ticker))
        if series:
            await self.cache.set(key, series)
        return series

    async def get_series(self, ticker: str) -> list[dict[str, Any]] | None:
        """Newest-first daily series from the first provider that has one."""
        attempts = [
            (source.source_name, lambda source=source: self._cached_series(source, ticker))
            for source in self.sources
        ]
        try:
            _, series = await first_success(attempts, accept=bool)
        except EquityInsightError as e:
            logger.warning("momentum_series_unavailable", ticker=ticker, error=str(e))
            return None
        return series

    async def _etf_context(self, ticker: str, baseline_date: str | None) -> dict[str, Any]:
        etf = {"symbol": pick_etf(ticker), "return3m": None}
        try:
            series = await self.get_series(etf["symbol"])
            sliced = slice_by_date(series, baseline_date) if series else []
            if len(sliced) > M3:
                etf["return3m"] = percent_change(sliced, M3)
        except (EquityInsightError, KeyError, TypeError, ValueError) as e:
            logger.debug("etf_context_failed", etf=etf["symbol"], error=str(e))
        return etf

    async def compute(self, ticker: str, baseline_date: str | None) -> dict[str, Any] | None:
        """Momentum metrics for the ticker as of the baseline date, or None without enough history."""
        key = FetchKey("momentum_metrics", ticker, baseline_date)
        cached = await self.cache.get(key, METRICS_TTL_SECONDS)
        if cached is not None:
            return cached

        try:
            series = await self.get_series(ticker)
            if not series:
                return None
            metrics = compute_metrics(slice_by_date(series, baseline_date))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("momentum_compute_failed", ticker=ticker, error=str(e))
            return None
        if metrics is None:
            logger.info("momentum_insufficient_history", ticker=ticker, baseline=baseline_date)
            return None

        metrics["etf"] = await self._etf_context(ticker, baseline_date)
        await self.cache.set(key, metrics)
        return metrics
