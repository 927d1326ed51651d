"""
Alpha Vantage adapter: fundamentals overview (analyst target), full daily
adjusted series and quarterly earnings reports.

The free tier answers rate-limit and bad-symbol conditions with HTTP 200 and a
"Note", "Information" or "Error Message" body; those are failures too.
"""

from typing import Any

import structlog

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import (
    HistoricalCloseSource,
    PriceSeriesSource,
    PriceTargetSource,
    ProviderClient,
)

logger = structlog.get_logger(__name__)

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"

EARNINGS_TTL_SECONDS = 6 * 3600

_SOFT_ERROR_FIELDS = ("Error Message", "Note", "Information")


def _number(value: Any) -> float | None:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number == number else None


class AlphaVantageClient(
    ProviderClient, PriceTargetSource, PriceSeriesSource, HistoricalCloseSource
):
    provider = "ALPHAVANTAGE"
    source_name = "alphavantage"

    def __init__(self, cache: CacheStore, api_key: str = "", timeout: float = 20):
        super().__init__(cache, timeout=timeout)
        self.api_key = api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _query(self, function: str, symbol: str, **params: str) -> dict[str, Any]:
        if not self.is_available():
            raise self._error("Missing API key")
        data = await self._get_json(
            ALPHA_VANTAGE_URL,
            params={"function": function, "symbol": symbol, "apikey": self.api_key, **params},
        )
        if not isinstance(data, dict):
            raise self._error(f"{function}: unexpected payload")
        for field in _SOFT_ERROR_FIELDS:
            if data.get(field):
                raise self._error(str(data[field])[:200])
        return data

    async def get_price_target(self, ticker: str) -> dict[str, Any]:
        """OVERVIEW carries a single consensus number; it becomes the mean."""
        key = FetchKey("pt_alphavantage", ticker)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        data = await self._query("OVERVIEW", ticker)
        mean = _number(data.get("AnalystTargetPrice"))
        if mean is None:
            raise self._error("no AnalystTargetPrice")
        out = {
            "source": self.source_name,
            "targetHigh": None,
            "targetLow": None,
            "targetMean": mean,
            "targetMedian": None,
        }
        await self.cache.set(key, out)
        return out

    async def get_daily_series(self, ticker: str) -> list[dict[str, Any]]:
        data = await self._query("TIME_SERIES_DAILY_ADJUSTED", ticker, outputsize="full")
        series = data.get("Time Series (Daily)")
        if not series:
            raise self._error("no daily series")

        rows = []
        for day, values in series.items():
            close = (
                _number(values.get("4. close"))
                or _number(values.get("5. adjusted close"))
                or _number(values.get("1. open"))
                or 0.0
            )
            rows.append(
                {
                    "date": day,
                    "close": close,
                    "high": _number(values.get("2. high")) or 0.0,
                    "low": _number(values.get("3. low")) or 0.0,
                    "volume": _number(values.get("6. volume")) or 0.0,
                }
            )
        return rows

    async def get_close_on(self, ticker: str, date: str) -> dict[str, Any]:
        rows = [
            row
            for row in await self.get_daily_series(ticker)
            if row["date"] <= date and row["close"]
        ]
        if not rows:
            raise self._error(f"No session on/before {date}")
        last = max(rows, key=lambda row: row["date"])
        return {"price": last["close"], "date": last["date"]}

    async def get_earnings_events(self, ticker: str) -> list[dict[str, Any]]:
        """Quarterly earnings reports as key events; [] when the key is missing."""
        if not self.is_available():
            return []
        key = FetchKey("alpha_earnings", ticker)
        cached = await self.cache.get(key, EARNINGS_TTL_SECONDS)
        if cached is not None:
            return cached

        data = await self._query("EARNINGS", ticker)
        symbol = ticker.upper()
        events = []
        for row in data.get("quarterlyEarnings") or []:
            estimate = row.get("estimatedEPS")
            reported = row.get("reportedEPS")
            summary = f"Estimate EPS {estimate if estimate not in (None, 'None') else ''}"
            if reported not in (None, "None"):
                summary += f", reported EPS {reported}"
            events.append(
                {
                    "type": "earnings",
                    "date": row.get("reportedDate") or row.get("fiscalDateEnding"),
                    "title": f"{symbol} Earnings Call",
                    "summary": summary.strip(),
                    "source": "AlphaVantage",
                }
            )
        await self.cache.set(key, events)
        return events
