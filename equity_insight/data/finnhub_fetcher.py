"""
Finnhub adapter: recommendation trend, earnings history, live quote,
analyst price targets and daily candles.

Configuration:
    Set FINNHUB_API_KEY in .env file

Error Handling:
    Every method raises ProviderError("FINNHUB", ...) on a missing key, HTTP
    failure, timeout, or an empty/erroneous payload. The orchestrator turns these
    into per-field error markers; the aggregators collect them into their
    fallback error lists.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import (
    HistoricalCloseSource,
    PriceTargetSource,
    ProviderClient,
)

logger = structlog.get_logger(__name__)

FINNHUB_BASE = "https://finnhub.io/api/v1"

QUOTE_TTL_SECONDS = 5 * 60
RESEARCH_TTL_SECONDS = 12 * 3600


class FinnhubClient(ProviderClient, PriceTargetSource, HistoricalCloseSource):
    provider = "FINNHUB"
    source_name = "finnhub"

    def __init__(self, cache: CacheStore, api_key: str = "", timeout: float = 15):
        super().__init__(cache, timeout=timeout)
        self.api_key = api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _call(self, endpoint: str, params: dict[str, Any]) -> Any:
        if not self.is_available():
            raise self._error("Missing API key")
        data = await self._get_json(
            f"{FINNHUB_BASE}/{endpoint}", params={**params, "token": self.api_key}
        )
        if isinstance(data, dict) and data.get("error"):
            raise self._error(str(data["error"]))
        return data

    async def _cached_call(
        self, kind: str, ticker: str, endpoint: str, ttl: float
    ) -> Any:
        key = FetchKey(kind, ticker)
        cached = await self.cache.get(key, ttl)
        if cached is not None:
            return cached
        data = await self._call(endpoint, {"symbol": ticker})
        await self.cache.set(key, data)
        return data

    async def get_recommendations(self, ticker: str) -> list[dict[str, Any]]:
        """Monthly buy/hold/sell counts, newest period first."""
        data = await self._cached_call(
            "finnhub_reco", ticker, "stock/recommendation", RESEARCH_TTL_SECONDS
        )
        if not isinstance(data, list):
            raise self._error("unexpected recommendation payload")
        return data

    async def get_earnings(self, ticker: str) -> list[dict[str, Any]]:
        """Last reported quarters: actual vs estimate EPS and surprise."""
        data = await self._cached_call(
            "finnhub_earnings", ticker, "stock/earnings", RESEARCH_TTL_SECONDS
        )
        if not isinstance(data, list):
            raise self._error("unexpected earnings payload")
        return data

    async def get_quote(self, ticker: str) -> dict[str, Any]:
        """Live quote; ``c`` is the current price. An all-zero quote means unknown symbol."""
        data = await self._cached_call("finnhub_quote", ticker, "quote", QUOTE_TTL_SECONDS)
        if not isinstance(data, dict) or not data.get("c"):
            raise self._error(f"No quote for {ticker}")
        return data

    async def get_price_target(self, ticker: str) -> dict[str, Any]:
        key = FetchKey("pt_finnhub", ticker)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        data = await self._call("stock/price-target", {"symbol": ticker})
        if not isinstance(data, dict) or all(
            data.get(field) is None for field in ("targetHigh", "targetLow", "targetMean")
        ):
            raise self._error("Empty price-target payload")
        out = {"source": self.source_name, **data}
        await self.cache.set(key, out)
        return out

    async def get_close_on(self, ticker: str, date: str) -> dict[str, Any]:
        day = datetime.strptime(date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        start = day - timedelta(days=7)
        end = day + timedelta(days=1)
        data = await self._call(
            "stock/candle",
            {
                "symbol": ticker,
                "resolution": "D",
                "from": int(start.timestamp()),
                "to": int(end.timestamp()),
            },
        )
        if not isinstance(data, dict) or data.get("s") != "ok":
            raise self._error(f"No candles for {ticker} around {date}")

        rows = [
            (datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d"), close)
            for ts, close in zip(data.get("t") or [], data.get("c") or [])
        ]
        eligible = [row for row in rows if row[0] <= date and row[1]]
        if not eligible:
            raise self._error(f"No session on/before {date}")
        session_date, close = max(eligible, key=lambda row: row[0])
        return {"price": float(close), "date": session_date}
