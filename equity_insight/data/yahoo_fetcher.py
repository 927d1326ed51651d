"""
Yahoo Finance adapter built on yfinance.

yfinance is synchronous, so every call runs in a worker thread under
asyncio.wait_for; a timeout is reported like any other provider failure.
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

import pandas as pd
import structlog
import yfinance as yf

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import (
    HistoricalCloseSource,
    PriceSeriesSource,
    PriceTargetSource,
    ProviderClient,
)
from equity_insight.exceptions import ProviderError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SERIES_PERIOD = "2y"


def frame_to_rows(frame: pd.DataFrame) -> list[dict[str, Any]]:
    """Convert a yfinance OHLCV frame into ``{date, close, high, low, volume}`` rows."""
    if frame is None or frame.empty:
        return []
    rows = []
    for index, row in frame.iterrows():
        close = row.get("Close")
        if pd.isna(close):
            continue
        high = row.get("High")
        low = row.get("Low")
        volume = row.get("Volume")
        rows.append(
            {
                "date": pd.Timestamp(index).strftime("%Y-%m-%d"),
                "close": float(close),
                "high": float(high) if not pd.isna(high) else float(close),
                "low": float(low) if not pd.isna(low) else float(close),
                "volume": float(volume) if not pd.isna(volume) else 0.0,
            }
        )
    return rows


class YahooClient(ProviderClient, PriceTargetSource, PriceSeriesSource, HistoricalCloseSource):
    provider = "YAHOO"
    source_name = "yahoo"

    def __init__(self, cache: CacheStore, timeout: float = 20):
        super().__init__(cache, timeout=timeout)

    async def _run(self, func: Callable[[], T], what: str) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise self._error(f"{what} timeout after {self.timeout}s") from e
        except ProviderError:
            raise
        except Exception as e:
            # yfinance surfaces HTTP, parsing and rate-limit problems as assorted types
            raise self._error(f"{what} failed: {e}") from e

    async def get_price_target(self, ticker: str) -> dict[str, Any]:
        key = FetchKey("pt_yahoo", ticker)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        info = await self._run(lambda: yf.Ticker(ticker).info or {}, "info")
        out = {
            "source": self.source_name,
            "targetHigh": info.get("targetHighPrice"),
            "targetLow": info.get("targetLowPrice"),
            "targetMean": info.get("targetMeanPrice"),
            "targetMedian": info.get("targetMedianPrice"),
        }
        if all(out[field] is None for field in ("targetHigh", "targetLow", "targetMean")):
            raise self._error("no analyst targets in quote summary")
        await self.cache.set(key, out)
        return out

    async def get_daily_series(self, ticker: str) -> list[dict[str, Any]]:
        frame = await self._run(
            lambda: yf.Ticker(ticker).history(
                period=SERIES_PERIOD, interval="1d", auto_adjust=False
            ),
            "history",
        )
        rows = frame_to_rows(frame)
        if not rows:
            raise self._error(f"chart has no data for {ticker}")
        return rows

    async def get_close_on(self, ticker: str, date: str) -> dict[str, Any]:
        day = datetime.strptime(date, "%Y-%m-%d")
        start = (day - timedelta(days=7)).strftime("%Y-%m-%d")
        # history() treats ``end`` as exclusive
        end = (day + timedelta(days=1)).strftime("%Y-%m-%d")
        frame = await self._run(
            lambda: yf.Ticker(ticker).history(start=start, end=end, auto_adjust=False),
            "history",
        )
        rows = [row for row in frame_to_rows(frame) if row["date"] <= date]
        if not rows:
            raise self._error(f"No session on/before {date}")
        last = max(rows, key=lambda row: row["date"])
        return {"price": last["close"], "date": last["date"]}
