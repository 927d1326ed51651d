"""Point-in-time closing price for a past baseline date."""

from dataclasses import asdict, dataclass

import structlog

from equity_insight.aggregation.fallback import first_success
from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import HistoricalCloseSource

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HistoricalPrice:
    price: float
    source: str
    date: str

    def to_dict(self) -> dict:
        return asdict(self)


def _has_price(answer) -> bool:
    return isinstance(answer, dict) and bool(answer.get("price"))


class HistoricalPriceResolver:
    """
    Yahoo history -> Alpha Vantage daily -> Finnhub candles.

    The source recorded on the result is ``<provider>_history`` so the
    orchestrator can surface price provenance.
    """

    def __init__(self, cache: CacheStore, *sources: HistoricalCloseSource, ttl: float = 720 * 3600):
        self.cache = cache
        self.sources = list(sources)
        self.ttl = ttl

    async def resolve(self, ticker: str, date: str) -> HistoricalPrice:
        key = FetchKey("hist_price", ticker, date)
        cached = await self.cache.get(key, self.ttl)
        if cached is not None:
            return HistoricalPrice(**cached)

        attempts = [
            (source.source_name, lambda source=source: source.get_close_on(ticker, date))
            for source in self.sources
        ]
        name, answer = await first_success(attempts, accept=_has_price)
        result = HistoricalPrice(
            price=float(answer["price"]),
            source=f"{name}_history",
            date=answer.get("date") or date,
        )
        logger.info("historical_price_resolved", ticker=ticker, date=date, source=result.source)
        await self.cache.set(key, result.to_dict())
        return result
