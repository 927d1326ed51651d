"""Aggregators: ordered fallback chains and bundles over the source adapters."""

from equity_insight.aggregation.fallback import first_success
from equity_insight.aggregation.historical_price import HistoricalPrice, HistoricalPriceResolver
from equity_insight.aggregation.key_events import KeyEventAggregator
from equity_insight.aggregation.momentum import MomentumEngine
from equity_insight.aggregation.news import NewsAggregator
from equity_insight.aggregation.price_targets import PriceTargetAggregator, normalize_targets

__all__ = [
    "HistoricalPrice",
    "HistoricalPriceResolver",
    "KeyEventAggregator",
    "MomentumEngine",
    "NewsAggregator",
    "PriceTargetAggregator",
    "first_success",
    "normalize_targets",
]
