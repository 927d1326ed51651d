"""Upstream source adapters: one aiohttp or yfinance client per provider.

Public API:
    ProviderClient: shared session / timeout / error normalization base
    SecFilingsFetcher, FilingTextFetcher: EDGAR filings and MD&A text
    FinnhubClient, YahooClient, AlphaVantageClient: market data
    GdeltClient: full-text news search

Usage:
    from equity_insight.data import FinnhubClient
    async with FinnhubClient(cache, api_key=key) as client:
        quote = await client.get_quote("NVDA")
"""

from equity_insight.data.alpha_vantage_fetcher import AlphaVantageClient
from equity_insight.data.filing_text import FilingTextFetcher
from equity_insight.data.finnhub_fetcher import FinnhubClient
from equity_insight.data.gdelt_fetcher import GdeltClient
from equity_insight.data.interfaces import ProviderClient
from equity_insight.data.sec_fetcher import Filing, SecFilingsFetcher
from equity_insight.data.yahoo_fetcher import YahooClient

__all__ = [
    "AlphaVantageClient",
    "Filing",
    "FilingTextFetcher",
    "FinnhubClient",
    "GdeltClient",
    "ProviderClient",
    "SecFilingsFetcher",
    "YahooClient",
]
