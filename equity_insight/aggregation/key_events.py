"""
Key-event bundle around the baseline date.

Three independent sources are merged into one Event sequence:

    news      GDELT articles (1 month back, up to 40)
    filing    SEC 8-K / 6-K event reports (8-K -> "regulatory")
    earnings  Alpha Vantage quarterly earnings reports

Each source is isolated: one failing leaves the others in place. Events are
filtered to ``[baseline - 1 month, baseline + 1 month]``, ordered newest first,
capped to MAX_EVENTS, then classified by the LLM into a primary event plus
supporting details.
"""

import asyncio
import re
from datetime import date
from typing import Any

import pandas as pd
import structlog

from equity_insight.aggregation.news import NewsAggregator
from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.alpha_vantage_fetcher import AlphaVantageClient
from equity_insight.data.gdelt_fetcher import GdeltClient
from equity_insight.data.sec_fetcher import Filing, SecFilingsFetcher
from equity_insight.exceptions import EquityInsightError
from equity_insight.llms import LLMClient, parse_llm_json
from equity_insight.prompts import KEY_EVENT_PROMPT

logger = structlog.get_logger(__name__)

KEY_EVENT_TTL_SECONDS = 6 * 3600
MAX_EVENTS = 10
MAX_ARTICLES = 40

CLASSIFY_FAILED = "Event classification failed; showing recent events."

_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})")


def event_day(value: Any) -> date | None:
    """Calendar day of an ISO (``2024-01-05...``) or GDELT (``20240105T...``) stamp."""
    if not value:
        return None
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    match = _COMPACT_DATE.match(text)
    if match:
        try:
            return date(*(int(part) for part in match.groups()))
        except ValueError:
            return None
    return None


def events_from_articles(articles: list[dict]) -> list[dict]:
    return [
        {
            "type": "news",
            "date": article.get("published_at") or article.get("date"),
            "title": article.get("title") or "News event",
            "summary": article.get("summary") or "",
            "source": article.get("source") or "GDELT",
            "url": article.get("url"),
        }
        for article in articles
    ]


def events_from_filings(filings: list[Filing]) -> list[dict]:
    return [
        {
            "type": "regulatory" if filing.form == "8-K" else "filing",
            "date": filing.filing_date,
            "title": f"{filing.form} filing",
            "summary": filing.description,
            "source": "SEC",
            "url": filing.url,
        }
        for filing in filings
    ]


def filter_recent(events: list[dict], baseline_date: str) -> list[dict]:
    """Events within one calendar month either side of the baseline, newest first."""
    base = pd.Timestamp(baseline_date)
    start = (base - pd.DateOffset(months=1)).date()
    end = (base + pd.DateOffset(months=1)).date()

    dated = []
    for event in events:
        day = event_day(event.get("date"))
        if day is not None and start <= day <= end:
            dated.append((day, {**event, "date": day.isoformat()}))
    dated.sort(key=lambda item: item[0], reverse=True)
    return [event for _, event in dated]


def fallback_classification(events: list[dict], summary: str) -> dict[str, Any]:
    return {
        "primary": events[0] if events else None,
        "details": events[1:],
        "summary": summary,
    }


class KeyEventAggregator:
    def __init__(
        self,
        news: NewsAggregator,
        gdelt: GdeltClient,
        sec: SecFilingsFetcher,
        alpha_vantage: AlphaVantageClient,
        llm: LLMClient,
        cache: CacheStore,
        timeout: int = 60,
    ):
        self.news = news
        self.gdelt = gdelt
        self.sec = sec
        self.alpha_vantage = alpha_vantage
        self.llm = llm
        self.cache = cache
        self.timeout = timeout

    async def _articles(self, ticker: str, baseline_date: str, model: str) -> list[dict]:
        keywords = await self.news.get_keywords(ticker, model)
        articles = await self.gdelt.search_articles(
            ticker, keywords, baseline_date, months_back=1, max_records=MAX_ARTICLES
        )
        return events_from_articles(articles)

    async def _filings(self, cik: str | None, baseline_date: str) -> list[dict]:
        if not cik:
            return []
        return events_from_filings(await self.sec.get_event_filings(cik, baseline_date))

    async def collect(
        self, ticker: str, cik: str | None, baseline_date: str, model: str
    ) -> list[dict]:
        """Merged events from every source that answered."""
        names = ("news", "filings", "earnings")
        results = await asyncio.gather(
            self._articles(ticker, baseline_date, model),
            self._filings(cik, baseline_date),
            self.alpha_vantage.get_earnings_events(ticker),
            return_exceptions=True,
        )
        combined: list[dict] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "key_event_source_failed",
                    source=name,
                    ticker=ticker,
                    error=str(result),
                )
                continue
            combined.extend(result)
        return combined

    async def classify(
        self, ticker: str, baseline_date: str, events: list[dict], model: str
    ) -> dict[str, Any]:
        if not events:
            return fallback_classification([], "No major events within a month of the baseline.")
        if not self.llm.available:
            return fallback_classification(
                events, "LLM credential missing; showing recent events."
            )

        messages = KEY_EVENT_PROMPT.messages(
            {"ticker": ticker, "baseline_date": baseline_date, "events": events}
        )
        try:
            text = await self.llm.complete(
                messages,
                model,
                cache_prefix="key_events_cls",
                ttl=KEY_EVENT_TTL_SECONDS,
                timeout=self.timeout,
            )
        except EquityInsightError as e:
            logger.warning("key_event_classify_failed", ticker=ticker, error=str(e))
            return fallback_classification(events, CLASSIFY_FAILED)

        parsed = parse_llm_json(text)
        if not isinstance(parsed, dict) or "raw" in parsed:
            return fallback_classification(events, CLASSIFY_FAILED)
        details = parsed.get("details")
        return {
            "primary": parsed.get("primary") or None,
            "details": details if isinstance(details, list) else [],
            "summary": parsed.get("summary") or "",
        }

    async def build(
        self, ticker: str, cik: str | None, baseline_date: str, model: str
    ) -> dict[str, Any]:
        key = FetchKey("key_events", ticker, baseline_date, model)
        cached = await self.cache.get(key, KEY_EVENT_TTL_SECONDS)
        if cached is not None:
            return cached

        try:
            events = await self.collect(ticker, cik, baseline_date, model)
            recent = filter_recent(events, baseline_date)[:MAX_EVENTS]
            classified = await self.classify(ticker, baseline_date, recent, model)
            bundle = {**classified, "raw_events": recent}
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("key_events_failed", ticker=ticker, error=str(e))
            bundle = {
                "primary": None,
                "details": [],
                "summary": "Key event data unavailable.",
                "raw_events": [],
            }
        await self.cache.set(key, bundle)
        return bundle
