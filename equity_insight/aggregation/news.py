"""
News bundle: LLM search keywords -> GDELT articles -> LLM sentiment.

Every step has a degraded answer, so build() always returns a well-formed
``{keywords, articles, sentiment}`` bundle:

    no LLM key / keyword failure   keywords = [ticker]
    no articles                    neutral, "no notable news"
    no LLM key                     neutral, first three headlines attached
    sentiment failure              neutral, "analysis failed"
    article search failure         empty bundle, neutral
"""

from typing import Any

import structlog

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.gdelt_fetcher import GdeltClient
from equity_insight.exceptions import EquityInsightError
from equity_insight.llms import LLMClient, parse_llm_json
from equity_insight.prompts import KEYWORD_PROMPT, SENTIMENT_PROMPT, keyword_request

logger = structlog.get_logger(__name__)

KEYWORD_TTL_SECONDS = 7 * 24 * 3600
NEWS_TTL_SECONDS = 6 * 3600
MAX_KEYWORDS = 5

SENTIMENT_LABELS = ("positive", "neutral", "negative")


def neutral_sentiment(summary: str, supporting_events: list | None = None) -> dict[str, Any]:
    return {
        "sentiment_label": "neutral",
        "summary": summary,
        "supporting_events": supporting_events or [],
    }


def fallback_bundle(ticker: str) -> dict[str, Any]:
    return {
        "keywords": [ticker],
        "articles": [],
        "sentiment": neutral_sentiment("News data unavailable."),
    }


class NewsAggregator:
    def __init__(
        self,
        llm: LLMClient,
        gdelt: GdeltClient,
        cache: CacheStore,
        timeout: int = 60,
    ):
        self.llm = llm
        self.gdelt = gdelt
        self.cache = cache
        self.timeout = timeout

    async def get_keywords(self, ticker: str, model: str) -> list[str]:
        key = FetchKey("news_kw", ticker)
        cached = await self.cache.get(key, KEYWORD_TTL_SECONDS)
        if cached:
            return cached
        if not self.llm.available:
            return [ticker]

        try:
            text = await self.llm.complete(
                KEYWORD_PROMPT.messages(keyword_request(ticker)),
                model,
                cache_prefix="news_kw_resp",
                ttl=KEYWORD_TTL_SECONDS,
                timeout=self.timeout,
            )
        except EquityInsightError as e:
            logger.warning("news_keywords_failed", ticker=ticker, error=str(e))
            return [ticker]

        parsed = parse_llm_json(text)
        if isinstance(parsed, list):
            picked = [str(item).strip() for item in parsed if str(item or "").strip()]
            picked = picked[:MAX_KEYWORDS]
            if picked:
                await self.cache.set(key, picked)
                return picked
        logger.debug("news_keywords_unparsed", ticker=ticker)
        return [ticker]

    async def analyze_sentiment(
        self, ticker: str, baseline_date: str, articles: list[dict], model: str
    ) -> dict[str, Any]:
        if not articles:
            return neutral_sentiment("No notable news in the past month.")
        if not self.llm.available:
            return neutral_sentiment(
                "LLM credential missing; news sentiment not analyzed.",
                [{"title": a["title"], "url": a["url"]} for a in articles[:3]],
            )

        messages = SENTIMENT_PROMPT.messages(
            {"ticker": ticker, "baseline_date": baseline_date, "articles": articles}
        )
        try:
            text = await self.llm.complete(
                messages,
                model,
                cache_prefix="news_sentiment",
                ttl=NEWS_TTL_SECONDS,
                timeout=self.timeout,
            )
        except EquityInsightError as e:
            logger.warning("news_sentiment_failed", ticker=ticker, error=str(e))
            return neutral_sentiment("News sentiment analysis failed; retry later.")

        parsed = parse_llm_json(text)
        if not isinstance(parsed, dict) or "raw" in parsed:
            logger.warning("news_sentiment_unparsed", ticker=ticker)
            return neutral_sentiment("News sentiment analysis failed; retry later.")
        label = str(parsed.get("sentiment_label") or "neutral").lower()
        return {
            "sentiment_label": label if label in SENTIMENT_LABELS else "neutral",
            "summary": parsed.get("summary") or "",
            "supporting_events": parsed.get("supporting_events") or [],
        }

    async def build(self, ticker: str, baseline_date: str, model: str) -> dict[str, Any]:
        key = FetchKey("news_bundle", ticker, baseline_date, model)
        cached = await self.cache.get(key, NEWS_TTL_SECONDS)
        if cached is not None:
            return cached

        try:
            keywords = await self.get_keywords(ticker, model)
            articles = await self.gdelt.search_articles(ticker, keywords, baseline_date)
            sentiment = await self.analyze_sentiment(ticker, baseline_date, articles, model)
            bundle = {"keywords": keywords, "articles": articles, "sentiment": sentiment}
        except EquityInsightError as e:
            logger.warning("news_bundle_failed", ticker=ticker, error=str(e))
            bundle = fallback_bundle(ticker)

        await self.cache.set(key, bundle)
        return bundle
