"""
GDELT DOC 2.0 full-text news search.

The query combines the ticker with topical keywords:

    (NVDA OR nvda) AND (semiconductor OR "data center")

and is windowed to ``[baseline - months_back, baseline 23:59:59]``. Results are
normalized, restricted to English, and kept only when they come from a known
financial outlet or mention at least one topical theme.
"""

import hashlib
import json

import pandas as pd
import structlog

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.data.interfaces import ProviderClient

logger = structlog.get_logger(__name__)

GDELT_ENDPOINT = "https://api.gdeltproject.org/api/v2/doc/doc"

ARTICLES_TTL_SECONDS = 6 * 3600
MAX_RETURNED_ARTICLES = 20

RELIABLE_SOURCES = frozenset(
    {
        "finance.yahoo.com",
        "fool.com",
        "fool.co.uk",
        "reuters.com",
        "bloomberg.com",
        "wsj.com",
        "marketwatch.com",
        "seekingalpha.com",
        "investing.com",
        "cnbc.com",
        "barrons.com",
        "forbes.com",
        "fortune.com",
    }
)

EVENT_KEYWORDS = {
    "earnings": ("earnings", "results", "guidance", "outlook", "quarter"),
    "regulation": ("regulation", "regulatory", "antitrust", "fta", "compliance"),
    "M&A": ("merger", "acquisition", "deal", "partnership", "contract", "agreement"),
    "supply-chain": ("supply", "capacity", "fab", "foundry", "shortage"),
    "capital": ("buyback", "repurchase", "dividend", "equity offering"),
}


def _sanitize(value) -> str:
    return str(value or "").replace('"', " ").strip()


def _quote(term: str) -> str:
    return f'"{term}"' if " " in term else term


def build_boolean_query(ticker: str, keywords: list[str]) -> str:
    """Boolean GDELT query: company clause AND (keywords longer than two chars)."""
    clean = _sanitize(ticker)
    company_terms = []
    for term in (clean, clean.upper(), clean.lower()):
        if term and _quote(term) not in company_terms:
            company_terms.append(_quote(term))
    company_clause = f"({' OR '.join(company_terms)})" if company_terms else ticker

    keyword_terms = [_quote(term) for term in map(_sanitize, keywords) if len(term) > 2]
    if not keyword_terms:
        return company_clause
    return f"{company_clause} AND ({' OR '.join(keyword_terms)})"


def extract_tags(text: str) -> list[str]:
    """Topical themes mentioned in the text, by case-insensitive substring match."""
    if not text:
        return []
    lower = text.lower()
    return [
        label
        for label, terms in EVENT_KEYWORDS.items()
        if any(term in lower for term in terms)
    ]


def search_window(baseline_date: str, months_back: int) -> tuple[str, str]:
    """GDELT ``startdatetime`` / ``enddatetime`` strings for the baseline window."""
    end = pd.Timestamp(baseline_date).normalize()
    start = end - pd.DateOffset(months=months_back)
    return start.strftime("%Y%m%d000000"), end.strftime("%Y%m%d235959")


def normalize_article(raw: dict) -> dict:
    tone = raw.get("tone")
    article = {
        "title": raw.get("title") or "",
        "summary": raw.get("excerpt") or "",
        "url": raw.get("url") or raw.get("articleurl") or "",
        "source": (raw.get("domain") or raw.get("source") or "").lower(),
        "language": (raw.get("language") or "").lower(),
        "published_at": raw.get("seendate") or raw.get("published") or "",
        "tone": tone if isinstance(tone, (int, float)) else None,
    }
    article["tags"] = extract_tags(f"{article['title']} {article['summary']}")
    return article


def filter_articles(raw_articles: list[dict]) -> list[dict]:
    """Keep titled English items from a reliable outlet or carrying a topical tag."""
    kept = []
    for raw in raw_articles:
        article = normalize_article(raw)
        if not article["title"] or not article["url"]:
            continue
        if article["language"] and article["language"] != "english":
            continue
        if article["source"] in RELIABLE_SOURCES or article["tags"]:
            kept.append(article)
    return kept[:MAX_RETURNED_ARTICLES]


class GdeltClient(ProviderClient):
    provider = "GDELT"

    def __init__(self, cache: CacheStore, timeout: float = 20):
        super().__init__(cache, timeout=timeout)

    async def search_articles(
        self,
        ticker: str,
        keywords: list[str],
        baseline_date: str,
        months_back: int = 1,
        max_records: int = 50,
    ) -> list[dict]:
        query = build_boolean_query(ticker, keywords)
        digest = hashlib.sha256(query.encode("utf-8")).hexdigest()[:12]
        key = FetchKey("gdelt", ticker, baseline_date, f"{months_back}m{max_records}_{digest}")
        cached = await self.cache.get(key, ARTICLES_TTL_SECONDS)
        if cached is not None:
            return cached

        start, end = search_window(baseline_date, months_back)
        text = await self._get_text(
            GDELT_ENDPOINT,
            params={
                "query": query or ticker,
                "mode": "ArtList",
                "format": "JSON",
                "maxrecords": str(max_records),
                "sort": "DateDesc",
                "startdatetime": start,
                "enddatetime": end,
            },
        )
        # GDELT answers query syntax errors with a plain-text 200
        try:
            data = json.loads(text) if text.strip() else {}
        except ValueError as e:
            raise self._error(f"parse fail: {text[:80]}") from e

        articles = filter_articles(data.get("articles") or [])
        logger.info(
            "gdelt_articles_fetched",
            ticker=ticker,
            baseline=baseline_date,
            raw=len(data.get("articles") or []),
            kept=len(articles),
        )
        await self.cache.set(key, articles)
        return articles
