"""Tests for GDELT query building/filtering and the news bundle."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from equity_insight.aggregation.news import NewsAggregator, fallback_bundle
from equity_insight.data.gdelt_fetcher import (
    MAX_RETURNED_ARTICLES,
    GdeltClient,
    build_boolean_query,
    extract_tags,
    filter_articles,
    search_window,
)
from equity_insight.exceptions import ProviderError


def raw_article(**overrides):
    article = {
        "title": "Nvidia beats quarterly earnings estimates",
        "url": "https://www.reuters.com/a",
        "domain": "reuters.com",
        "language": "English",
        "seendate": "20240103T120000Z",
    }
    article.update(overrides)
    return article


class TestQueryBuilding:
    def test_company_clause_dedupes_case_forms(self):
        assert build_boolean_query("NVDA", []) == "(NVDA OR nvda)"

    def test_keywords_quoted_and_filtered(self):
        query = build_boolean_query("NVDA", ["semiconductor", "data center", "AI", 'say "hi"'])
        assert query == '(NVDA OR nvda) AND (semiconductor OR "data center" OR "say  hi")'

    def test_search_window_spans_one_month(self):
        assert search_window("2024-03-31", 1) == ("20240229000000", "20240331235959")

    def test_extract_tags(self):
        assert extract_tags("Company raises guidance after acquisition") == ["earnings", "M&A"]
        assert extract_tags("") == []


class TestFilterArticles:
    def test_reliable_source_kept_without_tags(self):
        kept = filter_articles([raw_article(title="Nvidia CEO speaks at conference")])
        assert len(kept) == 1
        assert kept[0]["source"] == "reuters.com"
        assert kept[0]["tags"] == []

    def test_unknown_source_needs_a_tag(self):
        kept = filter_articles(
            [
                raw_article(domain="blog.example", title="Random musings"),
                raw_article(domain="blog.example", title="Antitrust probe widens"),
            ]
        )
        assert [a["title"] for a in kept] == ["Antitrust probe widens"]
        assert kept[0]["tags"] == ["regulation"]

    def test_non_english_and_untitled_dropped(self):
        kept = filter_articles(
            [raw_article(language="Chinese"), raw_article(title=""), raw_article(url="")]
        )
        assert kept == []

    def test_caps_result_count(self):
        kept = filter_articles([raw_article(url=f"https://reuters.com/{i}") for i in range(30)])
        assert len(kept) == MAX_RETURNED_ARTICLES


class TestGdeltClient:
    @pytest.mark.asyncio
    async def test_search_parses_and_caches(self, memory_cache, fake_session):
        client = GdeltClient(memory_cache)
        client._session = fake_session({"json_data": {"articles": [raw_article()]}})

        first = await client.search_articles("NVDA", ["earnings"], "2024-01-05")
        second = await client.search_articles("NVDA", ["earnings"], "2024-01-05")

        assert first == second
        assert first[0]["tags"] == ["earnings"]
        assert client._session.get.call_count == 1
        params = client._session.get.call_args.kwargs["params"]
        assert params["query"] == "(NVDA OR nvda) AND (earnings)"
        assert params["startdatetime"] == "20231205000000"
        assert params["enddatetime"] == "20240105235959"

    @pytest.mark.asyncio
    async def test_plain_text_answer_is_parse_failure(self, memory_cache, fake_session):
        client = GdeltClient(memory_cache)
        client._session = fake_session({"text": "Your search contained a phrase that is too short."})

        with pytest.raises(ProviderError, match="parse fail"):
            await client.search_articles("NVDA", [], "2024-01-05")

    @pytest.mark.asyncio
    async def test_non_utf8_bytes_in_body_still_parse(self, memory_cache, fake_session):
        payload = json.dumps({"articles": [raw_article(title="Nvidia's record quarter beats earnings")]})
        body = payload.encode("utf-8").replace(b"Nvidia's", b"Nvidia\x92s")
        client = GdeltClient(memory_cache)
        client._session = fake_session({"body": body})

        articles = await client.search_articles("NVDA", [], "2024-01-05")

        assert len(articles) == 1
        assert articles[0]["title"] == "Nvidia\ufffds record quarter beats earnings"

    @pytest.mark.asyncio
    async def test_empty_body_is_no_articles(self, memory_cache, fake_session):
        client = GdeltClient(memory_cache)
        client._session = fake_session({"text": "  "})
        assert await client.search_articles("NVDA", [], "2024-01-05") == []


def make_llm(available=True, responses=None):
    llm = MagicMock()
    llm.available = available
    llm.complete = AsyncMock(side_effect=responses or [])
    return llm


def make_gdelt(articles=None, error=None):
    gdelt = MagicMock()
    if error is not None:
        gdelt.search_articles = AsyncMock(side_effect=error)
    else:
        gdelt.search_articles = AsyncMock(return_value=articles or [])
    return gdelt


ARTICLES = [
    {"title": "A", "url": "https://a"},
    {"title": "B", "url": "https://b"},
    {"title": "C", "url": "https://c"},
    {"title": "D", "url": "https://d"},
]


class TestNewsAggregator:
    @pytest.mark.asyncio
    async def test_full_bundle(self, memory_cache):
        llm = make_llm(
            responses=[
                '```json\n["GPU", "data center", "AI chips"]\n```',
                json.dumps(
                    {
                        "sentiment_label": "Positive",
                        "summary": "Strong demand",
                        "supporting_events": [{"title": "A"}],
                    }
                ),
            ]
        )
        gdelt = make_gdelt(ARTICLES)
        news = NewsAggregator(llm, gdelt, memory_cache)

        bundle = await news.build("NVDA", "2024-01-05", "model-x")

        assert bundle["keywords"] == ["GPU", "data center", "AI chips"]
        assert bundle["articles"] == ARTICLES
        assert bundle["sentiment"]["sentiment_label"] == "positive"
        gdelt.search_articles.assert_awaited_once_with(
            "NVDA", ["GPU", "data center", "AI chips"], "2024-01-05"
        )

    @pytest.mark.asyncio
    async def test_bundle_is_cached(self, memory_cache):
        llm = make_llm(available=False)
        gdelt = make_gdelt(ARTICLES)
        news = NewsAggregator(llm, gdelt, memory_cache)

        await news.build("NVDA", "2024-01-05", "m")
        await news.build("NVDA", "2024-01-05", "m")

        assert gdelt.search_articles.await_count == 1

    @pytest.mark.asyncio
    async def test_without_llm_key(self, memory_cache):
        llm = make_llm(available=False)
        gdelt = make_gdelt(ARTICLES)

        bundle = await NewsAggregator(llm, gdelt, memory_cache).build("NVDA", "2024-01-05", "m")

        assert bundle["keywords"] == ["NVDA"]
        assert bundle["sentiment"]["sentiment_label"] == "neutral"
        assert "credential missing" in bundle["sentiment"]["summary"]
        assert bundle["sentiment"]["supporting_events"] == [
            {"title": "A", "url": "https://a"},
            {"title": "B", "url": "https://b"},
            {"title": "C", "url": "https://c"},
        ]
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_articles(self, memory_cache):
        llm = make_llm(responses=['["GPU"]'])
        bundle = await NewsAggregator(llm, make_gdelt([]), memory_cache).build("NVDA", "2024-01-05", "m")
        assert bundle["sentiment"]["summary"] == "No notable news in the past month."
        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_keyword_failure_falls_back_to_ticker(self, memory_cache):
        llm = make_llm(responses=[ProviderError("OPENROUTER", "timeout"), "{}"])
        gdelt = make_gdelt(ARTICLES)

        keywords = await NewsAggregator(llm, gdelt, memory_cache).get_keywords("NVDA", "m")

        assert keywords == ["NVDA"]

    @pytest.mark.asyncio
    async def test_unparseable_keywords_fall_back_to_ticker(self, memory_cache):
        llm = make_llm(responses=["sorry, I cannot help"])
        assert await NewsAggregator(llm, make_gdelt(), memory_cache).get_keywords("NVDA", "m") == ["NVDA"]

    @pytest.mark.asyncio
    async def test_keywords_capped_and_cached(self, memory_cache):
        llm = make_llm(responses=['["a1", "b2", "c3", "d4", "e5", "f6"]'])
        news = NewsAggregator(llm, make_gdelt(), memory_cache)

        assert await news.get_keywords("NVDA", "m") == ["a1", "b2", "c3", "d4", "e5"]
        assert await news.get_keywords("NVDA", "m") == ["a1", "b2", "c3", "d4", "e5"]
        assert llm.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_sentiment_failure(self, memory_cache):
        llm = make_llm(responses=['["GPU"]', ProviderError("OPENROUTER", "HTTP 500")])
        bundle = await NewsAggregator(llm, make_gdelt(ARTICLES), memory_cache).build(
            "NVDA", "2024-01-05", "m"
        )
        assert bundle["sentiment"]["summary"] == "News sentiment analysis failed; retry later."

    @pytest.mark.asyncio
    async def test_unknown_label_becomes_neutral(self, memory_cache):
        llm = make_llm(responses=['{"sentiment_label": "bullish", "summary": "s"}'])
        news = NewsAggregator(llm, make_gdelt(), memory_cache)
        sentiment = await news.analyze_sentiment("NVDA", "2024-01-05", ARTICLES, "m")
        assert sentiment["sentiment_label"] == "neutral"
        assert sentiment["summary"] == "s"

    @pytest.mark.asyncio
    async def test_gdelt_failure_gives_fallback_bundle(self, memory_cache):
        llm = make_llm(available=False)
        gdelt = make_gdelt(error=ProviderError("GDELT", "HTTP 503"))

        bundle = await NewsAggregator(llm, gdelt, memory_cache).build("NVDA", "2024-01-05", "m")

        assert bundle == fallback_bundle("NVDA")
