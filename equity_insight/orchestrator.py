"""
Analysis orchestrator: one (ticker, baseline date, model) request in, one
persisted Analysis Result out.

Stages:

    CACHE_CHECK -> FETCH_FILINGS -> FETCH_MARKET_DATA -> FETCH_NEWS
                -> INVOKE_TRANSFORM -> PERSIST -> DONE

A stored result younger than its TTL (30 days for historical baselines, 6 hours
for today) ends the run at CACHE_CHECK. FETCH_FILINGS and INVOKE_TRANSFORM are
required and fail the request with AnalysisPipelineError; market data, momentum,
news and key events always settle, recording per-field errors instead.

Concurrent calls for the same triple share one in-flight run through the
RequestDeduplicator.
"""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

import structlog

from equity_insight.aggregation import (
    HistoricalPriceResolver,
    KeyEventAggregator,
    MomentumEngine,
    NewsAggregator,
    PriceTargetAggregator,
)
from equity_insight.cache import FileCacheStore
from equity_insight.cleanup import register_cleanup
from equity_insight.concurrency import RequestDeduplicator, bounded_gather
from equity_insight.config import Settings, config
from equity_insight.data import (
    AlphaVantageClient,
    Filing,
    FilingTextFetcher,
    FinnhubClient,
    GdeltClient,
    SecFilingsFetcher,
    YahooClient,
)
from equity_insight.exceptions import (
    AnalysisPipelineError,
    EquityInsightError,
    InputValidationError,
)
from equity_insight.llms import AnalysisTransform, LLMClient
from equity_insight.store import AnalysisStore

logger = structlog.get_logger(__name__)

_TICKER_PATTERN = re.compile(r"^[A-Z0-9.\-]{1,10}$")


class AnalysisStage(str, Enum):
    CACHE_CHECK = "cache_check"
    FETCH_FILINGS = "fetch_filings"
    FETCH_MARKET_DATA = "fetch_market_data"
    FETCH_NEWS = "fetch_news"
    INVOKE_TRANSFORM = "invoke_transform"
    PERSIST = "persist"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class AnalysisRequest:
    ticker: str
    baseline_date: Any
    model: str | None = None

    def validate(self) -> "AnalysisRequest":
        """Normalized copy (upper-case ticker, ISO date) or InputValidationError."""
        ticker = str(self.ticker or "").strip().upper()
        if not ticker:
            raise InputValidationError("ticker is required")
        if not _TICKER_PATTERN.match(ticker):
            raise InputValidationError(f"invalid ticker: {self.ticker!r}")

        value = self.baseline_date
        if isinstance(value, datetime):
            baseline = value.date()
        elif isinstance(value, date):
            baseline = value
        else:
            text = str(value or "").strip()
            if not text:
                raise InputValidationError("date is required")
            try:
                baseline = datetime.strptime(text, "%Y-%m-%d").date()
            except ValueError as e:
                raise InputValidationError(
                    f"invalid date {text!r}, expected YYYY-MM-DD"
                ) from e

        model = str(self.model).strip() if self.model else None
        return AnalysisRequest(ticker, baseline.isoformat(), model or None)


def _settled(result: Any) -> Any:
    """Per-field error marker for a failed sub-fetch."""
    if isinstance(result, BaseException):
        if not isinstance(result, Exception):
            raise result
        return {"error": str(result) or type(result).__name__}
    return result


class AnalysisOrchestrator:
    def __init__(
        self,
        *,
        sec: SecFilingsFetcher,
        filing_text: FilingTextFetcher,
        finnhub: FinnhubClient,
        price_targets: PriceTargetAggregator,
        historical_prices: HistoricalPriceResolver,
        momentum: MomentumEngine,
        news: NewsAggregator,
        key_events: KeyEventAggregator,
        transform: AnalysisTransform,
        store: AnalysisStore,
        default_model: str,
        max_filings: int = 4,
        mda_excerpt_chars: int = 5000,
        filing_concurrency: int = 3,
        ttl_historical: float = 720 * 3600,
        ttl_current: float = 6 * 3600,
        today: Callable[[], date] = date.today,
    ):
        self.sec = sec
        self.filing_text = filing_text
        self.finnhub = finnhub
        self.price_targets = price_targets
        self.historical_prices = historical_prices
        self.momentum = momentum
        self.news = news
        self.key_events = key_events
        self.transform = transform
        self.store = store
        self.default_model = default_model
        self.max_filings = max_filings
        self.mda_excerpt_chars = mda_excerpt_chars
        self.filing_concurrency = filing_concurrency
        self.ttl_historical = ttl_historical
        self.ttl_current = ttl_current
        self._today = today
        self.deduplicator = RequestDeduplicator()

    async def analyze(self, request: AnalysisRequest) -> dict[str, Any]:
        """Validate, then run (or join the in-flight run for) the request's triple."""
        request = request.validate()
        model = request.model or self.default_model
        key = (request.ticker, request.baseline_date, model)
        return await self.deduplicator.run(
            key, lambda: self._run(request.ticker, request.baseline_date, model)
        )

    def _stage(self, stage: AnalysisStage, ticker: str, baseline_date: str) -> AnalysisStage:
        logger.info("analysis_stage", stage=stage.value, ticker=ticker, date=baseline_date)
        return stage

    async def _run(self, ticker: str, baseline_date: str, model: str) -> dict[str, Any]:
        is_historical = date.fromisoformat(baseline_date) < self._today()
        ttl = self.ttl_historical if is_historical else self.ttl_current

        stage = self._stage(AnalysisStage.CACHE_CHECK, ticker, baseline_date)
        cached = await self.store.get(ticker, baseline_date, model, ttl)
        if cached is not None:
            logger.info("analysis_cache_hit", ticker=ticker, date=baseline_date, model=model)
            self._stage(AnalysisStage.DONE, ticker, baseline_date)
            return cached

        try:
            stage = self._stage(AnalysisStage.FETCH_FILINGS, ticker, baseline_date)
            cik, filings, excerpts = await self._fetch_filings(ticker, baseline_date)

            stage = self._stage(AnalysisStage.FETCH_MARKET_DATA, ticker, baseline_date)
            (market, payload_market), momentum = await asyncio.gather(
                self._fetch_market_data(ticker, baseline_date, is_historical),
                self.momentum.compute(ticker, baseline_date),
            )

            stage = self._stage(AnalysisStage.FETCH_NEWS, ticker, baseline_date)
            news, key_events = await asyncio.gather(
                self.news.build(ticker, baseline_date, model),
                self.key_events.build(ticker, cik, baseline_date, model),
            )

            stage = self._stage(AnalysisStage.INVOKE_TRANSFORM, ticker, baseline_date)
            payload = {
                "company": ticker,
                "baseline_date": baseline_date,
                "sec_filings": excerpts,
                "market_data": payload_market,
                "momentum": momentum,
                "news": {**news, "key_events": key_events},
            }
            analysis = await self.transform.transform(payload, model, ttl=ttl)
        except EquityInsightError as e:
            self._stage(AnalysisStage.ERROR, ticker, baseline_date)
            logger.error(
                "analysis_failed", ticker=ticker, date=baseline_date, stage=stage.value, error=str(e)
            )
            raise AnalysisPipelineError(stage.value, str(e)) from e

        result = {
            "input": {"ticker": ticker, "date": baseline_date, "model": model},
            "fetched": {
                "filings": [filing.to_dict() for filing in filings],
                "market_summary": market,
                "momentum": momentum,
            },
            "analysis": analysis,
            "news": {**news, "key_events": key_events},
            "model": model,
            "generated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }

        self._stage(AnalysisStage.PERSIST, ticker, baseline_date)
        await self.store.save(ticker, baseline_date, model, result, is_historical)
        self._stage(AnalysisStage.DONE, ticker, baseline_date)
        return result

    async def _fetch_filings(
        self, ticker: str, baseline_date: str
    ) -> tuple[str, list[Filing], list[dict[str, Any]]]:
        cik = await self.sec.get_cik(ticker)
        filings = await self.sec.get_recent_filings(cik, baseline_date, limit=self.max_filings)
        excerpts = await bounded_gather(filings, self._filing_excerpt, self.filing_concurrency)
        return cik, filings, excerpts

    async def _filing_excerpt(self, filing: Filing) -> dict[str, Any]:
        entry = {
            "form": filing.form,
            "formLabel": filing.form_label,
            "filingDate": filing.filing_date,
            "reportDate": filing.report_date,
        }
        try:
            text = await self.filing_text.fetch_mda(filing.url or "")
        except EquityInsightError as e:
            logger.warning("mda_fetch_failed", accession=filing.accession, error=str(e))
            return {**entry, "mda_excerpt": "", "mda_error": str(e)}
        return {**entry, "mda_excerpt": text[: self.mda_excerpt_chars]}

    async def _fetch_market_data(
        self, ticker: str, baseline_date: str, is_historical: bool
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """(market summary for the result, market data for the LLM payload); never raises."""
        results = await asyncio.gather(
            self.finnhub.get_recommendations(ticker),
            self.finnhub.get_earnings(ticker),
            self.finnhub.get_quote(ticker),
            return_exceptions=True,
        )
        recommendation, earnings, quote = (_settled(result) for result in results)
        current = quote.get("c") if isinstance(quote, dict) else None
        today = self._today().isoformat()

        if is_historical:
            try:
                resolved = await self.historical_prices.resolve(ticker, baseline_date)
                price = {"value": resolved.price, "source": resolved.source, "date": resolved.date}
            except EquityInsightError as e:
                logger.warning("historical_price_fallback", ticker=ticker, error=str(e))
                price = {
                    "value": current,
                    "source": "real-time_fallback",
                    "date": today,
                    "error": str(e),
                }
        else:
            price = {"value": current, "source": "real-time", "date": today}

        try:
            price_target = await self.price_targets.get(ticker, price["value"])
        except EquityInsightError as e:
            price_target = {"error": str(e)}

        latest_recommendation = (
            recommendation[0]
            if isinstance(recommendation, list) and recommendation
            else recommendation
        )
        summary = {
            "recommendation": latest_recommendation,
            "earnings": earnings,
            "quote": quote,
            "price_target": price_target,
            "price": price,
        }
        payload = {**summary, "recommendation": recommendation}
        return summary, payload


def build_orchestrator(settings: Settings | None = None) -> AnalysisOrchestrator:
    """Wire real adapters, the file cache and the SQLite store; register their shutdown."""
    settings = settings or config
    cache = FileCacheStore(settings.data_cache_dir, default_ttl=settings.cache_default_ttl)

    sec = SecFilingsFetcher(
        cache, settings.sec_user_agent, settings.get_sec_api_key(), timeout=settings.sec_timeout
    )
    filing_text = FilingTextFetcher(
        cache,
        settings.sec_user_agent,
        max_chars=settings.mda_fetch_chars,
        timeout=settings.sec_timeout,
    )
    finnhub = FinnhubClient(cache, settings.get_finnhub_api_key(), timeout=settings.quote_timeout)
    yahoo = YahooClient(cache, timeout=settings.series_timeout)
    alpha_vantage = AlphaVantageClient(
        cache, settings.get_alpha_vantage_api_key(), timeout=settings.series_timeout
    )
    gdelt = GdeltClient(cache, timeout=settings.news_timeout)
    llm = LLMClient(
        settings.get_openrouter_api_key(),
        cache,
        base_url=settings.openrouter_base_url,
        temperature=settings.llm_temperature,
        timeout=settings.llm_aux_timeout,
    )
    news = NewsAggregator(llm, gdelt, cache, timeout=settings.llm_aux_timeout)
    store = AnalysisStore(settings.analysis_db_path)

    for resource in (sec, filing_text, finnhub, yahoo, alpha_vantage, gdelt, llm, store, cache):
        register_cleanup(resource.close)

    return AnalysisOrchestrator(
        sec=sec,
        filing_text=filing_text,
        finnhub=finnhub,
        price_targets=PriceTargetAggregator(finnhub, yahoo, alpha_vantage),
        historical_prices=HistoricalPriceResolver(
            cache, yahoo, alpha_vantage, finnhub, ttl=settings.analysis_ttl(True)
        ),
        momentum=MomentumEngine(cache, alpha_vantage, yahoo),
        news=news,
        key_events=KeyEventAggregator(
            news, gdelt, sec, alpha_vantage, llm, cache, timeout=settings.llm_aux_timeout
        ),
        transform=AnalysisTransform(llm, cache, timeout=settings.llm_timeout),
        store=store,
        default_model=settings.default_model,
        max_filings=settings.max_filings,
        mda_excerpt_chars=settings.mda_excerpt_chars,
        filing_concurrency=settings.filing_fetch_concurrency,
        ttl_historical=settings.analysis_ttl(True),
        ttl_current=settings.analysis_ttl(False),
    )
