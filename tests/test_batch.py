"""Tests for batch loading, execution and CSV output."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pandas as pd
import pytest

from equity_insight.batch import (
    BATCH_COLUMNS,
    ERROR_MARKER,
    OUTPUT_FIELDS,
    load_batch_rows,
    run_batch,
    summarize_result,
    write_batch_csv,
)
from equity_insight.exceptions import AnalysisPipelineError
from equity_insight.concurrency import RequestDeduplicator
from equity_insight.orchestrator import AnalysisRequest


def make_result(ticker, baseline, model="m"):
    return {
        "input": {"ticker": ticker, "date": baseline, "model": model},
        "fetched": {
            "filings": [],
            "market_summary": {"price": {"value": 181.18, "source": "yahoo_history"}},
            "momentum": {"score": 62},
        },
        "analysis": {
            "action": {"rating": "BUY", "target_price": 210.0, "stop_loss": 170.0},
            "consensus_view": {"summary": "Constructive"},
        },
        "news": {"sentiment": {"sentiment_label": "positive"}},
        "model": model,
    }


class TestLoadBatchRows:
    def test_csv(self, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("Ticker,Date,Model\naapl,2024-01-05,\nNVDA,2024-01-05,openai/gpt-4o\n,,\n")

        rows = load_batch_rows(path)

        assert rows == [
            {"ticker": "AAPL", "date": "2024-01-05", "model": ""},
            {"ticker": "NVDA", "date": "2024-01-05", "model": "openai/gpt-4o"},
        ]

    def test_xlsx_dates_become_iso(self, tmp_path):
        path = tmp_path / "rows.xlsx"
        pd.DataFrame(
            {"ticker": ["MSFT"], "date": [pd.Timestamp("2024-01-05")]}
        ).to_excel(path, index=False, engine="openpyxl")

        assert load_batch_rows(path) == [{"ticker": "MSFT", "date": "2024-01-05", "model": ""}]

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("symbol,date\nAAPL,2024-01-05\n")

        with pytest.raises(ValueError, match="ticker"):
            load_batch_rows(path)

    def test_unparseable_date_kept_for_validation(self, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("ticker,date\nAAPL,someday\n")

        assert load_batch_rows(path)[0]["date"] == "someday"


def test_summarize_result():
    row = summarize_result(make_result("AAPL", "2024-01-05"))
    assert list(row) == BATCH_COLUMNS
    assert row["rating"] == "BUY"
    assert row["consensus"] == "Constructive"
    assert row["sentiment"] == "positive"
    assert row["momentum_score"] == 62
    assert row["price_source"] == "yahoo_history"
    assert row["error"] == ""


def test_summarize_degraded_result_leaves_blanks():
    result = make_result("AAPL", "2024-01-05")
    result["analysis"] = {"degraded": True, "action": None, "consensus_view": None}
    row = summarize_result(result)
    assert row["rating"] == ""
    assert row["consensus"] == ""


class TestRunBatch:
    @pytest.mark.asyncio
    async def test_failed_row_marked_and_others_kept(self):
        async def analyze(request):
            if request.ticker == "ZZZZ":
                raise AnalysisPipelineError("fetch_filings", "[SEC] Ticker ZZZZ not found in SEC index")
            return make_result(request.ticker, request.baseline_date)

        orchestrator = MagicMock()
        orchestrator.analyze = AsyncMock(side_effect=analyze)
        rows = [
            {"ticker": "AAPL", "date": "2024-01-05", "model": ""},
            {"ticker": "ZZZZ", "date": "2024-01-05", "model": ""},
            {"ticker": "NVDA", "date": "2024-01-05", "model": ""},
        ]

        results = await run_batch(orchestrator, rows, concurrency=2)

        assert [r["ticker"] for r in results] == ["AAPL", "ZZZZ", "NVDA"]
        assert results[0]["error"] == ""
        assert all(results[1][field] == ERROR_MARKER for field in OUTPUT_FIELDS)
        assert "not found" in results[1]["error"]
        assert results[2]["rating"] == "BUY"

    @pytest.mark.asyncio
    async def test_blank_model_passes_none(self):
        orchestrator = MagicMock()
        orchestrator.analyze = AsyncMock(return_value=make_result("AAPL", "2024-01-05"))

        await run_batch(orchestrator, [{"ticker": "AAPL", "date": "2024-01-05", "model": ""}])

        orchestrator.analyze.assert_awaited_once_with(AnalysisRequest("AAPL", "2024-01-05", None))

    @pytest.mark.asyncio
    async def test_duplicate_rows_share_one_analysis(self):
        deduplicator = RequestDeduplicator()
        calls = 0

        async def compute(request):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return make_result(request.ticker, request.baseline_date)

        async def analyze(request):
            key = (request.ticker, request.baseline_date, request.model)
            return await deduplicator.run(key, lambda: compute(request))

        orchestrator = MagicMock()
        orchestrator.analyze = AsyncMock(side_effect=analyze)
        row = {"ticker": "AAPL", "date": "2024-01-05", "model": "X"}

        results = await run_batch(orchestrator, [row, dict(row)], concurrency=2)

        assert calls == 1
        assert results[0] == results[1]


def test_write_batch_csv(tmp_path):
    rows = [
        summarize_result(make_result("AAPL", "2024-01-05")),
        {"ticker": "ZZZZ", "date": "2024-01-05", "model": "", **{f: ERROR_MARKER for f in OUTPUT_FIELDS}, "error": "boom"},
    ]

    path = write_batch_csv(rows, tmp_path / "out" / "results.csv")

    frame = pd.read_csv(path, keep_default_na=False)
    assert list(frame.columns) == BATCH_COLUMNS
    assert frame.loc[1, "rating"] == ERROR_MARKER
    assert frame.loc[1, "error"] == "boom"
