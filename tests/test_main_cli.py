"""
Tests for the equity-insight command line.

Covers argument parsing, JSON output in quiet mode, --output files, batch
runs and error exit codes. The orchestrator is always mocked.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from equity_insight.exceptions import AnalysisPipelineError
from equity_insight.main import display_result, main, parse_arguments

RESULT = {
    "input": {"ticker": "NVDA", "date": "2024-01-05", "model": "openai/gpt-4o"},
    "fetched": {
        "filings": [{"form": "10-Q"}],
        "market_summary": {
            "price": {"value": 490.97, "source": "yahoo_history", "date": "2024-01-05"},
            "price_target": {"source": "finnhub", "targetHigh": 700, "targetLow": 480, "targetMean": 620},
        },
        "momentum": {"score": 81, "trend": "strong"},
    },
    "analysis": {"action": {"rating": "BUY", "target_price": 620, "stop_loss": 450, "rationale": "AI demand"}},
    "news": {"sentiment": {"sentiment_label": "positive"}, "key_events": {}},
    "model": "openai/gpt-4o",
    "generated_at": "2024-01-05T12:00:00+00:00",
}


def mock_orchestrator(result=RESULT, error=None):
    orchestrator = MagicMock()
    if error is not None:
        orchestrator.analyze = AsyncMock(side_effect=error)
    else:
        orchestrator.analyze = AsyncMock(return_value=result)
    return orchestrator


class TestParseArguments:
    def test_analyze(self):
        args = parse_arguments(["analyze", "--ticker", "NVDA", "--date", "2024-01-05"])
        assert args.command == "analyze"
        assert args.ticker == "NVDA"
        assert args.model is None
        assert args.quiet is False

    def test_quiet_goes_before_subcommand(self):
        args = parse_arguments(["--quiet", "analyze", "--ticker", "NVDA", "--date", "2024-01-05", "--model", "m"])
        assert args.quiet is True
        assert args.model == "m"

    def test_batch(self):
        args = parse_arguments(["batch", "--input", "in.xlsx", "--output", "out.csv", "--concurrency", "5"])
        assert (args.input, args.output, args.concurrency) == ("in.xlsx", "out.csv", 5)

    def test_concurrency_must_be_positive(self):
        with pytest.raises(SystemExit):
            parse_arguments(["batch", "--input", "a.csv", "--output", "b.csv", "--concurrency", "0"])

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            parse_arguments([])


class TestMain:
    @pytest.mark.asyncio
    async def test_quiet_analyze_prints_json(self, capsys):
        orchestrator = mock_orchestrator()
        with patch("equity_insight.orchestrator.build_orchestrator", return_value=orchestrator):
            code = await main(["--quiet", "analyze", "--ticker", "nvda", "--date", "2024-01-05"])

        assert code == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["input"]["ticker"] == "NVDA"
        request = orchestrator.analyze.await_args.args[0]
        assert (request.ticker, request.baseline_date, request.model) == ("nvda", "2024-01-05", None)

    @pytest.mark.asyncio
    async def test_output_file(self, tmp_path):
        output = tmp_path / "results" / "nvda.json"
        with patch("equity_insight.orchestrator.build_orchestrator", return_value=mock_orchestrator()):
            code = await main(
                ["analyze", "--ticker", "NVDA", "--date", "2024-01-05", "--output", str(output)]
            )

        assert code == 0
        assert json.loads(output.read_text(encoding="utf-8")) == RESULT

    @pytest.mark.asyncio
    async def test_pipeline_failure_exits_nonzero(self, capsys):
        error = AnalysisPipelineError("fetch_filings", "[SEC] Ticker ZZZZ not found in SEC index")
        with patch(
            "equity_insight.orchestrator.build_orchestrator",
            return_value=mock_orchestrator(error=error),
        ):
            code = await main(["--quiet", "analyze", "--ticker", "ZZZZ", "--date", "2024-01-05"])

        assert code == 1
        assert "fetch_filings" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_batch_command(self, tmp_path):
        source = tmp_path / "rows.csv"
        source.write_text("ticker,date\nNVDA,2024-01-05\n")
        output = tmp_path / "out.csv"

        with patch("equity_insight.orchestrator.build_orchestrator", return_value=mock_orchestrator()):
            code = await main(["batch", "--input", str(source), "--output", str(output)])

        assert code == 0
        assert "BUY" in output.read_text()

    @pytest.mark.asyncio
    async def test_selftest_uses_sample_ticker_and_today(self, capsys):
        from datetime import date

        from equity_insight.config import config

        orchestrator = mock_orchestrator()
        with patch("equity_insight.orchestrator.build_orchestrator", return_value=orchestrator):
            code = await main(["--quiet", "selftest"])

        assert code == 0
        request = orchestrator.analyze.await_args.args[0]
        assert request.ticker == config.selftest_ticker
        assert request.baseline_date == date.today().isoformat()
        assert request.model is None

    @pytest.mark.asyncio
    async def test_resources_cleaned_up(self):
        with patch("equity_insight.orchestrator.build_orchestrator", return_value=mock_orchestrator()), patch(
            "equity_insight.cleanup.cleanup_async_resources", new_callable=AsyncMock
        ) as cleanup:
            await main(["--quiet", "analyze", "--ticker", "NVDA", "--date", "2024-01-05"])

        cleanup.assert_awaited_once()


class TestDisplayResult:
    def test_renders_full_result(self, capsys):
        display_result(RESULT)
        out = capsys.readouterr().out
        assert "NVDA" in out
        assert "BUY" in out

    def test_renders_degraded_result(self, capsys):
        degraded = {
            **RESULT,
            "analysis": {"degraded": True, "action": None},
            "fetched": {**RESULT["fetched"], "market_summary": {"price_target": {"error": "[FINNHUB] HTTP 429"}}},
        }
        display_result(degraded)
        out = capsys.readouterr().out
        assert "degraded" in out
        assert "HTTP 429" in out
