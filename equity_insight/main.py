#!/usr/bin/env python3
"""
Command-line entry point.

    equity-insight analyze --ticker NVDA --date 2024-01-05 [--model openai/gpt-4o]
    equity-insight batch --input rows.xlsx --output results.csv [--concurrency 5]
    equity-insight selftest
"""

import argparse
import asyncio
import json
import logging
import sys
import warnings
from datetime import date
from pathlib import Path

import structlog
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from equity_insight.config import config, validate_environment_variables

logger = structlog.get_logger(__name__)
console = Console()


def suppress_all_logging():
    """Suppress all logging output for quiet mode."""
    logging.getLogger().setLevel(logging.CRITICAL)
    for name in logging.root.manager.loggerDict:
        logging.getLogger(name).setLevel(logging.CRITICAL)
        logging.getLogger(name).propagate = False
    for logger_name in ["httpx", "openai", "httpcore", "langchain", "yfinance", "aiohttp"]:
        logging.getLogger(logger_name).setLevel(logging.CRITICAL)

    structlog.configure(
        processors=[],
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    warnings.filterwarnings("ignore")


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="equity-insight",
        description="Filing, market-data and news aggregation with LLM synthesis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single analysis, result printed as JSON
  equity-insight analyze --ticker NVDA --date 2024-01-05

  # Save the full result
  equity-insight analyze --ticker AAPL --date 2024-01-05 --output aapl.json

  # Batch spreadsheet -> summary CSV
  equity-insight batch --input rows.xlsx --output results.csv --concurrency 5

  # Smoke test against the configured sample ticker
  equity-insight --quiet selftest
        """,
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress all logging; print results only",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze = subparsers.add_parser("analyze", help="Analyze one ticker at a baseline date")
    analyze.add_argument("--ticker", type=str, required=True, help="Ticker symbol (e.g. NVDA)")
    analyze.add_argument("--date", type=str, required=True, help="Baseline date YYYY-MM-DD")
    analyze.add_argument(
        "--model", type=str, default=None, help=f"LLM model id (default {config.default_model})"
    )
    analyze.add_argument(
        "--output", type=str, default=None, help="Write the full JSON result to this file"
    )

    batch = subparsers.add_parser("batch", help="Analyze every row of a CSV/XLSX file")
    batch.add_argument("--input", type=str, required=True, help="CSV or XLSX with ticker,date[,model]")
    batch.add_argument("--output", type=str, required=True, help="Summary CSV destination")
    batch.add_argument(
        "--concurrency",
        type=int,
        default=config.batch_concurrency,
        help=f"Parallel analyses (default {config.batch_concurrency})",
    )

    subparsers.add_parser("selftest", help=f"Analyze {config.selftest_ticker} for today's date")

    args = parser.parse_args(argv)
    if getattr(args, "concurrency", 1) < 1:
        parser.error("--concurrency must be >= 1")
    return args


def display_result(result: dict):
    """Render the headline fields of an Analysis Result."""
    market = result.get("fetched", {}).get("market_summary", {})
    analysis = result.get("analysis") or {}
    price = market.get("price") or {}
    target = market.get("price_target") or {}

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Ticker", f"{result['input']['ticker']} @ {result['input']['date']}")
    table.add_row("Model", str(result.get("model")))
    table.add_row("Filings", str(len(result.get("fetched", {}).get("filings", []))))
    table.add_row("Price", f"{price.get('value')} ({price.get('source')})")
    if "error" in target:
        table.add_row("Price target", f"[red]{target['error']}[/red]")
    else:
        table.add_row(
            "Price target",
            f"{target.get('targetLow')} / {target.get('targetMean')} / {target.get('targetHigh')}"
            f" ({target.get('source')})",
        )
    momentum = result.get("fetched", {}).get("momentum")
    if momentum:
        table.add_row("Momentum", f"{momentum.get('score')} ({momentum.get('trend')})")
    sentiment = (result.get("news") or {}).get("sentiment") or {}
    table.add_row("News sentiment", str(sentiment.get("sentiment_label")))
    console.print(table)

    action = analysis.get("action") if isinstance(analysis, dict) else None
    if isinstance(action, dict) and action:
        console.print(
            Panel(
                f"{action.get('rating')}  target {action.get('target_price')}  "
                f"stop {action.get('stop_loss')}\n\n{action.get('rationale') or ''}",
                title="Action",
                border_style="green",
                padding=(1, 2),
            )
        )
    elif isinstance(analysis, dict) and analysis.get("degraded"):
        console.print("[yellow]LLM not configured: analysis is degraded.[/yellow]")
    elif isinstance(analysis, dict) and "raw" in analysis:
        console.print("[yellow]LLM output was not valid JSON; raw text kept.[/yellow]")


async def run_analyze(orchestrator, ticker: str, baseline_date: str, model, args) -> int:
    from equity_insight.orchestrator import AnalysisRequest

    result = await orchestrator.analyze(AnalysisRequest(ticker, baseline_date, model))
    text = json.dumps(result, ensure_ascii=False, indent=2, default=str)
    if getattr(args, "output", None):
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text, encoding="utf-8")
        if not args.quiet:
            console.print(f"[green]Result saved to {output}[/green]")
    if args.quiet:
        if not getattr(args, "output", None):
            print(text)
    else:
        display_result(result)
    return 0


async def run_batch_command(orchestrator, args) -> int:
    from equity_insight.batch import load_batch_rows, run_batch, write_batch_csv

    rows = load_batch_rows(args.input)
    results = await run_batch(orchestrator, rows, concurrency=args.concurrency)
    output = write_batch_csv(results, args.output)
    failed = sum(1 for row in results if row["error"])
    if not args.quiet:
        console.print(
            f"[green]{len(results) - failed} succeeded[/green], "
            f"[red]{failed} failed[/red] -> {output}"
        )
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = None
    try:
        args = parse_arguments(argv)
        if args.quiet:
            suppress_all_logging()
        else:
            validate_environment_variables()

        from equity_insight.orchestrator import build_orchestrator

        orchestrator = build_orchestrator(config)

        if args.command == "analyze":
            return await run_analyze(orchestrator, args.ticker, args.date, args.model, args)
        if args.command == "batch":
            return await run_batch_command(orchestrator, args)
        return await run_analyze(
            orchestrator, config.selftest_ticker, date.today().isoformat(), None, args
        )

    except KeyboardInterrupt:
        if not (args and args.quiet):
            console.print("\n[yellow]Interrupted by user.[/yellow]\n")
        return 1
    except Exception as e:
        logger.error("command_failed", error=str(e))
        if args and args.quiet:
            print(f"Error: {e}", file=sys.stderr)
        else:
            console.print(f"\n[bold red]Error:[/bold red] {e}\n")
        return 1
    finally:
        from equity_insight.cleanup import cleanup_async_resources

        await cleanup_async_resources()


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
