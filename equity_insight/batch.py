"""
Batch analysis over a spreadsheet of (ticker, date, model?) rows.

Input is CSV or XLSX (read through pandas; XLSX needs openpyxl). Rows run
with bounded concurrency; identical triples share one analysis through the
orchestrator's deduplicator. A failing row never aborts the batch: its output
fields become "ERROR" and the message goes into the ``error`` column.
"""

from pathlib import Path
from typing import Any

import pandas as pd
import structlog

from equity_insight.concurrency import bounded_gather
from equity_insight.orchestrator import AnalysisOrchestrator, AnalysisRequest

logger = structlog.get_logger(__name__)

ERROR_MARKER = "ERROR"

INPUT_COLUMNS = ("ticker", "date", "model")

OUTPUT_FIELDS = (
    "rating",
    "target_price",
    "stop_loss",
    "consensus",
    "sentiment",
    "momentum_score",
    "price",
    "price_source",
)

BATCH_COLUMNS = ["ticker", "date", "model", *OUTPUT_FIELDS, "error"]


def _cell(value: Any) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    if isinstance(value, pd.Timestamp):
        return value.strftime("%Y-%m-%d")
    return str(value).strip()


def _normalize_date(value: Any) -> str:
    """ISO date for Timestamp cells and parseable strings; anything else unchanged."""
    text = _cell(value)
    if not text:
        return ""
    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        return text
    return parsed.strftime("%Y-%m-%d")


def load_batch_rows(path: Path | str) -> list[dict[str, str]]:
    """Read ``ticker``, ``date`` and optional ``model`` columns (headers case-insensitive)."""
    path = Path(path)
    if path.suffix.lower() in (".xlsx", ".xlsm"):
        frame = pd.read_excel(path, engine="openpyxl")
    else:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)

    frame.columns = [str(column).strip().lower() for column in frame.columns]
    missing = [column for column in ("ticker", "date") if column not in frame.columns]
    if missing:
        raise ValueError(
            f"batch file {path.name} is missing column(s): {', '.join(missing)}"
        )

    rows = []
    for record in frame.to_dict("records"):
        row = {
            "ticker": _cell(record.get("ticker")).upper(),
            "date": _normalize_date(record.get("date")),
            "model": _cell(record.get("model")),
        }
        if not row["ticker"] and not row["date"]:
            continue
        rows.append(row)
    logger.info("batch_rows_loaded", path=str(path), rows=len(rows))
    return rows


def _dig(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def summarize_result(result: dict[str, Any]) -> dict[str, Any]:
    """Flatten an Analysis Result into one batch output row."""
    market = _dig(result, "fetched", "market_summary") or {}
    row = {
        "ticker": _dig(result, "input", "ticker"),
        "date": _dig(result, "input", "date"),
        "model": result.get("model"),
        "rating": _dig(result, "analysis", "action", "rating"),
        "target_price": _dig(result, "analysis", "action", "target_price"),
        "stop_loss": _dig(result, "analysis", "action", "stop_loss"),
        "consensus": _dig(result, "analysis", "consensus_view", "summary"),
        "sentiment": _dig(result, "news", "sentiment", "sentiment_label"),
        "momentum_score": _dig(result, "fetched", "momentum", "score"),
        "price": _dig(market, "price", "value"),
        "price_source": _dig(market, "price", "source"),
        "error": "",
    }
    return {column: ("" if row[column] is None else row[column]) for column in BATCH_COLUMNS}


def error_row(row: dict[str, str], error: BaseException) -> dict[str, Any]:
    out = {column: row.get(column, "") for column in INPUT_COLUMNS}
    out.update({field: ERROR_MARKER for field in OUTPUT_FIELDS})
    out["error"] = str(error) or type(error).__name__
    return out


async def run_batch(
    orchestrator: AnalysisOrchestrator,
    rows: list[dict[str, str]],
    concurrency: int = 3,
) -> list[dict[str, Any]]:
    """Analyze every row; output rows keep input order."""

    async def analyze_row(row: dict[str, str]) -> dict[str, Any]:
        request = AnalysisRequest(
            row.get("ticker", ""), row.get("date", ""), row.get("model") or None
        )
        return summarize_result(await orchestrator.analyze(request))

    results = await bounded_gather(rows, analyze_row, concurrency, return_exceptions=True)

    output = []
    for row, result in zip(rows, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.warning(
                "batch_row_failed",
                ticker=row.get("ticker"),
                date=row.get("date"),
                error=str(result),
            )
            output.append(error_row(row, result))
        else:
            output.append(result)

    failed = sum(1 for row in output if row["error"])
    logger.info("batch_complete", rows=len(output), failed=failed)
    return output


def write_batch_csv(rows: list[dict[str, Any]], path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=BATCH_COLUMNS).to_csv(path, index=False)
    return path
