"""
Durable store for completed analysis results.

One row per (ticker, baseline date, schema+model version). Re-running an
analysis after its TTL expires overwrites the row; nothing is ever appended.
Like the fetch cache, the store never raises into the pipeline: read errors
behave as a miss and write errors are logged and dropped.
"""

import asyncio
import json
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

BASE_SCHEMA_VERSION = "analysis_v1"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS analyses (
  ticker TEXT NOT NULL,
  baseline_date TEXT NOT NULL,
  schema_version TEXT NOT NULL,
  is_historical INTEGER NOT NULL,
  result_json TEXT NOT NULL,
  updated_at REAL NOT NULL,
  PRIMARY KEY (ticker, baseline_date, schema_version)
)
"""

_UPSERT = """
INSERT INTO analyses (ticker, baseline_date, schema_version, is_historical, result_json, updated_at)
VALUES (:ticker, :baseline_date, :schema_version, :is_historical, :result_json, :updated_at)
ON CONFLICT(ticker, baseline_date, schema_version) DO UPDATE SET
  result_json=excluded.result_json,
  updated_at=excluded.updated_at,
  is_historical=excluded.is_historical
"""


def version_key(model: str | None) -> str:
    """Schema version plus model tag, e.g. ``analysis_v1:openai/gpt-4o``."""
    suffix = (str(model).strip() if model else "") or "default"
    return f"{BASE_SCHEMA_VERSION}:{suffix}"


class AnalysisStore:
    """SQLite-backed upsert store with TTL-checked point lookups."""

    def __init__(self, db_path: Path | str, clock: Callable[[], float] = time.time):
        self.db_path = str(db_path)
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(_SCHEMA)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_analyses_lookup ON analyses(ticker, baseline_date)"
            )
            conn.commit()
            self._conn = conn
        return self._conn

    def _get_row(self, ticker: str, baseline_date: str, schema_version: str):
        # sqlite3 connections are not safe for concurrent use across worker threads
        with self._lock:
            conn = self._connect()
            return conn.execute(
                "SELECT result_json, updated_at, is_historical FROM analyses "
                "WHERE ticker=? AND baseline_date=? AND schema_version=?",
                (ticker, baseline_date, schema_version),
            ).fetchone()

    def _upsert(self, params: dict[str, Any]) -> None:
        with self._lock:
            conn = self._connect()
            conn.execute(_UPSERT, params)
            conn.commit()

    async def get(
        self,
        ticker: str,
        baseline_date: str,
        model: str | None,
        ttl: float,
    ) -> dict | None:
        """Return the stored result if present and younger than ttl seconds."""
        if not ticker or not baseline_date or not ttl:
            return None
        try:
            row = await asyncio.to_thread(
                self._get_row, ticker, baseline_date, version_key(model)
            )
            if row is None:
                return None
            age = self._clock() - float(row["updated_at"])
            if age > ttl:
                logger.debug(
                    "stored_analysis_stale", ticker=ticker, date=baseline_date, age=age
                )
                return None
            return json.loads(row["result_json"])
        except (sqlite3.Error, OSError, ValueError, TypeError) as e:
            logger.warning("analysis_store_get_failed", ticker=ticker, error=str(e))
            return None

    async def save(
        self,
        ticker: str,
        baseline_date: str,
        model: str | None,
        result: dict,
        is_historical: bool,
    ) -> None:
        if not ticker or not baseline_date or not result:
            return
        try:
            params = {
                "ticker": ticker,
                "baseline_date": baseline_date,
                "schema_version": version_key(model),
                "is_historical": 1 if is_historical else 0,
                "result_json": json.dumps(result, ensure_ascii=False, default=str),
                "updated_at": self._clock(),
            }
            await asyncio.to_thread(self._upsert, params)
        except (sqlite3.Error, OSError, ValueError, TypeError) as e:
            logger.warning("analysis_store_save_failed", ticker=ticker, error=str(e))

    async def close(self) -> None:
        """Close the connection. Safe to call multiple times."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
