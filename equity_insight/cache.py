"""
Time-boxed key/value cache shared by every adapter and aggregator.

Two implementations share one contract:

    value = await cache.get(key, ttl)   # None on miss, expiry or storage error
    await cache.set(key, value)         # unconditional overwrite, errors dropped

Caching is strictly an optimization: storage failures are logged at WARNING
and behave like a miss, never like an exception. Entries are valid while
``now - timestamp <= ttl``.

Usage:
    from equity_insight.cache import FetchKey, FileCacheStore

    cache = FileCacheStore(config.data_cache_dir, default_ttl=86400)
    key = FetchKey("momentum", "NVDA", "2024-01-05")
    metrics = await cache.get(key, ttl=12 * 3600)
"""

import asyncio
import hashlib
import json
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class FetchKey:
    """Composite identity of a cacheable unit: (kind, ticker, baseline date, tag)."""

    kind: str
    ticker: str | None = None
    baseline_date: str | None = None
    tag: str | None = None

    def as_string(self) -> str:
        parts = [
            self.kind,
            self.ticker.upper().strip() if self.ticker else None,
            self.baseline_date,
            self.tag,
        ]
        return "_".join(str(p) for p in parts if p)

    def __str__(self) -> str:
        return self.as_string()


def _key_str(key: "FetchKey | str") -> str:
    return key.as_string() if isinstance(key, FetchKey) else str(key)


class CacheStore(ABC):
    """Abstract expiring store. Owns no domain semantics."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.default_ttl = default_ttl
        self._clock = clock

    def _is_fresh(self, timestamp: float, ttl: float | None) -> bool:
        limit = self.default_ttl if ttl is None else ttl
        return self._clock() - timestamp <= limit

    @abstractmethod
    async def get(self, key: "FetchKey | str", ttl: float | None = None) -> Any | None:
        """Return the cached value, or None when missing or expired."""

    @abstractmethod
    async def set(self, key: "FetchKey | str", value: Any) -> None:
        """Store value under key, replacing any previous entry."""

    async def close(self) -> None:
        """Release resources. Default stores hold none."""


class MemoryCacheStore(CacheStore):
    """In-process cache; used by tests and short-lived runs."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self._entries: dict[str, tuple[float, Any]] = {}

    async def get(self, key: "FetchKey | str", ttl: float | None = None) -> Any | None:
        entry = self._entries.get(_key_str(key))
        if entry is None:
            return None
        timestamp, value = entry
        if not self._is_fresh(timestamp, ttl):
            return None
        return value

    async def set(self, key: "FetchKey | str", value: Any) -> None:
        self._entries[_key_str(key)] = (self._clock(), value)

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheStore(CacheStore):
    """
    Persistent cache: one JSON document per key under a directory.

    Keys survive process restarts. Writes go through a temp file and
    os.replace, so concurrent writers of the same key resolve to last-write-wins
    without locking.
    """

    def __init__(
        self,
        directory: Path | str,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(default_ttl=default_ttl, clock=clock)
        self.directory = Path(directory)

    def path_for(self, key: "FetchKey | str") -> Path:
        raw = _key_str(key)
        digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]
        stem = _UNSAFE_CHARS.sub("-", raw)[:120]
        return self.directory / f"{stem}.{digest}.json"

    def _read(self, path: Path) -> dict | None:
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, path: Path, document: dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, ensure_ascii=False, default=str)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def get(self, key: "FetchKey | str", ttl: float | None = None) -> Any | None:
        path = self.path_for(key)
        try:
            document = await asyncio.to_thread(self._read, path)
        except (OSError, ValueError) as e:
            logger.warning("cache_get_failed", key=_key_str(key), error=str(e))
            return None
        if not isinstance(document, dict) or "timestamp" not in document:
            return None
        try:
            timestamp = float(document["timestamp"])
        except (TypeError, ValueError):
            return None
        if not self._is_fresh(timestamp, ttl):
            return None
        return document.get("value")

    async def set(self, key: "FetchKey | str", value: Any) -> None:
        document = {"timestamp": self._clock(), "key": _key_str(key), "value": value}
        try:
            await asyncio.to_thread(self._write, self.path_for(key), document)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("cache_set_failed", key=_key_str(key), error=str(e))
