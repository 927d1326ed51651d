"""Pytest configuration for the equity-insight test suite."""

import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import structlog

# Add the repository root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

# Settings are instantiated at import time and create their directories;
# keep that out of the working tree.
_TEST_DATA_DIR = Path(tempfile.mkdtemp(prefix="equity_insight_tests_"))
os.environ.setdefault("DATA_CACHE_DIR", str(_TEST_DATA_DIR / "cache"))
os.environ.setdefault("ANALYSIS_DB_PATH", str(_TEST_DATA_DIR / "analyses.db"))
os.environ.setdefault("LOG_LEVEL", "ERROR")


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """
    Set up test environment variables.
    This fixture runs for the entire session and applies default MOCK values.
    """
    test_env = {
        "LOG_LEVEL": "ERROR",
        "OPENROUTER_API_KEY": "test-key",
        "FINNHUB_API_KEY": "test-key",
        "ALPHAVANTAGE_API_KEY": "test-key",
    }
    with patch.dict(os.environ, test_env, clear=False):
        yield


@pytest.fixture(autouse=True)
def configure_structlog_for_tests():
    """Configure structlog for test environment."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.root.setLevel(logging.WARNING)
    yield


@pytest.fixture
def memory_cache():
    from equity_insight.cache import MemoryCacheStore

    return MemoryCacheStore()


def _response_cm(status=200, json_data=None, text=None, body=None, charset=None):
    """Async context manager mock standing in for ``session.get(...)``."""
    mock_response = MagicMock()
    mock_response.status = status
    mock_response.charset = charset
    mock_response.json = AsyncMock(return_value=json_data)
    if text is None:
        text = json.dumps(json_data) if json_data is not None else ""
    if body is None:
        body = text.encode("utf-8")
    mock_response.text = AsyncMock(return_value=text)
    mock_response.read = AsyncMock(return_value=body)

    mock_response_cm = AsyncMock()
    mock_response_cm.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response_cm.__aexit__ = AsyncMock(return_value=None)
    return mock_response_cm


@pytest.fixture
def fake_session():
    """
    Build an aiohttp-session mock answering successive GETs.

    Each argument is a dict of ``status`` / ``json_data`` / ``text`` (or raw
    ``body`` bytes with an optional ``charset``); an
    Exception instance is raised from ``get`` instead.
    """

    def factory(*responses):
        effects = [r if isinstance(r, Exception) else _response_cm(**r) for r in responses]
        mock_session = MagicMock()
        mock_session.closed = False
        mock_session.get = MagicMock(side_effect=effects)
        mock_session.close = AsyncMock()
        return mock_session

    return factory
