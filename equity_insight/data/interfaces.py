import asyncio
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
import structlog

from equity_insight.cache import CacheStore
from equity_insight.exceptions import ProviderError

logger = structlog.get_logger(__name__)

BROWSER_USER_AGENT = "Mozilla/5.0"


def _decode_body(body: bytes, charset: str | None) -> str:
    """Decode a text body leniently; older EDGAR documents mix in cp1252 bytes."""
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return body.decode("utf-8", errors="replace")


class ProviderClient:
    """
    Base class for every upstream HTTP adapter.

    Owns one lazily created aiohttp session and normalizes every failure mode
    (network error, timeout, non-2xx, malformed JSON) into ProviderError tagged
    with the provider name. Adapters never return partial garbage: either a
    parsed payload or an exception the aggregators can collect.
    """

    provider = "PROVIDER"

    def __init__(self, cache: CacheStore, timeout: float = 15):
        self.cache = cache
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()

    async def close(self):
        """Close the aiohttp session. Safe to call multiple times."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def is_available(self) -> bool:
        """Whether the provider is configured. Keyless providers are always available."""
        return True

    def _error(self, message: str, status_code: int | None = None) -> ProviderError:
        return ProviderError(self.provider, message, status_code=status_code)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self,
        url: str,
        params: dict | None = None,
        headers: dict | None = None,
        as_json: bool = True,
        timeout: float | None = None,
    ) -> Any:
        session = self._get_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.timeout)
        try:
            async with session.get(
                url, params=params, headers=headers, timeout=client_timeout
            ) as response:
                if response.status < 200 or response.status >= 300:
                    body = ""
                    try:
                        body = (await response.text())[:200]
                    except (aiohttp.ClientError, UnicodeDecodeError):
                        pass
                    raise self._error(
                        f"HTTP {response.status} {body}".strip(), response.status
                    )
                if not as_json:
                    return _decode_body(await response.read(), response.charset)
                try:
                    return await response.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError) as e:
                    raise self._error(f"malformed JSON: {e}") from e
        except ProviderError:
            raise
        except (asyncio.TimeoutError, TimeoutError) as e:
            raise self._error(f"timeout after {timeout or self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise self._error(f"network error: {e}") from e

    async def _get_json(
        self,
        url: str,
        params: dict | None = None,
        headers: dict | None = None,
        timeout: float | None = None,
    ) -> Any:
        return await self._request(url, params, headers, as_json=True, timeout=timeout)

    async def _get_text(
        self,
        url: str,
        params: dict | None = None,
        headers: dict | None = None,
        timeout: float | None = None,
    ) -> str:
        return await self._request(url, params, headers, as_json=False, timeout=timeout)


class PriceTargetSource(ABC):
    """A provider able to answer analyst price targets."""

    source_name: str

    @abstractmethod
    async def get_price_target(self, ticker: str) -> dict[str, Any]:
        """
        Return ``{source, targetHigh, targetLow, targetMean, targetMedian}``.
        Raises ProviderError when the provider has no usable answer.
        """


class PriceSeriesSource(ABC):
    """A provider of daily OHLCV history."""

    source_name: str

    @abstractmethod
    async def get_daily_series(self, ticker: str) -> list[dict[str, Any]]:
        """Return rows ``{date, close, high, low, volume}`` in any order."""


class HistoricalCloseSource(ABC):
    """A provider able to resolve the closing price on a past date."""

    source_name: str

    @abstractmethod
    async def get_close_on(self, ticker: str, date: str) -> dict[str, Any]:
        """
        Return ``{price, date}`` for the last session on/before ``date``.
        Raises ProviderError when no session is found.
        """
