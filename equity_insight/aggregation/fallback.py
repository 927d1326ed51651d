"""
Ordered "first success wins" combinator.

Every fallback chain in the pipeline (price targets, historical price,
momentum series) is a list of named attempts tried in order:

    name, value = await first_success([
        ("finnhub", lambda: finnhub.get_price_target(ticker)),
        ("yahoo", lambda: yahoo.get_price_target(ticker)),
    ])

A failure is recorded and the next attempt runs; only when every attempt has
failed does FallbackExhaustedError carry all collected reasons.
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from equity_insight.exceptions import EquityInsightError, FallbackExhaustedError

logger = structlog.get_logger(__name__)

Attempt = tuple[str, Callable[[], Awaitable[Any]]]


def _describe(name: str, error: Exception) -> str:
    message = str(error) or type(error).__name__
    return message if message.startswith("[") else f"[{name.upper()}] {message}"


async def first_success(
    attempts: Sequence[Attempt],
    accept: Callable[[Any], bool] | None = None,
) -> tuple[str, Any]:
    """Return ``(name, value)`` of the first attempt that succeeds and passes ``accept``."""
    errors: list[str] = []
    for name, attempt in attempts:
        try:
            value = await attempt()
        except (EquityInsightError, ValueError, KeyError, TypeError) as e:
            errors.append(_describe(name, e))
            logger.warning("fallback_attempt_failed", provider=name, error=errors[-1])
            continue
        if accept is not None and not accept(value):
            errors.append(f"[{name.upper()}] unusable answer")
            logger.warning("fallback_attempt_rejected", provider=name)
            continue
        return name, value
    raise FallbackExhaustedError(errors)
