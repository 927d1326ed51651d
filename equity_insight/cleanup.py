"""
Async resource cleanup utilities.

Centralized shutdown for async resources (aiohttp sessions, the LLM client,
the SQLite store, the fetch cache) so runs end without "Unclosed client
session" warnings or open database handles.

Usage:
    from equity_insight.cleanup import cleanup_async_resources

    async def main():
        try:
            # ... application logic ...
        finally:
            await cleanup_async_resources()
"""

from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)

# Registry of cleanup functions
_cleanup_functions: list[Callable[[], Awaitable[None]]] = []


def register_cleanup(cleanup_fn: Callable[[], Awaitable[None]]) -> None:
    """Register an async cleanup function to be called at shutdown."""
    if cleanup_fn not in _cleanup_functions:
        _cleanup_functions.append(cleanup_fn)


def registered_cleanups() -> int:
    return len(_cleanup_functions)


async def cleanup_async_resources() -> None:
    """
    Run every registered cleanup function once, then clear the registry.

    A failing cleanup is logged and does not stop the others.
    """
    errors = []

    for cleanup_fn in list(_cleanup_functions):
        try:
            await cleanup_fn()
        except Exception as e:
            errors.append((getattr(cleanup_fn, "__qualname__", repr(cleanup_fn)), str(e)))

    _cleanup_functions.clear()

    for name, error in errors:
        logger.debug("cleanup_error", function=name, error=error)
