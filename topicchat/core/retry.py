# topicchat/core/retry.py
"""
Retry helpers for network and database calls.

All helpers retry only failures their classifier accepts and re-raise the
last error once attempts are exhausted. Delays grow exponentially from
``initial_delay`` up to ``max_delay`` with a small random jitter on top.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from .config import settings
from .exceptions import (
    ConflictException,
    ForbiddenException,
    NetworkError,
    NotFoundException,
    UnauthorizedException,
    ValidationException,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
RetryCondition = Callable[[BaseException], bool]

_NETWORK_ERROR_SNIPPETS = ("network", "timeout", "timed out", "connection", "fetch")
_NETWORK_ERROR_NAMES = {"NetworkError", "TimeoutError", "ConnectTimeout", "ReadTimeout"}

# Authorization, validation, not-found and duplicate failures never succeed on a second try.
_NON_RETRYABLE = (
    UnauthorizedException,
    ForbiddenException,
    NotFoundException,
    ValidationException,
    ConflictException,
    IntegrityError,
)

_RETRYABLE_DB_SNIPPETS = (
    "server closed the connection",
    "ssl connection has been closed unexpectedly",
    "could not connect",
    "connection refused",
    "connection reset",
    "database is locked",
    "timeout",
)
_DUPLICATE_SNIPPETS = ("duplicate key", "unique constraint")

# Indirection so tests can swap the sleep without touching asyncio globally.
_sleep = asyncio.sleep


def is_network_error(exc: BaseException) -> bool:
    """Classify ``exc`` as a transient network failure."""

    if isinstance(exc, (NetworkError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    if type(exc).__name__ in _NETWORK_ERROR_NAMES:
        return True
    code = str(getattr(exc, "code", "") or "").lower()
    if "network" in code:
        return True
    message = str(exc).lower()
    return any(snippet in message for snippet in _NETWORK_ERROR_SNIPPETS)


def should_retry_network(exc: BaseException) -> bool:
    if isinstance(exc, _NON_RETRYABLE):
        return False
    return is_network_error(exc)


def should_retry_database(exc: BaseException) -> bool:
    if isinstance(exc, _NON_RETRYABLE):
        return False
    message = str(exc).lower()
    if any(snippet in message for snippet in _DUPLICATE_SNIPPETS):
        return False
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        if isinstance(exc, OperationalError):
            return any(snippet in message for snippet in _RETRYABLE_DB_SNIPPETS)
        return False
    return is_network_error(exc)


def backoff_delay(
    attempt: int,
    *,
    initial_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
) -> float:
    """Delay in seconds before retry number ``attempt`` (0-based), jitter excluded."""

    return min(initial_delay * (multiplier**attempt), max_delay)


async def with_retry(
    op_name: str,
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    multiplier: float = 2.0,
    retry_condition: Optional[RetryCondition] = None,
) -> T:
    """
    Await ``func()`` and retry it on transient failures.

    Args:
        op_name: Short operation label used in logs
        func: Zero-argument coroutine factory; called once per attempt
        max_retries: Retries after the first attempt
        initial_delay: First delay in seconds
        max_delay: Delay ceiling in seconds
        multiplier: Exponential growth factor
        retry_condition: Predicate deciding whether an error is retryable
            (defaults to ``is_network_error``)

    Returns:
        Result of the first successful attempt
    """

    condition = retry_condition or is_network_error
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as exc:
            if attempt >= max_retries or not condition(exc):
                raise

            delay = backoff_delay(
                attempt,
                initial_delay=initial_delay,
                max_delay=max_delay,
                multiplier=multiplier,
            )
            delay += random.uniform(0, delay * 0.1)
            logger.warning(
                "[RETRY] Transient failure detected, retrying",
                extra={
                    "event": "retry",
                    "op": op_name,
                    "attempt": attempt + 1,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            await _sleep(delay)
            attempt += 1


async def with_network_retry(op_name: str, func: Callable[[], Awaitable[T]]) -> T:
    """Retry profile for remote lookups (users, chats, RPC-style calls)."""

    return await with_retry(
        op_name,
        func,
        max_retries=settings.network_retry_max_retries,
        initial_delay=settings.network_retry_initial_delay_ms / 1000.0,
        max_delay=settings.network_retry_max_delay_ms / 1000.0,
        retry_condition=should_retry_network,
    )


async def with_database_retry(op_name: str, func: Callable[[], Awaitable[T]]) -> T:
    """Retry profile for message inserts, reads and updates."""

    return await with_retry(
        op_name,
        func,
        max_retries=settings.database_retry_max_retries,
        initial_delay=settings.database_retry_initial_delay_ms / 1000.0,
        max_delay=settings.database_retry_max_delay_ms / 1000.0,
        retry_condition=should_retry_database,
    )


__all__ = [
    "backoff_delay",
    "is_network_error",
    "should_retry_database",
    "should_retry_network",
    "with_database_retry",
    "with_network_retry",
    "with_retry",
]
