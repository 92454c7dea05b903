"""Database kernel utilities for short-lived read/write operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from time import monotonic
from typing import Any, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from keyword_scheduler.core.database import get_session_context
from keyword_scheduler.core.db_retry import is_transient_connection_error

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")


class DbKernelError(RuntimeError):
    """Base error for DB kernel operations."""


class TransientDbError(DbKernelError):
    """Transient DB failure that can usually be retried."""


class ConflictError(DbKernelError):
    """Write conflict (usually integrity/unique constraint)."""


class PermanentDbError(DbKernelError):
    """Non-transient DB failure."""


def _translate_error(exc: Exception) -> DbKernelError:
    if isinstance(exc, DbKernelError):
        return exc
    if isinstance(exc, IntegrityError):
        return ConflictError(str(exc))
    if is_transient_connection_error(exc):
        return TransientDbError(str(exc))
    return PermanentDbError(str(exc))


def _elapsed_ms(started: float) -> float:
    return round((monotonic() - started) * 1000, 2)


async def db_read(
    fn: Callable[[AsyncSession], Awaitable[_ResultT]],
    *,
    operation_name: str,
    log_context: Mapping[str, Any] | None = None,
) -> _ResultT:
    """Execute a read operation in a short-lived session."""
    started = monotonic()
    context = dict(log_context or {})
    try:
        async with get_session_context(commit_on_exit=False) as session:
            result = await fn(session)
        logger.debug(
            "DB read operation completed",
            extra={**context, "operation": operation_name, "duration_ms": _elapsed_ms(started)},
        )
        return result
    except Exception as exc:
        translated = _translate_error(exc)
        logger.warning(
            "DB read operation failed",
            extra={
                **context,
                "operation": operation_name,
                "duration_ms": _elapsed_ms(started),
                "failure_class": type(translated).__name__,
            },
        )
        if translated is exc:
            raise
        raise translated from exc


async def db_write(
    fn: Callable[[AsyncSession], Awaitable[_ResultT]],
    *,
    operation_name: str,
    attempts: int = 3,
    base_delay_seconds: float = 0.2,
    log_context: Mapping[str, Any] | None = None,
) -> _ResultT:
    """Execute a write operation, retrying transient failures.

    Callers must make ``fn`` idempotent: a retry after an ambiguous commit
    failure runs it again against fresh state.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    started = monotonic()
    context = dict(log_context or {})
    for attempt in range(1, attempts + 1):
        try:
            async with get_session_context(commit_on_exit=False) as session:
                result = await fn(session)
                await session.commit()
            logger.debug(
                "DB write operation completed",
                extra={
                    **context,
                    "operation": operation_name,
                    "duration_ms": _elapsed_ms(started),
                    "attempt": attempt,
                    "max_attempts": attempts,
                },
            )
            return result
        except Exception as exc:
            translated = _translate_error(exc)
            is_retryable = isinstance(translated, TransientDbError) and attempt < attempts
            logger.warning(
                "DB write operation failed",
                extra={
                    **context,
                    "operation": operation_name,
                    "duration_ms": _elapsed_ms(started),
                    "failure_class": type(translated).__name__,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "will_retry": is_retryable,
                },
            )
            if not is_retryable:
                if translated is exc:
                    raise
                raise translated from exc
            await asyncio.sleep(base_delay_seconds * attempt)

    raise RuntimeError(f"DB write retry loop exhausted unexpectedly: {operation_name}")


async def db_write_no_retry(
    fn: Callable[[AsyncSession], Awaitable[_ResultT]],
    *,
    operation_name: str,
    log_context: Mapping[str, Any] | None = None,
) -> _ResultT:
    """Execute a single-shot write (for callers that handle conflicts themselves)."""
    return await db_write(
        fn,
        operation_name=operation_name,
        attempts=1,
        log_context=log_context,
    )
