"""Bounded exponential backoff around storage and ledger calls.

Each attempt runs under ``asyncio.wait_for`` with the configured timeout.
Only transient errors are retried; anything else (including integrity
failures) propagates on the first attempt.  When the budget is exhausted
the last error is wrapped in the caller-supplied ``BackupError`` type.
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ledger_backup.config.models import RetrySettings
from ledger_backup.errors import TRANSIENT_ERRORS, BackupError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    settings: RetrySettings,
    error_type: type[BackupError],
    description: str,
    backup_id: str | None = None,
    step: str | None = None,
) -> T:
    """Run ``operation`` with timeout and retries.

    Args:
        operation: Zero-argument coroutine factory (called once per attempt).
        settings: Attempts, delays, and per-attempt timeout.
        error_type: ``BackupError`` subclass raised once retries are exhausted
            or a non-transient error occurs.
        description: Human-readable name of the call for messages and logs.
        backup_id: Backup the call concerns, for error context.
        step: Engine step the call belongs to, for error context.

    Returns:
        The operation's result.

    Raises:
        BackupError: ``error_type`` wrapping the last underlying error.
            ``BackupError`` instances raised by the operation pass through.
    """
    attempts = max(1, settings.attempts)
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(
            multiplier=settings.base_delay, min=0, max=settings.max_delay
        ),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=lambda state: logger.warning(
            "%s failed (attempt %d/%d): %s",
            description,
            state.attempt_number,
            attempts,
            state.outcome.exception() if state.outcome else "unknown",
        ),
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await asyncio.wait_for(operation(), timeout=settings.timeout)
        return result
    except BackupError:
        raise
    except (RetryError, Exception) as e:
        cause = e.last_attempt.exception() if isinstance(e, RetryError) else e
        raise error_type(
            f"{description} failed after {attempts} attempt(s): {cause}",
            backup_id=backup_id,
            step=step,
            cause=cause,
        ) from e
