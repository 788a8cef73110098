"""
Error taxonomy and retry logic for external calls.

This module provides:
- Error type hierarchy (retryable vs non-retryable) with HTTP status mapping
- A tenacity retry decorator for connection-level failures

Settlement transactions themselves are never retried automatically: a
failed executor call is surfaced to the caller and the wager stays put.

Usage:
    from arbiter.core.retry import retry_network, QuoteUnavailable

    @retry_network()
    async def fetch_price():
        ...
"""

import asyncio
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

log = structlog.get_logger()


# =============================================================================
# Error Type Hierarchy
# =============================================================================


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Network issues, feed outages - may succeed later
    PERMANENT = "permanent"  # Bad request, wrong state - will not succeed
    UNKNOWN = "unknown"


class ArbiterError(Exception):
    """Base exception for all Arbiter errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    http_status: int = 500

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(ArbiterError):
    """Error that may succeed on retry."""

    category = ErrorCategory.TRANSIENT
    http_status = 502


class NetworkError(TransientError):
    """Connection-level failure talking to an external service."""

    pass


class QuoteUnavailable(TransientError):
    """Price feed did not return a usable quote."""

    pass


class ResultUnavailable(TransientError):
    """Sports results source has no final result (yet)."""

    pass


class ExecutorError(TransientError):
    """Escrow transaction submission failed or timed out."""

    pass


class StoreError(TransientError):
    """Ledger read/write failed."""

    http_status = 500


class PermanentError(ArbiterError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT
    http_status = 400


class NotFound(PermanentError):
    """Wager (or user) does not exist."""

    http_status = 404


class InvalidState(PermanentError):
    """Operation not allowed from the wager's current status."""

    http_status = 409


class InvalidParticipant(PermanentError):
    """Caller is not allowed to act on this wager."""

    http_status = 403


class InvalidRequest(PermanentError):
    """Malformed or incomplete request data."""

    http_status = 400


# =============================================================================
# Retry Decorators
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 0.5
DEFAULT_MAX_WAIT_SECONDS = 5.0

F = TypeVar("F", bound=Callable[..., Any])


def _log_retry(context: dict[str, Any]) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return before_sleep


def _retrying(
    name: str,
    retry_on: type[BaseException],
    max_attempts: int,
    wait: Any,
    context: dict[str, Any],
) -> Callable[[F], F]:
    """Build a decorator re-running an async function on `retry_on`."""

    def decorator(func: F) -> F:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"{name} only supports async functions")

        before_sleep = _log_retry(context)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait,
                retry=retry_if_exception_type(retry_on),
                before_sleep=before_sleep,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator


def retry_network(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT_SECONDS,
    max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
) -> Callable[[F], F]:
    """Retry only connection-level failures (refused, reset, DNS).

    A request that reached the remote side is never repeated, so this is
    safe around executor submissions as well as feed reads.
    """
    return _retrying(
        "retry_network",
        NetworkError,
        max_attempts,
        wait_random_exponential(min=min_wait, max=max_wait),
        {"operation": "network"},
    )


_RETRYABLE_HINTS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "502",
    "503",
    "504",
    "service unavailable",
)


def is_retryable(error: Exception) -> bool:
    """Whether an error may go away on a later attempt.

    Arbiter errors answer by category; anything else is judged by its message.
    """
    if isinstance(error, ArbiterError):
        return error.category == ErrorCategory.TRANSIENT
    message = str(error).lower()
    return any(hint in message for hint in _RETRYABLE_HINTS)
