"""
Settlement errors and the retry policy for outbound calls.

Errors split two ways. TransientError subclasses (RPC hiccups, dropped
connections) are retried by retry_transient. PermanentError subclasses
(bad input, missing records, illegal status changes, lost conditional
writes) surface immediately, since repeating the call cannot change the
outcome.

Usage:
    from parlay.core.retry import RPC_RETRY, retry_transient, wrap_external_error

    @retry_transient(RPC_RETRY)
    async def get_block_number(self) -> int:
        try:
            ...
        except Exception as e:
            raise wrap_external_error(e, "get_block_number") from e
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

log = structlog.get_logger()


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class ParlayError(Exception):
    """Root of every error parlay raises on purpose."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.raised_at = datetime.now(timezone.utc)

    @property
    def retryable(self) -> bool:
        return self.category != ErrorCategory.PERMANENT

    def __str__(self) -> str:
        if self.cause is None:
            return self.message
        return f"{self.message} (caused by: {self.cause})"


class TransientError(ParlayError):
    category = ErrorCategory.TRANSIENT


class NetworkError(TransientError):
    """RPC node, exchange or market-info endpoint did not answer."""


class PermanentError(ParlayError):
    category = ErrorCategory.PERMANENT


class ValidationError(PermanentError):
    """Malformed amount, price, leg list or setting."""


class InsufficientFundsError(PermanentError):
    pass


class ResourceNotFoundError(PermanentError):
    """A chain, position, bet or market id with no record behind it."""


class OrderRejectedError(PermanentError):
    pass


class InvalidTransitionError(PermanentError):
    """A status change the entity's transition table does not allow."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"{entity} cannot move from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class ConditionFailedError(PermanentError):
    """A conditional write found the record in another state.

    Usually another delivery of the same change got there first.
    """


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 30.0
    jitter: bool = True

    def wait_strategy(self) -> Any:
        if self.jitter:
            return wait_random_exponential(multiplier=2.0, min=self.min_wait, max=self.max_wait)
        return wait_exponential(multiplier=2.0, min=self.min_wait, max=self.max_wait)


DEFAULT_RETRY = RetryPolicy()

# Read-only chain calls: short waits, the caller is mid-settlement
RPC_RETRY = RetryPolicy(attempts=3, min_wait=0.5, max_wait=5.0)

T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    log.warning(
        "retry_attempt",
        call=getattr(state.fn, "__qualname__", None),
        attempt=state.attempt_number,
        error=str(error) if error else None,
        error_type=type(error).__name__ if error else None,
        wait_seconds=state.next_action.sleep if state.next_action else 0,
    )


def retry_transient(
    policy: RetryPolicy = DEFAULT_RETRY,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Retry a coroutine function while it raises TransientError.

    Anything else, PermanentError included, propagates from the first
    attempt. The last TransientError is re-raised once attempts run out.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.attempts),
                wait=policy.wait_strategy(),
                retry=retry_if_exception_type(TransientError),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper

    return decorator


# Checked in order; the first category with a matching pattern wins
_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (
        ErrorCategory.PERMANENT,
        (
            "invalid", "unauthorized", "forbidden", "not found", "bad request",
            "insufficient", "execution reverted", "nonce too low",
            "400", "401", "403", "404",
        ),
    ),
    (
        ErrorCategory.TRANSIENT,
        (
            "timeout", "timed out", "connection", "network", "rate limit",
            "too many requests", "service unavailable", "temporarily",
            "502", "503", "504",
        ),
    ),
)


def classify_error(error: Exception) -> ErrorCategory:
    """Categorize by parlay type, otherwise by the exception's name and text."""
    if isinstance(error, ParlayError):
        return error.category
    haystack = f"{type(error).__name__} {error}".lower()
    for category, patterns in _PATTERNS:
        if any(p in haystack for p in patterns):
            return category
    return ErrorCategory.UNKNOWN


def wrap_external_error(
    error: Exception,
    context: Optional[str] = None,
) -> Union[TransientError, PermanentError]:
    """Turn a web3/httpx/driver exception into a parlay error.

    Unrecognized errors become NetworkError so they are retried.
    """
    if isinstance(error, (TransientError, PermanentError)):
        return error
    message = f"{context}: {error}" if context else str(error)
    if classify_error(error) == ErrorCategory.PERMANENT:
        return PermanentError(message, cause=error)
    return NetworkError(message, cause=error)
