"""
Unit tests for the error hierarchy and retry decorator.

Tests cover:
- Which errors are retried
- retry_transient on RPC-style coroutines
- Classification and wrapping of web3/httpx exceptions
"""
from unittest.mock import AsyncMock

import pytest

from parlay.core.retry import (
    ConditionFailedError,
    ErrorCategory,
    InsufficientFundsError,
    InvalidTransitionError,
    NetworkError,
    OrderRejectedError,
    PermanentError,
    ResourceNotFoundError,
    RetryPolicy,
    TransientError,
    ValidationError,
    classify_error,
    retry_transient,
    wrap_external_error,
)

NO_WAIT = RetryPolicy(attempts=3, min_wait=0, max_wait=0, jitter=False)


class TestErrorHierarchy:
    def test_transient_errors_are_retryable(self):
        for error in (TransientError("x"), NetworkError("rpc down")):
            assert error.category == ErrorCategory.TRANSIENT
            assert error.retryable is True

    def test_settlement_errors_are_permanent(self):
        errors = [
            ValidationError("bad amount"),
            InsufficientFundsError("balance"),
            ResourceNotFoundError("position p-1"),
            OrderRejectedError("rejected"),
            ConditionFailedError("bet b-1 is not READY"),
            InvalidTransitionError("Bet", "SETTLED", "READY"),
        ]
        for error in errors:
            assert isinstance(error, PermanentError)
            assert error.retryable is False

    def test_invalid_transition_message(self):
        error = InvalidTransitionError("Bet", "SETTLED", "READY")
        assert str(error) == "Bet cannot move from SETTLED to READY"
        assert (error.entity, error.current, error.target) == ("Bet", "SETTLED", "READY")

    def test_cause_is_shown(self):
        error = NetworkError("get_logs", cause=ConnectionResetError("peer"))
        assert str(error) == "get_logs (caused by: peer)"


class TestRetryTransient:
    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self):
        rpc = AsyncMock(side_effect=[NetworkError("down"), NetworkError("down"), 51_000_000])

        @retry_transient(NO_WAIT)
        async def get_block_number():
            return await rpc()

        assert await get_block_number() == 51_000_000
        assert rpc.call_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        rpc = AsyncMock(side_effect=NetworkError("down"))

        @retry_transient(RetryPolicy(attempts=2, min_wait=0, max_wait=0, jitter=False))
        async def get_block_number():
            return await rpc()

        with pytest.raises(NetworkError):
            await get_block_number()
        assert rpc.call_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        rpc = AsyncMock(side_effect=ValidationError("bad address"))

        @retry_transient(NO_WAIT)
        async def balance_of():
            return await rpc()

        with pytest.raises(ValidationError):
            await balance_of()
        assert rpc.call_count == 1

    @pytest.mark.asyncio
    async def test_foreign_exception_not_retried(self):
        rpc = AsyncMock(side_effect=KeyError("topics"))

        @retry_transient(NO_WAIT)
        async def get_logs():
            return await rpc()

        with pytest.raises(KeyError):
            await get_logs()
        assert rpc.call_count == 1

    def test_wraps_keep_name(self):
        @retry_transient(NO_WAIT)
        async def get_block_number():
            return 1

        assert get_block_number.__name__ == "get_block_number"


class TestClassification:
    def test_classify_by_message(self):
        assert classify_error(Exception("404 not found")) == ErrorCategory.PERMANENT
        assert classify_error(Exception("execution reverted")) == ErrorCategory.PERMANENT
        assert classify_error(Exception("request timed out")) == ErrorCategory.TRANSIENT
        assert classify_error(Exception("weird")) == ErrorCategory.UNKNOWN

    def test_classify_by_type_name(self):
        assert classify_error(ConnectionRefusedError()) == ErrorCategory.TRANSIENT

    def test_parlay_errors_keep_their_category(self):
        assert classify_error(ValidationError("timeout must be positive")) == ErrorCategory.PERMANENT

    def test_wrap_external_error(self):
        wrapped = wrap_external_error(Exception("401 unauthorized"), "balanceOf")
        assert isinstance(wrapped, PermanentError)
        assert str(wrapped).startswith("balanceOf: 401 unauthorized")

        wrapped = wrap_external_error(Exception("rpc hiccup"))
        assert isinstance(wrapped, NetworkError)
        assert wrapped.cause is not None

    def test_wrap_passes_parlay_errors_through(self):
        error = NetworkError("down")
        assert wrap_external_error(error) is error
