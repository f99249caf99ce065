"""Tests for chat_spine.core.errors module."""

from unittest.mock import MagicMock

import pytest

from chat_spine.core.errors import (
    GENERIC_USER_MESSAGE,
    BackendError,
    ChatSpineError,
    CircuitOpenError,
    ContentionError,
    ErrorCategory,
    InternalError,
    InvalidTransitionError,
    OperationCancelled,
    OperationInProgressError,
    RateLimitExceededError,
    StateLockedError,
    StoreUnavailableError,
    describe_error,
    is_retryable,
    user_message_for,
)


class TestChatSpineError:
    """Test the base error type."""

    def test_defaults(self):
        err = ChatSpineError("boom")
        assert err.message == "boom"
        assert err.category == ErrorCategory.INTERNAL
        assert err.retryable is False
        assert err.user_message == GENERIC_USER_MESSAGE
        assert err.context == {}

    def test_overrides(self):
        err = ChatSpineError(
            "boom",
            category=ErrorCategory.CONFIG,
            retryable=True,
            retry_after=2.5,
            user_message="nope",
        )
        assert err.category == ErrorCategory.CONFIG
        assert err.retryable is True
        assert err.retry_after == 2.5
        assert err.user_message == "nope"

    def test_cause_is_chained(self):
        cause = ValueError("inner")
        err = ChatSpineError("outer", cause=cause)
        assert err.cause is cause
        assert err.__cause__ is cause

    def test_with_context_is_fluent(self):
        err = ChatSpineError("boom").with_context(entity_id=42)
        assert err.context == {"entity_id": 42}

    def test_to_dict(self):
        err = StoreUnavailableError(context={"operation": "state_get"}, cause=OSError("down"))
        data = err.to_dict()
        assert data["error_type"] == "StoreUnavailableError"
        assert data["category"] == "BACKEND"
        assert data["retryable"] is True
        assert data["context"] == {"operation": "state_get"}
        assert "down" in data["cause"]

    def test_repr(self):
        assert repr(ChatSpineError("boom")) == "ChatSpineError('boom', category=INTERNAL)"


class TestHierarchy:
    """Test concrete error classes."""

    def test_contention_errors_are_retryable(self):
        assert StateLockedError(entity_id=1).retryable is True
        assert OperationInProgressError("k").retryable is True
        assert isinstance(StateLockedError(), ContentionError)
        assert isinstance(OperationInProgressError("k"), ContentionError)

    def test_state_locked_carries_entity(self):
        err = StateLockedError(entity_id=42)
        assert err.entity_id == 42
        assert "42" in err.message

    def test_invalid_transition(self):
        err = InvalidTransitionError("idle", "buying_confirm")
        assert err.current == "idle"
        assert err.target == "buying_confirm"
        assert err.retryable is False
        assert err.category == ErrorCategory.INVALID_TRANSITION

    def test_backend_errors(self):
        assert isinstance(StoreUnavailableError(), BackendError)
        assert isinstance(CircuitOpenError(), BackendError)
        assert CircuitOpenError().retryable is True

    def test_cancelled_not_retryable(self):
        err = OperationCancelled()
        assert err.category == ErrorCategory.CANCELLED
        assert err.retryable is False

    def test_rate_limit_message_with_retry_after(self):
        err = RateLimitExceededError("user:42", retry_after=30)
        assert err.scope == "user:42"
        assert err.retry_after == 30
        assert err.user_message == "Too many requests. Please try again in 30 seconds."

    def test_rate_limit_message_without_retry_after(self):
        err = RateLimitExceededError("global:all")
        assert err.user_message == "Too many requests. Please slow down."


class TestIsRetryable:
    def test_spine_errors_answer_for_themselves(self):
        assert is_retryable(StoreUnavailableError()) is True
        assert is_retryable(InvalidTransitionError("a", "b")) is False

    def test_builtin_transient_errors(self):
        assert is_retryable(ConnectionError()) is True
        assert is_retryable(TimeoutError()) is True

    def test_other_errors(self):
        assert is_retryable(ValueError()) is False
        assert is_retryable(KeyError()) is False


class TestUserMessages:
    def test_contention(self):
        assert "try again" in user_message_for(StateLockedError(entity_id=1)).lower()

    def test_invalid_transition(self):
        assert user_message_for(InvalidTransitionError("a", "b")) == "That action is not possible right now."

    def test_backend_and_unknown_are_generic(self):
        assert user_message_for(StoreUnavailableError()) == GENERIC_USER_MESSAGE
        assert user_message_for(InternalError("bug")) == GENERIC_USER_MESSAGE
        assert user_message_for(RuntimeError("bug")) == GENERIC_USER_MESSAGE

    def test_none(self):
        assert user_message_for(None) == ""


class TestDescribeError:
    def test_backend_logged_as_error(self):
        log = MagicMock()
        message, retryable = describe_error(StoreUnavailableError(), log)
        assert message == GENERIC_USER_MESSAGE
        assert retryable is True
        log.error.assert_called_once()
        assert log.error.call_args.args[0] == "application_error"

    def test_declined_logged_as_info(self):
        log = MagicMock()
        message, retryable = describe_error(StateLockedError(entity_id=1), log)
        assert retryable is True
        log.info.assert_called_once()
        log.error.assert_not_called()

    def test_unknown_error(self):
        log = MagicMock()
        message, retryable = describe_error(ValueError("bad"), log)
        assert message == GENERIC_USER_MESSAGE
        assert retryable is False
        log.error.assert_called_once_with("unknown_error", error_type="ValueError", message="bad")


@pytest.mark.parametrize(
    "error",
    [StateLockedError(entity_id=1), InvalidTransitionError("a", "b"), OperationCancelled()],
)
def test_all_errors_are_exceptions(error):
    with pytest.raises(ChatSpineError):
        raise error
