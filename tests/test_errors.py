"""
Tests for typed errors and their HTTP mapping.
"""
import pytest
from fastapi import HTTPException

from payee_cleanup.services.errors import (
    ErrorCode,
    InvalidRuleStateError,
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMModelError,
    LLMRateLimitError,
    LLMResponseParsingError,
    LLMServiceUnavailableError,
    LLMUnexpectedError,
    LLMValidationError,
    PersistenceError,
    RuleNotFoundError,
    ValidationError,
    to_http_exception,
)


class TestErrorPayloads:
    def test_validation_error_names_field(self):
        error = ValidationError("pattern", "Pattern must not be empty")
        assert error.to_dict() == {
            "error": "VALIDATION_ERROR",
            "message": "Invalid value for 'pattern'",
            "retryable": False,
            "detail": "Pattern must not be empty",
            "context": {"field": "pattern"},
        }

    def test_invalid_state_context(self):
        error = InvalidRuleStateError("r1", "rejected", "approve")
        assert error.code == ErrorCode.INVALID_RULE_STATE
        assert error.context == {"rule_id": "r1", "status": "rejected", "action": "approve"}

    def test_llm_error_keeps_provider_and_cause(self):
        cause = TimeoutError("slow")
        error = LLMConnectionError("Request timed out", provider="anthropic", cause=cause)

        assert isinstance(error, LLMError)
        assert error.provider == "anthropic"
        assert error.__cause__ is cause
        assert error.to_dict()["context"] == {"provider": "anthropic"}


class TestRetryable:
    @pytest.mark.parametrize(
        "error_type",
        [LLMAuthenticationError, LLMRateLimitError, LLMServiceUnavailableError, LLMConnectionError],
    )
    def test_retryable_kinds(self, error_type):
        assert error_type("x").retryable is True

    @pytest.mark.parametrize(
        "error_type",
        [LLMValidationError, LLMResponseParsingError, LLMModelError, LLMUnexpectedError],
    )
    def test_non_retryable_kinds(self, error_type):
        assert error_type("x").retryable is False

    def test_engine_errors_are_not_retryable(self):
        assert RuleNotFoundError("r1").retryable is False
        assert PersistenceError("save", "locked").retryable is False


class TestHttpMapping:
    @pytest.mark.parametrize(
        "error, status",
        [
            (ValidationError("pattern", "empty"), 400),
            (RuleNotFoundError("r1"), 404),
            (InvalidRuleStateError("r1", "approved", "reject"), 409),
            (PersistenceError("save", "locked"), 500),
            (LLMRateLimitError("slow down"), 429),
            (LLMServiceUnavailableError("down"), 503),
            (LLMConnectionError("timeout"), 504),
            (LLMModelError("empty"), 502),
        ],
    )
    def test_status_codes(self, error, status):
        http_error = to_http_exception(error)

        assert isinstance(http_error, HTTPException)
        assert http_error.status_code == status
        assert http_error.detail["error"] == error.code.value
