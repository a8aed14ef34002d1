"""
Payee Cleanup Error Handling

Typed errors with machine-readable codes. LLM failures carry a
``retryable`` flag so callers can choose between retry with backoff and
alerting without inspecting messages.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Engine errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    INVALID_RULE_STATE = "INVALID_RULE_STATE"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"

    # LLM errors
    LLM_AUTHENTICATION = "LLM_AUTHENTICATION"
    LLM_RATE_LIMITED = "LLM_RATE_LIMITED"
    LLM_SERVICE_UNAVAILABLE = "LLM_SERVICE_UNAVAILABLE"
    LLM_CONNECTION = "LLM_CONNECTION"
    LLM_INVALID_REQUEST = "LLM_INVALID_REQUEST"
    LLM_RESPONSE_PARSING = "LLM_RESPONSE_PARSING"
    LLM_MODEL_ERROR = "LLM_MODEL_ERROR"
    LLM_UNEXPECTED = "LLM_UNEXPECTED"


class PayeeCleanupError(Exception):
    """Base exception with structured error info."""

    retryable = False

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class ValidationError(PayeeCleanupError):
    """Bad input: empty pattern, replacement or payee, or a regex that does not compile."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=f"Invalid value for '{field}'",
            detail=detail,
            context={"field": field}
        )


class RuleNotFoundError(PayeeCleanupError):
    def __init__(self, rule_id: str):
        super().__init__(
            code=ErrorCode.RULE_NOT_FOUND,
            message=f"Rule not found: {rule_id}",
            context={"rule_id": rule_id}
        )


class InvalidRuleStateError(PayeeCleanupError):
    """Approve/reject on a rule that already left pending."""

    def __init__(self, rule_id: str, status: str, action: str):
        super().__init__(
            code=ErrorCode.INVALID_RULE_STATE,
            message=f"Cannot {action} rule {rule_id} in status '{status}'",
            detail="Only pending rules can be approved or rejected",
            context={"rule_id": rule_id, "status": status, "action": action}
        )


class PersistenceError(PayeeCleanupError):
    def __init__(self, operation: str, detail: str):
        super().__init__(
            code=ErrorCode.PERSISTENCE_ERROR,
            message=f"Rule catalog {operation} failed",
            detail=detail,
            context={"operation": operation}
        )


class LLMError(PayeeCleanupError):
    """Error calling the LLM fallback service."""

    code_for_kind = ErrorCode.LLM_UNEXPECTED
    summary = "LLM service error"

    def __init__(
        self,
        detail: str,
        provider: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        context = {"provider": provider} if provider else None
        super().__init__(
            code=self.code_for_kind,
            message=self.summary,
            detail=detail,
            context=context
        )
        self.provider = provider
        if cause is not None:
            self.__cause__ = cause


class LLMAuthenticationError(LLMError):
    retryable = True
    code_for_kind = ErrorCode.LLM_AUTHENTICATION
    summary = "LLM authentication failed"


class LLMRateLimitError(LLMError):
    retryable = True
    code_for_kind = ErrorCode.LLM_RATE_LIMITED
    summary = "LLM rate limit exceeded"


class LLMServiceUnavailableError(LLMError):
    retryable = True
    code_for_kind = ErrorCode.LLM_SERVICE_UNAVAILABLE
    summary = "LLM service unavailable"


class LLMConnectionError(LLMError):
    """Network failure, timeout or cancellation."""
    retryable = True
    code_for_kind = ErrorCode.LLM_CONNECTION
    summary = "Could not reach LLM service"


class LLMValidationError(LLMError):
    code_for_kind = ErrorCode.LLM_INVALID_REQUEST
    summary = "LLM service rejected the request"


class LLMResponseParsingError(LLMError):
    code_for_kind = ErrorCode.LLM_RESPONSE_PARSING
    summary = "Could not parse LLM response"


class LLMModelError(LLMError):
    code_for_kind = ErrorCode.LLM_MODEL_ERROR
    summary = "LLM did not produce a usable answer"


class LLMUnexpectedError(LLMError):
    code_for_kind = ErrorCode.LLM_UNEXPECTED
    summary = "Unexpected LLM service error"


def to_http_exception(error: PayeeCleanupError) -> HTTPException:
    """Convert PayeeCleanupError to HTTPException."""
    status_map = {
        ErrorCode.VALIDATION_ERROR: 400,
        ErrorCode.RULE_NOT_FOUND: 404,
        ErrorCode.INVALID_RULE_STATE: 409,
        ErrorCode.PERSISTENCE_ERROR: 500,
        ErrorCode.LLM_AUTHENTICATION: 502,
        ErrorCode.LLM_RATE_LIMITED: 429,
        ErrorCode.LLM_SERVICE_UNAVAILABLE: 503,
        ErrorCode.LLM_CONNECTION: 504,
        ErrorCode.LLM_INVALID_REQUEST: 502,
        ErrorCode.LLM_RESPONSE_PARSING: 502,
        ErrorCode.LLM_MODEL_ERROR: 502,
        ErrorCode.LLM_UNEXPECTED: 500,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )
