"""Typed error taxonomy for the conversation and feedback pipeline.

Every failure that crosses a component boundary is converted into one of the
classes below so callers can branch on the kind instead of parsing messages.
Retryable kinds are absorbed by the request coordinator until its attempts are
exhausted; the rest reach the caller as part of a typed reply.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for machine-readable error codes."""

    CONTEXT_OVERFLOW = "context_overflow"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    REQUEST_MANAGEMENT_TIMEOUT = "request_management_timeout"
    MALFORMED_RESPONSE = "malformed_response"
    VALIDATION_ENGINE = "validation_engine"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class AssistantError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str = ErrorCode.INTERNAL_ERROR
    message: str = "Unexpected assistant error"
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    retryable: ClassVar[bool] = False
    fatal: ClassVar[bool] = True

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for chat surfaces and telemetry."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Context Errors
# -----------------------------------------------------------------------------

@dataclass
class ContextOverflowError(AssistantError):
    """Raised when the instruction alone exceeds the prompt ceiling."""

    error_code: str = field(default=ErrorCode.CONTEXT_OVERFLOW)
    message: str = field(default="The instruction is too long for the model's context window")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Break the request into smaller parts")

    instruction_tokens: int = 0
    ceiling: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["instruction_tokens"] = self.instruction_tokens
        result["ceiling"] = self.ceiling
        return result


# -----------------------------------------------------------------------------
# Provider Errors
# -----------------------------------------------------------------------------

@dataclass
class AuthError(AssistantError):
    """The provider rejected the credentials; never retried."""

    error_code: str = field(default=ErrorCode.AUTH)
    message: str = field(default="Invalid API key or authentication error")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the API key configured for the selected provider")


@dataclass
class RateLimitError(AssistantError):
    """The provider throttled the request; the caller may retry later."""

    error_code: str = field(default=ErrorCode.RATE_LIMIT)
    message: str = field(default="The AI service is currently rate-limited")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Wait a few minutes and try again, or pick another model")

    retry_after: float | None = None


@dataclass
class NetworkError(AssistantError):
    """Connection-level failure talking to the provider."""

    error_code: str = field(default=ErrorCode.NETWORK)
    message: str = field(default="Unable to reach the AI service")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check your network connection and the configured endpoint")

    retryable: ClassVar[bool] = True


@dataclass
class RequestTimeoutError(AssistantError):
    """A single provider call exceeded its network budget."""

    error_code: str = field(default=ErrorCode.TIMEOUT)
    message: str = field(default="The AI service did not answer in time")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Try again; the request will fall back to another model")

    timeout: float | None = None

    retryable: ClassVar[bool] = True


@dataclass
class RequestManagementTimeoutError(AssistantError):
    """The request outlived its queue budget and was aborted."""

    error_code: str = field(default=ErrorCode.REQUEST_MANAGEMENT_TIMEOUT)
    message: str = field(default="request management timeout")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="The assistant is busy; send the message again")

    timeout: float | None = None


@dataclass
class MalformedResponseError(AssistantError):
    """The provider answered with a payload that cannot be used."""

    error_code: str = field(default=ErrorCode.MALFORMED_RESPONSE)
    message: str = field(default="Invalid response format from AI model")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Try a different model")


@dataclass
class RequestCancelledError(AssistantError):
    """The request was cancelled before it produced a result."""

    error_code: str = field(default=ErrorCode.CANCELLED)
    message: str = field(default="Request cancelled")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="")

    fatal: ClassVar[bool] = False


# -----------------------------------------------------------------------------
# Feedback Errors
# -----------------------------------------------------------------------------

@dataclass
class ValidationEngineError(AssistantError):
    """The validator failed; degrades to a low-severity feedback item."""

    error_code: str = field(default=ErrorCode.VALIDATION_ENGINE)
    message: str = field(default="Validation failed to run")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Editing is unaffected; validation resumes on the next change")

    file: str | None = None

    fatal: ClassVar[bool] = False


__all__ = [
    "ErrorCode",
    "AssistantError",
    "ContextOverflowError",
    "AuthError",
    "RateLimitError",
    "NetworkError",
    "RequestTimeoutError",
    "RequestManagementTimeoutError",
    "MalformedResponseError",
    "RequestCancelledError",
    "ValidationEngineError",
]
