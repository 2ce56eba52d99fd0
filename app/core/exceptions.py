"""
Base exception classes for application-wide error handling.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or payload validation failures
    └── ExternalServiceError - Failures talking to another service

Usage:
    from core.exceptions import ExternalServiceError

    raise ExternalServiceError(
        "Chat API request failed",
        error_code="NOT_PARTICIPANT",
        details={"status": 400},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=400)

Note:
    Expected business failures inside services are returned as
    core.services.ServiceResult, not raised. These exceptions cover the
    cases where there is no result to return: malformed push frames,
    failed HTTP calls from the chat client.
    This module imports nothing from Django.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (field errors, metadata, etc.)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Example:
            {"error": "Message not found", "error_code": "MESSAGE_NOT_FOUND"}
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails outside a serializer.

    Used for payloads that arrive on a channel DRF does not see, such as
    push frames decoded by the chat client.
    """

    default_error_code: str = "VALIDATION_ERROR"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when a call to another service fails.

    Use for network timeouts, unavailable services and unexpected
    responses. Include the HTTP status in ``details`` when there is one.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
