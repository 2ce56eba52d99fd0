"""
Base service layer patterns for business logic encapsulation.

This module provides the two building blocks every service in the project uses:
- ServiceResult: Standard result wrapper for expected success/failure outcomes
- BaseService: Base class with logging and transaction helpers

Service Layer Philosophy:
    Services hold the business rules. Views translate HTTP into service calls
    and service results back into HTTP; models hold data.

    - ServiceResult: expected failures (validation, business rules)
    - Exceptions (core.exceptions): unexpected failures

Usage:
    from core.services import BaseService, ServiceResult

    class ConversationService(BaseService):
        @classmethod
        def rename(cls, conversation, user, name) -> ServiceResult[Conversation]:
            if not name.strip():
                return ServiceResult.failure("Name is required", "NAME_REQUIRED")

            with cls.atomic():
                conversation.name = name
                conversation.save(update_fields=["name", "updated_at"])

            cls.get_logger().info(f"Renamed conversation {conversation.id}")
            return ServiceResult.success(conversation)

    # In a view
    result = ConversationService.rename(conversation, request.user, name)
    if not result.success:
        return Response(result.to_response(), status=400)

Note:
    This module has no import-time dependency on Django so that the
    framework-free client package (chat.client) can share ServiceResult.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Human-readable error message if failed
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures

    Usage:
        return ServiceResult.success(message)
        return ServiceResult.failure("Not a participant", "NOT_PARTICIPANT")

        result = MessageService.send_message(conversation, user, "Hi")
        if result:
            message = result.data
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """Create a successful result carrying ``data``."""
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
        """
        return cls(success=False, error=error, error_code=error_code, errors=errors)

    @classmethod
    def from_exception(
        cls, exc: Exception, error_code: str | None = None
    ) -> ServiceResult[T]:
        """
        Create a failed result from a caught exception.

        Application errors keep their own error code; anything else falls
        back to the upper-cased exception class name.
        """
        code = error_code or getattr(exc, "error_code", None)
        message = getattr(exc, "message", None) or str(exc)
        return cls(
            success=False,
            error=message,
            error_code=code or exc.__class__.__name__.upper(),
        )

    def to_response(self) -> dict[str, Any]:
        """
        Convert to the API error/success body.

        Failure bodies use the ``{"error", "error_code"}`` shape every chat
        endpoint returns with HTTP 400.
        """
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {"error": self.error}
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        return response

    def map(self, func: Callable[[T], Any]) -> ServiceResult:
        """Transform the data if successful; failures pass through unchanged."""
        if self.success and self.data is not None:
            return ServiceResult.success(func(self.data))
        return self

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Services are stateless: use @classmethod and keep state in the database
    (or, for the realtime layer, in the hub the app config owns).

    Usage:
        class MessageService(BaseService):
            @classmethod
            def send_message(cls, conversation, sender, content):
                with cls.atomic():
                    message = Message.objects.create(...)
                cls.get_logger().debug(f"Sent message {message.id}")
                return ServiceResult.success(message)
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Return a logger named after the service class."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute the enclosed block in a database transaction.

        Thin wrapper around django.db.transaction.atomic() that makes
        transaction boundaries explicit in service code.
        """
        from django.db import transaction

        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: Exception,
        context: str = "",
        log_level: int = logging.ERROR,
    ) -> ServiceResult:
        """
        Log an exception and convert it to a failed ServiceResult.

        Example:
            try:
                task.delay(conversation.id)
            except OperationalError as e:
                return cls.handle_exception(e, "scheduling purge")
        """
        message = f"{context}: {exc}" if context else str(exc)
        cls.get_logger().log(log_level, message, exc_info=True)
        return ServiceResult.from_exception(exc)

    @classmethod
    def validate_required(cls, **kwargs) -> ServiceResult | None:
        """
        Return a VALIDATION_ERROR failure if any keyword value is empty.

        Returns None when every value is present.
        """
        errors = {}
        for field_name, value in kwargs.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                errors[field_name] = ["This field is required."]

        if errors:
            return ServiceResult.failure(
                "Required fields missing",
                error_code="VALIDATION_ERROR",
                errors=errors,
            )
        return None
