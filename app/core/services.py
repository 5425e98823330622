"""
Base service layer patterns for business logic encapsulation.

- ServiceResult: Result wrapper for expected failures (unknown webhook
  objects, duplicate notifications) where raising would be noise
- BaseService: Logger and transaction helpers shared by service classes

Pattern Comparison:
    - ServiceResult: expected failures the caller branches on
    - Exceptions: business-rule violations and failures that must stop the
      operation (see core.exceptions, payments.exceptions)

Usage:
    from core.services import BaseService, ServiceResult

    class NotificationService(BaseService):
        @classmethod
        def create_notification(cls, recipient, title) -> ServiceResult[Notification]:
            with cls.atomic():
                notification = Notification.objects.create(...)
            cls.get_logger().info("Created notification")
            return ServiceResult.success(notification)
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful
        error: Error message if failed
        error_code: Machine-readable error code
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: str | None = None) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    def to_response(self) -> dict[str, Any]:
        """Convert to an API response body."""
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {"success": False, "error": self.error}
        if self.error_code:
            response["error_code"] = self.error_code
        return response

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides a per-class logger and an explicit transaction boundary.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named after the service class for easy filtering."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """Run the enclosed block in a database transaction."""
        with transaction.atomic():
            yield
