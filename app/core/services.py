"""
Base service layer patterns for business logic encapsulation.

- ServiceResult: Result wrapper for expected outcomes
- BaseService: Base class with logging and transaction helpers

Views handle HTTP concerns, models handle data, services handle logic.

Pattern Comparison:
    - ServiceResult: Use for expected outcomes (webhook handler applied
      the event, or chose to ignore it)
    - Exceptions: Use for failures the caller must react to

Usage:
    from core.services import BaseService, ServiceResult

    class SubscriptionService(BaseService):
        @classmethod
        def cancel(cls, customer, immediate: bool) -> Subscription:
            with cls.atomic():
                subscription = ...
            cls.get_logger().info("Subscription canceled", extra={...})
            return subscription
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Outcome of a service operation that is not an error.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code

    Usage:
        return ServiceResult.success({"invoice_id": str(invoice.id)})
        return ServiceResult.success({"ignored": True})
        return ServiceResult.failure("Unsupported invoice shape", "INVOICE_UNSUPPORTED")
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

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Services are stateless: use @classmethod or @staticmethod.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Logger named after the service class for easy filtering."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Nested use creates a savepoint.
        """
        with transaction.atomic():
            yield
