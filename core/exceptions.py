"""
Unified Exception Hierarchy for the booking order system.

All exceptions inherit from BookingSystemError, enabling consistent error
handling across the order status manager and its stores.

Usage:
    from core.exceptions import OrderNotFoundError, IllegalTransitionError

    try:
        service.transition_status(order_id, "confirmed", "merchant_42")
    except OrderNotFoundError as e:
        # Unknown order id, surface to the caller
        reply_not_found(e.context)
    except IllegalTransitionError as e:
        # Business rule violation, never retried
        reply_rejected(e.error_code, e.context)
    except BookingSystemError as e:
        # Catch-all for system errors
        log_error(e)

Only business-rule errors (OrderError subclasses) escape the order status
manager. InfrastructureError subclasses are raised by the stores and the
notifiers and are absorbed by the manager, which degrades to defaults.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================

class BookingSystemError(Exception):
    """
    Base exception for all booking system errors.

    Attributes:
        error_code: Unique identifier for this error type
        is_recoverable: Whether the caller can retry or degrade
        context: Additional context about the error
        timestamp: When the error occurred
    """
    error_code: str = "SYSTEM_ERROR"
    is_recoverable: bool = True

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        self.message = message
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.utcnow()
        super().__init__(message)

    def __str__(self) -> str:
        base = f"[{self.error_code}] {self.message}"
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "is_recoverable": self.is_recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# ORDER ERRORS (business rules, propagated to callers)
# =============================================================================

class OrderError(BookingSystemError):
    """
    Base class for order lifecycle errors.

    These are the only errors the order status manager lets escape.
    """
    error_code = "ORDER_ERROR"


class OrderNotFoundError(OrderError):
    """
    Raised when the referenced order identifier does not exist.
    """
    error_code = "ORDER_NOT_FOUND"
    is_recoverable = False

    def __init__(
        self,
        order_id: Any,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = {"order_id": order_id}
        ctx.update(context or {})
        super().__init__(f"Order {order_id} does not exist", ctx)
        self.order_id = order_id


class IllegalTransitionError(OrderError):
    """
    Raised when a status transition is not permitted by configuration.

    The status machine enforces the configured next_statuses:
    attempting -> pending (valid)
    cancelled -> pending (invalid - raises this error)
    """
    error_code = "ILLEGAL_STATUS_TRANSITION"
    is_recoverable = False

    def __init__(
        self,
        order_id: Any,
        from_status: str,
        to_status: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = {"order_id": order_id, "from_status": from_status, "to_status": to_status}
        ctx.update(context or {})
        super().__init__(
            f"Order status cannot change from {from_status} to {to_status}", ctx
        )
        self.order_id = order_id
        self.from_status = from_status
        self.to_status = to_status


# Glossary names
OrderNotFound = OrderNotFoundError
IllegalTransition = IllegalTransitionError


# =============================================================================
# INFRASTRUCTURE ERRORS (absorbed by the order status manager)
# =============================================================================

class InfrastructureError(BookingSystemError):
    """
    Base class for storage and delivery errors.
    """
    error_code = "INFRASTRUCTURE_ERROR"


class ConfigurationUnavailableError(InfrastructureError):
    """
    Raised when the metadata store cannot be read.

    The order status manager substitutes the built-in defaults.
    """
    error_code = "CONFIG_UNAVAILABLE"


class StatusLogError(InfrastructureError):
    """
    Raised when a status change log entry cannot be written or read.
    """
    error_code = "STATUS_LOG_FAILED"


class NotificationError(InfrastructureError):
    """
    Raised when a notification cannot be delivered.
    """
    error_code = "NOTIFICATION_FAILED"


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================

class ConfigurationError(BookingSystemError):
    """
    Base class for settings errors.
    """
    error_code = "CONFIG_ERROR"
    is_recoverable = False


class SettingsValidationError(ConfigurationError):
    """
    Raised when base.yaml fails schema validation.
    """
    error_code = "SETTINGS_INVALID"


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def is_business_error(error: Exception) -> bool:
    """
    Check if an error is a business-rule violation that callers must see.

    Args:
        error: The exception to check

    Returns:
        True for OrderError subclasses
    """
    return isinstance(error, OrderError)


def get_error_code(error: Exception) -> str:
    """
    Get the error code for an exception.

    Args:
        error: The exception to get the code for

    Returns:
        The error code string, or "UNKNOWN_ERROR" for foreign exceptions
    """
    if isinstance(error, BookingSystemError):
        return error.error_code
    return "UNKNOWN_ERROR"
