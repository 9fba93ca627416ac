"""
Core Infrastructure
====================

Foundational components shared by the booking order system.

Components:
- exceptions: Unified exception hierarchy
- structured_log: JSON event logging
- http_client: Outbound HTTP with retries
"""

from .exceptions import (
    BookingSystemError,
    OrderNotFoundError,
    IllegalTransitionError,
    get_error_code,
)
from .structured_log import jlog, read_recent_logs

__all__ = [
    # Exceptions
    'BookingSystemError',
    'OrderNotFoundError',
    'IllegalTransitionError',
    'get_error_code',
    # Structured Logging
    'jlog',
    'read_recent_logs',
]
