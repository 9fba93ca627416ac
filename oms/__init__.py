"""
Order Management System (OMS)
=============================

Handles order status tracking for the booking bot.

Components:
- OrderStatusService: Status transitions, metadata lookup, timeout sweep
- OrderStore: SQLite access to orders and the status change log
- EAVStore: Entity-attribute-value metadata store
- NotificationDispatcher: Status change notifications
"""

from .order_state import (
    OrderRecord,
    OrderStatus,
    StatusChangeLogEntry,
    StatusConfig,
    TimeoutInfo,
    TERMINAL_STATUSES,
)
from .eav_store import EAVStore
from .order_store import OrderStore, SchemaCapabilities
from .notifications import NotificationDispatcher, NotificationRules
from .order_status import OrderStatusService

__all__ = [
    'OrderRecord',
    'OrderStatus',
    'StatusChangeLogEntry',
    'StatusConfig',
    'TimeoutInfo',
    'TERMINAL_STATUSES',
    'EAVStore',
    'OrderStore',
    'SchemaCapabilities',
    'NotificationDispatcher',
    'NotificationRules',
    'OrderStatusService',
]
