"""
Order Status Manager
====================

Gates and applies order status transitions, exposes per-status metadata and
resolves orders that sat too long in a status.

Status metadata comes from the EAV store (namespace ``order_status_config``).
Lookups never fail: a store record wins, then the built-in default table,
then a generic "unknown status" shape. When a status is configured without
``next_statuses`` the transition is allowed (permissive) unless
``strict_transitions`` is set.

Usage:
    from oms.order_status import OrderStatusService

    service = OrderStatusService.from_settings()
    service.transition_status(42, "confirmed", updated_by="merchant_7")

    # periodic sweep, driven by cron or a job runner
    service.handle_timeout_orders()
"""
from __future__ import annotations

import logging
import sqlite3
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from config.settings_schema import BookingSettings, NotificationSettings, load_validated_settings
from core.exceptions import (
    BookingSystemError,
    ConfigurationUnavailableError,
    IllegalTransitionError,
    OrderNotFoundError,
    StatusLogError,
)
from core.structured_log import jlog
from oms.eav_store import EAVStore
from oms.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    NotificationRules,
    Notifier,
    WebhookNotifier,
)
from oms.order_state import (
    DEFAULT_STATUS_CONFIGS,
    TERMINAL_STATUSES,
    OrderRecord,
    StatusChangeLogEntry,
    StatusConfig,
    StatusDisplayInfo,
    TimeoutInfo,
    default_status_config,
    unknown_status_config,
)
from oms.order_store import OrderStore, SchemaCapabilities
from oms.schema import STATUS_CONFIG_NAMESPACE

logger = logging.getLogger(__name__)

AUTO_TIMEOUT_ACTOR = "auto_timeout"
DEFAULT_ACTOR = "system"

DEFAULT_TIMEOUT_ACTIONS: Dict[str, str] = {
    "attempting": "merchant_unavailable",
    "pending": "cancelled",
}


def _status_value(status: Any) -> str:
    return getattr(status, "value", status)


def _to_epoch(value: Any) -> Optional[int]:
    """Epoch seconds from an INTEGER column or an ISO-8601 TEXT column."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(float(text))
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


class OrderStatusService:
    """
    Order lifecycle state over the orders table.

    Args:
        order_store: Access to orders and the status log table
        eav_store: Status metadata; None means defaults only
        dispatcher: Notification dispatch; None disables notifications
        timeout_actions: status -> target status applied by handle_timeout_orders
        strict_transitions: Deny transitions from statuses lacking next_statuses
        status_namespace: EAV namespace holding StatusConfig records
        clock: Returns the current time in epoch seconds
    """

    def __init__(
        self,
        order_store: OrderStore,
        eav_store: Optional[EAVStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        timeout_actions: Optional[Mapping[str, str]] = None,
        strict_transitions: bool = False,
        status_namespace: str = STATUS_CONFIG_NAMESPACE,
        clock: Callable[[], float] = time.time,
    ):
        self.order_store = order_store
        self.eav_store = eav_store
        self.dispatcher = dispatcher
        self.timeout_actions = dict(DEFAULT_TIMEOUT_ACTIONS if timeout_actions is None else timeout_actions)
        self.strict_transitions = strict_transitions
        self.status_namespace = status_namespace
        self._clock = clock
        self.capabilities: SchemaCapabilities = order_store.probe_capabilities()
        logger.debug(f"Order schema capabilities: {self.capabilities}")

    @classmethod
    def from_settings(
        cls,
        settings: Optional[BookingSettings] = None,
        notifier: Optional[Notifier] = None,
    ) -> "OrderStatusService":
        """Wire stores, notifications and options from base.yaml."""
        settings = settings or load_validated_settings()
        orders = settings.orders
        dispatcher = None
        if settings.notifications.enabled:
            dispatcher = NotificationDispatcher(
                rules=NotificationRules.from_mapping(settings.notifications.rules.model_dump()),
                notifier=notifier or _build_notifier(settings.notifications),
            )
        return cls(
            order_store=OrderStore(orders.db_path),
            eav_store=EAVStore(orders.resolved_metadata_db_path),
            dispatcher=dispatcher,
            timeout_actions=orders.timeout_actions,
            strict_transitions=orders.strict_transitions,
            status_namespace=orders.status_namespace,
        )

    def _now(self) -> int:
        return int(self._clock())

    def refresh_capabilities(self) -> SchemaCapabilities:
        """Re-probe optional columns and tables after a schema change."""
        self.capabilities = self.order_store.probe_capabilities()
        return self.capabilities

    # ------------------------------------------------------------------
    # Status metadata
    # ------------------------------------------------------------------

    def get_status_config(self, status: Any) -> StatusConfig:
        status = _status_value(status)
        if self.eav_store is not None:
            try:
                record = self.eav_store.get_entity(status, self.status_namespace)
            except ConfigurationUnavailableError as e:
                jlog("order_status_config_unavailable", level="WARNING", status=status, error=str(e))
                record = None
            if record is not None:
                try:
                    return StatusConfig.from_mapping(status, record)
                except (TypeError, ValueError, OverflowError) as e:
                    jlog("order_status_config_unavailable", level="WARNING",
                         status=status, error=f"malformed record: {e}")
        return default_status_config(status) or unknown_status_config(status)

    def get_all_status_configs(self) -> Dict[str, StatusConfig]:
        configs: Dict[str, StatusConfig] = dict(DEFAULT_STATUS_CONFIGS)
        if self.eav_store is None:
            return configs
        try:
            records = self.eav_store.get_all_entities(self.status_namespace)
        except ConfigurationUnavailableError as e:
            jlog("order_status_config_unavailable", level="WARNING", status="*", error=str(e))
            return configs
        for status, record in records.items():
            try:
                configs[status] = StatusConfig.from_mapping(status, record)
            except (TypeError, ValueError, OverflowError) as e:
                jlog("order_status_config_unavailable", level="WARNING",
                     status=status, error=f"malformed record: {e}")
        return configs

    def get_status_display_info(self, status: Any) -> StatusDisplayInfo:
        return StatusDisplayInfo.from_config(self.get_status_config(status))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def can_transition_to(self, current_status: Any, target_status: Any) -> bool:
        current_status = _status_value(current_status)
        target_status = _status_value(target_status)
        allowed = self.get_status_config(current_status).allows(target_status)
        if allowed is None:
            jlog(
                "order_status_config_missing_transitions",
                level="WARNING",
                from_status=current_status,
                to_status=target_status,
                strict=self.strict_transitions,
            )
            return not self.strict_transitions
        return allowed

    def get_order_by_id(self, order_id: Any) -> Optional[OrderRecord]:
        return self.order_store.get_order(order_id)

    def transition_status(self, order_id: Any, new_status: Any, updated_by: str = DEFAULT_ACTOR) -> bool:
        """
        Move an order to new_status.

        Raises:
            OrderNotFoundError: order_id does not exist (nothing written)
            IllegalTransitionError: new_status not allowed from the current one (nothing written)

        Returns:
            True when the order row was updated. Status log and notification
            failures are logged and do not change the result.
        """
        new_status = _status_value(new_status)
        order = self.order_store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        current_status = order.status
        if not self.can_transition_to(current_status, new_status):
            jlog(
                "order_status_transition_rejected",
                level="WARNING",
                order_id=order.id,
                from_status=current_status,
                to_status=new_status,
                updated_by=updated_by,
            )
            raise IllegalTransitionError(order.id, current_status, new_status)

        now = self._now()
        changed = self.order_store.update_status(order.id, new_status, updated_by, now, self.capabilities)
        if changed <= 0:
            return False

        self._log_status_change(StatusChangeLogEntry(
            order_id=order.id,
            from_status=current_status,
            to_status=new_status,
            updated_by=updated_by,
            created_at=now,
        ))
        self._notify_status_change(order.id, current_status, new_status)
        jlog(
            "order_status_changed",
            order_id=order.id,
            from_status=current_status,
            to_status=new_status,
            updated_by=updated_by,
        )
        return True

    def _log_status_change(self, entry: StatusChangeLogEntry) -> bool:
        if not self.capabilities.has_status_log_table:
            jlog("order_status_log_skipped", **entry.to_dict())
            return False
        try:
            self.order_store.append_status_log(entry)
        except StatusLogError as e:
            jlog("order_status_log_failed", level="ERROR", error=str(e), **entry.to_dict())
            return False
        jlog("order_status_log_recorded", order_id=entry.order_id,
             from_status=entry.from_status, to_status=entry.to_status)
        return True

    def _notify_status_change(self, order_id: Any, from_status: str, to_status: str) -> None:
        if self.dispatcher is None:
            return
        try:
            order = self.order_store.get_order(order_id)
            if order is None:
                return
            self.dispatcher.dispatch(order, to_status, self.get_status_config(to_status))
        except Exception as e:
            # Notification hooks are external code; a failure never undoes the transition
            jlog(
                "order_notification_failed",
                level="ERROR",
                order_id=order_id,
                from_status=from_status,
                to_status=to_status,
                error=str(e),
            )

    def get_status_history(self, order_id: Any) -> List[StatusChangeLogEntry]:
        if not self.capabilities.has_status_log_table:
            return []
        try:
            return self.order_store.list_status_logs(order_id)
        except StatusLogError as e:
            logger.warning(f"Status history unavailable for order {order_id}: {e}")
            return []

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    def check_timeout_orders(self) -> List[TimeoutInfo]:
        """Active orders whose status auto_timeout has elapsed since updated_at."""
        now = self._now()
        try:
            active = self.order_store.list_active_orders(TERMINAL_STATUSES)
        except sqlite3.Error as e:
            jlog("order_timeout_scan_failed", level="ERROR", error=str(e))
            return []

        configs: Dict[str, StatusConfig] = {}
        timed_out: List[TimeoutInfo] = []
        for order in active:
            if order.status not in configs:
                configs[order.status] = self.get_status_config(order.status)
            threshold = configs[order.status].auto_timeout
            if not threshold or threshold <= 0:
                continue
            updated_at = _to_epoch(order.updated_at)
            if updated_at is None:
                continue
            elapsed = now - updated_at
            if elapsed > threshold:
                timed_out.append(TimeoutInfo(
                    order_id=order.id,
                    current_status=order.status,
                    elapsed_seconds=elapsed,
                    timeout_threshold=threshold,
                ))
        return timed_out

    def handle_timeout_orders(self) -> int:
        """
        Apply the timeout action to every timed-out order.

        Returns the number of orders found timed out, not the number moved.
        """
        timed_out = self.check_timeout_orders()
        for info in timed_out:
            target = self.timeout_actions.get(info.current_status)
            if target is None:
                continue
            try:
                if not self.can_transition_to(info.current_status, target):
                    continue
                if self.transition_status(info.order_id, target, AUTO_TIMEOUT_ACTOR):
                    jlog(
                        "order_timeout_transition",
                        order_id=info.order_id,
                        from_status=info.current_status,
                        to_status=target,
                        elapsed_seconds=info.elapsed_seconds,
                        timeout_threshold=info.timeout_threshold,
                    )
            except (BookingSystemError, sqlite3.Error) as e:
                jlog(
                    "order_timeout_failed",
                    level="ERROR",
                    order_id=info.order_id,
                    from_status=info.current_status,
                    to_status=target,
                    error=str(e),
                )
        return len(timed_out)


def _build_notifier(settings: NotificationSettings) -> Notifier:
    if settings.backend == "webhook" and settings.webhook_url:
        return WebhookNotifier(settings.webhook_url, timeout=settings.timeout_seconds)
    return LoggingNotifier()
