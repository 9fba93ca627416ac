"""
Order status notifications.

NotificationDispatcher decides which audiences hear about a status change
(NotificationRules) and hands the change to a Notifier. LoggingNotifier only
records the hook calls; WebhookNotifier posts them to an HTTP endpoint that
fans out to the bot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

import requests

from core.exceptions import NotificationError
from core.http_client import HTTPClient, get_http_client
from core.structured_log import jlog
from oms.order_state import OrderRecord, StatusConfig

logger = logging.getLogger(__name__)

AUDIENCE_USER = "user"
AUDIENCE_MERCHANT = "merchant"
AUDIENCE_ADMIN = "admin"


@dataclass(frozen=True)
class NotificationRules:
    notify_user: FrozenSet[str] = field(default_factory=lambda: frozenset(
        {"pending", "confirmed", "rejected", "cancelled", "completed"}))
    notify_merchant: FrozenSet[str] = field(default_factory=lambda: frozenset(
        {"attempting", "cancelled", "completed", "dispute"}))
    notify_admin: FrozenSet[str] = field(default_factory=lambda: frozenset(
        {"dispute", "interrupted", "no_show"}))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "NotificationRules":
        defaults = cls()
        return cls(
            notify_user=frozenset(data.get("notify_user", defaults.notify_user)),
            notify_merchant=frozenset(data.get("notify_merchant", defaults.notify_merchant)),
            notify_admin=frozenset(data.get("notify_admin", defaults.notify_admin)),
        )

    def audiences_for(self, status: str) -> List[str]:
        audiences = []
        if status in self.notify_user:
            audiences.append(AUDIENCE_USER)
        if status in self.notify_merchant:
            audiences.append(AUDIENCE_MERCHANT)
        if status in self.notify_admin:
            audiences.append(AUDIENCE_ADMIN)
        return audiences


class Notifier:
    """Delivery hooks, one per audience."""

    def notify_user(self, order: OrderRecord, new_status: str, status_config: StatusConfig) -> None:
        raise NotImplementedError

    def notify_merchant(self, order: OrderRecord, new_status: str, status_config: StatusConfig) -> None:
        raise NotImplementedError

    def notify_admin(self, order: OrderRecord, new_status: str, status_config: StatusConfig) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Stub delivery: records each hook call as a structured event."""

    def _record(self, audience: str, order: OrderRecord, new_status: str, status_config: StatusConfig) -> None:
        jlog(
            "order_notification_sent",
            audience=audience,
            order_id=order.id,
            order_ref=order.display_ref,
            status=new_status,
            status_name=status_config.name,
            backend="log",
        )

    def notify_user(self, order, new_status, status_config):
        self._record(AUDIENCE_USER, order, new_status, status_config)

    def notify_merchant(self, order, new_status, status_config):
        self._record(AUDIENCE_MERCHANT, order, new_status, status_config)

    def notify_admin(self, order, new_status, status_config):
        self._record(AUDIENCE_ADMIN, order, new_status, status_config)


class WebhookNotifier(Notifier):
    """Posts status changes as JSON to an HTTP endpoint."""

    def __init__(self, url: str, client: Optional[HTTPClient] = None, timeout: Optional[int] = None):
        self.url = url
        self.client = client or get_http_client()
        self.timeout = timeout

    def _post(self, audience: str, order: OrderRecord, new_status: str, status_config: StatusConfig) -> None:
        payload = {
            "audience": audience,
            "order_id": order.id,
            "order_number": order.order_number,
            "user_id": order.extra.get("user_id"),
            "merchant_id": order.extra.get("merchant_id"),
            "status": new_status,
            "status_name": status_config.name,
            "status_color": status_config.color,
        }
        try:
            response = self.client.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise NotificationError(
                "Webhook delivery failed",
                context={"audience": audience, "order_id": order.id},
                cause=e,
            ) from e
        if not 200 <= response.status_code < 300:
            raise NotificationError(
                "Webhook rejected notification",
                context={"audience": audience, "order_id": order.id, "http_status": response.status_code},
            )
        jlog("order_notification_sent", audience=audience, order_id=order.id,
             status=new_status, backend="webhook")

    def notify_user(self, order, new_status, status_config):
        self._post(AUDIENCE_USER, order, new_status, status_config)

    def notify_merchant(self, order, new_status, status_config):
        self._post(AUDIENCE_MERCHANT, order, new_status, status_config)

    def notify_admin(self, order, new_status, status_config):
        self._post(AUDIENCE_ADMIN, order, new_status, status_config)


class NotificationDispatcher:
    def __init__(self, rules: Optional[NotificationRules] = None, notifier: Optional[Notifier] = None):
        self.rules = rules or NotificationRules()
        self.notifier = notifier or LoggingNotifier()

    def dispatch(self, order: OrderRecord, new_status: str, status_config: StatusConfig) -> List[str]:
        """
        Call the notifier hook for every audience the rules select.

        A failing audience does not stop the others; the first failure is
        re-raised after all hooks ran. Returns the audiences delivered.
        """
        hooks = {
            AUDIENCE_USER: self.notifier.notify_user,
            AUDIENCE_MERCHANT: self.notifier.notify_merchant,
            AUDIENCE_ADMIN: self.notifier.notify_admin,
        }
        delivered: List[str] = []
        first_error: Optional[NotificationError] = None
        for audience in self.rules.audiences_for(new_status):
            try:
                hooks[audience](order, new_status, status_config)
                delivered.append(audience)
            except NotificationError as e:
                logger.warning(f"Notification to {audience} failed for order {order.id}: {e}")
                first_error = first_error or e
        if first_error is not None:
            raise first_error
        return delivered
