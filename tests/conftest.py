"""
Pytest configuration and shared fixtures for booking order tests.
"""

import os
import sys
import tempfile
from pathlib import Path

# Structured logs go to a throwaway directory; must be set before core imports
os.environ.setdefault("BOOKING_LOG_DIR", tempfile.mkdtemp(prefix="booking-logs-"))

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config.settings_loader import reset_settings_cache
from core.exceptions import NotificationError
from oms.eav_store import EAVStore
from oms.notifications import NotificationDispatcher, Notifier
from oms.order_status import OrderStatusService
from oms.order_store import OrderStore
from oms.schema import init_order_schema

NOW = 1_700_000_000


class FakeClock:
    """Settable epoch-seconds clock."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int) -> None:
        self.now += seconds


class RecordingNotifier(Notifier):
    """Collects hook calls; optionally fails for one audience."""

    def __init__(self, fail_on: str | None = None):
        self.calls = []
        self.fail_on = fail_on

    def _hook(self, audience, order, new_status, status_config):
        if audience == self.fail_on:
            raise NotificationError("delivery failed", context={"audience": audience})
        self.calls.append((audience, order.id, new_status, status_config.name))

    def notify_user(self, order, new_status, status_config):
        self._hook("user", order, new_status, status_config)

    def notify_merchant(self, order, new_status, status_config):
        self._hook("merchant", order, new_status, status_config)

    def notify_admin(self, order, new_status, status_config):
        self._hook("admin", order, new_status, status_config)


@pytest.fixture(autouse=True)
def _fresh_settings_cache():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    """Orders database with status tracking columns and the status log table."""
    path = tmp_path / "state" / "orders.sqlite"
    init_order_schema(path)
    return path


@pytest.fixture
def legacy_db_path(tmp_path):
    """Older orders shape: no status_updated_* columns, no status log table."""
    path = tmp_path / "state" / "legacy.sqlite"
    init_order_schema(path, with_status_tracking=False, with_status_log=False)
    return path


@pytest.fixture
def order_store(db_path):
    return OrderStore(db_path)


@pytest.fixture
def eav_store(db_path):
    return EAVStore(db_path)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(order_store, eav_store, notifier, clock):
    return OrderStatusService(
        order_store,
        eav_store=eav_store,
        dispatcher=NotificationDispatcher(notifier=notifier),
        clock=clock,
    )
