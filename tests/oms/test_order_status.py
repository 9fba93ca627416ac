"""
Tests for oms/order_status.py - status metadata, transitions and timeouts.
"""
import sqlite3
from datetime import datetime, timezone

import pytest

from core.exceptions import IllegalTransitionError, OrderNotFoundError
from core.structured_log import read_recent_logs
from oms.eav_store import EAVStore
from oms.notifications import LoggingNotifier, NotificationDispatcher
from oms.order_state import OrderStatus, SOURCE_DEFAULT, SOURCE_STORE, SOURCE_UNKNOWN
from oms.order_status import AUTO_TIMEOUT_ACTOR, OrderStatusService
from oms.order_store import OrderStore
from oms.schema import STATUS_CONFIG_NAMESPACE

NS = STATUS_CONFIG_NAMESPACE


def _status_log_rows(path):
    con = sqlite3.connect(path)
    try:
        return con.execute(
            "SELECT order_id, from_status, to_status, updated_by, created_at FROM order_status_logs"
        ).fetchall()
    finally:
        con.close()


def _orders_snapshot(path):
    con = sqlite3.connect(path)
    try:
        return con.execute("SELECT * FROM orders ORDER BY id").fetchall()
    finally:
        con.close()


class TestStatusConfigLookup:
    def test_store_record_wins(self, service, eav_store):
        eav_store.set_entity("pending", NS, {"name": "Custom pending", "auto_timeout": 60,
                                             "next_statuses": ["confirmed"]})
        config = service.get_status_config("pending")
        assert config.name == "Custom pending"
        assert config.auto_timeout == 60
        assert config.source == SOURCE_STORE

    def test_known_status_without_record_uses_default(self, service):
        config = service.get_status_config("attempting")
        assert config.source == SOURCE_DEFAULT
        assert config.auto_timeout == 300

    def test_unknown_status_uses_generic_shape(self, service):
        config = service.get_status_config("rejected")
        assert config.source == SOURCE_UNKNOWN
        assert config.name == "rejected"
        assert config.next_statuses == ()
        assert config.auto_timeout is None

    def test_enum_members_are_accepted(self, service):
        assert service.get_status_config(OrderStatus.PENDING).status == "pending"

    def test_unreadable_store_falls_back_to_defaults(self, order_store, tmp_path, clock):
        broken_path = tmp_path / "no_eav.sqlite"
        sqlite3.connect(broken_path).close()
        service = OrderStatusService(order_store, eav_store=EAVStore(broken_path, create=False), clock=clock)

        config = service.get_status_config("pending")
        assert config.source == SOURCE_DEFAULT
        assert config.next_statuses == ("confirmed", "rejected", "cancelled")
        assert service.get_status_config("mystery").source == SOURCE_UNKNOWN
        assert set(service.get_all_status_configs()) == {
            "attempting", "pending", "confirmed", "completed", "cancelled"
        }

    def test_malformed_record_falls_back(self, service, eav_store):
        eav_store.set_entity("pending", NS, {"auto_timeout": "soon"})
        config = service.get_status_config("pending")
        assert config.source == SOURCE_DEFAULT

    @pytest.mark.parametrize("raw", ["1e400", "inf", "-inf", "nan"])
    def test_non_finite_timeout_record_falls_back(self, service, eav_store, raw):
        eav_store.set_entity("pending", NS, {"auto_timeout": raw})
        config = service.get_status_config("pending")
        assert config.source == SOURCE_DEFAULT
        assert config.auto_timeout == 1800
        assert service.get_all_status_configs()["pending"].source == SOURCE_DEFAULT

    def test_returned_configs_cannot_change_other_services(self, order_store, clock):
        first = OrderStatusService(order_store, clock=clock)
        configs = first.get_all_status_configs()
        with pytest.raises(AttributeError):
            configs["cancelled"].next_statuses.append("pending")
        with pytest.raises(AttributeError):
            first.get_status_config("attempting").next_statuses.append("completed")
        configs["cancelled"] = configs["pending"]

        second = OrderStatusService(order_store, clock=clock)
        assert second.can_transition_to("cancelled", "pending") is False
        assert second.can_transition_to("attempting", "completed") is False
        assert first.can_transition_to("cancelled", "pending") is False

    def test_without_store_uses_defaults(self, order_store, clock):
        service = OrderStatusService(order_store, clock=clock)
        assert service.get_status_config("confirmed").source == SOURCE_DEFAULT

    def test_get_all_merges_store_over_defaults(self, service, eav_store):
        eav_store.set_entity("pending", NS, {"name": "Store pending"})
        eav_store.set_entity("dispute", NS, {"name": "Dispute", "next_statuses": ["completed"]})
        configs = service.get_all_status_configs()
        assert configs["pending"].name == "Store pending"
        assert configs["dispute"].next_statuses == ("completed",)
        assert configs["attempting"].source == SOURCE_DEFAULT

    def test_display_info(self, service):
        info = service.get_status_display_info("cancelled")
        assert info.color == "#DC143C"
        assert info.auto_timeout is None
        assert service.get_status_display_info("weird").description == "Unknown status"


class TestCanTransitionTo:
    def test_default_machine(self, service):
        assert service.can_transition_to("attempting", "pending") is True
        assert service.can_transition_to("cancelled", "pending") is False
        assert service.can_transition_to("confirmed", "evaluated") is False
        assert service.can_transition_to("completed", "dispute") is True

    def test_unknown_status_allows_nothing(self, service):
        assert service.can_transition_to("rejected", "pending") is False

    def test_missing_next_statuses_is_permissive(self, service, eav_store):
        eav_store.set_entity("pending", NS, {"name": "No transitions configured"})
        assert service.can_transition_to("pending", "evaluated") is True
        events = read_recent_logs(count=5, event="order_status_config_missing_transitions")
        assert events and events[-1]["from_status"] == "pending"

    def test_strict_mode_denies_missing_next_statuses(self, order_store, eav_store, clock):
        eav_store.set_entity("pending", NS, {"name": "No transitions configured"})
        service = OrderStatusService(order_store, eav_store=eav_store, strict_transitions=True, clock=clock)
        assert service.can_transition_to("pending", "evaluated") is False
        assert service.can_transition_to("attempting", "pending") is True


class TestTransitionStatus:
    def test_missing_order_raises_and_writes_nothing(self, service, order_store, db_path):
        order_store.create_order("pending", updated_at=1)
        before = _orders_snapshot(db_path)
        with pytest.raises(OrderNotFoundError) as exc_info:
            service.transition_status(999, "confirmed", "merchant_42")
        assert exc_info.value.context["order_id"] == 999
        assert _orders_snapshot(db_path) == before
        assert _status_log_rows(db_path) == []

    def test_illegal_target_raises_and_writes_nothing(self, service, order_store, db_path, notifier):
        order_id = order_store.create_order("cancelled", updated_at=1)
        before = _orders_snapshot(db_path)
        with pytest.raises(IllegalTransitionError) as exc_info:
            service.transition_status(order_id, "pending", "merchant_42")
        assert exc_info.value.from_status == "cancelled"
        assert exc_info.value.to_status == "pending"
        assert _orders_snapshot(db_path) == before
        assert _status_log_rows(db_path) == []
        assert notifier.calls == []

    def test_success_updates_only_target_order(self, service, order_store, db_path, clock):
        target = order_store.create_order("pending", updated_at=1)
        other = order_store.create_order("pending", updated_at=1)

        assert service.transition_status(target, "confirmed", "merchant_42") is True

        moved = order_store.get_order(target)
        assert moved.status == "confirmed"
        assert moved.updated_at == clock.now
        assert moved.status_updated_at == clock.now
        assert moved.status_updated_by == "merchant_42"
        untouched = order_store.get_order(other)
        assert untouched.status == "pending"
        assert untouched.updated_at == 1

    def test_success_writes_one_log_entry(self, service, order_store, db_path, clock):
        order_id = order_store.create_order("pending", updated_at=1)
        service.transition_status(order_id, "confirmed", "merchant_42")
        assert _status_log_rows(db_path) == [(order_id, "pending", "confirmed", "merchant_42", clock.now)]

    def test_default_actor_is_system(self, service, order_store):
        order_id = order_store.create_order("attempting", updated_at=1)
        service.transition_status(order_id, "pending")
        assert order_store.get_order(order_id).status_updated_by == "system"

    def test_legacy_schema_without_log_table(self, legacy_db_path, clock):
        store = OrderStore(legacy_db_path)
        service = OrderStatusService(store, clock=clock)
        order_id = store.create_order("pending", updated_at=1)

        assert service.transition_status(order_id, "confirmed", "merchant_42") is True

        order = store.get_order(order_id)
        assert order.status == "confirmed"
        assert order.updated_at == clock.now
        assert order.status_updated_by is None
        assert service.get_status_history(order_id) == []
        skipped = read_recent_logs(count=5, event="order_status_log_skipped")
        assert skipped and skipped[-1]["order_id"] == order_id

    def test_log_failure_does_not_fail_transition(self, service, order_store, db_path):
        order_id = order_store.create_order("pending", updated_at=1)
        con = sqlite3.connect(db_path)
        con.execute("DROP TABLE order_status_logs")
        con.commit()
        con.close()

        # capabilities were probed at construction and still claim the table
        assert service.capabilities.has_status_log_table is True
        assert service.transition_status(order_id, "confirmed", "merchant_42") is True
        assert order_store.get_order(order_id).status == "confirmed"
        failures = read_recent_logs(count=5, event="order_status_log_failed")
        assert failures and failures[-1]["order_id"] == order_id

    def test_refresh_capabilities_sees_dropped_table(self, service, db_path):
        con = sqlite3.connect(db_path)
        con.execute("DROP TABLE order_status_logs")
        con.commit()
        con.close()
        assert service.refresh_capabilities().has_status_log_table is False

    def test_notifications_follow_rules(self, service, order_store, notifier):
        order_id = order_store.create_order("pending", updated_at=1)
        service.transition_status(order_id, "confirmed", "merchant_42")
        assert notifier.calls == [("user", order_id, "confirmed", "Confirmed")]

        service.transition_status(order_id, "cancelled", "user_1")
        assert ("merchant", order_id, "cancelled", "Cancelled") in notifier.calls
        assert ("user", order_id, "cancelled", "Cancelled") in notifier.calls

    def test_notification_failure_does_not_fail_transition(self, order_store, eav_store, clock):
        class BrokenNotifier(LoggingNotifier):
            def notify_user(self, order, new_status, status_config):
                raise RuntimeError("bot API down")

        service = OrderStatusService(
            order_store,
            eav_store=eav_store,
            dispatcher=NotificationDispatcher(notifier=BrokenNotifier()),
            clock=clock,
        )
        order_id = order_store.create_order("pending", updated_at=1)

        assert service.transition_status(order_id, "confirmed", "merchant_42") is True
        assert order_store.get_order(order_id).status == "confirmed"
        failures = read_recent_logs(count=5, event="order_notification_failed")
        assert failures and failures[-1]["order_id"] == order_id
        assert "bot API down" in failures[-1]["error"]

    def test_notifications_disabled(self, order_store, clock):
        service = OrderStatusService(order_store, dispatcher=None, clock=clock)
        order_id = order_store.create_order("pending", updated_at=1)
        assert service.transition_status(order_id, "confirmed", "merchant_42") is True

    def test_history(self, service, order_store):
        order_id = order_store.create_order("attempting", updated_at=1)
        service.transition_status(order_id, "pending", "bot")
        service.transition_status(order_id, "confirmed", "merchant_42")
        history = service.get_status_history(order_id)
        assert [(h.from_status, h.to_status) for h in history] == [
            ("attempting", "pending"),
            ("pending", "confirmed"),
        ]


class TestCheckTimeoutOrders:
    def test_threshold_boundaries(self, service, order_store, clock):
        late = order_store.create_order("attempting", updated_at=clock.now - 301)
        order_store.create_order("attempting", updated_at=clock.now - 299)
        order_store.create_order("attempting", updated_at=clock.now - 300)

        timed_out = service.check_timeout_orders()

        assert [t.order_id for t in timed_out] == [late]
        assert timed_out[0].elapsed_seconds == 301
        assert timed_out[0].timeout_threshold == 300
        assert timed_out[0].current_status == "attempting"

    def test_terminal_statuses_excluded(self, service, order_store, eav_store, clock):
        for status in ("completed", "cancelled", "evaluated"):
            eav_store.set_entity(status, NS, {"name": status, "auto_timeout": 10, "next_statuses": []})
            order_store.create_order(status, updated_at=clock.now - 100_000)
        assert service.check_timeout_orders() == []

    def test_statuses_without_timeout_ignored(self, service, order_store, clock):
        order_store.create_order("confirmed", updated_at=clock.now - 100_000)
        order_store.create_order("rejected", updated_at=clock.now - 100_000)
        assert service.check_timeout_orders() == []

    def test_store_timeout_overrides_default(self, service, order_store, eav_store, clock):
        eav_store.set_entity("pending", NS, {"auto_timeout": "60", "next_statuses": ["cancelled"]})
        order_id = order_store.create_order("pending", updated_at=clock.now - 61)
        assert [t.order_id for t in service.check_timeout_orders()] == [order_id]

    def test_iso_text_timestamps(self, service, order_store, clock):
        stamp = datetime.fromtimestamp(clock.now - 400, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        order_id = order_store.create_order("attempting", updated_at=stamp)
        order_store.create_order("attempting", updated_at="not a date")
        assert [t.order_id for t in service.check_timeout_orders()] == [order_id]

    def test_scan_is_read_only(self, service, order_store, db_path, clock):
        order_store.create_order("attempting", updated_at=clock.now - 1000)
        before = _orders_snapshot(db_path)
        service.check_timeout_orders()
        assert _orders_snapshot(db_path) == before


class TestHandleTimeoutOrders:
    def test_applies_timeout_actions(self, service, order_store, db_path, clock):
        attempting = order_store.create_order("attempting", updated_at=clock.now - 400)
        pending = order_store.create_order("pending", updated_at=clock.now - 1801)

        assert service.handle_timeout_orders() == 2

        assert order_store.get_order(attempting).status == "merchant_unavailable"
        assert order_store.get_order(pending).status == "cancelled"
        actors = {row[3] for row in _status_log_rows(db_path)}
        assert actors == {AUTO_TIMEOUT_ACTOR}

    def test_status_without_action_counted_but_untouched(self, service, order_store, eav_store, clock):
        eav_store.set_entity("confirmed", NS, {"auto_timeout": 60, "next_statuses": ["in_progress"]})
        order_id = order_store.create_order("confirmed", updated_at=clock.now - 61)
        assert service.handle_timeout_orders() == 1
        assert order_store.get_order(order_id).status == "confirmed"

    def test_disallowed_target_is_skipped(self, service, order_store, eav_store, clock):
        eav_store.set_entity("pending", NS, {"auto_timeout": 60, "next_statuses": ["confirmed"]})
        order_id = order_store.create_order("pending", updated_at=clock.now - 61)
        assert service.handle_timeout_orders() == 1
        assert order_store.get_order(order_id).status == "pending"

    def test_overflowing_timeout_record_does_not_break_sweep(self, service, order_store, eav_store, clock):
        eav_store.set_entity("pending", NS, {"auto_timeout": "1e400"})
        stale = order_store.create_order("pending", updated_at=clock.now - 1801)
        fresh = order_store.create_order("pending", updated_at=clock.now - 60)

        assert [t.order_id for t in service.check_timeout_orders()] == [stale]
        assert service.handle_timeout_orders() == 1
        assert order_store.get_order(stale).status == "cancelled"
        assert order_store.get_order(fresh).status == "pending"

    def test_custom_timeout_actions(self, order_store, eav_store, clock):
        service = OrderStatusService(
            order_store,
            eav_store=eav_store,
            timeout_actions={"attempting": "cancelled"},
            clock=clock,
        )
        order_id = order_store.create_order("attempting", updated_at=clock.now - 400)
        service.handle_timeout_orders()
        assert order_store.get_order(order_id).status == "cancelled"

    def test_failure_on_one_order_continues_loop(self, service, order_store, clock, monkeypatch):
        first = order_store.create_order("attempting", updated_at=clock.now - 400)
        second = order_store.create_order("attempting", updated_at=clock.now - 400)
        real_transition = service.transition_status

        def flaky(order_id, new_status, updated_by="system"):
            if order_id == first:
                raise OrderNotFoundError(order_id)
            return real_transition(order_id, new_status, updated_by)

        monkeypatch.setattr(service, "transition_status", flaky)

        assert service.handle_timeout_orders() == 2
        assert order_store.get_order(first).status == "attempting"
        assert order_store.get_order(second).status == "merchant_unavailable"
        failures = read_recent_logs(count=5, event="order_timeout_failed")
        assert failures and failures[-1]["order_id"] == first

    def test_nothing_timed_out(self, service, order_store, clock):
        order_store.create_order("attempting", updated_at=clock.now - 10)
        assert service.handle_timeout_orders() == 0
