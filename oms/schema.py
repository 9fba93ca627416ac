"""
Bootstrap DDL for the orders database.

Creates the tables the order status manager reads and writes. Statements are
idempotent; existing tables are left as they are.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Mapping

from oms.eav_store import EAVStore
from oms.order_state import DEFAULT_STATUS_CONFIGS, StatusConfig

STATUS_CONFIG_NAMESPACE = "order_status_config"

_ORDERS_DDL = """
CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number TEXT,
    user_id INTEGER,
    merchant_id INTEGER,
    status TEXT NOT NULL DEFAULT 'attempting',
    created_at INTEGER DEFAULT (strftime('%s', 'now')),
    updated_at INTEGER DEFAULT (strftime('%s', 'now')){extra}
)
"""

_STATUS_TRACKING_COLUMNS = """,
    status_updated_at INTEGER,
    status_updated_by TEXT"""

_STATUS_LOG_DDL = """
CREATE TABLE IF NOT EXISTS order_status_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id INTEGER NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    updated_by TEXT,
    created_at INTEGER NOT NULL
)
"""


def init_order_schema(
    db_path: str | Path,
    with_status_tracking: bool = True,
    with_status_log: bool = True,
) -> None:
    """
    Create the orders table and, optionally, the status log table.

    with_status_tracking=False creates the older orders shape without
    status_updated_at/status_updated_by.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(path)
    try:
        with con:
            con.execute(_ORDERS_DDL.format(extra=_STATUS_TRACKING_COLUMNS if with_status_tracking else ""))
            con.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)")
            if with_status_log:
                con.execute(_STATUS_LOG_DDL)
                con.execute(
                    "CREATE INDEX IF NOT EXISTS idx_order_status_logs_order ON order_status_logs(order_id)"
                )
    finally:
        con.close()


def seed_status_configs(
    store: EAVStore,
    configs: Mapping[str, StatusConfig] = DEFAULT_STATUS_CONFIGS,
    namespace: str = STATUS_CONFIG_NAMESPACE,
) -> int:
    """Write status configs into the metadata store. Returns the count written."""
    for status, config in configs.items():
        attributes = {
            "name": config.name,
            "description": config.description,
            "color": config.color,
            "auto_timeout": config.auto_timeout,
        }
        if config.next_statuses is not None:
            attributes["next_statuses"] = list(config.next_statuses)
        store.set_entity(status, namespace, attributes)
    return len(configs)
