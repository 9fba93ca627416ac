from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional

from core.exceptions import StatusLogError
from oms.order_state import OrderRecord, StatusChangeLogEntry

STATUS_LOG_TABLE = "order_status_logs"


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional schema features found on the orders database."""
    has_status_updated_at: bool = False
    has_status_updated_by: bool = False
    has_status_log_table: bool = False

    @property
    def tracks_status_actor(self) -> bool:
        return self.has_status_updated_at and self.has_status_updated_by


class OrderStore:
    """
    SQLite access to the orders table and the optional status log table.

    Works with both the current schema (status_updated_at/status_updated_by
    columns) and the older one without them; callers pass the probed
    SchemaCapabilities into update_status.
    """

    def __init__(self, db_path: str | Path = "state/orders.sqlite"):
        self.path = Path(db_path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self.path, timeout=30.0)
        con.row_factory = sqlite3.Row
        # WAL lets the timeout sweep read while a request writes
        con.execute("PRAGMA journal_mode=WAL")
        con.execute("PRAGMA synchronous=NORMAL")
        try:
            with con:
                yield con
        finally:
            con.close()

    def probe_capabilities(self) -> SchemaCapabilities:
        with self._get_connection() as con:
            columns = {r["name"] for r in con.execute("PRAGMA table_info(orders)").fetchall()}
            log_table = con.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (STATUS_LOG_TABLE,),
            ).fetchone()
        return SchemaCapabilities(
            has_status_updated_at="status_updated_at" in columns,
            has_status_updated_by="status_updated_by" in columns,
            has_status_log_table=log_table is not None,
        )

    def get_order(self, order_id: Any) -> Optional[OrderRecord]:
        with self._get_connection() as con:
            row = con.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone()
        return OrderRecord.from_row(row) if row else None

    def list_active_orders(self, terminal_statuses: Iterable[str]) -> List[OrderRecord]:
        excluded = sorted(terminal_statuses)
        sql = "SELECT * FROM orders"
        if excluded:
            sql += f" WHERE status NOT IN ({','.join('?' * len(excluded))})"
        with self._get_connection() as con:
            rows = con.execute(sql + " ORDER BY id", excluded).fetchall()
        return [OrderRecord.from_row(r) for r in rows]

    def update_status(
        self,
        order_id: Any,
        new_status: str,
        updated_by: str,
        now: int,
        capabilities: SchemaCapabilities,
    ) -> int:
        """Apply the status write as one UPDATE statement. Returns rows affected."""
        with self._get_connection() as con:
            if capabilities.tracks_status_actor:
                cur = con.execute(
                    """
                    UPDATE orders
                    SET status=?, status_updated_at=?, status_updated_by=?, updated_at=?
                    WHERE id=?
                    """,
                    (new_status, now, updated_by, now, order_id),
                )
            else:
                cur = con.execute(
                    "UPDATE orders SET status=?, updated_at=? WHERE id=?",
                    (new_status, now, order_id),
                )
            return cur.rowcount

    def append_status_log(self, entry: StatusChangeLogEntry) -> None:
        try:
            with self._get_connection() as con:
                con.execute(
                    f"""
                    INSERT INTO {STATUS_LOG_TABLE}
                    (order_id, from_status, to_status, updated_by, created_at)
                    VALUES (?,?,?,?,?)
                    """,
                    (entry.order_id, entry.from_status, entry.to_status,
                     entry.updated_by, entry.created_at),
                )
        except sqlite3.Error as e:
            raise StatusLogError(
                "Status log write failed", context={"order_id": entry.order_id}, cause=e
            ) from e

    def list_status_logs(self, order_id: Any) -> List[StatusChangeLogEntry]:
        try:
            with self._get_connection() as con:
                rows = con.execute(
                    f"""
                    SELECT order_id, from_status, to_status, updated_by, created_at
                    FROM {STATUS_LOG_TABLE} WHERE order_id=? ORDER BY rowid
                    """,
                    (order_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StatusLogError(
                "Status log read failed", context={"order_id": order_id}, cause=e
            ) from e
        return [StatusChangeLogEntry(**dict(r)) for r in rows]

    def create_order(self, status: str, **columns: Any) -> int:
        """Insert an order row; extra keyword arguments map to columns."""
        data = {"status": status, **columns}
        names = ", ".join(data)
        marks = ", ".join("?" * len(data))
        with self._get_connection() as con:
            cur = con.execute(f"INSERT INTO orders ({names}) VALUES ({marks})", tuple(data.values()))
            return int(cur.lastrowid)
