from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

from core.exceptions import ConfigurationUnavailableError


def _encode(value: Any) -> tuple[str, Optional[str]]:
    if value is None:
        return "null", None
    if isinstance(value, bool):
        return "boolean", "1" if value else "0"
    if isinstance(value, int):
        return "integer", str(value)
    if isinstance(value, float):
        return "float", repr(value)
    if isinstance(value, str):
        return "string", value
    return "json", json.dumps(value)


def _decode(value_type: str, raw: Optional[str]) -> Any:
    if raw is None or value_type == "null":
        return None
    if value_type == "boolean":
        return raw in ("1", "true", "True")
    if value_type == "integer":
        return int(raw)
    if value_type == "float":
        return float(raw)
    if value_type == "json":
        return json.loads(raw)
    return raw


class EAVStore:
    """
    SQLite-backed entity-attribute-value metadata store.

    An entity is addressed by (namespace, entity_key) and carries any number
    of typed attributes. Read failures surface as ConfigurationUnavailableError
    so callers can fall back to built-in defaults.
    """

    def __init__(self, db_path: str | Path = "state/orders.sqlite", create: bool = True):
        self.path = Path(db_path)
        if create:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.init_schema()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self.path, timeout=30.0)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON")
        try:
            with con:
                yield con
        finally:
            con.close()

    def init_schema(self) -> None:
        with self._get_connection() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS eav_entities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    entity_key TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (namespace, entity_key)
                )
                """
            )
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS eav_values (
                    entity_id INTEGER NOT NULL REFERENCES eav_entities(id) ON DELETE CASCADE,
                    attribute TEXT NOT NULL,
                    value_type TEXT NOT NULL,
                    value TEXT,
                    PRIMARY KEY (entity_id, attribute)
                )
                """
            )

    def get_entity(self, key: str, namespace: str) -> Optional[Dict[str, Any]]:
        """Return the entity's attributes, or None when it does not exist."""
        try:
            with self._get_connection() as con:
                row = con.execute(
                    "SELECT id FROM eav_entities WHERE namespace=? AND entity_key=?",
                    (namespace, key),
                ).fetchone()
                if row is None:
                    return None
                values = con.execute(
                    "SELECT attribute, value_type, value FROM eav_values WHERE entity_id=?",
                    (row["id"],),
                ).fetchall()
        except sqlite3.Error as e:
            raise ConfigurationUnavailableError(
                "Metadata store read failed",
                context={"namespace": namespace, "key": key},
                cause=e,
            ) from e
        return {v["attribute"]: _decode(v["value_type"], v["value"]) for v in values}

    def get_all_entities(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        """Return {entity_key: attributes} for every entity in the namespace."""
        try:
            with self._get_connection() as con:
                rows = con.execute(
                    """
                    SELECT e.entity_key, v.attribute, v.value_type, v.value
                    FROM eav_entities e
                    LEFT JOIN eav_values v ON v.entity_id = e.id
                    WHERE e.namespace=?
                    ORDER BY e.id
                    """,
                    (namespace,),
                ).fetchall()
        except sqlite3.Error as e:
            raise ConfigurationUnavailableError(
                "Metadata store read failed",
                context={"namespace": namespace},
                cause=e,
            ) from e

        entities: Dict[str, Dict[str, Any]] = {}
        for r in rows:
            attrs = entities.setdefault(r["entity_key"], {})
            if r["attribute"] is not None:
                attrs[r["attribute"]] = _decode(r["value_type"], r["value"])
        return entities

    def set_entity(self, key: str, namespace: str, attributes: Mapping[str, Any]) -> int:
        """Create or update an entity; given attributes replace existing ones."""
        now = int(time.time())
        with self._get_connection() as con:
            con.execute(
                """
                INSERT INTO eav_entities(namespace, entity_key, created_at, updated_at)
                VALUES(?,?,?,?)
                ON CONFLICT(namespace, entity_key) DO UPDATE SET updated_at=excluded.updated_at
                """,
                (namespace, key, now, now),
            )
            entity_id = con.execute(
                "SELECT id FROM eav_entities WHERE namespace=? AND entity_key=?",
                (namespace, key),
            ).fetchone()["id"]
            for attribute, value in attributes.items():
                value_type, raw = _encode(value)
                con.execute(
                    """
                    INSERT OR REPLACE INTO eav_values(entity_id, attribute, value_type, value)
                    VALUES(?,?,?,?)
                    """,
                    (entity_id, attribute, value_type, raw),
                )
        return entity_id

    def delete_entity(self, key: str, namespace: str) -> bool:
        with self._get_connection() as con:
            cur = con.execute(
                "DELETE FROM eav_entities WHERE namespace=? AND entity_key=?",
                (namespace, key),
            )
            return cur.rowcount > 0
