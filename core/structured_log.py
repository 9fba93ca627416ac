"""
Order event log.

Every business event of the status machine is written as one JSON line to
``events.jsonl`` under ``BOOKING_LOG_DIR``. Order context fields come first
in a fixed order so a single order's lifecycle can be followed with grep
or read back with ``read_recent_logs(order_id=...)``.
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional


LOG_DIR = Path(os.getenv("BOOKING_LOG_DIR", "logs"))
LOG_FILE = LOG_DIR / "events.jsonl"

MAX_LOG_BYTES = int(os.getenv("BOOKING_LOG_MAX_BYTES", 10 * 1024 * 1024))  # 10MB default
LOG_BACKUP_COUNT = int(os.getenv("BOOKING_LOG_BACKUP_COUNT", 5))

# Emitted right after ts/level/event when present
ORDER_FIELDS = ("order_id", "from_status", "to_status", "updated_by")

logger = logging.getLogger(__name__)

_event_logger: Optional[logging.Logger] = None


def _get_event_logger() -> logging.Logger:
    """File-only logger writing raw JSON lines with size-based rotation."""
    global _event_logger
    if _event_logger is None:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            str(LOG_FILE),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        event_logger = logging.getLogger("booking.events")
        event_logger.setLevel(logging.DEBUG)
        event_logger.propagate = False
        event_logger.addHandler(handler)
        _event_logger = event_logger
    return _event_logger


def _level_no(level: str) -> int:
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else logging.INFO


def build_record(event: str, level: str = "INFO", **fields: Any) -> Dict[str, Any]:
    """Order of keys: ts, level, event, order context, then everything else."""
    rec: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": level.upper(),
        "event": event,
    }
    for key in ORDER_FIELDS:
        if key in fields:
            rec[key] = fields.pop(key)
    rec.update(fields)
    return rec


def jlog(event: str, level: str = "INFO", **fields: Any) -> None:
    """
    Record one order event.

    Args:
        event: Event name, e.g. ``order_status_changed``
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        **fields: Event payload; order_id/from_status/to_status/updated_by
            are promoted to the front of the record
    """
    rec = build_record(event, level, **fields)
    levelno = _level_no(rec["level"])
    _get_event_logger().log(levelno, json.dumps(rec, default=str))

    context = " ".join(f"{k}={rec[k]}" for k in ORDER_FIELDS if k in rec)
    logger.log(levelno, "%s %s", event, context or "-")


def read_recent_logs(
    count: int = 100,
    level: Optional[str] = None,
    event: Optional[str] = None,
    order_id: Any = None,
) -> List[Dict[str, Any]]:
    """
    Read the most recent events back from the current log file.

    Filters combine; ``order_id`` matches by string form so ids read from
    SQLite and ids typed by an operator compare equal.

    Returns:
        Matching entries, oldest first
    """
    if not LOG_FILE.exists():
        return []

    with LOG_FILE.open("r", encoding="utf-8") as f:
        lines = f.readlines()

    entries: List[Dict[str, Any]] = []
    for line in reversed(lines):
        if len(entries) >= count:
            break
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if level is not None and entry.get("level") != level.upper():
            continue
        if event is not None and entry.get("event") != event:
            continue
        if order_id is not None and str(entry.get("order_id")) != str(order_id):
            continue
        entries.append(entry)

    entries.reverse()
    return entries
