from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


class OrderStatus(str, Enum):
    ATTEMPTING = "attempting"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NO_SHOW = "no_show"
    MERCHANT_UNAVAILABLE = "merchant_unavailable"
    DISPUTE = "dispute"
    EVALUATED = "evaluated"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


# Excluded from the timeout scan
TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
    OrderStatus.EVALUATED.value,
})

# Lookup tier that produced a StatusConfig
SOURCE_STORE = "store"
SOURCE_DEFAULT = "default"
SOURCE_UNKNOWN = "unknown"


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, OrderStatus) else str(status)


def _parse_next_statuses(raw: Any) -> Optional[Tuple[str, ...]]:
    """None stays None (not configured); () means terminal."""
    if raw is None:
        return None
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            raw = json.loads(text)
        else:
            return tuple(s.strip() for s in text.split(",") if s.strip())
    if isinstance(raw, (list, tuple, set, frozenset)):
        return tuple(_status_value(s) for s in raw)
    raise ValueError(f"next_statuses must be a list, got {type(raw).__name__}")


def _parse_timeout(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"auto_timeout must be finite, got {raw!r}")
    seconds = int(value)
    return seconds if seconds > 0 else None


@dataclass(frozen=True)
class StatusConfig:
    """Display and transition metadata for one status value."""
    status: str
    name: str
    description: str = ""
    color: str = "#808080"
    auto_timeout: Optional[int] = None  # seconds
    next_statuses: Optional[Tuple[str, ...]] = None
    source: str = SOURCE_DEFAULT

    @classmethod
    def from_mapping(cls, status: str, data: Mapping[str, Any], source: str = SOURCE_STORE) -> "StatusConfig":
        """
        Build a config from a metadata store record.

        auto_timeout may arrive as a numeric string; next_statuses as a list,
        a JSON array string or a comma-separated string.
        """
        return cls(
            status=status,
            name=str(data.get("name") or status),
            description=str(data.get("description") or ""),
            color=str(data.get("color") or "#808080"),
            auto_timeout=_parse_timeout(data.get("auto_timeout")),
            next_statuses=_parse_next_statuses(data.get("next_statuses")),
            source=source,
        )

    def allows(self, target_status: str) -> Optional[bool]:
        """True/False when next_statuses is configured, None when it is not."""
        if self.next_statuses is None:
            return None
        return _status_value(target_status) in self.next_statuses

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_STATUS_CONFIGS: Mapping[str, StatusConfig] = MappingProxyType({
    "attempting": StatusConfig(
        status="attempting",
        name="Attempting contact",
        description="Order just placed, the system is trying to reach the merchant",
        color="#FFA500",
        auto_timeout=300,
        next_statuses=("pending", "cancelled", "merchant_unavailable"),
    ),
    "pending": StatusConfig(
        status="pending",
        name="Awaiting confirmation",
        description="Merchant notified, waiting for the merchant to confirm",
        color="#FFD700",
        auto_timeout=1800,
        next_statuses=("confirmed", "rejected", "cancelled"),
    ),
    "confirmed": StatusConfig(
        status="confirmed",
        name="Confirmed",
        description="Merchant confirmed the order, waiting for service to start",
        color="#32CD32",
        next_statuses=("in_progress", "cancelled", "no_show"),
    ),
    "completed": StatusConfig(
        status="completed",
        name="Completed",
        description="Service finished, waiting for evaluation",
        color="#228B22",
        next_statuses=("evaluated", "dispute"),
    ),
    "cancelled": StatusConfig(
        status="cancelled",
        name="Cancelled",
        description="Order was cancelled",
        color="#DC143C",
        next_statuses=(),
    ),
})


def default_status_config(status: Any) -> Optional[StatusConfig]:
    return DEFAULT_STATUS_CONFIGS.get(_status_value(status))


def unknown_status_config(status: Any) -> StatusConfig:
    """Generic shape for a status nobody configured."""
    value = _status_value(status)
    return StatusConfig(
        status=value,
        name=value,
        description="Unknown status",
        color="#808080",
        auto_timeout=None,
        next_statuses=(),
        source=SOURCE_UNKNOWN,
    )


@dataclass
class OrderRecord:
    id: int
    status: str
    created_at: Any = None
    updated_at: Any = None
    status_updated_at: Any = None
    status_updated_by: Optional[str] = None
    order_number: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _CORE_FIELDS = ("id", "status", "created_at", "updated_at",
                    "status_updated_at", "status_updated_by", "order_number")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderRecord":
        data = dict(row)
        core = {k: data.pop(k) for k in cls._CORE_FIELDS if k in data}
        return cls(**core, extra=data)

    @property
    def display_ref(self) -> str:
        return self.order_number or str(self.id)

    def with_status(self, status: str) -> "OrderRecord":
        return replace(self, status=status)

    def to_dict(self) -> Dict[str, Any]:
        rec = {k: getattr(self, k) for k in self._CORE_FIELDS}
        rec.update(self.extra)
        return rec


@dataclass(frozen=True)
class StatusChangeLogEntry:
    order_id: int
    from_status: str
    to_status: str
    updated_by: str
    created_at: int  # epoch seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TimeoutInfo:
    order_id: int
    current_status: str
    elapsed_seconds: int
    timeout_threshold: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class StatusDisplayInfo:
    status: str
    name: str
    description: str
    color: str
    auto_timeout: Optional[int]

    @classmethod
    def from_config(cls, config: StatusConfig) -> "StatusDisplayInfo":
        return cls(
            status=config.status,
            name=config.name or config.status,
            description=config.description or "Unknown status",
            color=config.color or "#808080",
            auto_timeout=config.auto_timeout,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
