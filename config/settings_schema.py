"""
Typed Settings Schema (Pydantic)
================================

Provides typed, validated configuration for the booking order system.

Usage:
    from config.settings_schema import load_validated_settings

    settings = load_validated_settings()

    db_path = settings.orders.db_path
    actions = settings.orders.timeout_actions
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from config.settings_loader import load_settings
from core.exceptions import SettingsValidationError

logger = logging.getLogger(__name__)


# ============================================================================
# Schema Definitions
# ============================================================================

class SystemConfig(BaseModel):
    """System-level configuration."""
    name: str = Field(default="booking-orders", description="System name")
    timezone: str = Field(default="Asia/Shanghai", description="Display timezone")


class OrdersSettings(BaseModel):
    """Order store and status machine configuration."""
    db_path: str = Field(default="state/orders.sqlite", min_length=1)
    metadata_db_path: Optional[str] = Field(
        default=None,
        description="EAV metadata database, defaults to db_path",
    )
    status_namespace: str = Field(default="order_status_config", min_length=1)
    strict_transitions: bool = False
    timeout_actions: Dict[str, str] = Field(
        default_factory=lambda: {
            "attempting": "merchant_unavailable",
            "pending": "cancelled",
        }
    )

    @property
    def resolved_metadata_db_path(self) -> str:
        return self.metadata_db_path or self.db_path


class NotificationRulesConfig(BaseModel):
    """Statuses that trigger a notification per audience."""
    notify_user: List[str] = Field(
        default_factory=lambda: ["pending", "confirmed", "rejected", "cancelled", "completed"]
    )
    notify_merchant: List[str] = Field(
        default_factory=lambda: ["attempting", "cancelled", "completed", "dispute"]
    )
    notify_admin: List[str] = Field(
        default_factory=lambda: ["dispute", "interrupted", "no_show"]
    )


class NotificationSettings(BaseModel):
    """Notification dispatch configuration."""
    enabled: bool = True
    backend: Literal["log", "webhook"] = "log"
    webhook_url: Optional[str] = None
    timeout_seconds: int = Field(default=10, ge=1, le=120)
    rules: NotificationRulesConfig = Field(default_factory=NotificationRulesConfig)

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _webhook_needs_url(self) -> "NotificationSettings":
        if self.backend == "webhook" and not self.webhook_url:
            raise ValueError("backend 'webhook' requires webhook_url")
        return self


class BookingSettings(BaseModel):
    """Complete settings schema."""
    model_config = ConfigDict(extra="allow")

    system: SystemConfig = Field(default_factory=SystemConfig)
    orders: OrdersSettings = Field(default_factory=OrdersSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)


# ============================================================================
# Validation Functions
# ============================================================================

def load_validated_settings(raw: Optional[Dict[str, Any]] = None) -> BookingSettings:
    """
    Load and validate settings from base.yaml.

    Args:
        raw: Already-loaded settings dict; read from base.yaml when None

    Returns:
        Validated BookingSettings object

    Raises:
        SettingsValidationError: If settings are invalid
    """
    if raw is None:
        raw = load_settings()
    try:
        return BookingSettings(**raw)
    except ValidationError as e:
        logger.error(f"Settings validation failed: {e}")
        raise SettingsValidationError(
            "Settings validation failed",
            context={"errors": len(e.errors())},
            cause=e,
        ) from e
