from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class NotificationType(str, Enum):
    SECONDARY_READY = "SECONDARY_READY"
    BUNDLE_CREATED = "BUNDLE_CREATED"
    RESOURCE_CREATED = "RESOURCE_CREATED"
    BALANCE_UPDATED = "BALANCE_UPDATED"


# Event names emitted by older job service deployments.
_LEGACY_TYPES: dict[str, NotificationType] = {
    "WALLET_CREATED": NotificationType.SECONDARY_READY,
    "DEV_WALLET_READY": NotificationType.SECONDARY_READY,
    "BUNDLER_CREATED": NotificationType.BUNDLE_CREATED,
    "TOKEN_CREATED": NotificationType.RESOURCE_CREATED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_TIMESTAMP = TypeAdapter(datetime)


def parse_wire_timestamp(raw: Any) -> datetime:
    """Parse an ISO-8601 string or epoch number; naive values are taken as UTC."""
    try:
        stamp = _TIMESTAMP.validate_python(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid notification timestamp: {raw!r}") from exc
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


class NotificationEvent(BaseModel):
    type: NotificationType
    target_identity_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)

    @staticmethod
    def parse_type(raw: str) -> NotificationType:
        normalized = (raw or "").strip().upper()
        if normalized in _LEGACY_TYPES:
            return _LEGACY_TYPES[normalized]
        try:
            return NotificationType(normalized)
        except ValueError as exc:
            raise ValueError(f"Unknown notification type: {raw!r}") from exc

    @staticmethod
    def from_wire(data: dict[str, Any], *, received_at: Optional[datetime] = None) -> "NotificationEvent":
        """Build an event from a pushed notification body.

        The wire format is flat: ``type``, ``message`` and the target key
        (``user_wallet_id``) sit next to the event-specific fields, which are kept
        as the payload.

        A wire ``timestamp`` becomes ``received_at`` so redeliveries of the same
        event carry the same stamp; receipt time is used only when it is absent.
        """

        if not isinstance(data, dict):
            raise ValueError("Notification body must be a JSON object")

        raw_type = data.get("type")
        if not raw_type:
            raise ValueError("Notification is missing 'type'")

        target = data.get("target_identity_key") or data.get("user_wallet_id")
        if not target:
            raise ValueError("Notification is missing 'user_wallet_id'")

        payload = {
            k: v
            for k, v in data.items()
            if k not in {"type", "message", "user_wallet_id", "target_identity_key", "timestamp"}
        }

        raw_stamp = data.get("timestamp")
        if raw_stamp not in (None, ""):
            stamp = parse_wire_timestamp(raw_stamp)
        else:
            stamp = received_at or _utcnow()

        return NotificationEvent(
            type=NotificationEvent.parse_type(str(raw_type)),
            target_identity_key=str(target),
            payload=payload,
            message=data.get("message"),
            received_at=stamp,
        )


class UIEvent(BaseModel):
    """One UI callback invocation, kept so a polling client can replay them."""

    name: str
    at: datetime = Field(default_factory=_utcnow)
    data: dict[str, Any] = Field(default_factory=dict)
