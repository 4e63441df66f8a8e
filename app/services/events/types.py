"""Event types and data structures for the event system.

An Event is a named, timestamped notification with a JSON payload and an
optional organization/user scope. Events are immutable; the ``with_*``
helpers return modified copies.
"""

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel


class EventPayloadError(ValueError):
    """Raised when a payload value cannot be represented as JSON."""


def _ensure_json(value: Any) -> Any:
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as exc:
        raise EventPayloadError(f"Payload is not JSON serializable: {exc}") from exc


@dataclass(frozen=True)
class EventPayload:
    """Wrapper around the JSON value carried by an event."""

    data: Any = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "EventPayload":
        return cls(data={})

    @classmethod
    def from_serializable(cls, value: Any) -> "EventPayload":
        """Build a payload from a pydantic model, dataclass or plain value."""
        if isinstance(value, BaseModel):
            return cls(data=value.model_dump(mode="json"))
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            value = dataclasses.asdict(value)
        return cls(data=_ensure_json(value))


@dataclass(frozen=True)
class Event:
    """Represents something that happened in the platform.

    Naming convention: ``{entity}.{action}``, e.g. ``project.created``.
    """

    name: str
    payload: EventPayload = field(default_factory=EventPayload.empty)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    organization_uuid: str | None = None
    user_uuid: str | None = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Event name is required")
        if not isinstance(self.payload, EventPayload):
            object.__setattr__(self, "payload", EventPayload(self.payload))

    def with_organization(self, organization_uuid: str) -> "Event":
        return dataclasses.replace(self, organization_uuid=str(organization_uuid))

    def with_user(self, user_uuid: str) -> "Event":
        return dataclasses.replace(self, user_uuid=str(user_uuid))

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
            "organization_uuid": self.organization_uuid,
            "user_uuid": self.user_uuid,
            "payload": self.payload.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        timestamp = data.get("timestamp")
        return cls(
            name=data["name"],
            payload=EventPayload(data.get("payload") if data.get("payload") is not None else {}),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(UTC),
            organization_uuid=data.get("organization_uuid"),
            user_uuid=data.get("user_uuid"),
        )
