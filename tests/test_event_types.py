"""Tests for event and payload value types."""

from dataclasses import dataclass
from datetime import UTC, datetime

import pytest
from pydantic import BaseModel

from app.services.events.types import Event, EventPayload, EventPayloadError


class _UserCreated(BaseModel):
    user_id: str
    email: str


@dataclass
class _ProjectArchived:
    project_id: str
    reason: str


class TestEventPayload:
    def test_empty_payload_is_empty_object(self):
        assert EventPayload.empty().data == {}

    def test_from_pydantic_model(self):
        payload = EventPayload.from_serializable(_UserCreated(user_id="u1", email="a@b.c"))
        assert payload.data == {"user_id": "u1", "email": "a@b.c"}

    def test_from_dataclass(self):
        payload = EventPayload.from_serializable(_ProjectArchived("p1", "done"))
        assert payload.data == {"project_id": "p1", "reason": "done"}

    def test_from_plain_value(self):
        assert EventPayload.from_serializable([1, "two", None]).data == [1, "two", None]

    def test_rejects_non_json_values(self):
        with pytest.raises(EventPayloadError):
            EventPayload.from_serializable({"when": object()})


class TestEvent:
    def test_defaults(self):
        event = Event("user.created")
        assert event.payload.data == {}
        assert event.organization_uuid is None
        assert event.user_uuid is None
        assert event.timestamp.tzinfo is not None

    def test_raw_payload_is_wrapped(self):
        event = Event("user.created", {"user_id": "u1"})
        assert isinstance(event.payload, EventPayload)
        assert event.payload.data == {"user_id": "u1"}

    def test_name_is_required(self):
        with pytest.raises(ValueError):
            Event("")

    def test_with_helpers_return_copies(self):
        event = Event("user.created")
        scoped = event.with_organization("org-1").with_user("user-1")
        assert scoped.organization_uuid == "org-1"
        assert scoped.user_uuid == "user-1"
        assert event.organization_uuid is None
        assert scoped.timestamp == event.timestamp

    def test_dict_roundtrip(self):
        timestamp = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
        event = Event(
            "order.paid",
            {"order": {"id": 7, "lines": [1, 2]}},
            timestamp=timestamp,
            organization_uuid="org-1",
        )
        data = event.to_dict()
        assert data["timestamp"] == "2026-01-02T03:04:05+00:00"
        assert Event.from_dict(data) == event

    def test_from_dict_without_payload(self):
        event = Event.from_dict({"name": "ping"})
        assert event.payload.data == {}
