"""Tests for the table-backed queue provider."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from app.models.queue_message import QueuedMessage, QueueMessageStatus
from app.services.queue.database import DatabaseQueueProvider
from app.services.queue.errors import QueueOperationError, QueueSerializationError


@pytest.fixture()
def provider(session_factory):
    return DatabaseQueueProvider(
        session_factory,
        name="events",
        poll_interval=0.01,
        visibility_timeout=60,
        max_retries=1,
    )


def _expire_claims(session_factory):
    session = session_factory()
    try:
        session.execute(
            update(QueuedMessage).values(
                visible_at=datetime.now(timezone.utc) - timedelta(seconds=1)
            )
        )
        session.commit()
    finally:
        session.close()


def _status(session_factory, message_id):
    session = session_factory()
    try:
        return session.get(QueuedMessage, message_id).status
    finally:
        session.close()


class TestDatabaseQueueProvider:
    @pytest.mark.asyncio
    async def test_push_pop_delete(self, provider, session_factory):
        await provider.push({"a": 1, "nested": {"b": [1, 2]}})

        message = await provider.pop(timeout=1)

        assert message.payload == {"a": 1, "nested": {"b": [1, 2]}}
        assert message.receipt_handle
        assert _status(session_factory, message.id) == QueueMessageStatus.processing

        await provider.delete(message.receipt_handle)
        assert _status(session_factory, message.id) == QueueMessageStatus.completed

    @pytest.mark.asyncio
    async def test_pop_empty_returns_none(self, provider):
        assert await provider.pop(timeout=0.001) is None

    @pytest.mark.asyncio
    async def test_claimed_message_is_invisible(self, provider):
        await provider.push("only")
        assert await provider.pop(timeout=1) is not None
        assert await provider.pop(timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_priority_then_age(self, provider):
        await provider.push("low", priority=5)
        await provider.push("first", priority=0)
        await provider.push("second", priority=0)

        popped = [(await provider.pop(timeout=1)).payload for _ in range(3)]

        assert popped == ["first", "second", "low"]

    @pytest.mark.asyncio
    async def test_queues_are_isolated(self, provider, session_factory):
        other = DatabaseQueueProvider(session_factory, name="other", poll_interval=0.01)
        await other.push("elsewhere")
        assert await provider.pop(timeout=0.02) is None

    @pytest.mark.asyncio
    async def test_expired_claim_is_redelivered_then_dead_lettered(
        self, provider, session_factory
    ):
        await provider.push("flaky")
        first = await provider.pop(timeout=1)

        _expire_claims(session_factory)
        second = await provider.pop(timeout=1)
        assert second.id == first.id
        assert second.receipt_handle != first.receipt_handle

        with pytest.raises(QueueOperationError):
            await provider.delete(first.receipt_handle)

        _expire_claims(session_factory)
        assert await provider.pop(timeout=0.02) is None
        assert _status(session_factory, first.id) == QueueMessageStatus.dead_letter

    @pytest.mark.asyncio
    async def test_delete_unknown_handle(self, provider):
        with pytest.raises(QueueOperationError):
            await provider.delete("00000000-0000-0000-0000-000000000000")

    @pytest.mark.asyncio
    async def test_unserializable_payload(self, provider):
        with pytest.raises(QueueSerializationError):
            await provider.push({"when": object()})
