"""Message queue abstraction and its providers.

Usage:
    from app.services.queue import create_queue_provider

    provider = create_queue_provider()
    await provider.push({"event": event.to_dict()})
"""

from app.config import settings
from app.services.queue.base import QueueMessage, QueueProvider
from app.services.queue.errors import (
    QueueConnectionError,
    QueueDeserializationError,
    QueueError,
    QueueOperationError,
    QueueProviderError,
    QueueSerializationError,
    QueueTimeoutError,
)
from app.services.queue.memory import InMemoryQueueProvider

__all__ = [
    "InMemoryQueueProvider",
    "QueueConnectionError",
    "QueueDeserializationError",
    "QueueError",
    "QueueMessage",
    "QueueOperationError",
    "QueueProvider",
    "QueueProviderError",
    "QueueSerializationError",
    "QueueTimeoutError",
    "create_queue_provider",
]


def create_queue_provider(backend: str | None = None, name: str | None = None) -> QueueProvider:
    """Build the provider selected by ``QUEUE_BACKEND`` (or ``backend``)."""
    backend = (backend or settings.queue_backend).lower()
    name = name or settings.queue_name
    if backend == "memory":
        return InMemoryQueueProvider(name)
    if backend == "database":
        from app.db import SessionLocal
        from app.services.queue.database import DatabaseQueueProvider

        return DatabaseQueueProvider(SessionLocal, name=name)
    if backend == "redis":
        from app.services.queue.redis_stream import RedisStreamQueueProvider

        return RedisStreamQueueProvider(name=name)
    raise ValueError(f"Unknown queue backend: {backend}")
