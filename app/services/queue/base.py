"""Transport-agnostic message queue interface.

Producers ``push`` JSON payloads; consumers ``pop`` a message, process it and
``delete`` it with the receipt handle. A provider may be backed by a table,
a broker or a cloud queue; callers only see this interface.

Example:
    await provider.push({"workflow_id": "123", "action": "execute"})

    message = await provider.pop(timeout=5)
    if message is not None:
        process(message.payload)
        if message.receipt_handle:
            await provider.delete(message.receipt_handle)
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from app.services.queue.errors import (
    QueueDeserializationError,
    QueueOperationError,
    QueueSerializationError,
)


@dataclass(frozen=True)
class QueueMessage:
    id: str
    payload: Any
    # Present for providers that require explicit acknowledgment
    receipt_handle: str | None = None


def encode_payload(payload: Any) -> str:
    try:
        return json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise QueueSerializationError(f"Payload is not JSON serializable: {exc}") from exc


def decode_payload(raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise QueueDeserializationError(f"Message payload is not valid JSON: {exc}") from exc


def validate_timeout(timeout: float | None) -> float | None:
    if timeout is not None and timeout < 0:
        raise QueueOperationError("timeout must not be negative")
    return timeout


def validate_receipt_handle(receipt_handle: str) -> str:
    if not isinstance(receipt_handle, str) or not receipt_handle.strip():
        raise QueueOperationError("receipt_handle must be a non-empty string")
    return receipt_handle


class QueueProvider(ABC):
    """FIFO-style queue with at-least-once delivery.

    Ordering across concurrent producers is whatever the backend provides.
    """

    backend: str = "unknown"

    @property
    @abstractmethod
    def queue_name(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def push(self, payload: Any) -> None:
        """Enqueue a JSON value at the tail of the queue."""
        raise NotImplementedError

    @abstractmethod
    async def pop(self, timeout: float | None = None) -> QueueMessage | None:
        """Wait for the next message.

        Args:
            timeout: Seconds to wait. None waits indefinitely.

        Returns:
            The message, or None when the timeout elapsed without one.
        """
        raise NotImplementedError

    @abstractmethod
    async def delete(self, receipt_handle: str) -> None:
        """Acknowledge a processed message."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
