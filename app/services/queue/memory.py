import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from app.config import settings
from app.metrics import count_queue_operation
from app.services.queue.base import (
    QueueMessage,
    QueueProvider,
    decode_payload,
    encode_payload,
    validate_receipt_handle,
    validate_timeout,
)
from app.services.queue.errors import QueueOperationError

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    id: str
    encoded: str
    deliveries: int = 0


class InMemoryQueueProvider(QueueProvider):
    """Single-process queue on top of ``asyncio.Queue``.

    Payloads are stored JSON-encoded so producers cannot mutate a message
    after pushing it. A popped message stays in flight until deleted; if the
    visibility timeout passes first it is queued again under a new receipt
    handle. After ``max_retries`` redeliveries it moves to ``dead_letters``.
    """

    backend = "memory"

    def __init__(
        self,
        name: str = "default",
        visibility_timeout: float | None = None,
        max_retries: int | None = None,
    ):
        self._name = name
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.queue_visibility_timeout_seconds
        )
        self.max_retries = max_retries if max_retries is not None else settings.queue_max_retries
        self._queue: asyncio.Queue[_Entry] = asyncio.Queue()
        # receipt handle -> (entry, loop time at which it becomes visible again)
        self._in_flight: dict[str, tuple[_Entry, float]] = {}
        self.dead_letters: list[QueueMessage] = []

    @property
    def queue_name(self) -> str:
        return self._name

    def qsize(self) -> int:
        return self._queue.qsize()

    def in_flight(self) -> int:
        return len(self._in_flight)

    async def push(self, payload: Any) -> None:
        encoded = encode_payload(payload)
        await self._queue.put(_Entry(id=str(uuid.uuid4()), encoded=encoded))
        count_queue_operation(self.backend, "push")

    def _release_expired(self, now: float) -> None:
        expired = [
            handle for handle, (_, visible_at) in self._in_flight.items() if visible_at <= now
        ]
        for handle in expired:
            entry, _ = self._in_flight.pop(handle)
            if entry.deliveries > self.max_retries:
                self.dead_letters.append(
                    QueueMessage(id=entry.id, payload=decode_payload(entry.encoded))
                )
                logger.warning(
                    "Queue message %s on %s moved to dead letter after %s deliveries",
                    entry.id,
                    self._name,
                    entry.deliveries,
                )
                continue
            self._queue.put_nowait(entry)

    def _next_expiry(self) -> float | None:
        if not self._in_flight:
            return None
        return min(visible_at for _, visible_at in self._in_flight.values())

    async def pop(self, timeout: float | None = None) -> QueueMessage | None:
        validate_timeout(timeout)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            now = loop.time()
            self._release_expired(now)
            try:
                entry = self._queue.get_nowait()
                break
            except asyncio.QueueEmpty:
                pass
            if deadline is not None and now >= deadline:
                count_queue_operation(self.backend, "pop", "empty")
                return None
            # Wake up for the deadline or the next in-flight expiry, whichever is first
            waits = [t - now for t in (deadline, self._next_expiry()) if t is not None]
            try:
                if waits:
                    entry = await asyncio.wait_for(self._queue.get(), min(waits))
                else:
                    entry = await self._queue.get()
                break
            except asyncio.TimeoutError:
                continue

        entry.deliveries += 1
        receipt_handle = str(uuid.uuid4())
        self._in_flight[receipt_handle] = (entry, loop.time() + self.visibility_timeout)
        count_queue_operation(self.backend, "pop")
        return QueueMessage(
            id=entry.id,
            payload=decode_payload(entry.encoded),
            receipt_handle=receipt_handle,
        )

    async def delete(self, receipt_handle: str) -> None:
        validate_receipt_handle(receipt_handle)
        if self._in_flight.pop(receipt_handle, None) is None:
            count_queue_operation(self.backend, "delete", "error")
            raise QueueOperationError(f"Unknown or expired receipt handle: {receipt_handle}")
        count_queue_operation(self.backend, "delete")
