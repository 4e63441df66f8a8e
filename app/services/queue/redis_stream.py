"""Queue provider on Redis Streams.

Messages are appended with XADD and consumed through a consumer group with
XREADGROUP, so several worker processes share one stream and each entry goes
to a single consumer. The stream entry id doubles as the receipt handle;
``delete`` acknowledges it with XACK and removes it with XDEL.

An entry left unacknowledged for longer than the visibility timeout is taken
over with XAUTOCLAIM by the next ``pop``. Entries delivered more than
``max_retries`` extra times are moved to the ``<stream>:dead`` stream.
"""

import logging
import os
import socket
from typing import Any

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

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
from app.services.queue.errors import (
    QueueConnectionError,
    QueueDeserializationError,
    QueueError,
    QueueOperationError,
    QueueProviderError,
    QueueTimeoutError,
)

logger = logging.getLogger(__name__)

STREAM_PREFIX = "queue:"
DEFAULT_GROUP = "workers"
STREAM_MAX_LENGTH = 100000


def _wrap_redis_error(exc: RedisError, action: str) -> QueueError:
    if isinstance(exc, RedisConnectionError):
        return QueueConnectionError(f"Redis unavailable while trying to {action}: {exc}")
    if isinstance(exc, RedisTimeoutError):
        return QueueTimeoutError(f"Redis timed out while trying to {action}: {exc}")
    return QueueProviderError(f"Redis error while trying to {action}: {exc}")


def _block_ms(timeout: float | None) -> int | None:
    # XREADGROUP treats BLOCK 0 as "wait forever" and no BLOCK as "don't wait"
    if timeout is None:
        return 0
    if timeout == 0:
        return None
    return max(1, int(timeout * 1000))


class RedisStreamQueueProvider(QueueProvider):
    backend = "redis"

    def __init__(
        self,
        name: str | None = None,
        client: redis.Redis | None = None,
        group: str = DEFAULT_GROUP,
        consumer: str | None = None,
        redis_url: str | None = None,
        visibility_timeout: int | None = None,
        max_retries: int | None = None,
    ):
        self._name = name or settings.queue_name
        self.stream = f"{STREAM_PREFIX}{self._name}"
        self.group = group
        self.consumer = consumer or f"{socket.gethostname()}-{os.getpid()}"
        self._redis_url = redis_url or settings.redis_url
        self._client = client
        self._group_ready = False
        self.dead_letter_stream = f"{self.stream}:dead"
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.queue_visibility_timeout_seconds
        )
        self.max_retries = max_retries if max_retries is not None else settings.queue_max_retries
        self._claim_cursor = "0-0"

    @property
    def _visibility_ms(self) -> int:
        return max(1, int(self.visibility_timeout * 1000))

    @property
    def queue_name(self) -> str:
        return self._name

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    async def _ensure_group(self) -> None:
        if self._group_ready:
            return
        try:
            await self._get_client().xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._group_ready = True

    async def push(self, payload: Any) -> None:
        encoded = encode_payload(payload)
        try:
            await self._get_client().xadd(
                self.stream, {"payload": encoded}, maxlen=STREAM_MAX_LENGTH, approximate=True
            )
        except RedisError as exc:
            count_queue_operation(self.backend, "push", "error")
            raise _wrap_redis_error(exc, "push message") from exc
        count_queue_operation(self.backend, "push")

    async def _reclaim_idle(self) -> QueueMessage | None:
        """Take over one entry another delivery left unacknowledged too long."""
        client = self._get_client()
        while True:
            response = await client.xautoclaim(
                self.stream,
                self.group,
                self.consumer,
                min_idle_time=self._visibility_ms,
                start_id=self._claim_cursor,
                count=1,
            )
            if not response:
                return None
            next_id, entries = response[0], response[1]
            self._claim_cursor = next_id or "0-0"
            if not entries:
                return None
            entry_id, fields = entries[0]
            if fields is None:
                # Trimmed from the stream while pending
                await client.xack(self.stream, self.group, entry_id)
                continue
            if await self._exceeded_retries(entry_id, fields):
                continue
            return self._to_message(entry_id, fields)

    async def _exceeded_retries(self, entry_id: str, fields: dict) -> bool:
        client = self._get_client()
        pending = await client.xpending_range(
            self.stream, self.group, min=entry_id, max=entry_id, count=1
        )
        deliveries = pending[0]["times_delivered"] if pending else 1
        # The first delivery is not a retry
        if deliveries - 1 <= self.max_retries:
            return False
        async with client.pipeline(transaction=True) as pipe:
            pipe.xadd(
                self.dead_letter_stream, dict(fields), maxlen=STREAM_MAX_LENGTH, approximate=True
            )
            pipe.xack(self.stream, self.group, entry_id)
            pipe.xdel(self.stream, entry_id)
            await pipe.execute()
        logger.warning(
            "Queue message %s on %s moved to dead letter after %s deliveries",
            entry_id,
            self._name,
            deliveries,
        )
        return True

    def _to_message(self, entry_id: str, fields: dict | None) -> QueueMessage:
        raw = (fields or {}).get("payload")
        if raw is None:
            raise QueueDeserializationError(f"Stream entry {entry_id} has no payload field")
        return QueueMessage(id=entry_id, payload=decode_payload(raw), receipt_handle=entry_id)

    async def pop(self, timeout: float | None = None) -> QueueMessage | None:
        validate_timeout(timeout)
        try:
            await self._ensure_group()
            message = await self._reclaim_idle()
            if message is not None:
                count_queue_operation(self.backend, "pop", "reclaimed")
                return message
            response = await self._get_client().xreadgroup(
                groupname=self.group,
                consumername=self.consumer,
                streams={self.stream: ">"},
                count=1,
                block=_block_ms(timeout),
            )
        except RedisError as exc:
            count_queue_operation(self.backend, "pop", "error")
            raise _wrap_redis_error(exc, "pop message") from exc

        if not response:
            count_queue_operation(self.backend, "pop", "empty")
            return None

        _, entries = response[0]
        if not entries:
            count_queue_operation(self.backend, "pop", "empty")
            return None
        entry_id, fields = entries[0]
        message = self._to_message(entry_id, fields)
        count_queue_operation(self.backend, "pop")
        return message

    async def delete(self, receipt_handle: str) -> None:
        validate_receipt_handle(receipt_handle)
        try:
            async with self._get_client().pipeline(transaction=True) as pipe:
                pipe.xack(self.stream, self.group, receipt_handle)
                pipe.xdel(self.stream, receipt_handle)
                acked, _ = await pipe.execute()
        except RedisError as exc:
            count_queue_operation(self.backend, "delete", "error")
            raise _wrap_redis_error(exc, "delete message") from exc
        if not acked:
            count_queue_operation(self.backend, "delete", "error")
            raise QueueOperationError(f"Unknown receipt handle: {receipt_handle}")
        count_queue_operation(self.backend, "delete")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Closed Redis client for queue %s", self._name)
