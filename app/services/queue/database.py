"""Queue provider backed by the ``queue_messages`` table.

Workers claim the oldest visible message by flipping it to ``processing``
with a fresh receipt handle and pushing ``visible_at`` forward by the
visibility timeout. The claim is a conditional UPDATE, so two workers racing
for the same row cannot both win, even on engines without
``SKIP LOCKED``. A message whose visibility timeout expires is handed out
again until ``max_retries`` is exceeded, after which it is dead-lettered.

SQLAlchemy calls are synchronous; they run in a worker thread so ``pop``
never blocks the event loop while it waits.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.metrics import count_queue_operation
from app.models.queue_message import QueuedMessage, QueueMessageStatus
from app.services.queue.base import (
    QueueMessage,
    QueueProvider,
    encode_payload,
    validate_receipt_handle,
    validate_timeout,
)
from app.services.queue.errors import (
    QueueConnectionError,
    QueueDeserializationError,
    QueueError,
    QueueOperationError,
)

logger = logging.getLogger(__name__)

# Candidates inspected per claim attempt before giving up for this poll
_CLAIM_BATCH = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _wrap_sqlalchemy_error(exc: SQLAlchemyError, action: str) -> QueueError:
    if isinstance(exc, OperationalError):
        return QueueConnectionError(f"Database unavailable while trying to {action}: {exc}")
    return QueueOperationError(f"Failed to {action}: {exc}")


class DatabaseQueueProvider(QueueProvider):
    backend = "database"

    def __init__(
        self,
        session_factory: sessionmaker,
        name: str | None = None,
        poll_interval: float | None = None,
        visibility_timeout: int | None = None,
        max_retries: int | None = None,
    ):
        self._session_factory = session_factory
        self._name = name or settings.queue_name
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.queue_poll_interval_seconds
        )
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.queue_visibility_timeout_seconds
        )
        self.max_retries = max_retries if max_retries is not None else settings.queue_max_retries

    @property
    def queue_name(self) -> str:
        return self._name

    async def push(self, payload: Any, priority: int = 0) -> None:
        # Fail fast on values the JSON column would reject later
        encode_payload(payload)
        await asyncio.to_thread(self._insert, payload, priority)
        count_queue_operation(self.backend, "push")

    async def pop(self, timeout: float | None = None) -> QueueMessage | None:
        validate_timeout(timeout)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            message = await asyncio.to_thread(self._claim_next)
            if message is not None:
                count_queue_operation(self.backend, "pop")
                return message
            if deadline is None:
                await asyncio.sleep(self.poll_interval)
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                count_queue_operation(self.backend, "pop", "empty")
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def delete(self, receipt_handle: str) -> None:
        validate_receipt_handle(receipt_handle)
        await asyncio.to_thread(self._complete, receipt_handle)
        count_queue_operation(self.backend, "delete")

    def _insert(self, payload: Any, priority: int) -> None:
        session: Session = self._session_factory()
        try:
            session.add(
                QueuedMessage(
                    queue_name=self._name,
                    payload=payload,
                    priority=priority,
                    max_retries=self.max_retries,
                )
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            count_queue_operation(self.backend, "push", "error")
            raise _wrap_sqlalchemy_error(exc, "push message") from exc
        finally:
            session.close()

    def _claim_next(self) -> QueueMessage | None:
        session: Session = self._session_factory()
        try:
            now = _utcnow()
            candidates = (
                session.query(QueuedMessage.id, QueuedMessage.status, QueuedMessage.retry_count,
                              QueuedMessage.max_retries, QueuedMessage.receipt_handle)
                .filter(QueuedMessage.queue_name == self._name)
                .filter(
                    or_(
                        QueuedMessage.status == QueueMessageStatus.pending,
                        QueuedMessage.status == QueueMessageStatus.processing,
                    )
                )
                .filter(QueuedMessage.visible_at <= now)
                .order_by(QueuedMessage.priority.asc(), QueuedMessage.created_at.asc())
                .limit(_CLAIM_BATCH)
                .with_for_update(skip_locked=True)
                .all()
            )
            for candidate in candidates:
                message = self._try_claim(session, candidate, now)
                if message is not None:
                    return message
            session.commit()
            return None
        except SQLAlchemyError as exc:
            session.rollback()
            count_queue_operation(self.backend, "pop", "error")
            raise _wrap_sqlalchemy_error(exc, "pop message") from exc
        finally:
            session.close()

    def _try_claim(self, session: Session, candidate, now: datetime) -> QueueMessage | None:
        retry_count = candidate.retry_count
        if candidate.status == QueueMessageStatus.processing:
            # Visibility timeout expired without a delete
            retry_count += 1
            if retry_count > candidate.max_retries:
                session.execute(
                    update(QueuedMessage)
                    .where(QueuedMessage.id == candidate.id)
                    .where(QueuedMessage.receipt_handle == candidate.receipt_handle)
                    .values(
                        status=QueueMessageStatus.dead_letter,
                        retry_count=retry_count,
                        error_message="Visibility timeout expired too many times",
                        updated_at=now,
                    )
                )
                session.commit()
                logger.warning(
                    "Queue message %s on %s moved to dead letter after %s attempts",
                    candidate.id,
                    self._name,
                    retry_count,
                )
                return None

        receipt_handle = str(uuid.uuid4())
        claim = (
            update(QueuedMessage)
            .where(QueuedMessage.id == candidate.id)
            .where(QueuedMessage.status == candidate.status)
            .values(
                status=QueueMessageStatus.processing,
                receipt_handle=receipt_handle,
                retry_count=retry_count,
                visible_at=now + timedelta(seconds=self.visibility_timeout),
                updated_at=now,
            )
        )
        if candidate.receipt_handle is None:
            claim = claim.where(QueuedMessage.receipt_handle.is_(None))
        else:
            claim = claim.where(QueuedMessage.receipt_handle == candidate.receipt_handle)
        result = session.execute(claim)
        session.commit()
        if result.rowcount != 1:
            # Another worker claimed it first
            return None

        try:
            payload = (
                session.query(QueuedMessage.payload)
                .filter(QueuedMessage.id == candidate.id)
                .scalar()
            )
        except ValueError as exc:
            raise QueueDeserializationError(
                f"Queue message {candidate.id} has an invalid payload: {exc}"
            ) from exc
        return QueueMessage(id=candidate.id, payload=payload, receipt_handle=receipt_handle)

    def _complete(self, receipt_handle: str) -> None:
        session: Session = self._session_factory()
        try:
            now = _utcnow()
            result = session.execute(
                update(QueuedMessage)
                .where(QueuedMessage.queue_name == self._name)
                .where(QueuedMessage.receipt_handle == receipt_handle)
                .where(QueuedMessage.status == QueueMessageStatus.processing)
                .values(
                    status=QueueMessageStatus.completed,
                    processed_at=now,
                    updated_at=now,
                )
            )
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            count_queue_operation(self.backend, "delete", "error")
            raise _wrap_sqlalchemy_error(exc, "delete message") from exc
        finally:
            session.close()
        if result.rowcount != 1:
            count_queue_operation(self.backend, "delete", "error")
            raise QueueOperationError(f"Unknown or expired receipt handle: {receipt_handle}")
