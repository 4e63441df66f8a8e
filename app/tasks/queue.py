"""Queue table maintenance tasks.

Provides Celery tasks for:
- Purging completed messages past their retention period
- Returning messages stuck in ``processing`` to ``pending``
"""

import logging
from datetime import datetime, timedelta, timezone

from app.celery_app import celery_app
from app.db import SessionLocal
from app.models.queue_message import QueuedMessage, QueueMessageStatus

logger = logging.getLogger(__name__)

_DEFAULT_RETENTION_DAYS = 7
_DEFAULT_STALE_MINUTES = 30


@celery_app.task(name="app.tasks.queue.cleanup_completed_messages")
def cleanup_completed_messages(retention_days: int | None = None) -> dict[str, int]:
    """Delete completed messages older than the retention period.

    Args:
        retention_days: Days to keep completed messages (default 7)

    Returns:
        Dict with count of deleted messages
    """
    if retention_days is None:
        retention_days = _DEFAULT_RETENTION_DAYS
    cutoff = datetime.now(timezone.utc) - timedelta(days=max(retention_days, 0))
    session = SessionLocal()
    try:
        deleted = (
            session.query(QueuedMessage)
            .filter(QueuedMessage.status == QueueMessageStatus.completed)
            .filter(QueuedMessage.processed_at < cutoff)
            .delete(synchronize_session=False)
        )
        session.commit()
        logger.info("Deleted %s completed queue messages older than %s days", deleted, retention_days)
        return {"deleted_messages": deleted}
    except Exception:
        session.rollback()
        logger.exception("Failed to clean up completed queue messages")
        raise
    finally:
        session.close()


@celery_app.task(name="app.tasks.queue.release_stale_messages")
def release_stale_messages(stale_minutes: int | None = None) -> dict[str, int]:
    """Return messages stuck in ``processing`` to ``pending``.

    A message counts as stale when it was claimed more than ``stale_minutes``
    ago and never deleted, typically because its worker died. Releasing it
    counts as a retry; messages past ``max_retries`` are dead-lettered.

    Returns:
        Dict with counts of released and dead-lettered messages
    """
    if stale_minutes is None:
        stale_minutes = _DEFAULT_STALE_MINUTES
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=max(stale_minutes, 0))
    session = SessionLocal()
    released = 0
    dead_lettered = 0
    try:
        stale = (
            session.query(QueuedMessage)
            .filter(QueuedMessage.status == QueueMessageStatus.processing)
            .filter(QueuedMessage.updated_at < cutoff)
            .all()
        )
        for message in stale:
            message.retry_count += 1
            message.receipt_handle = None
            message.updated_at = now
            if message.retry_count > message.max_retries:
                message.status = QueueMessageStatus.dead_letter
                message.error_message = "Processing stalled too many times"
                dead_lettered += 1
            else:
                message.status = QueueMessageStatus.pending
                message.visible_at = now
                released += 1
        session.commit()
        if released or dead_lettered:
            logger.warning(
                "Released %s stale queue messages, dead-lettered %s", released, dead_lettered
            )
        return {"released": released, "dead_lettered": dead_lettered}
    except Exception:
        session.rollback()
        logger.exception("Failed to release stale queue messages")
        raise
    finally:
        session.close()
