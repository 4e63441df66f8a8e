"""Table-backed message queue.

Workers claim messages by moving them from ``pending`` to ``processing`` and
stamping a fresh receipt handle. A claimed message becomes visible again
once ``visible_at`` passes, so a crashed worker does not lose it.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.types import JSONDocument


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueMessageStatus(enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    dead_letter = "dead_letter"


class QueuedMessage(Base):
    __tablename__ = "queue_messages"
    __table_args__ = (
        Index(
            "idx_queue_messages_status_visible_priority",
            "queue_name",
            "status",
            "visible_at",
            "priority",
            "created_at",
        ),
        Index("idx_queue_messages_status_processed", "status", "processed_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False, default="default")
    payload: Mapped[object] = mapped_column(JSONDocument(), nullable=False)
    status: Mapped[QueueMessageStatus] = mapped_column(
        Enum(QueueMessageStatus), default=QueueMessageStatus.pending, nullable=False
    )
    # Lower number is served first
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    receipt_handle: Mapped[str | None] = mapped_column(String(36), index=True)
    visible_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)

    error_message: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )
