"""Persisted event subscriptions.

Rows are owned by the modules that create them (system setup, plugin
install/uninstall). The dispatcher loads the active rows into memory at
startup and on explicit reloads.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.types import JSONDocument


class EventSubscription(Base):
    __tablename__ = "event_subscriptions"
    __table_args__ = (
        Index("idx_event_subscriptions_event_active", "event_name", "active"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    event_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Connector discriminator: "webhook", "kafka", "function", "queue", ...
    subscriber_type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[object] = mapped_column(JSONDocument(decode=False), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    organization_uuid: Mapped[str | None] = mapped_column(String(36), index=True)
    created_from: Mapped[str] = mapped_column(
        String(255), nullable=False, default="system", index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
