"""create event subscription, webhook and queue tables

Revision ID: a1c3e5f7b9d0
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "a1c3e5f7b9d0"
down_revision = None
branch_labels = None
depends_on = None


def _json_type():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql").with_variant(
        sa.Text(), "sqlite"
    )


def upgrade() -> None:
    op.create_table(
        "event_subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("event_name", sa.String(length=255), nullable=False),
        sa.Column("subscriber_type", sa.String(length=50), nullable=False),
        sa.Column("config", _json_type(), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("organization_uuid", sa.String(length=36), nullable=True),
        sa.Column(
            "created_from", sa.String(length=255), nullable=False, server_default="system"
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_event_subscriptions_event_active",
        "event_subscriptions",
        ["event_name", "active"],
    )
    op.create_index(
        "ix_event_subscriptions_event_name", "event_subscriptions", ["event_name"]
    )
    op.create_index("ix_event_subscriptions_active", "event_subscriptions", ["active"])
    op.create_index(
        "ix_event_subscriptions_organization_uuid",
        "event_subscriptions",
        ["organization_uuid"],
    )
    op.create_index(
        "ix_event_subscriptions_created_from", "event_subscriptions", ["created_from"]
    )

    op.create_table(
        "event_webhooks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("organization_uuid", sa.String(length=36), nullable=False),
        sa.Column("event_name", sa.String(length=255), nullable=False),
        sa.Column("url", sa.String(length=2048), nullable=False),
        sa.Column("secret", sa.String(length=255), nullable=True),
        sa.Column("headers", _json_type(), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=36), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_event_webhooks_org_event", "event_webhooks", ["organization_uuid", "event_name"]
    )
    op.create_index(
        "ix_event_webhooks_organization_uuid", "event_webhooks", ["organization_uuid"]
    )
    op.create_index("ix_event_webhooks_event_name", "event_webhooks", ["event_name"])
    op.create_index("ix_event_webhooks_active", "event_webhooks", ["active"])

    queue_status = sa.Enum(
        "pending",
        "processing",
        "completed",
        "failed",
        "dead_letter",
        name="queuemessagestatus",
    )
    op.create_table(
        "queue_messages",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("queue_name", sa.String(length=100), nullable=False, server_default="default"),
        sa.Column("payload", _json_type(), nullable=False),
        sa.Column("status", queue_status, nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("receipt_handle", sa.String(length=36), nullable=True),
        sa.Column("visible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_queue_messages_status_visible_priority",
        "queue_messages",
        ["queue_name", "status", "visible_at", "priority", "created_at"],
    )
    op.create_index(
        "idx_queue_messages_status_processed", "queue_messages", ["status", "processed_at"]
    )
    op.create_index(
        "ix_queue_messages_receipt_handle", "queue_messages", ["receipt_handle"]
    )


def downgrade() -> None:
    op.drop_table("queue_messages")
    sa.Enum(name="queuemessagestatus").drop(op.get_bind(), checkfirst=True)
    op.drop_table("event_webhooks")
    op.drop_table("event_subscriptions")
