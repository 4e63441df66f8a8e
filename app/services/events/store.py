"""Database operations for event subscriptions.

The dispatcher only reads through ``load_event_subscriptions``. The write
helpers are used by the modules that own subscription rows, for example a
plugin registering its subscriptions on install and removing them on
uninstall via ``delete_subscriptions_by_source``.
"""

import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.metrics import EVENT_SUBSCRIPTIONS_DROPPED
from app.models.event_subscription import EventSubscription
from app.services.events.subscriber import DatabaseEventSubscription

logger = logging.getLogger(__name__)


class SubscriptionStoreError(Exception):
    """Raised when the subscription table cannot be read or written."""


class SubscriptionNotFoundError(SubscriptionStoreError):
    pass


class MalformedConfigError(ValueError):
    pass


TEXT_ENCODED_DIALECTS = frozenset({"sqlite"})


def decode_json_value(raw: Any, text_encoded: bool = True) -> Any:
    """Normalize a JSON column value to a structured Python value.

    Native JSON columns (PostgreSQL, MySQL) come back already decoded, so a
    ``str`` from them is a JSON string value. Text encoded columns (SQLite)
    come back as ``str`` or ``bytes`` and are parsed here.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedConfigError(f"config is not valid UTF-8: {exc}") from exc
        text_encoded = True
    if isinstance(raw, str):
        if not text_encoded:
            return raw
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise MalformedConfigError(f"config is not valid JSON: {exc}") from exc
    if raw is None or isinstance(raw, (dict, list, int, float, bool)):
        return raw
    raise MalformedConfigError(f"unsupported config type {type(raw).__name__}")


def _to_record(row: EventSubscription, config: Any) -> DatabaseEventSubscription:
    return DatabaseEventSubscription(
        id=row.id,
        event_name=row.event_name,
        subscriber_type=row.subscriber_type,
        config=config,
        active=bool(row.active),
        organization_uuid=row.organization_uuid,
        created_from=row.created_from,
    )


def load_event_subscriptions(db: Session) -> list[DatabaseEventSubscription]:
    """Load all active event subscriptions ordered by (event_name, id).

    Rows whose config cannot be decoded are skipped with a warning so a single
    bad row cannot block startup.
    """
    try:
        rows = (
            db.query(EventSubscription)
            .filter(EventSubscription.active.is_(True))
            .order_by(EventSubscription.event_name.asc(), EventSubscription.id.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise SubscriptionStoreError(f"Failed to load event subscriptions: {exc}") from exc

    text_encoded = db.get_bind().dialect.name in TEXT_ENCODED_DIALECTS
    subscriptions: list[DatabaseEventSubscription] = []
    for row in rows:
        try:
            config = decode_json_value(row.config, text_encoded=text_encoded)
        except MalformedConfigError as exc:
            EVENT_SUBSCRIPTIONS_DROPPED.inc()
            logger.warning(
                "Skipping event subscription %s (event=%s): %s",
                row.id,
                row.event_name,
                exc,
            )
            continue
        subscriptions.append(_to_record(row, config))
    return subscriptions


def create_event_subscription(
    db: Session, subscription: DatabaseEventSubscription
) -> DatabaseEventSubscription:
    row = EventSubscription(
        id=subscription.id,
        event_name=subscription.event_name,
        subscriber_type=subscription.subscriber_type,
        config=subscription.config,
        active=subscription.active,
        organization_uuid=subscription.organization_uuid,
        created_from=subscription.created_from,
    )
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise SubscriptionStoreError(
            f"Failed to create event subscription {subscription.id}: {exc}"
        ) from exc
    logger.debug(
        "Created event subscription %s for %s (type=%s, source=%s)",
        subscription.id,
        subscription.event_name,
        subscription.subscriber_type,
        subscription.created_from,
    )
    return subscription


def delete_subscriptions_by_source(db: Session, created_from: str) -> int:
    """Delete every subscription created by ``created_from``; return the count."""
    try:
        deleted = (
            db.query(EventSubscription)
            .filter(EventSubscription.created_from == created_from)
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise SubscriptionStoreError(
            f"Failed to delete subscriptions from {created_from}: {exc}"
        ) from exc
    logger.info("Deleted %s event subscriptions created from %s", deleted, created_from)
    return deleted


def set_subscription_active(db: Session, subscription_id: str, active: bool) -> None:
    try:
        row = db.get(EventSubscription, subscription_id)
        if row is None:
            raise SubscriptionNotFoundError(f"Event subscription {subscription_id} not found")
        row.active = active
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise SubscriptionStoreError(
            f"Failed to update event subscription {subscription_id}: {exc}"
        ) from exc
