"""Event system module.

Lets internal modules emit named events with JSON payloads and routes them
to persisted subscriptions (loaded from the database and cached) and to
in-process subscribers registered at runtime.

Usage:
    from app.services.events import Event, EventDispatcher, initialize

    dispatcher = EventDispatcher()
    initialize(dispatcher, db)

    # In a service after a state change:
    await dispatcher.emit(
        Event("project.created", {"project_id": str(project.id)})
        .with_organization(org_uuid)
    )
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.services.events.dispatcher import (
    DuplicateSubscriberError,
    EventDispatcher,
    EventDispatcherError,
)
from app.services.events.subscriber import (
    DatabaseEventSubscription,
    EventSubscriber,
    FunctionSubscriber,
)
from app.services.events.types import Event, EventPayload
from app.services.events.webhooks import WebhookStoreError, load_webhooks, register_webhooks

logger = logging.getLogger(__name__)

__all__ = [
    "DatabaseEventSubscription",
    "DuplicateSubscriberError",
    "Event",
    "EventDispatcher",
    "EventDispatcherError",
    "EventPayload",
    "EventSubscriber",
    "FunctionSubscriber",
    "initialize",
]


def initialize(dispatcher: EventDispatcher, db: Session) -> None:
    """Load persisted subscriptions and webhooks into the dispatcher.

    Call once at startup, before serving traffic. Errors propagate so a
    misconfigured store fails startup instead of silently dropping events.
    """
    subscription_count = dispatcher.load_database_subscriptions(db)
    try:
        webhooks = load_webhooks(db)
    except SQLAlchemyError as exc:
        db.rollback()
        raise WebhookStoreError(f"Failed to load webhooks: {exc}") from exc
    webhook_count = register_webhooks(dispatcher, webhooks)
    logger.info(
        "Event system initialized: %s subscriptions, %s webhooks",
        subscription_count,
        webhook_count,
    )
