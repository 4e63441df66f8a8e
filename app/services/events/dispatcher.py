"""Central event dispatcher for the event system.

The dispatcher keeps two lookup tables keyed by event name: persisted
subscriptions loaded from the database, and in-process subscribers
registered at runtime. ``emit`` fans an event out to both, persisted first.
Every delivery runs under its own timeout and failure handling, so one
broken subscriber never stops the others and never reaches the producer.

Writers build a new table under a per-table lock and swap it in with one
assignment. Readers take no lock and iterate the immutable tuples they
looked up, so ``emit`` always sees a complete list even while a reload or
(un)subscribe is in progress.
"""

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Callable
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import (
    EVENT_DELIVERIES,
    EVENT_HANDLER_FAILURES,
    EVENTS_EMITTED,
    observe_handler,
)
from app.services.events.connectors import ConnectorRegistry
from app.services.events.store import SubscriptionStoreError, load_event_subscriptions
from app.services.events.subscriber import DatabaseEventSubscription, EventSubscriber
from app.services.events.types import Event

logger = logging.getLogger(__name__)


class EventDispatcherError(Exception):
    """Raised when subscriptions cannot be loaded or registered."""


class DuplicateSubscriberError(EventDispatcherError):
    pass


class EventDispatcher:
    """Routes events to persisted subscriptions and runtime subscribers.

    Create one per process at startup, call ``initialize`` (or
    ``load_database_subscriptions``) and share the instance with every
    producer.
    """

    def __init__(
        self,
        handler_timeout: float | None = None,
        connectors: ConnectorRegistry | None = None,
    ):
        self.handler_timeout = (
            handler_timeout
            if handler_timeout is not None
            else settings.event_handler_timeout_seconds
        )
        self.connectors = connectors or ConnectorRegistry()
        self._database_subscriptions: dict[str, tuple[DatabaseEventSubscription, ...]] = {}
        self._runtime_subscriptions: dict[str, tuple[EventSubscriber, ...]] = {}
        self._database_lock = threading.Lock()
        self._runtime_lock = threading.Lock()

    def load_database_subscriptions(self, db: Session) -> int:
        """Replace the cached persisted subscriptions with a fresh snapshot.

        This is a full replace: event names missing from the new snapshot
        lose their persisted subscriptions.

        Returns:
            The number of subscriptions cached.
        """
        logger.debug("Loading event subscriptions from database")
        try:
            subscriptions = load_event_subscriptions(db)
        except SubscriptionStoreError as exc:
            raise EventDispatcherError(str(exc)) from exc

        grouped: dict[str, list[DatabaseEventSubscription]] = {}
        for subscription in subscriptions:
            if not subscription.active:
                continue
            grouped.setdefault(subscription.event_name, []).append(subscription)

        snapshot = {name: tuple(items) for name, items in grouped.items()}
        with self._database_lock:
            self._database_subscriptions = snapshot

        total = sum(len(items) for items in snapshot.values())
        logger.info(
            "Loaded %s event subscriptions for %s events", total, len(snapshot)
        )
        return total

    def subscribe(self, subscriber: EventSubscriber) -> None:
        """Register a runtime subscriber under its event name."""
        event_name = subscriber.event_name
        subscriber_id = subscriber.subscriber_id
        with self._runtime_lock:
            current = self._runtime_subscriptions.get(event_name, ())
            if any(existing.subscriber_id == subscriber_id for existing in current):
                raise DuplicateSubscriberError(
                    f"Subscriber {subscriber_id} is already registered for {event_name}"
                )
            updated = dict(self._runtime_subscriptions)
            updated[event_name] = current + (subscriber,)
            self._runtime_subscriptions = updated
        logger.debug(
            "Registered runtime subscriber: id=%s, event=%s", subscriber_id, event_name
        )

    def unsubscribe(self, event_name: str, subscriber_id: str) -> bool:
        """Remove a runtime subscriber; return True if one was removed."""
        with self._runtime_lock:
            current = self._runtime_subscriptions.get(event_name)
            if not current:
                return False
            remaining = tuple(s for s in current if s.subscriber_id != subscriber_id)
            if len(remaining) == len(current):
                return False
            updated = dict(self._runtime_subscriptions)
            if remaining:
                updated[event_name] = remaining
            else:
                del updated[event_name]
            self._runtime_subscriptions = updated
        logger.debug(
            "Unregistered runtime subscriber: id=%s, event=%s", subscriber_id, event_name
        )
        return True

    def remove_subscribers(self, predicate: Callable[[EventSubscriber], bool]) -> int:
        """Remove every runtime subscriber matching ``predicate`` in one swap."""
        with self._runtime_lock:
            updated: dict[str, tuple[EventSubscriber, ...]] = {}
            removed = 0
            for event_name, current in self._runtime_subscriptions.items():
                remaining = tuple(s for s in current if not predicate(s))
                removed += len(current) - len(remaining)
                if remaining:
                    updated[event_name] = remaining
            if removed:
                self._runtime_subscriptions = updated
        if removed:
            logger.debug("Removed %s runtime subscribers", removed)
        return removed

    def get_subscription(
        self, event_name: str, subscription_id: str
    ) -> DatabaseEventSubscription | None:
        for subscription in self._database_subscriptions.get(event_name, ()):
            if subscription.id == subscription_id:
                return subscription
        return None

    async def deliver(self, subscription: DatabaseEventSubscription, event: Event) -> bool:
        """Deliver an event to one persisted subscription through its connector.

        Uses the same timeout, logging and metrics as ``emit``. Returns False
        when the connector failed or timed out.
        """
        return await self._invoke(
            "subscription",
            subscription.id,
            event,
            partial(self.connectors.dispatch, subscription, event),
            subscriber_type=subscription.subscriber_type,
        )

    async def emit(self, event: Event) -> None:
        """Deliver an event to every matching subscription and subscriber.

        Failures and timeouts are logged and counted per target; they are
        never raised to the caller.
        """
        event_name = event.name
        EVENTS_EMITTED.labels(event=event_name).inc()
        logger.debug("Emitting event: %s", event_name)

        for subscription in self._database_subscriptions.get(event_name, ()):
            if not subscription.matches_organization(event.organization_uuid):
                continue
            await self._invoke(
                "subscription",
                subscription.id,
                event,
                partial(self.connectors.dispatch, subscription, event),
                subscriber_type=subscription.subscriber_type,
            )

        for subscriber in self._runtime_subscriptions.get(event_name, ()):
            await self._invoke(
                "subscriber",
                subscriber.subscriber_id,
                event,
                partial(subscriber.handle_event, event),
            )

    async def _invoke(
        self,
        kind: str,
        target_id: str,
        event: Event,
        call: Callable[[], Any],
        subscriber_type: str | None = None,
    ) -> bool:
        started = time.monotonic()
        try:
            result = call()
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.handler_timeout)
        except asyncio.TimeoutError:
            EVENT_HANDLER_FAILURES.labels(kind=kind, event=event.name, reason="timeout").inc()
            logger.error(
                "Timed out after %ss processing %s %s for event %s",
                self.handler_timeout,
                kind,
                target_id,
                event.name,
            )
            return False
        except Exception as exc:
            EVENT_HANDLER_FAILURES.labels(kind=kind, event=event.name, reason="error").inc()
            logger.error(
                "Error processing %s %s (type=%s) for event %s: %s",
                kind,
                target_id,
                subscriber_type or "runtime",
                event.name,
                exc,
                exc_info=True,
            )
            return False
        finally:
            observe_handler(kind, time.monotonic() - started)

        EVENT_DELIVERIES.labels(kind=kind, event=event.name).inc()
        logger.debug("Successfully processed %s: %s", kind, target_id)
        return True

    def subscriber_count(self, event_name: str) -> int:
        return len(self._database_subscriptions.get(event_name, ())) + len(
            self._runtime_subscriptions.get(event_name, ())
        )

    def event_names(self) -> list[str]:
        return sorted(set(self._database_subscriptions) | set(self._runtime_subscriptions))

    def clear(self) -> None:
        with self._database_lock:
            self._database_subscriptions = {}
        with self._runtime_lock:
            self._runtime_subscriptions = {}
