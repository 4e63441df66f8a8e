"""Connector resolution for persisted subscriptions.

Each persisted subscription names a ``subscriber_type``. At emission time the
dispatcher asks the ``ConnectorRegistry`` to deliver the event through the
connector registered for that type. Types without a real transport resolve
to ``StubConnector``, which logs a warning and succeeds, so a missing
transport never fails the fan-out.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from app.services.events.subscriber import DatabaseEventSubscription
from app.services.events.types import Event

if TYPE_CHECKING:
    from app.services.queue.base import QueueProvider

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_TYPES = ("webhook", "kafka", "function")


class ConnectorConfigError(ValueError):
    """Raised when a subscription config lacks what its connector needs."""


class Connector(ABC):
    subscriber_type: str

    @abstractmethod
    async def deliver(self, subscription: DatabaseEventSubscription, event: Event) -> None:
        raise NotImplementedError


class StubConnector(Connector):
    def __init__(self, subscriber_type: str) -> None:
        self.subscriber_type = subscriber_type

    async def deliver(self, subscription: DatabaseEventSubscription, event: Event) -> None:
        logger.warning(
            "%s connector not yet implemented for subscription: %s",
            self.subscriber_type,
            subscription.id,
        )


class WebhookConnector(Connector):
    """Delivers events to the URL stored in the subscription config.

    Config shape: ``{"url": "...", "secret": "...", "headers": {...}}``.
    """

    subscriber_type = "webhook"

    async def deliver(self, subscription: DatabaseEventSubscription, event: Event) -> None:
        from app.services.events.webhooks import WebhookTarget, send_webhook

        config = subscription.config if isinstance(subscription.config, dict) else {}
        url = config.get("url")
        if not url:
            raise ConnectorConfigError(
                f"Webhook subscription {subscription.id} has no url configured"
            )
        target = WebhookTarget(
            id=subscription.id,
            url=url,
            secret=config.get("secret"),
            headers=config.get("headers"),
        )
        await send_webhook(target, event)


class QueueConnector(Connector):
    """Hands events to a queue so a worker process delivers them out of band.

    The subscription config names the connector the worker delivers through
    under ``target``, plus whatever that connector needs, e.g.
    ``{"target": "webhook", "url": "..."}``.
    """

    subscriber_type = "queue"

    def __init__(self, provider: QueueProvider) -> None:
        self.provider = provider

    async def deliver(self, subscription: DatabaseEventSubscription, event: Event) -> None:
        await self.provider.push(
            {
                "subscription_id": subscription.id,
                "config": subscription.config,
                "event": event.to_dict(),
            }
        )
        logger.debug(
            "Queued event %s for subscription %s on %s",
            event.name,
            subscription.id,
            self.provider.queue_name,
        )


class ConnectorRegistry:
    def __init__(self, register_defaults: bool = True) -> None:
        self._connectors: dict[str, Connector] = {}
        if register_defaults:
            for subscriber_type in DEFAULT_SUBSCRIBER_TYPES:
                self.register(StubConnector(subscriber_type))

    def register(self, connector: Connector) -> None:
        self._connectors[connector.subscriber_type] = connector

    def get(self, subscriber_type: str) -> Connector | None:
        return self._connectors.get(subscriber_type)

    def types(self) -> list[str]:
        return sorted(self._connectors)

    async def dispatch(self, subscription: DatabaseEventSubscription, event: Event) -> None:
        connector = self.get(subscription.subscriber_type)
        if connector is None:
            logger.warning(
                "Unknown subscriber type '%s' for subscription: %s",
                subscription.subscriber_type,
                subscription.id,
            )
            return
        await connector.deliver(subscription, event)
