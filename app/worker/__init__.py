"""Background worker that drains a message queue.

The worker pops one message at a time, hands it to a handler and deletes it
once the handler returns. A handler failure leaves the message
unacknowledged, so the backend redelivers it according to its own rules
(visibility timeout, pending entries list, ...).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from app.services.events.connectors import (
    ConnectorConfigError,
    ConnectorRegistry,
    QueueConnector,
    WebhookConnector,
)
from app.services.events.dispatcher import EventDispatcher
from app.services.events.subscriber import DatabaseEventSubscription
from app.services.events.types import Event, EventPayloadError
from app.services.queue.base import QueueMessage, QueueProvider
from app.services.queue.errors import QueueConnectionError, QueueError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[QueueMessage], Awaitable[None]]

# Back-off after the backend reports it is unreachable
_RECONNECT_DELAY_SECONDS = 5.0


class QueueWorker:
    def __init__(
        self,
        provider: QueueProvider,
        handler: MessageHandler,
        pop_timeout: float = 5.0,
    ):
        self.provider = provider
        self.handler = handler
        self.pop_timeout = pop_timeout
        self._running = False
        self._processed = 0
        self._failed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return {"processed": self._processed, "failed": self._failed}

    async def run(self) -> None:
        """Process messages until ``stop`` is called."""
        self._running = True
        logger.info(
            "Queue worker started: backend=%s, queue=%s",
            self.provider.backend,
            self.provider.queue_name,
        )
        try:
            while self._running:
                try:
                    message = await self.provider.pop(timeout=self.pop_timeout)
                except QueueConnectionError as exc:
                    if not self._running:
                        break
                    logger.error("Queue backend unavailable: %s", exc)
                    await asyncio.sleep(_RECONNECT_DELAY_SECONDS)
                    continue
                except QueueError as exc:
                    logger.error("Failed to pop message: %s", exc)
                    continue
                if message is None:
                    continue
                await self.process(message)
        finally:
            self._running = False
            await self.provider.close()
            logger.info(
                "Queue worker stopped: processed=%s, failed=%s",
                self._processed,
                self._failed,
            )

    async def process(self, message: QueueMessage) -> bool:
        """Run the handler for one message; acknowledge it on success."""
        try:
            await self.handler(message)
        except Exception:
            self._failed += 1
            logger.exception("Handler failed for queue message %s", message.id)
            return False

        if message.receipt_handle:
            try:
                await self.provider.delete(message.receipt_handle)
            except QueueError as exc:
                logger.error("Failed to acknowledge queue message %s: %s", message.id, exc)
                return False
        self._processed += 1
        return True

    async def stop(self) -> None:
        """Ask the loop to exit after the current pop returns."""
        self._running = False


class EventDeliveryError(Exception):
    """Raised when a queued delivery failed and should be retried."""


def build_worker_connectors() -> ConnectorRegistry:
    registry = ConnectorRegistry()
    registry.register(WebhookConnector())
    return registry


class EventDeliveryHandler:
    """Delivers a queued event to the one subscription that queued it.

    Messages are the ones ``QueueConnector`` produces:
    ``{"subscription_id": ..., "config": ..., "event": {...}}``. The
    subscription's current config is taken from the dispatcher's cache when
    it is loaded there, otherwise from the message.
    """

    def __init__(self, dispatcher: EventDispatcher):
        self.dispatcher = dispatcher

    async def __call__(self, message: QueueMessage) -> None:
        payload = message.payload
        if not isinstance(payload, dict) or not isinstance(payload.get("event"), dict):
            raise EventPayloadError(f"Queue message {message.id} does not carry an event")
        subscription_id = payload.get("subscription_id")
        if not subscription_id:
            raise EventPayloadError(f"Queue message {message.id} has no subscription_id")

        event = Event.from_dict(payload["event"])
        target = self._resolve_target(subscription_id, event, payload.get("config"))
        if not await self.dispatcher.deliver(target, event):
            raise EventDeliveryError(
                f"Delivery of {event.name} to subscription {subscription_id} failed"
            )

    def _resolve_target(
        self, subscription_id: str, event: Event, queued_config
    ) -> DatabaseEventSubscription:
        cached = self.dispatcher.get_subscription(event.name, subscription_id)
        config = cached.config if cached is not None else queued_config
        target_type = config.get("target") if isinstance(config, dict) else None
        if not target_type:
            raise ConnectorConfigError(
                f"Queue subscription {subscription_id} does not name a target connector"
            )
        if target_type == QueueConnector.subscriber_type:
            raise ConnectorConfigError(
                f"Queue subscription {subscription_id} cannot target the queue itself"
            )
        return DatabaseEventSubscription(
            id=subscription_id,
            event_name=event.name,
            subscriber_type=target_type,
            config=config,
            organization_uuid=cached.organization_uuid if cached is not None else None,
        )
