"""Webhook support for the event system.

Organizations register HTTP endpoints per event name. At startup the active
webhooks are wrapped in ``WebhookSubscriber`` instances and registered with
the dispatcher, which POSTs each matching event as JSON with an optional
HMAC-SHA256 signature.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import EVENT_WEBHOOK_HEADERS_DROPPED
from app.models.event_webhook import EventWebhook
from app.schemas.events import WebhookCreate, WebhookUpdate
from app.services.events.store import MalformedConfigError, decode_json_value
from app.services.events.subscriber import EventSubscriber
from app.services.events.types import Event

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookError(Exception):
    """Base exception for webhook storage and delivery."""


class WebhookNotFoundError(WebhookError):
    pass


class WebhookStoreError(WebhookError):
    pass


class WebhookDeliveryError(WebhookError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class WebhookTarget:
    """Delivery details for one endpoint, independent of where they are stored."""

    id: str
    url: str
    secret: str | None = None
    headers: dict[str, Any] | None = None

    @classmethod
    def from_model(cls, webhook: EventWebhook) -> "WebhookTarget":
        return cls(
            id=webhook.id,
            url=webhook.url,
            secret=webhook.secret,
            headers=decode_webhook_headers(webhook.id, webhook.headers),
        )


def decode_webhook_headers(webhook_id: str, raw: Any) -> dict[str, Any] | None:
    """Decode stored custom headers.

    Malformed headers are logged and dropped; the webhook itself stays usable.
    """
    try:
        headers = decode_json_value(raw)
        if headers is not None and not isinstance(headers, dict):
            raise MalformedConfigError("headers must be a JSON object")
    except MalformedConfigError as exc:
        EVENT_WEBHOOK_HEADERS_DROPPED.inc()
        logger.warning("Ignoring malformed headers for webhook %s: %s", webhook_id, exc)
        return None
    return headers


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise WebhookStoreError(f"Failed to {action}: {exc}") from exc


def load_webhooks(db: Session) -> list[EventWebhook]:
    """Load all active webhooks ordered by (event_name, id)."""
    return (
        db.query(EventWebhook)
        .filter(EventWebhook.active.is_(True))
        .order_by(EventWebhook.event_name.asc(), EventWebhook.id.asc())
        .all()
    )


def load_webhooks_by_organization(db: Session, organization_uuid: str) -> list[EventWebhook]:
    """Load an organization's active webhooks ordered by (event_name, created_at)."""
    return (
        db.query(EventWebhook)
        .filter(EventWebhook.organization_uuid == organization_uuid)
        .filter(EventWebhook.active.is_(True))
        .order_by(EventWebhook.event_name.asc(), EventWebhook.created_at.asc())
        .all()
    )


def get_webhook(db: Session, webhook_id: str, organization_uuid: str) -> EventWebhook:
    webhook = (
        db.query(EventWebhook)
        .filter(EventWebhook.id == webhook_id)
        .filter(EventWebhook.organization_uuid == organization_uuid)
        .first()
    )
    if not webhook:
        raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
    return webhook


def create_webhook(
    db: Session, organization_uuid: str, created_by: str, payload: WebhookCreate
) -> EventWebhook:
    webhook = EventWebhook(
        organization_uuid=organization_uuid,
        created_by=created_by,
        active=True,
        **payload.model_dump(),
    )
    db.add(webhook)
    _commit(db, "create webhook")
    db.refresh(webhook)
    logger.info(
        "Created webhook %s for %s (organization=%s)",
        webhook.id,
        webhook.event_name,
        organization_uuid,
    )
    return webhook


def update_webhook(
    db: Session, webhook_id: str, organization_uuid: str, payload: WebhookUpdate
) -> EventWebhook:
    webhook = get_webhook(db, webhook_id, organization_uuid)
    data = payload.model_dump(exclude_unset=True)
    for key, value in data.items():
        setattr(webhook, key, value)
    webhook.updated_at = datetime.now(UTC)
    _commit(db, f"update webhook {webhook_id}")
    db.refresh(webhook)
    return webhook


def delete_webhook(db: Session, webhook_id: str, organization_uuid: str) -> None:
    webhook = get_webhook(db, webhook_id, organization_uuid)
    db.delete(webhook)
    _commit(db, f"delete webhook {webhook_id}")


def build_webhook_body(webhook_id: str, event: Event) -> str:
    return json.dumps({"event": event.to_dict(), "webhook_id": webhook_id})


def compute_signature(body: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for payload verification."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def build_webhook_headers(target: WebhookTarget, body: str) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.webhook_user_agent,
    }
    for key, value in (target.headers or {}).items():
        if isinstance(value, str):
            headers[key] = value
    if target.secret:
        headers[SIGNATURE_HEADER] = f"sha256={compute_signature(body, target.secret)}"
    return headers


async def send_webhook(
    target: WebhookTarget, event: Event, client: httpx.AsyncClient | None = None
) -> None:
    """POST an event to a webhook endpoint.

    Raises WebhookDeliveryError on transport errors and non-2xx responses.
    """
    body = build_webhook_body(target.id, event)
    headers = build_webhook_headers(target, body)

    logger.debug("Sending webhook to %s for event %s", target.url, event.name)
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as owned:
                response = await owned.post(target.url, content=body, headers=headers)
        else:
            response = await client.post(target.url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        raise WebhookDeliveryError(f"Webhook request to {target.url} failed: {exc}") from exc

    if response.is_success:
        logger.debug(
            "Webhook delivered successfully: %s (status: %s)", target.url, response.status_code
        )
        return

    error_text = response.text[:500]
    logger.warning(
        "Webhook delivery failed: %s (status: %s, error: %s)",
        target.url,
        response.status_code,
        error_text,
    )
    raise WebhookDeliveryError(
        f"Webhook delivery failed with status {response.status_code}: {error_text}",
        status_code=response.status_code,
    )


class WebhookSubscriber(EventSubscriber):
    """Runtime subscriber that forwards one organization's events to a webhook."""

    def __init__(
        self,
        webhook_id: str,
        event_name: str,
        organization_uuid: str,
        target: WebhookTarget,
    ) -> None:
        self.webhook_id = webhook_id
        self._event_name = event_name
        self.organization_uuid = organization_uuid
        self.target = target

    @classmethod
    def from_model(cls, webhook: EventWebhook) -> "WebhookSubscriber":
        return cls(
            webhook_id=webhook.id,
            event_name=webhook.event_name,
            organization_uuid=webhook.organization_uuid,
            target=WebhookTarget.from_model(webhook),
        )

    @property
    def event_name(self) -> str:
        return self._event_name

    @property
    def subscriber_id(self) -> str:
        return f"webhook:{self.webhook_id}"

    async def handle_event(self, event: Event) -> None:
        if event.organization_uuid != self.organization_uuid:
            return
        await send_webhook(self.target, event)


def register_webhooks(dispatcher, webhooks: list[EventWebhook]) -> int:
    """Register a WebhookSubscriber per webhook.

    This is a full replace: webhook subscribers from an earlier call are
    removed first, so deleted or deactivated webhooks stop receiving events.
    """
    dispatcher.remove_subscribers(lambda s: isinstance(s, WebhookSubscriber))
    registered = 0
    for webhook in webhooks:
        dispatcher.subscribe(WebhookSubscriber.from_model(webhook))
        registered += 1
    logger.info("Registered %s webhooks with the event dispatcher", registered)
    return registered
