"""Tests for webhook storage, signing and delivery."""

import hashlib
import hmac
import json
import logging
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from prometheus_client import REGISTRY
from pydantic import ValidationError
from sqlalchemy import text

from app.schemas.events import WebhookCreate, WebhookRead, WebhookUpdate
from app.services.events import initialize
from app.services.events.dispatcher import EventDispatcher
from app.services.events.types import Event
from app.services.events.webhooks import (
    SIGNATURE_HEADER,
    WebhookDeliveryError,
    WebhookNotFoundError,
    WebhookSubscriber,
    WebhookTarget,
    build_webhook_body,
    build_webhook_headers,
    compute_signature,
    create_webhook,
    delete_webhook,
    get_webhook,
    load_webhooks,
    load_webhooks_by_organization,
    register_webhooks,
    send_webhook,
    update_webhook,
)


def _response(status_code=200, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.is_success = 200 <= status_code < 300
    response.text = text
    return response


class TestSchemas:
    def test_rejects_non_http_url(self):
        with pytest.raises(ValidationError):
            WebhookCreate(event_name="user.created", url="ftp://example.com")

    def test_rejects_non_string_header(self):
        with pytest.raises(ValidationError):
            WebhookCreate(
                event_name="user.created",
                url="https://example.com",
                headers={"X-Retry": 3},
            )

    def test_read_masks_secret(self, make_webhook):
        webhook = make_webhook(secret="top-secret")
        data = WebhookRead.model_validate(webhook).model_dump()
        assert data["secret"] == "********"


class TestWebhookCrud:
    def test_create_and_get(self, db_session, organization_uuid):
        created = create_webhook(
            db_session,
            organization_uuid,
            "user-1",
            WebhookCreate(
                event_name="user.created",
                url="https://example.com/hook",
                secret="s",
                headers={"X-Team": "core"},
            ),
        )

        fetched = get_webhook(db_session, created.id, organization_uuid)
        assert fetched.url == "https://example.com/hook"
        assert WebhookTarget.from_model(fetched).headers == {"X-Team": "core"}
        assert WebhookRead.model_validate(fetched).headers == {"X-Team": "core"}
        assert fetched.active is True
        assert fetched.created_by == "user-1"

    def test_get_is_scoped_to_organization(self, db_session, make_webhook):
        webhook = make_webhook()
        with pytest.raises(WebhookNotFoundError):
            get_webhook(db_session, webhook.id, str(uuid.uuid4()))

    def test_update(self, db_session, make_webhook, organization_uuid):
        webhook = make_webhook()
        updated = update_webhook(
            db_session,
            webhook.id,
            organization_uuid,
            WebhookUpdate(url="https://example.com/v2", active=False),
        )
        assert updated.url == "https://example.com/v2"
        assert updated.active is False
        assert updated.event_name == "user.created"

    def test_delete(self, db_session, make_webhook, organization_uuid):
        webhook = make_webhook()
        delete_webhook(db_session, webhook.id, organization_uuid)
        assert load_webhooks_by_organization(db_session, organization_uuid) == []

    def test_load_webhooks_only_active(self, db_session, make_webhook):
        active = make_webhook()
        make_webhook(active=False)
        assert [w.id for w in load_webhooks(db_session)] == [active.id]

    def test_load_by_organization_filters_and_orders(
        self, db_session, make_webhook, organization_uuid
    ):
        deleted = make_webhook("user.deleted")
        created = make_webhook("user.created")
        make_webhook("user.archived", active=False)
        make_webhook("user.created", organization_uuid=str(uuid.uuid4()))

        webhooks = load_webhooks_by_organization(db_session, organization_uuid)

        assert [w.id for w in webhooks] == [created.id, deleted.id]


class TestMalformedHeaders:
    @pytest.fixture()
    def corrupt_headers(self, db_session):
        if db_session.get_bind().dialect.name != "sqlite":
            pytest.skip("native JSON columns reject malformed documents")

        def _corrupt(webhook, raw):
            db_session.execute(
                text("UPDATE event_webhooks SET headers = :raw WHERE id = :id"),
                {"raw": raw, "id": webhook.id},
            )
            db_session.commit()
            db_session.expire_all()

        return _corrupt

    @pytest.mark.parametrize("raw", ["{bad", "[1, 2]", "\"text\""])
    def test_initialize_survives_malformed_headers(
        self, db_session, make_webhook, corrupt_headers, caplog, raw
    ):
        webhook = make_webhook(headers={"X-Team": "core"})
        corrupt_headers(webhook, raw)
        dispatcher = EventDispatcher()
        before = REGISTRY.get_sample_value("event_webhook_headers_dropped_total") or 0

        with caplog.at_level(logging.WARNING):
            initialize(dispatcher, db_session)

        assert dispatcher.subscriber_count("user.created") == 1
        assert WebhookTarget.from_model(webhook).headers is None
        assert f"Ignoring malformed headers for webhook {webhook.id}" in caplog.text
        after = REGISTRY.get_sample_value("event_webhook_headers_dropped_total")
        assert after >= before + 1

    def test_read_schema_drops_malformed_headers(self, db_session, make_webhook, corrupt_headers):
        webhook = make_webhook(headers={"X-Team": "core"})
        corrupt_headers(webhook, "{bad")

        assert WebhookRead.model_validate(webhook).headers is None

    @pytest.mark.asyncio
    async def test_webhook_is_still_delivered_without_custom_headers(
        self, db_session, make_webhook, corrupt_headers, organization_uuid
    ):
        webhook = make_webhook(headers={"X-Team": "core"})
        corrupt_headers(webhook, "{bad")
        dispatcher = EventDispatcher(handler_timeout=1.0)
        initialize(dispatcher, db_session)

        with patch(
            "app.services.events.webhooks.send_webhook", new_callable=AsyncMock
        ) as mock_send:
            await dispatcher.emit(Event("user.created").with_organization(organization_uuid))

        target = mock_send.await_args.args[0]
        assert target.id == webhook.id
        assert target.headers is None


class TestSigning:
    def test_signature_is_hmac_sha256_of_body(self):
        body = build_webhook_body("wh-1", Event("user.created"))
        expected = hmac.new(b"secret", body.encode("utf-8"), hashlib.sha256).hexdigest()
        assert compute_signature(body, "secret") == expected

    def test_headers_with_secret(self):
        target = WebhookTarget(
            id="wh-1", url="https://example.com", secret="secret", headers={"X-Team": "core"}
        )
        body = build_webhook_body(target.id, Event("user.created"))

        headers = build_webhook_headers(target, body)

        assert headers["Content-Type"] == "application/json"
        assert headers["X-Team"] == "core"
        assert headers["User-Agent"]
        assert headers[SIGNATURE_HEADER] == f"sha256={compute_signature(body, 'secret')}"

    def test_headers_without_secret(self):
        target = WebhookTarget(id="wh-1", url="https://example.com")
        headers = build_webhook_headers(target, "{}")
        assert SIGNATURE_HEADER not in headers

    def test_body_shape(self):
        event = Event("user.created", {"user_id": "u1"})
        body = json.loads(build_webhook_body("wh-1", event))
        assert body == {"event": event.to_dict(), "webhook_id": "wh-1"}


class TestSendWebhook:
    @pytest.mark.asyncio
    async def test_posts_signed_body(self):
        client = AsyncMock()
        client.post = AsyncMock(return_value=_response(204))
        target = WebhookTarget(id="wh-1", url="https://example.com/hook", secret="secret")
        event = Event("user.created", {"user_id": "u1"})

        await send_webhook(target, event, client=client)

        url = client.post.await_args.args[0]
        kwargs = client.post.await_args.kwargs
        assert url == "https://example.com/hook"
        assert json.loads(kwargs["content"])["webhook_id"] == "wh-1"
        assert kwargs["headers"][SIGNATURE_HEADER].startswith("sha256=")

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self):
        client = AsyncMock()
        client.post = AsyncMock(return_value=_response(500, "server error"))
        target = WebhookTarget(id="wh-1", url="https://example.com/hook")

        with pytest.raises(WebhookDeliveryError) as exc_info:
            await send_webhook(target, Event("user.created"), client=client)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        client = AsyncMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
        target = WebhookTarget(id="wh-1", url="https://example.com/hook")

        with pytest.raises(WebhookDeliveryError):
            await send_webhook(target, Event("user.created"), client=client)

    @pytest.mark.asyncio
    async def test_owns_client_when_none_given(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = AsyncMock()
            mock_instance.post = AsyncMock(return_value=_response(200))
            mock_client.return_value.__aenter__ = AsyncMock(return_value=mock_instance)
            mock_client.return_value.__aexit__ = AsyncMock(return_value=None)

            await send_webhook(
                WebhookTarget(id="wh-1", url="https://example.com/hook"), Event("user.created")
            )

        mock_instance.post.assert_awaited_once()


class TestWebhookSubscriber:
    @pytest.mark.asyncio
    async def test_skips_other_organizations(self, make_webhook, organization_uuid):
        subscriber = WebhookSubscriber.from_model(make_webhook())
        with patch(
            "app.services.events.webhooks.send_webhook", new_callable=AsyncMock
        ) as mock_send:
            await subscriber.handle_event(Event("user.created").with_organization("other"))
            await subscriber.handle_event(Event("user.created"))
            mock_send.assert_not_awaited()

            await subscriber.handle_event(
                Event("user.created").with_organization(organization_uuid)
            )
            mock_send.assert_awaited_once()

    def test_subscriber_id(self, make_webhook):
        webhook = make_webhook()
        assert WebhookSubscriber.from_model(webhook).subscriber_id == f"webhook:{webhook.id}"

    def test_register_webhooks_replaces_previous_registration(self, make_webhook):
        dispatcher = EventDispatcher()
        webhooks = [make_webhook(), make_webhook("user.deleted")]

        assert register_webhooks(dispatcher, webhooks) == 2
        assert register_webhooks(dispatcher, webhooks) == 2
        assert dispatcher.subscriber_count("user.created") == 1
        assert dispatcher.subscriber_count("user.deleted") == 1

    @pytest.mark.asyncio
    async def test_delivery_failure_stays_inside_dispatcher(self, make_webhook, organization_uuid):
        dispatcher = EventDispatcher(handler_timeout=1.0)
        register_webhooks(dispatcher, [make_webhook()])
        with patch(
            "app.services.events.webhooks.send_webhook",
            new_callable=AsyncMock,
            side_effect=WebhookDeliveryError("down", status_code=503),
        ) as mock_send:
            await dispatcher.emit(Event("user.created").with_organization(organization_uuid))
        mock_send.assert_awaited_once()
