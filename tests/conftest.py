import os

# app.db builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")

import uuid

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models import EventSubscription, EventWebhook, QueuedMessage  # noqa: F401
from app.services.events.dispatcher import EventDispatcher


@pytest.fixture()
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={
                "check_same_thread": False,
            },
            poolclass=StaticPool,
        )

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def dispatcher():
    return EventDispatcher(handler_timeout=1.0)


@pytest.fixture()
def organization_uuid():
    return str(uuid.uuid4())


@pytest.fixture()
def make_subscription(db_session):
    """Insert an event_subscriptions row and return it."""

    def _make(event_name="user.created", subscriber_type="function", config=None, **kwargs):
        row = EventSubscription(
            event_name=event_name,
            subscriber_type=subscriber_type,
            config=config if config is not None else {},
            **kwargs,
        )
        db_session.add(row)
        db_session.commit()
        return row

    return _make


@pytest.fixture()
def make_webhook(db_session, organization_uuid):
    """Insert an event_webhooks row and return it."""

    def _make(event_name="user.created", url="https://hooks.example.com/events", **kwargs):
        kwargs.setdefault("organization_uuid", organization_uuid)
        kwargs.setdefault("created_by", str(uuid.uuid4()))
        row = EventWebhook(event_name=event_name, url=url, **kwargs)
        db_session.add(row)
        db_session.commit()
        return row

    return _make
