"""Subscriber capability and subscription records.

In-process handlers implement ``EventSubscriber``. Persisted subscriptions
are represented by ``DatabaseEventSubscription`` snapshots built from the
``event_subscriptions`` table.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from app.services.events.types import Event


class EventSubscriber(ABC):
    """In-process handler for a single event name.

    ``subscriber_id`` must be unique per event name; the dispatcher refuses a
    second registration with the same pair.
    """

    @property
    @abstractmethod
    def event_name(self) -> str:
        raise NotImplementedError

    @property
    @abstractmethod
    def subscriber_id(self) -> str:
        raise NotImplementedError

    @abstractmethod
    async def handle_event(self, event: Event) -> None:
        """Process an event. Raising signals failure to the dispatcher."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(event_name={self.event_name!r}, "
            f"subscriber_id={self.subscriber_id!r})"
        )


class FunctionSubscriber(EventSubscriber):
    """Adapts a plain async callable to the subscriber interface."""

    def __init__(
        self,
        event_name: str,
        subscriber_id: str,
        func: Callable[[Event], Awaitable[Any]],
    ) -> None:
        if not event_name:
            raise ValueError("event_name is required")
        if not subscriber_id:
            raise ValueError("subscriber_id is required")
        self._event_name = event_name
        self._subscriber_id = subscriber_id
        self._func = func

    @property
    def event_name(self) -> str:
        return self._event_name

    @property
    def subscriber_id(self) -> str:
        return self._subscriber_id

    async def handle_event(self, event: Event) -> None:
        await self._func(event)


@dataclass(frozen=True)
class DatabaseEventSubscription:
    """Snapshot of one active row from ``event_subscriptions``."""

    id: str
    event_name: str
    subscriber_type: str
    config: Any
    active: bool = True
    organization_uuid: str | None = None
    created_from: str = "system"

    def matches_organization(self, organization_uuid: str | None) -> bool:
        """Unscoped subscriptions match everything; scoped ones need an exact match."""
        if self.organization_uuid is None:
            return True
        return organization_uuid == self.organization_uuid
