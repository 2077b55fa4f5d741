"""Topic-based publish/subscribe relay with cross-process fan-out."""
from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Union
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from .topics import (
    TOPIC_PAYLOADS,
    WILDCARD,
    DomainEvent,
    is_valid_topic,
    known_namespaces,
    namespace_of,
)

LOGGER = logging.getLogger("events.relay")

EventHandler = Callable[[DomainEvent], Union[None, Awaitable[None]]]
BroadcastReceiver = Callable[[Dict[str, Any]], Awaitable[None]]


class BroadcastTransport(Protocol):
    """Carries serialized events between relays, one channel per topic namespace."""

    def join(self, namespace: str, receiver: BroadcastReceiver) -> None:
        """Start delivering messages published on ``namespace`` to ``receiver``."""

    async def broadcast(self, namespace: str, message: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class InProcessBroadcastHub:
    """Broadcast transport connecting relays that share one process."""

    def __init__(self) -> None:
        self._receivers: Dict[str, List[BroadcastReceiver]] = defaultdict(list)

    def join(self, namespace: str, receiver: BroadcastReceiver) -> None:
        if receiver not in self._receivers[namespace]:
            self._receivers[namespace].append(receiver)

    async def broadcast(self, namespace: str, message: Dict[str, Any]) -> None:
        for receiver in list(self._receivers.get(namespace, ())):
            await receiver(message)

    async def close(self) -> None:
        self._receivers.clear()


@dataclass(frozen=True)
class _Subscription:
    topic: str
    handler: EventHandler


class EventRelay:
    """Delivers events to local subscribers and to relays reachable through the transport.

    Delivery is at-most-once per subscription and nothing is persisted. A
    relay never re-delivers its own broadcasts, so local subscribers see each
    publish exactly once.
    """

    def __init__(self, transport: Optional[BroadcastTransport] = None, *, relay_id: Optional[str] = None) -> None:
        self.relay_id = relay_id or uuid4().hex
        self._transport = transport
        self._subscriptions: Dict[str, _Subscription] = {}
        self._joined: set[str] = set()

    def subscribe(self, topic: str, handler: EventHandler) -> str:
        """Register ``handler`` for ``topic`` (or ``*`` for every topic)."""

        if topic != WILDCARD and not is_valid_topic(topic):
            LOGGER.warning("Subscribing to non-conforming topic %r", topic)
        subscription_id = uuid4().hex
        self._subscriptions[subscription_id] = _Subscription(topic=topic, handler=handler)
        namespaces = known_namespaces() if topic == WILDCARD else {namespace_of(topic)}
        for namespace in sorted(namespaces):
            self._join(namespace)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(
        self,
        topic: str,
        payload: Union[BaseModel, Mapping[str, Any]],
        *,
        correlation_id: Optional[str] = None,
    ) -> DomainEvent:
        """Fan ``payload`` out to local subscribers, then to other relays."""

        if not is_valid_topic(topic):
            LOGGER.warning("Publishing to non-conforming topic %r", topic)
        body = self._serialize_payload(topic, payload)
        namespace = namespace_of(topic)
        envelope: Dict[str, Any] = {"topic": topic, "payload": body, "source": namespace, "origin": self.relay_id}
        if correlation_id:
            envelope["correlation_id"] = correlation_id
        event = DomainEvent(**envelope)

        await self._deliver(event)
        if self._transport is not None:
            self._join(namespace)
            await self._transport.broadcast(namespace, event.model_dump(mode="json", by_alias=True))
        return event

    async def receive(self, message: Dict[str, Any]) -> None:
        """Handle a message arriving from the transport."""

        if message.get("origin") == self.relay_id:
            return
        try:
            event = DomainEvent.model_validate(message)
        except ValidationError:
            LOGGER.warning("Dropping malformed relay message: %r", message)
            return
        await self._deliver(event)

    async def close(self) -> None:
        self._subscriptions.clear()
        if self._transport is not None:
            await self._transport.close()

    def _join(self, namespace: str) -> None:
        if self._transport is None or namespace in self._joined:
            return
        self._transport.join(namespace, self.receive)
        self._joined.add(namespace)

    @staticmethod
    def _serialize_payload(topic: str, payload: Union[BaseModel, Mapping[str, Any]]) -> Dict[str, Any]:
        schema = TOPIC_PAYLOADS.get(topic)
        if isinstance(payload, BaseModel):
            model = payload
        elif schema is not None:
            model = schema.model_validate(dict(payload))
        else:
            return dict(payload)
        return model.model_dump(mode="json", by_alias=True)

    async def _deliver(self, event: DomainEvent) -> None:
        for subscription in list(self._subscriptions.values()):
            if subscription.topic != WILDCARD and subscription.topic != event.topic:
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("Event handler failed for topic %s", event.topic)
