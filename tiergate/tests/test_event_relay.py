from __future__ import annotations

import asyncio
import logging
from typing import List

import pytest
from pydantic import ValidationError

from tiergate.app.billing.models import Tier
from tiergate.app.events import (
    DomainEvent,
    EventRelay,
    InProcessBroadcastHub,
    TierUpdatedPayload,
    Topic,
)
from tiergate.app.events.postgres import PostgresNotifyTransport, channel_for
from tiergate.app.notifications import LowBalanceNotificationTrigger


@pytest.mark.asyncio
async def test_publish_reaches_topic_and_wildcard_subscribers() -> None:
    relay = EventRelay()
    exact: List[DomainEvent] = []
    everything: List[DomainEvent] = []
    relay.subscribe("billing.tier.updated", exact.append)
    relay.subscribe("*", everything.append)

    event = await relay.publish(
        Topic.TIER_UPDATED.value,
        {"accountId": "acct-1", "previousTier": "free", "newTier": "lite"},
    )
    await relay.publish("usage.balance.low", {"accountId": "acct-1", "remaining": 5, "threshold": 1000, "limit": 10_000, "tier": "free"})

    assert exact == [event]
    assert [item.topic for item in everything] == ["billing.tier.updated", "usage.balance.low"]
    assert event.source == "billing"
    assert event.correlation_id
    assert isinstance(event.typed_payload(), TierUpdatedPayload)


@pytest.mark.asyncio
async def test_unsubscribe_reports_whether_removed() -> None:
    relay = EventRelay()
    received: List[DomainEvent] = []
    subscription_id = relay.subscribe("billing.tier.updated", received.append)

    assert relay.unsubscribe(subscription_id) is True
    assert relay.unsubscribe(subscription_id) is False

    await relay.publish("billing.tier.updated", TierUpdatedPayload(account_id="a", new_tier=Tier.FULL))
    assert received == []


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(caplog) -> None:
    relay = EventRelay()
    received: List[DomainEvent] = []

    def explode(event: DomainEvent) -> None:
        raise RuntimeError("boom")

    relay.subscribe("billing.tier.updated", explode)
    relay.subscribe("billing.tier.updated", received.append)

    with caplog.at_level(logging.ERROR, logger="events.relay"):
        await relay.publish("billing.tier.updated", TierUpdatedPayload(account_id="a", new_tier=Tier.LITE))

    assert len(received) == 1
    assert "Event handler failed" in caplog.text


@pytest.mark.asyncio
async def test_async_handlers_are_awaited() -> None:
    relay = EventRelay()
    received: List[str] = []

    async def handler(event: DomainEvent) -> None:
        received.append(event.payload["accountId"])

    relay.subscribe("billing.tier.updated", handler)
    await relay.publish("billing.tier.updated", TierUpdatedPayload(account_id="acct-9", new_tier=Tier.LITE))

    assert received == ["acct-9"]


@pytest.mark.asyncio
async def test_non_conforming_topic_is_delivered_with_warning(caplog) -> None:
    relay = EventRelay()
    received: List[DomainEvent] = []

    with caplog.at_level(logging.WARNING, logger="events.relay"):
        relay.subscribe("BadTopic", received.append)
        await relay.publish("BadTopic", {"value": 1})

    assert len(received) == 1
    assert "non-conforming topic" in caplog.text


@pytest.mark.asyncio
async def test_known_topic_payload_is_validated() -> None:
    relay = EventRelay()

    with pytest.raises(ValidationError):
        await relay.publish("billing.tier.updated", {"accountId": "a", "newTier": "platinum"})


@pytest.mark.asyncio
async def test_cross_relay_delivery_is_exactly_once_and_ordered() -> None:
    hub = InProcessBroadcastHub()
    sender = EventRelay(hub)
    receiver = EventRelay(hub)
    local: List[DomainEvent] = []
    remote: List[DomainEvent] = []
    sender.subscribe("billing.tier.updated", local.append)
    receiver.subscribe("billing.tier.updated", remote.append)

    for account in ("a", "b", "c"):
        await sender.publish("billing.tier.updated", TierUpdatedPayload(account_id=account, new_tier=Tier.FULL))

    assert [event.payload["accountId"] for event in local] == ["a", "b", "c"]
    assert [event.payload["accountId"] for event in remote] == ["a", "b", "c"]
    assert remote[0].correlation_id == local[0].correlation_id
    assert remote[0].origin == sender.relay_id


@pytest.mark.asyncio
async def test_broadcast_is_scoped_by_namespace() -> None:
    hub = InProcessBroadcastHub()
    sender = EventRelay(hub)
    billing_listener = EventRelay(hub)
    usage_listener = EventRelay(hub)
    calls: List[str] = []

    async def record_usage_receive(message):
        calls.append(message["topic"])

    billing_listener.subscribe("billing.tier.updated", lambda event: None)
    usage_listener.subscribe("usage.balance.low", lambda event: None)
    hub.join("usage", record_usage_receive)

    await sender.publish("billing.tier.updated", TierUpdatedPayload(account_id="a", new_tier=Tier.LITE))

    assert calls == []


@pytest.mark.asyncio
async def test_low_balance_trigger_forwards_to_notifier() -> None:
    relay = EventRelay()
    warnings = []

    class RecordingNotifier:
        def notify_low_balance(self, warning) -> None:
            warnings.append(warning)

    trigger = LowBalanceNotificationTrigger(relay=relay, notifier=RecordingNotifier())
    trigger.start()
    await relay.publish(
        "usage.balance.low",
        {"accountId": "acct-1", "remaining": 10, "threshold": 1000, "limit": 10_000, "tier": "free"},
    )
    trigger.stop()
    await relay.publish(
        "usage.balance.low",
        {"accountId": "acct-1", "remaining": 5, "threshold": 1000, "limit": 10_000, "tier": "free"},
    )

    assert [warning.remaining for warning in warnings] == [10]
    assert relay.subscription_count == 0


def test_postgres_channel_names_are_sanitized() -> None:
    assert channel_for("billing") == "tiergate_federation_billing"
    assert channel_for("my-app") == "tiergate_federation_my_app"


class _FakeConnection:
    def __init__(self, *, fail_execute: bool = False) -> None:
        self.fail_execute = fail_execute
        self.listeners = {}
        self.notified: List[tuple] = []
        self.closed = False

    async def add_listener(self, channel, callback) -> None:
        self.listeners[channel] = callback

    async def execute(self, query, *args) -> None:
        if self.fail_execute:
            raise RuntimeError("connection reset")
        self.notified.append(args)

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_postgres_transport_closes_after_failed_notify(caplog) -> None:
    connection = _FakeConnection(fail_execute=True)
    transport = PostgresNotifyTransport(connection)

    await transport.broadcast("billing", {"topic": "billing.tier.updated"})
    await transport.broadcast("billing", {"topic": "billing.tier.updated"})
    await asyncio.wait_for(transport.close(), timeout=1)

    assert connection.closed is True
    assert caplog.text.count("Relay notify on tiergate_federation_billing failed") == 2


@pytest.mark.asyncio
async def test_postgres_transport_listens_and_dispatches() -> None:
    connection = _FakeConnection()
    transport = PostgresNotifyTransport(connection)
    received: List[dict] = []

    async def receiver(message: dict) -> None:
        received.append(message)

    transport.join("billing", receiver)
    await transport.broadcast("billing", {"topic": "billing.tier.updated"})
    await transport.flush()

    assert connection.notified == [("tiergate_federation_billing", '{"topic": "billing.tier.updated"}')]
    callback = connection.listeners["tiergate_federation_billing"]
    callback(connection, 1, "tiergate_federation_billing", '{"topic": "billing.tier.updated"}')
    callback(connection, 1, "tiergate_federation_billing", "not json")
    for _ in range(10):
        if received:
            break
        await asyncio.sleep(0.01)

    assert received == [{"topic": "billing.tier.updated"}]
    await asyncio.wait_for(transport.close(), timeout=1)
    assert connection.closed is True
