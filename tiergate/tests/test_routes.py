"""HTTP surface tests using FastAPI's TestClient."""
from __future__ import annotations

from typing import Tuple

import pytest
from fastapi.testclient import TestClient

from tiergate.app.ledger.store import InMemoryLedgerStore
from tiergate.app.services.container import ServiceContainer, assemble_container
from tiergate.config import load_settings
from tiergate.main import create_app
from tiergate.tests.factories import (
    FULL_PRICE,
    WEBHOOK_SECRET,
    FakeStripeProvider,
    provider_event,
    sign_payload,
    subscription_object,
)


@pytest.fixture
def wired() -> Tuple[ServiceContainer, FakeStripeProvider, InMemoryLedgerStore]:
    settings = load_settings({"LEDGER_BACKEND": "memory", "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET})
    ledger = InMemoryLedgerStore()
    provider = FakeStripeProvider()
    container = assemble_container(settings, ledger=ledger, provider=provider)
    return container, provider, ledger


@pytest.fixture
def client(wired):
    container, _, _ = wired
    with TestClient(create_app(container=container)) as test_client:
        yield test_client


def _post_webhook(client: TestClient, payload: str, signature: str):
    return client.post(
        "/webhook",
        content=payload.encode("utf-8"),
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


def test_valid_webhook_is_acknowledged(client, wired) -> None:
    container, provider, ledger = wired
    ledger.register_account("acct-1", email="ada@example.com")
    provider.customer_emails["cus_1"] = "ada@example.com"
    payload = provider_event("customer.subscription.created", subscription_object(customer="cus_1", price_id=FULL_PRICE))

    response = _post_webhook(client, payload, sign_payload(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_bad_signature_returns_400(client) -> None:
    payload = provider_event("customer.subscription.created", subscription_object(customer="cus_1", price_id=FULL_PRICE))

    response = _post_webhook(client, payload, sign_payload(payload, secret="whsec_other"))

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_SIGNATURE"


def test_missing_signature_returns_400(client) -> None:
    response = client.post("/webhook", content=b"{}")

    assert response.status_code == 400


def test_unknown_price_is_acknowledged_as_unprocessed(client, wired) -> None:
    _, _, ledger = wired
    ledger.register_account("acct-1", billing_customer_ref="cus_1")
    payload = provider_event("customer.subscription.updated", subscription_object(customer="cus_1", price_id="price_nope"))

    response = _post_webhook(client, payload, sign_payload(payload))

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": False, "reason": "UNKNOWN_PRICE"}


def test_ledger_outage_during_webhook_returns_500(client, wired) -> None:
    _, _, ledger = wired
    ledger.register_account("acct-1", billing_customer_ref="cus_1")
    ledger.available = False
    payload = provider_event("customer.subscription.updated", subscription_object(customer="cus_1", price_id=FULL_PRICE))

    response = _post_webhook(client, payload, sign_payload(payload))

    assert response.status_code == 500


def test_health_reports_ledger_state(client, wired) -> None:
    _, _, ledger = wired

    healthy = client.get("/health")
    assert healthy.status_code == 200
    assert healthy.json()["status"] == "healthy"

    ledger.available = False
    unhealthy = client.get("/health")
    assert unhealthy.status_code == 503
    assert unhealthy.json()["ledger"] == "unreachable"


def test_reserve_and_balance_endpoints(client) -> None:
    admitted = client.post("/api/usage/reserve", json={"accountId": "acct-1", "units": 9000, "meter": "gpt-4o"})
    assert admitted.status_code == 200
    assert admitted.json()["remaining"] == 1000
    assert admitted.json()["tier"] == "free"

    denied = client.post("/api/usage/reserve", json={"accountId": "acct-1", "units": 1001})
    assert denied.status_code == 402
    assert denied.json()["detail"]["error"] == "LIMIT_EXCEEDED"

    balance = client.get("/api/usage/acct-1/balance")
    assert balance.status_code == 200
    assert balance.json()["used"] == 9000
    assert "resetAt" in balance.json()

    low = client.get("/api/usage/acct-1/low-balance")
    assert low.json()["warn"] is True


def test_reserve_when_ledger_down_returns_503(client, wired) -> None:
    _, _, ledger = wired
    ledger.available = False

    response = client.post("/api/usage/reserve", json={"accountId": "acct-1", "units": 1})

    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "STORE_UNAVAILABLE"


def test_record_endpoint_reports_reconciliation(client) -> None:
    client.post("/api/usage/reserve", json={"accountId": "acct-1", "units": 9900})

    response = client.post(
        "/api/usage/record",
        json={"accountId": "acct-1", "units": 10_500, "reservedUnits": 9900},
    )

    assert response.status_code == 202
    assert response.json() == {"recorded": False, "chargedUnits": 0, "reason": "RECONCILIATION_MISMATCH"}


@pytest.mark.parametrize(
    "items",
    [{"data": ["si_1"]}, "oops", {"data": [{"price": 7}]}],
)
def test_signed_event_with_bad_subscription_shape_returns_400(client, wired, items) -> None:
    _, _, ledger = wired
    ledger.register_account("acct-1", billing_customer_ref="cus_1")
    subscription = subscription_object(customer="cus_1", price_id=FULL_PRICE)
    subscription["items"] = items
    payload = provider_event("customer.subscription.updated", subscription)

    response = _post_webhook(client, payload, sign_payload(payload))

    assert response.status_code == 400
    assert response.json()["error"] == "MALFORMED_PAYLOAD"


def test_slow_webhook_processing_returns_500() -> None:
    settings = load_settings(
        {
            "LEDGER_BACKEND": "memory",
            "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "WEBHOOK_TIMEOUT_SECONDS": "0.1",
        }
    )
    ledger = InMemoryLedgerStore(latency=0.5)
    ledger.register_account("acct-1", billing_customer_ref="cus_1")
    container = assemble_container(settings, ledger=ledger, provider=FakeStripeProvider())
    payload = provider_event("customer.subscription.updated", subscription_object(customer="cus_1", price_id=FULL_PRICE))

    with TestClient(create_app(container=container)) as slow_client:
        response = _post_webhook(slow_client, payload, sign_payload(payload))

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing timed out"}


def test_record_with_negative_units_returns_400(client) -> None:
    response = client.post("/api/usage/record", json={"accountId": "acct-1", "units": -5})

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "INVALID_REQUEST"
