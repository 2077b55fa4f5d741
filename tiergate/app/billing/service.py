"""Webhook ingestion and tier reconciliation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from ..events.relay import EventRelay
from ..events.topics import TierUpdatedPayload, Topic
from ..ledger.store import LedgerStore, LedgerUnavailableError
from .models import (
    Accepted,
    BillingEventOutcome,
    BillingEventRecord,
    Entitlement,
    IngestionResult,
    ProviderEvent,
    ProviderEventType,
    Rejected,
    RejectionReason,
    SubscriptionStatus,
    Tier,
    TierChangeRecord,
)
from .provider import InvalidSignatureError, PaymentProvider, parse_event_payload
from .tiers import map_price_to_tier

logger = logging.getLogger("billing")


class MalformedEventError(ValueError):
    """Raised when a verified event object does not have the expected shape."""


def _first_price_id(subscription: Mapping[str, Any]) -> Optional[str]:
    items = subscription.get("items")
    if items is None:
        return None
    if not isinstance(items, Mapping):
        raise MalformedEventError("subscription items must be an object")
    data = items.get("data") or []
    if not isinstance(data, list):
        raise MalformedEventError("subscription items.data must be a list")
    if not data:
        return None
    first = data[0]
    if not isinstance(first, Mapping):
        raise MalformedEventError("subscription item must be an object")
    price = first.get("price")
    if price is None:
        return None
    if isinstance(price, str):
        return price
    if not isinstance(price, Mapping):
        raise MalformedEventError("subscription item price must be an object or id")
    price_id = price.get("id")
    if price_id is not None and not isinstance(price_id, str):
        raise MalformedEventError("price id must be a string")
    return price_id


def _customer_id(obj: Mapping[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")
    if customer is not None and not isinstance(customer, str):
        raise MalformedEventError("customer must be an id or an object with an id")
    return customer


@dataclass
class WebhookIngestionService:
    """Turns verified provider events into authoritative, audited entitlements.

    Events are applied in arrival order without deduplication. Each update
    recomputes the tier from the subscription's current price and status, so a
    replayed event converges the account back to that event's state.
    """

    provider: PaymentProvider
    ledger: LedgerStore
    relay: EventRelay
    tier_mapper: Callable[[Optional[str]], Optional[Tier]] = map_price_to_tier
    _handlers: Dict[str, Callable[..., Any]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._handlers = {
            ProviderEventType.CHECKOUT_SESSION_COMPLETED.value: self._handle_checkout_completed,
            ProviderEventType.SUBSCRIPTION_CREATED.value: self._handle_subscription_change,
            ProviderEventType.SUBSCRIPTION_UPDATED.value: self._handle_subscription_change,
            ProviderEventType.SUBSCRIPTION_DELETED.value: self._handle_subscription_deleted,
        }

    async def ingest(self, raw_body: bytes, signature_header: Optional[str]) -> IngestionResult:
        """Verify, parse and apply one webhook delivery.

        Ledger and provider failures propagate so the caller answers with a
        server error and the provider retries.
        """

        try:
            payload = self.provider.verify_signature(raw_body, signature_header)
        except InvalidSignatureError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            return Rejected(reason=RejectionReason.INVALID_SIGNATURE, message=str(exc))

        try:
            event = ProviderEvent.model_validate(parse_event_payload(payload))
        except (ValueError, ValidationError) as exc:
            logger.warning("Malformed webhook payload: %s", exc)
            return Rejected(reason=RejectionReason.MALFORMED_PAYLOAD, message="Malformed event payload")

        logger.info("Received webhook event %s (%s)", event.event_type, event.event_id)
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info("Unhandled event type %s", event.event_type)
            return Accepted(event_id=event.event_id, event_type=event.event_type)
        try:
            return await handler(event)
        except MalformedEventError as exc:
            logger.warning("Malformed %s event %s: %s", event.event_type, event.event_id, exc)
            return Rejected(
                reason=RejectionReason.MALFORMED_PAYLOAD,
                message=str(exc),
                event_id=event.event_id,
                event_type=event.event_type,
            )

    async def _handle_checkout_completed(self, event: ProviderEvent) -> IngestionResult:
        session = event.data_object
        subscription_ref = session.get("subscription")
        if session.get("mode") != "subscription" or not subscription_ref:
            logger.info("Checkout session %s completed in %s mode; recording only", session.get("id"), session.get("mode"))
            await self._audit(
                event,
                BillingEventOutcome.AUDIT_ONLY,
                detail=f"checkout mode {session.get('mode')}",
                metadata={"session_id": session.get("id"), "customer": _customer_id(session)},
            )
            return Accepted(event_id=event.event_id, event_type=event.event_type)

        subscription_id = subscription_ref.get("id") if isinstance(subscription_ref, Mapping) else subscription_ref
        if not isinstance(subscription_id, str):
            raise MalformedEventError("checkout subscription must be an id or an object with an id")
        subscription = await self.provider.retrieve_subscription(subscription_id)
        return await self._apply_subscription(event, subscription)

    async def _handle_subscription_change(self, event: ProviderEvent) -> IngestionResult:
        return await self._apply_subscription(event, event.data_object)

    async def _apply_subscription(self, event: ProviderEvent, subscription: Mapping[str, Any]) -> IngestionResult:
        price_id = _first_price_id(subscription)
        new_tier = self.tier_mapper(price_id)
        if new_tier is None:
            logger.warning("Unknown price %s on subscription %s", price_id, subscription.get("id"))
            await self._audit(
                event,
                BillingEventOutcome.IGNORED,
                detail="unknown price",
                metadata={"price_id": price_id, "subscription_id": subscription.get("id")},
            )
            return Rejected(
                reason=RejectionReason.UNKNOWN_PRICE,
                message=f"Unknown price {price_id}",
                event_id=event.event_id,
                event_type=event.event_type,
            )

        customer_ref = _customer_id(subscription)
        account_id = await self._resolve_account(customer_ref)
        if account_id is None:
            return self._account_not_found(event, customer_ref)

        status = (
            SubscriptionStatus.ACTIVE
            if subscription.get("status") == "active"
            else SubscriptionStatus.INACTIVE
        )
        return await self._write(
            event,
            account_id,
            new_tier=new_tier,
            status=status,
            customer_ref=customer_ref,
            metadata={
                "subscription_id": subscription.get("id"),
                "price_id": price_id,
                "provider_status": subscription.get("status"),
            },
        )

    async def _handle_subscription_deleted(self, event: ProviderEvent) -> IngestionResult:
        subscription = event.data_object
        customer_ref = _customer_id(subscription)
        account_id = await self._resolve_account(customer_ref)
        if account_id is None:
            return self._account_not_found(event, customer_ref)
        return await self._write(
            event,
            account_id,
            new_tier=Tier.FREE,
            status=SubscriptionStatus.CANCELLED,
            customer_ref=customer_ref,
            metadata={"subscription_id": subscription.get("id"), "provider_status": "deleted"},
        )

    async def _resolve_account(self, customer_ref: Optional[str]) -> Optional[str]:
        if not customer_ref:
            return None
        account_id = await self.ledger.find_account_by_billing_customer_ref(customer_ref)
        if account_id is not None:
            return account_id
        email = await self.provider.retrieve_customer_email(customer_ref)
        if not email:
            return None
        return await self.ledger.find_account_by_email(email)

    def _account_not_found(self, event: ProviderEvent, customer_ref: Optional[str]) -> Rejected:
        logger.warning(
            "No account for customer %s on event %s",
            customer_ref,
            event.event_id,
            extra={"event_type": event.event_type},
        )
        return Rejected(
            reason=RejectionReason.ACCOUNT_NOT_FOUND,
            message=f"No account for customer {customer_ref}",
            event_id=event.event_id,
            event_type=event.event_type,
        )

    async def _write(
        self,
        event: ProviderEvent,
        account_id: str,
        *,
        new_tier: Tier,
        status: SubscriptionStatus,
        customer_ref: Optional[str],
        metadata: Dict[str, Any],
    ) -> Accepted:
        current = await self.ledger.ensure_entitlement(account_id)
        previous_tier = current.tier
        updated = Entitlement(
            account_id=account_id,
            tier=new_tier,
            subscription_status=status,
            billing_customer_ref=customer_ref or current.billing_customer_ref,
        )
        change = TierChangeRecord(
            account_id=account_id,
            previous_tier=previous_tier,
            new_tier=new_tier,
            event_metadata={"event_id": event.event_id, "event_type": event.event_type, **metadata},
        )
        await self.ledger.write_entitlement(updated, change=change)
        logger.info(
            "Account %s tier %s -> %s (%s)",
            account_id,
            previous_tier.value,
            new_tier.value,
            status.value,
        )

        await self.relay.publish(
            Topic.TIER_UPDATED.value,
            TierUpdatedPayload(account_id=account_id, previous_tier=previous_tier, new_tier=new_tier),
        )
        return Accepted(
            event_id=event.event_id,
            event_type=event.event_type,
            account_id=account_id,
            previous_tier=previous_tier,
            new_tier=new_tier,
            applied=True,
        )

    async def _audit(
        self,
        event: ProviderEvent,
        outcome: BillingEventOutcome,
        *,
        detail: str,
        metadata: Dict[str, Any],
    ) -> None:
        record = BillingEventRecord(
            provider_event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome,
            detail=detail,
            metadata=metadata,
        )
        try:
            await self.ledger.record_billing_event(record)
        except LedgerUnavailableError:
            logger.warning("Unable to record billing audit event %s", event.event_id)
