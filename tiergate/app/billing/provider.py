"""Payment provider integration used by webhook ingestion."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import stripe

logger = logging.getLogger(__name__)


class InvalidSignatureError(ValueError):
    """Raised when a webhook payload cannot be authenticated."""


class ProviderUnavailableError(RuntimeError):
    """Raised when a lookup against the payment provider API fails."""


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> str:
        """Authenticate ``raw_body`` and return it decoded, or raise :class:`InvalidSignatureError`."""

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    async def retrieve_customer_email(self, customer_id: str) -> Optional[str]:
        ...


@dataclass
class StripePaymentProvider:
    """Stripe implementation of :class:`PaymentProvider`.

    SDK calls block, so lookups run on a worker thread.
    """

    webhook_secret: str
    api_key: str
    tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> str:
        if not self.webhook_secret:
            raise InvalidSignatureError("Webhook signing secret is not configured")
        if not signature_header:
            raise InvalidSignatureError("Missing Stripe-Signature header")
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignatureError("Webhook body is not valid UTF-8") from exc
        try:
            stripe.WebhookSignature.verify_header(
                payload,
                signature_header,
                self.webhook_secret,
                self.tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(str(exc)) from exc
        return payload

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(stripe.Subscription.retrieve, subscription_id)
        return subscription.to_dict()

    async def retrieve_customer_email(self, customer_id: str) -> Optional[str]:
        customer = await self._call(stripe.Customer.retrieve, customer_id, missing_ok=True)
        if customer is None or customer.get("deleted"):
            return None
        return customer.get("email")

    async def _call(self, method: Any, object_id: str, *, missing_ok: bool = False) -> Any:
        try:
            return await asyncio.to_thread(method, object_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if missing_ok and exc.http_status == 404:
                logger.info("Stripe object %s does not exist", object_id)
                return None
            logger.warning("Stripe lookup for %s failed: %s", object_id, exc)
            raise ProviderUnavailableError(str(exc)) from exc
        except stripe.StripeError as exc:
            logger.warning("Stripe lookup for %s failed: %s", object_id, exc)
            raise ProviderUnavailableError(str(exc)) from exc


def parse_event_payload(payload: str) -> Dict[str, Any]:
    """Decode a verified webhook body into a JSON object."""

    event = json.loads(payload)
    if not isinstance(event, dict):
        raise ValueError("Webhook payload must be a JSON object")
    return event
