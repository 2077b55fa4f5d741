"""Payment provider webhook endpoint."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from ..billing.models import Rejected, RejectionReason
from ..billing.provider import ProviderUnavailableError
from ..ledger.store import LedgerUnavailableError
from ..schemas.billing import WebhookAck
from ..services.container import ServiceContainer, get_container

logger = logging.getLogger("billing")

router = APIRouter(tags=["billing"])

_CLIENT_ERRORS = {RejectionReason.INVALID_SIGNATURE, RejectionReason.MALFORMED_PAYLOAD}


@router.post("/webhook", response_model=WebhookAck, response_model_exclude_none=True)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    *,
    container: ServiceContainer = Depends(get_container),
):
    raw_body = await request.body()
    try:
        result = await asyncio.wait_for(
            container.ingestion.ingest(raw_body, stripe_signature),
            timeout=container.settings.webhook_timeout_seconds,
        )
    except asyncio.TimeoutError:
        logger.error("Webhook processing exceeded %ss", container.settings.webhook_timeout_seconds)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing timed out"},
        )
    except (LedgerUnavailableError, ProviderUnavailableError) as exc:
        logger.error("Webhook processing failed: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Webhook processing failed"},
        )

    if isinstance(result, Rejected):
        if result.reason in _CLIENT_ERRORS:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": result.reason.value, "message": result.message},
            )
        # Permanent for this delivery; a provider retry would fail the same way.
        return WebhookAck(processed=False, reason=result.reason)
    return WebhookAck()
