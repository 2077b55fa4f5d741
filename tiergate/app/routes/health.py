from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ..ledger.store import LedgerUnavailableError
from ..schemas.billing import HealthResponse
from ..services.container import ServiceContainer, get_container

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(container: ServiceContainer = Depends(get_container)):
    try:
        await asyncio.wait_for(container.ledger.ping(), timeout=container.settings.ledger_timeout_seconds)
        ledger_state = "reachable"
    except (LedgerUnavailableError, asyncio.TimeoutError) as exc:
        logger.warning("Health check could not reach the ledger: %r", exc)
        ledger_state = "unreachable"

    healthy = ledger_state == "reachable"
    body = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        ledger=ledger_state,
        checked_at=datetime.now(timezone.utc),
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(mode="json", by_alias=True),
    )
