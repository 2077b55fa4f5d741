"""API routes exposing quota enforcement to metered services."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ..quota.exceptions import UsageDeniedError
from ..quota.models import BalanceUnavailable, Denied, Failed, RecordFailure
from ..schemas.usage import (
    BalanceResponse,
    LowBalanceResponse,
    RecordRequest,
    RecordResponse,
    ReserveRequest,
    ReserveResponse,
)
from ..services.container import ServiceContainer, get_container

router = APIRouter(prefix="/api/usage", tags=["usage"])

_LEDGER_UNAVAILABLE = {"error": "STORE_UNAVAILABLE", "message": "Usage ledger unavailable; try again shortly."}


@router.post("/reserve", response_model=ReserveResponse)
async def reserve_usage(
    payload: ReserveRequest,
    *,
    container: ServiceContainer = Depends(get_container),
) -> ReserveResponse:
    outcome = await container.quota.check_and_reserve(payload.account_id, payload.units, payload.meter)
    if isinstance(outcome, Denied):
        raise UsageDeniedError.from_denial(outcome).to_http_exception()
    return ReserveResponse.from_outcome(outcome)


@router.post("/record", response_model=RecordResponse)
async def record_usage(
    payload: RecordRequest,
    *,
    container: ServiceContainer = Depends(get_container),
):
    outcome = await container.quota.record_actual(
        payload.account_id,
        payload.units,
        payload.meter,
        reserved_units=payload.reserved_units,
    )
    if isinstance(outcome, Failed):
        if outcome.reason is RecordFailure.INVALID_REQUEST:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": outcome.reason.value, "message": outcome.message},
            )
        body = RecordResponse(recorded=False, reason=outcome.reason.value)
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        )
    return RecordResponse.from_recorded(outcome)


@router.get("/{account_id}/balance", response_model=BalanceResponse)
async def get_balance(
    account_id: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> BalanceResponse:
    balance = await container.quota.get_balance(account_id)
    if isinstance(balance, BalanceUnavailable):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_LEDGER_UNAVAILABLE)
    return BalanceResponse.from_balance(account_id, balance)


@router.get("/{account_id}/low-balance", response_model=LowBalanceResponse)
async def get_low_balance(
    account_id: str,
    *,
    container: ServiceContainer = Depends(get_container),
) -> LowBalanceResponse:
    warning = await container.quota.is_low_balance(account_id)
    if isinstance(warning, BalanceUnavailable):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=_LEDGER_UNAVAILABLE)
    return LowBalanceResponse.from_warning(account_id, warning)
