"""API schemas for the billing webhook and health endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import RejectionReason


class WebhookAck(BaseModel):
    received: bool = True
    processed: Optional[bool] = None
    reason: Optional[RejectionReason] = None

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(BaseModel):
    status: str
    ledger: str
    webhook: str = "live"
    checked_at: datetime = Field(alias="checkedAt")

    model_config = ConfigDict(populate_by_name=True)
