"""Exceptions used to surface quota denials to API callers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status

from .models import Denied, DenialReason

_STATUS_BY_REASON = {
    DenialReason.LIMIT_EXCEEDED: status.HTTP_402_PAYMENT_REQUIRED,
    DenialReason.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    DenialReason.INVALID_REQUEST: status.HTTP_400_BAD_REQUEST,
}

_MESSAGES = {
    DenialReason.LIMIT_EXCEEDED: "Monthly usage limit reached.",
    DenialReason.STORE_UNAVAILABLE: "Usage ledger unavailable; try again shortly.",
    DenialReason.INVALID_REQUEST: "Invalid usage request.",
}


@dataclass
class UsageDeniedError(Exception):
    """Represents a denied metered operation surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @classmethod
    def from_denial(cls, denied: Denied) -> "UsageDeniedError":
        return cls(
            code=denied.reason.value,
            message=_MESSAGES[denied.reason],
            status_code=_STATUS_BY_REASON[denied.reason],
            detail={
                "remaining": denied.remaining,
                "limit": denied.limit,
                "tier": denied.tier.value if denied.tier else None,
            },
        )

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))
