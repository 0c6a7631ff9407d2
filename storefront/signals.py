from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from .model.order import PaymentStatus

# provider wording -> our terminal payment status
PROVIDER_STATUSES = {
    "completed": PaymentStatus.COMPLETED,
    "succeeded": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


@dataclass(frozen=True)
class Advisory:
    """Client-observed widget outcome. Display only, never persisted."""
    reference: str
    success: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class Authoritative:
    """Verified provider webhook. The only signal that finalises payment."""
    reference: str
    provider_status: PaymentStatus
    transaction_id: Optional[str] = None
    provider_reference: Optional[str] = None
    amount: Optional[int] = None


def parse_provider_status(value) -> Optional[PaymentStatus]:
    if isinstance(value, bool):
        return PaymentStatus.COMPLETED if value else PaymentStatus.FAILED
    if value is None:
        return None
    return PROVIDER_STATUSES.get(str(value).strip().lower())
