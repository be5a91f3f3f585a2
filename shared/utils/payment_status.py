"""
shared/utils/payment_status.py
Forward-only progression of Booking.payment_status.

    none → pending_authorization → authorized → succeeded
    failed / canceled from none, pending_authorization or authorized

succeeded, failed and canceled are final.
"""

from typing import Optional

from shared.models.models import PaymentStatus

_RANK = {
    None: 0,
    PaymentStatus.PENDING_AUTHORIZATION: 1,
    PaymentStatus.AUTHORIZED: 2,
    PaymentStatus.SUCCEEDED: 3,
}

FINAL = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED})


def can_advance(current: Optional[PaymentStatus], new: PaymentStatus) -> bool:
    """True when moving current → new is a forward step. Same status is not a step."""
    if current == new:
        return False
    if current in FINAL:
        return False
    if new in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
        return True
    return _RANK[new] > _RANK[current]
