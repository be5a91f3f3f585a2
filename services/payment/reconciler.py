"""
services/payment/reconciler.py
Applies verified gateway events to Booking.payment_status.
Never touches Booking.status: the synchronous state machine owns that.
"""

import logging
import uuid
from typing import Optional

from services.booking.store import BookingStore
from shared.models.models import PaymentStatus

logger = logging.getLogger(__name__)


def _target_status(event_type: str, intent: dict) -> Optional[PaymentStatus]:
    status = intent.get("status")
    if event_type == "payment_intent.succeeded":
        return PaymentStatus.SUCCEEDED if status == "succeeded" else PaymentStatus.AUTHORIZED
    if event_type == "payment_intent.amount_capturable_updated":
        return PaymentStatus.AUTHORIZED if status == "requires_capture" else None
    if event_type == "payment_intent.payment_failed":
        return PaymentStatus.FAILED
    if event_type == "payment_intent.canceled":
        return PaymentStatus.CANCELED
    return None


class WebhookReconciler:
    def __init__(self, store: BookingStore):
        self.store = store

    async def handle(self, event: dict) -> bool:
        """Returns True when a booking row changed. Unknown or stale events are no-ops."""
        event_type = event.get("type", "")
        intent = (event.get("data") or {}).get("object") or {}
        target = _target_status(event_type, intent)
        if target is None:
            logger.info(f"Ignoring webhook event {event.get('id')} ({event_type})")
            return False

        booking_ref = (intent.get("metadata") or {}).get("bookingId")
        intent_id = intent.get("id")
        if not booking_ref or not intent_id:
            logger.info(f"Webhook event {event.get('id')} carries no booking reference")
            return False
        try:
            booking_id = uuid.UUID(str(booking_ref))
        except ValueError:
            logger.info(f"Webhook event {event.get('id')} has malformed bookingId {booking_ref!r}")
            return False

        changed = await self.store.update_payment_status_if_current(booking_id, intent_id, target)
        if changed:
            await self.store.commit()
            logger.info(f"Booking {booking_id} payment_status → {target.value} via {event_type}")
        else:
            logger.info(
                f"Webhook {event_type} for booking {booking_id} left unchanged (stale intent or no forward move)"
            )
        return changed
