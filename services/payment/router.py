"""
services/payment/router.py
Stripe webhook endpoint. Verifies the signature against the raw body and
hands the event to the reconciler.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.store import BookingStore
from services.payment.gateway import PaymentGateway, get_payment_gateway
from services.payment.reconciler import WebhookReconciler
from shared.utils.errors import UpstreamNotConfigured, ValidationError

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    """
    Handles payment_intent.succeeded, .amount_capturable_updated,
    .payment_failed and .canceled. Anything else is acknowledged and ignored.
    """
    if not gateway.webhooks_enabled:
        raise UpstreamNotConfigured("Stripe not configured")

    signature = request.headers.get("Stripe-Signature")
    if not signature:
        raise ValidationError("Missing stripe-signature")

    body = await request.body()
    event = gateway.construct_event(body, signature)

    handled = await WebhookReconciler(BookingStore(db)).handle(event)
    return {"received": True, "handled": handled}
