"""
services/booking/state_machine.py
Booking lifecycle and deferred-capture payment protocol.

    (none)    → pending     athlete; authorization hold when payment is required
    pending   → confirmed   coach; no charge yet
    pending   → cancelled   coach, or the athlete who requested it
    confirmed → cancelled   coach
    confirmed → completed   coach; capture the hold, then transfer the coach's share

Each transition is persisted (with an audit row) and committed before the
notification dispatcher is called.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from config.settings import settings
from services.booking.store import BookingStore
from services.notification.dispatcher import NotificationDispatcher, NotificationEvent
from services.payment.gateway import HoldOutcome, PaymentGateway
from shared.models.models import (
    AvailabilitySlot,
    Booking,
    BookingStatus,
    CoachProfile,
    PaymentStatus,
    SlotStatus,
    User,
)
from shared.utils.errors import (
    INVALID_TRANSITION,
    PAYMENT_ALREADY_CAPTURED,
    PAYMENT_METHOD_REQUIRED,
    PAYMENT_NOT_CAPTURABLE,
    PENDING_REQUEST,
    SLOT_ALREADY_BOOKED,
    ConflictError,
    NotFoundError,
    PaymentError,
    PermissionDenied,
    UpstreamNotConfigured,
    ValidationError,
)
from shared.utils.money import compute_amount_cents, transfer_amount_cents
from shared.utils.payment_status import can_advance

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


@dataclass
class BookingRequestResult:
    booking: Booking
    client_secret: Optional[str] = None

    @property
    def requires_action(self) -> bool:
        return self.client_secret is not None


def _iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


class BookingStateMachine:
    def __init__(
        self,
        store: BookingStore,
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        fee_percent: Optional[float] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.fee_percent = settings.STRIPE_PLATFORM_FEE_PERCENT if fee_percent is None else fee_percent

    # ── Policy ────────────────────────────────────────────────

    def payment_required(self, coach: CoachProfile) -> bool:
        """
        Payment is taken only when the gateway is enabled, the coach charges a
        positive rate and has a payout account to receive it.
        """
        return bool(
            self.gateway.enabled
            and coach.hourly_rate is not None
            and coach.hourly_rate > 0
            and coach.connect_account_id
        )

    # ── Create ────────────────────────────────────────────────

    async def request_booking(
        self,
        athlete: User,
        coach_id: uuid.UUID,
        slot_id: uuid.UUID,
        message: Optional[str] = None,
        payment_method_id: Optional[str] = None,
    ) -> BookingRequestResult:
        slot = await self.store.get_slot_for_coach(slot_id, coach_id)
        if not slot:
            raise NotFoundError("Slot not found")
        coach = slot.coach
        if coach.user_id == athlete.id:
            raise ValidationError("You cannot book your own slot")
        if slot.status != SlotStatus.AVAILABLE:
            raise ValidationError("Slot is not available")
        if await self.store.open_booking_exists(athlete.id, slot.id):
            raise ConflictError(
                "You already have a pending request for this slot", code=PENDING_REQUEST
            )
        if await self.store.confirmed_booking_exists(slot.id):
            raise ConflictError("Slot is already booked", code=SLOT_ALREADY_BOOKED)

        needs_payment = self.payment_required(coach)
        amount_cents = (
            compute_amount_cents(slot.start_time, slot.end_time, coach.hourly_rate)
            if needs_payment else None
        )
        if needs_payment and not payment_method_id:
            raise ValidationError("Payment method required.", code=PAYMENT_METHOD_REQUIRED)

        booking = Booking(
            id=uuid.uuid4(),
            athlete=athlete,
            coach=coach,
            slot=slot,
            message=(message or "").strip() or None,
            status=BookingStatus.PENDING,
            amount_cents=amount_cents,
            currency=settings.STRIPE_CURRENCY,
            payment_status=PaymentStatus.PENDING_AUTHORIZATION if needs_payment else None,
        )
        await self.store.add_booking(booking)
        await self.store.log_transition(booking, None, BookingStatus.PENDING, athlete)
        # The row must outlive a failed hold
        await self.store.commit()
        logger.info(f"Booking {booking.id} requested for slot {slot.id} (payment={needs_payment})")

        client_secret = None
        if needs_payment:
            client_secret = await self._place_hold(booking, athlete, payment_method_id)

        self.notifier.notify(
            NotificationEvent.BOOKING_REQUESTED_TO_COACH, self._payload(booking)
        )
        self.notifier.notify(
            NotificationEvent.BOOKING_REQUEST_SUBMITTED_TO_ATHLETE, self._payload(booking)
        )
        return BookingRequestResult(booking=booking, client_secret=client_secret)

    async def _place_hold(
        self, booking: Booking, athlete: User, payment_method_id: str
    ) -> Optional[str]:
        """Authorization hold keyed by the booking id. Returns a client secret when the client must act."""
        try:
            customer_id = await self.gateway.get_or_create_customer(
                str(athlete.id), athlete.email, athlete.payment_customer_id
            )
            if not athlete.payment_customer_id:
                athlete.payment_customer_id = customer_id

            hold = await self.gateway.create_authorization_hold(
                amount_cents=booking.amount_cents,
                currency=booking.currency,
                customer_id=customer_id,
                payment_method_id=payment_method_id,
                idempotency_key=str(booking.id),
                metadata={"bookingId": str(booking.id)},
            )
        except PaymentError as e:
            logger.error(f"Authorization hold failed for booking {booking.id}: {e.error}")
            booking.payment_status = PaymentStatus.FAILED
            await self.store.commit()
            raise

        booking.payment_intent_id = hold.intent_id
        if hold.outcome == HoldOutcome.HELD and can_advance(booking.payment_status, PaymentStatus.AUTHORIZED):
            booking.payment_status = PaymentStatus.AUTHORIZED
        elif hold.outcome == HoldOutcome.SETTLED and can_advance(booking.payment_status, PaymentStatus.SUCCEEDED):
            booking.payment_status = PaymentStatus.SUCCEEDED
        await self.store.commit()

        if hold.outcome == HoldOutcome.NEEDS_CLIENT_ACTION:
            return hold.client_secret
        return None

    # ── Transitions ───────────────────────────────────────────

    async def transition(
        self, booking_id: uuid.UUID, actor: User, target: BookingStatus
    ) -> Booking:
        booking = await self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")

        profile = await self.store.get_coach_profile_for_user(actor.id)
        is_coach = profile is not None and profile.id == booking.coach_id
        is_athlete = actor.id == booking.athlete_id

        if target == BookingStatus.CONFIRMED:
            if not is_coach:
                raise PermissionDenied("Only the coach can accept/decline")
        elif target == BookingStatus.CANCELLED:
            if not (is_coach or (is_athlete and booking.status == BookingStatus.PENDING)):
                raise PermissionDenied("Only the coach can cancel this booking")
        elif target == BookingStatus.COMPLETED:
            if not is_coach:
                raise PermissionDenied("Only the coach can mark complete")
        elif not (is_coach or is_athlete):
            raise PermissionDenied("Not your booking")

        if target not in LEGAL_TRANSITIONS[booking.status]:
            raise ValidationError(
                f"Cannot change a {booking.status.value} booking to {target.value}",
                code=INVALID_TRANSITION,
            )

        if target == BookingStatus.CONFIRMED:
            return await self.accept(booking, actor)
        if target == BookingStatus.CANCELLED:
            return await self.cancel(booking, actor)
        return await self.complete(booking, actor)

    async def accept(self, booking: Booking, actor: User) -> Booking:
        # Another pending request on this slot may have been confirmed since creation
        await self.store.lock_slot(booking.slot_id)
        if await self.store.confirmed_booking_exists(booking.slot_id, exclude_booking_id=booking.id):
            raise ConflictError("Slot is already booked", code=SLOT_ALREADY_BOOKED)

        booking.status = BookingStatus.CONFIRMED
        await self.store.log_transition(booking, BookingStatus.PENDING, BookingStatus.CONFIRMED, actor)
        await self.store.commit()
        logger.info(f"Booking {booking.id} confirmed")
        self._notify_status(booking)
        return booking

    async def cancel(
        self, booking: Booking, actor: Optional[User], reason: Optional[str] = None
    ) -> Booking:
        # The athlete has been charged; only completing the booking pays the coach
        if booking.payment_status == PaymentStatus.SUCCEEDED:
            raise ConflictError(
                "Payment has already been captured. Complete the booking to pay out the coach.",
                code=PAYMENT_ALREADY_CAPTURED,
            )
        if booking.payment_intent_id:
            try:
                await self.gateway.cancel(booking.payment_intent_id)
            except PaymentError as e:
                logger.warning(
                    f"Releasing hold {booking.payment_intent_id} for booking {booking.id} failed: {e.error}"
                )
            if can_advance(booking.payment_status, PaymentStatus.CANCELED):
                booking.payment_status = PaymentStatus.CANCELED

        previous = booking.status
        booking.status = BookingStatus.CANCELLED
        await self.store.log_transition(booking, previous, BookingStatus.CANCELLED, actor, reason=reason)
        await self.store.commit()
        logger.info(f"Booking {booking.id} cancelled ({previous.value} → cancelled)")
        self._notify_status(booking)
        return booking

    async def complete(self, booking: Booking, actor: User) -> Booking:
        metadata = None
        if booking.payment_intent_id and booking.amount_cents is not None:
            metadata = await self._settle(booking)

        booking.status = BookingStatus.COMPLETED
        booking.completed_at = datetime.now(timezone.utc)
        await self.store.log_transition(
            booking, BookingStatus.CONFIRMED, BookingStatus.COMPLETED, actor, metadata=metadata
        )
        await self.store.commit()
        logger.info(f"Booking {booking.id} completed")
        self._notify_status(booking)
        return booking

    async def _settle(self, booking: Booking) -> dict:
        """Capture the hold, then transfer the coach's share. Nothing is moved unless capture succeeds."""
        if not self.gateway.enabled:
            raise UpstreamNotConfigured("Payments are not configured")
        destination = booking.coach.connect_account_id
        if not destination:
            raise ValidationError("Coach has no connected payout account")

        intent_status = await self.gateway.retrieve_intent_status(booking.payment_intent_id)
        if intent_status == "requires_capture":
            await self.gateway.capture(
                booking.payment_intent_id, idempotency_key=f"capture:{booking.id}"
            )
        elif intent_status != "succeeded":
            raise ValidationError(
                "Payment cannot be captured yet.",
                detail=f"Payment status is {intent_status}. The card may not have been authorized.",
                code=PAYMENT_NOT_CAPTURABLE,
            )

        # Record the capture before the transfer so a failed transfer is retried, not re-captured
        if can_advance(booking.payment_status, PaymentStatus.SUCCEEDED):
            booking.payment_status = PaymentStatus.SUCCEEDED
            await self.store.commit()

        if booking.transfer_id is None:
            amount = transfer_amount_cents(booking.amount_cents, self.fee_percent)
            if amount > 0:
                booking.transfer_id = await self.gateway.transfer(
                    amount_cents=amount,
                    currency=booking.currency,
                    destination_account_id=destination,
                    group_ref=str(booking.id),
                    idempotency_key=f"transfer:{booking.id}",
                )
        return {"intent_status": intent_status, "transfer_id": booking.transfer_id}

    # ── Availability cascade ──────────────────────────────────

    async def cancel_for_removed_slots(
        self, slot_ids: Iterable[uuid.UUID], coach_user: User
    ) -> List[Booking]:
        """Cancel every open booking on slots the coach is removing, via the coach-cancel path."""
        bookings = await self.store.bookings_to_cancel_for_slots(slot_ids)
        if any(b.payment_status == PaymentStatus.SUCCEEDED for b in bookings):
            raise ConflictError(
                "A booking on this availability has a captured payment. Complete it first.",
                code=PAYMENT_ALREADY_CAPTURED,
            )
        cancelled = []
        for booking in bookings:
            cancelled.append(await self.cancel(booking, coach_user, reason="Availability removed"))
        return cancelled

    # ── Notifications ─────────────────────────────────────────

    def _payload(self, booking: Booking) -> dict:
        slot: AvailabilitySlot = booking.slot
        return {
            "booking_id": str(booking.id),
            "status": booking.status.value,
            "message": booking.message,
            "slot_start": _iso(slot.start_time),
            "slot_end": _iso(slot.end_time),
            "coach_email": booking.coach.user.email,
            "coach_phone": booking.coach.phone,
            "coach_display_name": booking.coach.display_name,
            "athlete_email": booking.athlete.email,
            "athlete_name": booking.athlete.name,
        }

    def _notify_status(self, booking: Booking) -> None:
        self.notifier.notify(
            NotificationEvent.BOOKING_STATUS_CHANGED_TO_ATHLETE, self._payload(booking)
        )
