"""
services/booking/store.py
Slot & Booking Store. Every query the booking state machine, the webhook
reconciler and the availability cascade depend on lives here, so the
write surface for bookings stays narrow.
"""

import uuid
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.models.models import (
    AvailabilitySlot,
    Booking,
    BookingAuditLog,
    BookingStatus,
    CoachProfile,
    PaymentStatus,
    Review,
    User,
)
from shared.utils.errors import (
    ALREADY_REVIEWED,
    PENDING_REQUEST,
    SLOT_ALREADY_BOOKED,
    ConflictError,
)
from shared.utils.payment_status import can_advance

OPEN_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


def _conflict_from(exc: IntegrityError) -> ConflictError:
    # Postgres names the index, SQLite lists the columns
    msg = str(exc.orig)
    if "athlete_slot_open" in msg or "athlete_id" in msg:
        return ConflictError(
            "You already have a pending request for this slot", code=PENDING_REQUEST
        )
    return ConflictError("Slot is already booked", code=SLOT_ALREADY_BOOKED)


def _full_booking_options():
    return (
        selectinload(Booking.coach).selectinload(CoachProfile.user),
        selectinload(Booking.athlete),
        selectinload(Booking.slot),
        selectinload(Booking.review),
    )


class BookingStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Slots ─────────────────────────────────────────────────

    async def get_slot_for_coach(
        self, slot_id: uuid.UUID, coach_id: uuid.UUID
    ) -> Optional[AvailabilitySlot]:
        result = await self.session.execute(
            select(AvailabilitySlot)
            .options(selectinload(AvailabilitySlot.coach).selectinload(CoachProfile.user))
            .where(AvailabilitySlot.id == slot_id, AvailabilitySlot.coach_id == coach_id)
        )
        return result.scalar_one_or_none()

    async def lock_slot(self, slot_id: uuid.UUID) -> None:
        """Row lock on the slot so concurrent accepts on it serialize. No-op on SQLite."""
        await self.session.execute(
            select(AvailabilitySlot.id)
            .where(AvailabilitySlot.id == slot_id)
            .with_for_update()
        )

    # ── Booking predicates ────────────────────────────────────

    async def confirmed_booking_exists(
        self, slot_id: uuid.UUID, exclude_booking_id: Optional[uuid.UUID] = None
    ) -> bool:
        cond = and_(Booking.slot_id == slot_id, Booking.status == BookingStatus.CONFIRMED)
        if exclude_booking_id is not None:
            cond = and_(cond, Booking.id != exclude_booking_id)
        return bool(await self.session.scalar(select(exists().where(cond))))

    async def open_booking_exists(self, athlete_id: uuid.UUID, slot_id: uuid.UUID) -> bool:
        return bool(
            await self.session.scalar(
                select(
                    exists().where(
                        Booking.athlete_id == athlete_id,
                        Booking.slot_id == slot_id,
                        Booking.status.in_(OPEN_STATUSES),
                    )
                )
            )
        )

    # ── Booking reads ─────────────────────────────────────────

    async def get_booking(self, booking_id: uuid.UUID) -> Optional[Booking]:
        result = await self.session.execute(
            select(Booking).options(*_full_booking_options()).where(Booking.id == booking_id)
        )
        return result.scalar_one_or_none()

    async def list_for_athlete(self, athlete_id: uuid.UUID) -> Sequence[Booking]:
        result = await self.session.execute(
            select(Booking)
            .options(*_full_booking_options())
            .where(Booking.athlete_id == athlete_id)
            .order_by(Booking.created_at.desc())
        )
        return result.scalars().all()

    async def list_for_coach(self, coach_id: uuid.UUID) -> Sequence[Booking]:
        result = await self.session.execute(
            select(Booking)
            .options(*_full_booking_options())
            .where(Booking.coach_id == coach_id)
            .order_by(Booking.created_at.desc())
        )
        return result.scalars().all()

    async def bookings_to_cancel_for_slots(self, slot_ids: Iterable[uuid.UUID]) -> Sequence[Booking]:
        ids = list(slot_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(Booking)
            .options(*_full_booking_options())
            .where(Booking.slot_id.in_(ids), Booking.status.in_(OPEN_STATUSES))
            .order_by(Booking.created_at)
        )
        return result.scalars().all()

    async def slot_ids_with_bookings(self, slot_ids: Iterable[uuid.UUID]) -> set:
        ids = list(slot_ids)
        if not ids:
            return set()
        result = await self.session.execute(
            select(Booking.slot_id).where(Booking.slot_id.in_(ids)).distinct()
        )
        return set(result.scalars().all())

    # ── Profiles ──────────────────────────────────────────────

    async def get_coach_profile_for_user(self, user_id: uuid.UUID) -> Optional[CoachProfile]:
        result = await self.session.execute(
            select(CoachProfile).where(CoachProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()

    # ── Writes ────────────────────────────────────────────────

    async def add_booking(self, booking: Booking) -> Booking:
        """Insert and flush. Unique-index races surface as a slot conflict."""
        self.session.add(booking)
        await self.flush()
        return booking

    async def flush(self) -> None:
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise _conflict_from(e)

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise _conflict_from(e)

    async def log_transition(
        self,
        booking: Booking,
        from_status: Optional[BookingStatus],
        to_status: BookingStatus,
        actor: Optional[User],
        reason: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        self.session.add(
            BookingAuditLog(
                booking_id=booking.id,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                changed_by_id=actor.id if actor else None,
                reason=reason,
                audit_metadata=metadata,
            )
        )

    # ── Reviews ───────────────────────────────────────────────

    async def get_review_for_booking(self, booking_id: uuid.UUID) -> Optional[Review]:
        result = await self.session.execute(
            select(Review).where(Review.booking_id == booking_id)
        )
        return result.scalar_one_or_none()

    async def add_review(self, review: Review) -> Review:
        self.session.add(review)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("Already reviewed", code=ALREADY_REVIEWED)
        return review

    # ── Webhook write path ────────────────────────────────────

    async def update_payment_status_if_current(
        self, booking_id: uuid.UUID, intent_id: str, new_status: PaymentStatus
    ) -> bool:
        """
        Set payment_status only when the stored intent is the event's intent and
        the move is forward. Returns True when a row changed.
        """
        result = await self.session.execute(
            select(Booking).where(Booking.id == booking_id).with_for_update()
        )
        booking = result.scalar_one_or_none()
        if booking is None or booking.payment_intent_id != intent_id:
            return False
        if not can_advance(booking.payment_status, new_status):
            return False
        booking.payment_status = new_status
        await self.session.flush()
        return True
