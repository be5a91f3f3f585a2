"""
services/booking/router.py
Booking endpoints. Lifecycle rules live in the state machine;
this module only translates HTTP to state-machine calls.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.state_machine import BookingStateMachine
from services.booking.store import BookingStore
from services.notification.dispatcher import NotificationDispatcher, get_notifier
from services.payment.gateway import PaymentGateway, get_payment_gateway
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, BookingStatus, Review, User
from shared.schemas.schemas import (
    AthleteBookingResponse,
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingUpdateRequest,
    CoachBookingResponse,
    CoachSummary,
    ReviewCreateRequest,
    ReviewResponse,
    SlotSummary,
)
from shared.utils.errors import (
    ALREADY_REVIEWED,
    ConflictError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_state_machine(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BookingStateMachine:
    return BookingStateMachine(BookingStore(db), gateway, notifier)


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        coach=CoachSummary.model_validate(booking.coach),
        slot=SlotSummary.model_validate(booking.slot),
        status=booking.status,
        amount_cents=booking.amount_cents,
        payment_status=booking.payment_status,
        created_at=booking.created_at,
    )


# ── List ──────────────────────────────────────────────────────

@router.get("", response_model=BookingListResponse)
async def list_bookings(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings the caller made as an athlete, and those on their coach profile."""
    store = BookingStore(db)
    as_athlete = await store.list_for_athlete(current_user.id)
    profile = await store.get_coach_profile_for_user(current_user.id)
    as_coach = await store.list_for_coach(profile.id) if profile else []

    return BookingListResponse(
        as_athlete=[AthleteBookingResponse.model_validate(b) for b in as_athlete],
        as_coach=[CoachBookingResponse.model_validate(b) for b in as_coach],
    )


# ── Create ────────────────────────────────────────────────────

@router.post(
    "",
    response_model=BookingResponse,
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """
    Request a slot. When the coach charges for sessions the card is
    authorized (not charged) here; clientSecret is returned if the
    athlete still has to complete a card challenge.
    """
    result = await machine.request_booking(
        athlete=current_user,
        coach_id=data.coach_id,
        slot_id=data.slot_id,
        message=data.message,
        payment_method_id=data.payment_method,
    )
    response = _booking_response(result.booking)
    if result.requires_action:
        response.client_secret = result.client_secret
        response.requires_action = True
    return response


# ── Status change ─────────────────────────────────────────────

@router.patch("/{booking_id}", response_model=BookingResponse, response_model_exclude_unset=True)
async def update_booking(
    booking_id: UUID,
    data: BookingUpdateRequest,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """Accept, decline/cancel, or complete. Completion captures the payment."""
    booking = await machine.transition(booking_id, current_user, BookingStatus(data.status))
    return _booking_response(booking)


# ── Review ────────────────────────────────────────────────────

@router.post(
    "/{booking_id}/review",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_review(
    booking_id: UUID,
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """One review per completed booking, by its athlete."""
    store = BookingStore(db)
    booking = await store.get_booking(booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.athlete_id != current_user.id:
        raise PermissionDenied("Only the athlete can review")
    if booking.status != BookingStatus.COMPLETED:
        raise ValidationError("Can only review completed bookings")
    if await store.get_review_for_booking(booking.id):
        raise ConflictError("Already reviewed", code=ALREADY_REVIEWED)

    review = await store.add_review(
        Review(
            booking_id=booking.id,
            coach_id=booking.coach_id,
            athlete_id=current_user.id,
            rating=data.rating,
            comment=data.comment or "",
        )
    )
    await db.commit()
    return review
