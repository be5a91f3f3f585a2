"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
JSON on the wire is camelCase; Python attributes stay snake_case.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_serializer,
)
from pydantic.alias_generators import to_camel

from shared.models.models import (
    BookingStatus,
    PaymentStatus,
    Recurrence,
    SlotStatus,
    UserRole,
)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(_as_utc)]


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── Users / Auth ──────────────────────────────────────────────

class CoachProfileResponse(BaseSchema):
    id: uuid.UUID
    display_name: str
    sports: List[str]
    service_cities: List[str]
    bio: str
    hourly_rate: Optional[Decimal]
    verified: bool
    avatar_url: Optional[str]
    phone: Optional[str]

    @field_serializer("hourly_rate")
    def _rate_as_string(self, v: Optional[Decimal]) -> Optional[str]:
        return str(v) if v is not None else None


class MeResponse(BaseSchema):
    id: uuid.UUID
    email: str
    name: Optional[str]
    role: Optional[UserRole]
    coach_profile: Optional[CoachProfileResponse]


class RoleUpdateRequest(BaseSchema):
    role: UserRole


class RoleUpdateResponse(BaseSchema):
    role: UserRole


class DevSignupRequest(BaseSchema):
    email: EmailStr
    name: Optional[str] = Field(None, max_length=255)


class DevUserResponse(BaseSchema):
    id: uuid.UUID
    email: str
    name: Optional[str]


# ── Bookings ──────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    coach_id: uuid.UUID
    slot_id: uuid.UUID
    message: Optional[str] = Field(None, max_length=2000)
    payment_method: Optional[str] = Field(None, alias="payment_method", max_length=255)


class BookingUpdateRequest(BaseSchema):
    status: BookingStatus


class CoachSummary(BaseSchema):
    id: uuid.UUID
    display_name: str
    sports: List[str]


class AthleteSummary(BaseSchema):
    id: uuid.UUID
    name: Optional[str]
    email: str


class SlotSummary(BaseSchema):
    id: uuid.UUID
    start_time: UTCDateTime
    end_time: UTCDateTime


class ReviewSummary(BaseSchema):
    rating: int
    comment: str


class BookingResponse(BaseSchema):
    """Returned by POST and PATCH /bookings. clientSecret only when the card needs client-side action."""
    id: uuid.UUID
    coach: CoachSummary
    slot: SlotSummary
    status: BookingStatus
    amount_cents: Optional[int]
    payment_status: Optional[PaymentStatus]
    created_at: UTCDateTime
    client_secret: Optional[str] = None
    requires_action: Optional[bool] = None


class AthleteBookingResponse(BaseSchema):
    id: uuid.UUID
    coach: CoachSummary
    slot: SlotSummary
    message: Optional[str]
    status: BookingStatus
    amount_cents: Optional[int]
    payment_status: Optional[PaymentStatus]
    created_at: UTCDateTime
    review: Optional[ReviewSummary]


class CoachBookingResponse(BaseSchema):
    id: uuid.UUID
    athlete: AthleteSummary
    slot: SlotSummary
    message: Optional[str]
    status: BookingStatus
    amount_cents: Optional[int]
    payment_status: Optional[PaymentStatus]
    created_at: UTCDateTime


class BookingListResponse(BaseSchema):
    as_athlete: List[AthleteBookingResponse]
    as_coach: List[CoachBookingResponse]


# ── Reviews ───────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    rating: int = Field(..., ge=1, le=5, strict=True)
    comment: str = Field("", max_length=5000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    rating: int
    comment: str


# ── Availability ──────────────────────────────────────────────

class AvailabilitySlotCreateRequest(BaseSchema):
    start_time: UTCDateTime
    duration_minutes: int = Field(..., ge=15, le=240)
    recurrence: Literal["none", "weekly"] = "none"


class AvailabilityRuleCreateRequest(BaseSchema):
    first_start_time: UTCDateTime
    duration_minutes: int = Field(..., ge=15, le=240)
    recurrence: Literal["weekly"] = "weekly"
    end_date: date


class AvailabilitySlotResponse(BaseSchema):
    id: uuid.UUID
    start_time: UTCDateTime
    end_time: UTCDateTime
    status: SlotStatus


class AvailabilityRuleResponse(BaseSchema):
    id: uuid.UUID
    first_start_time: UTCDateTime
    duration_minutes: int
    recurrence: Recurrence
    end_date: date
    slot_count: int
    booking_count: Optional[int] = None


class AvailabilityResponse(BaseSchema):
    rules: List[AvailabilityRuleResponse]
    one_off_slots: List[AvailabilitySlotResponse]


# ── Payouts ───────────────────────────────────────────────────

class ConnectAccountLinkResponse(BaseSchema):
    url: str


class ConnectStatusResponse(BaseSchema):
    stripe_connect_account_id: Optional[str]
    stripe_onboarding_complete: bool
