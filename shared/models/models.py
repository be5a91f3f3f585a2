"""
shared/models/models.py
All SQLAlchemy ORM models for the coach booking platform.
Portable column types (Uuid, JSON, non-native enums) so the same models
run on PostgreSQL in production and SQLite in tests.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    COACH = "coach"
    ATHLETE = "athlete"


class SlotStatus(str, PyEnum):
    AVAILABLE = "available"
    REMOVED = "removed"        # Deleted by the coach but kept for booking history


class Recurrence(str, PyEnum):
    NONE = "none"
    WEEKLY = "weekly"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, PyEnum):
    PENDING_AUTHORIZATION = "pending_authorization"
    AUTHORIZED = "authorized"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


def _enum(enum_cls, length: int = 32) -> Enum:
    """Store the lowercase values, not member names, as plain strings."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda e: [m.value for m in e],
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account created on first authentication or dev signup."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    external_subject: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Set once after signup, never changed
    role: Mapped[Optional[UserRole]] = mapped_column(_enum(UserRole), nullable=True)

    coach_profile: Mapped[Optional["CoachProfile"]] = relationship(
        back_populates="user", uselist=False
    )


class CoachProfile(TimestampMixin, Base):
    __tablename__ = "coach_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sports: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    service_cities: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    bio: Mapped[str] = mapped_column(Text, nullable=False, default="")
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Payout destination at the payment gateway
    connect_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    onboarding_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    user: Mapped["User"] = relationship(back_populates="coach_profile")
    availability_rules: Mapped[List["AvailabilityRule"]] = relationship(
        back_populates="coach", cascade="all, delete-orphan"
    )
    availability_slots: Mapped[List["AvailabilitySlot"]] = relationship(
        back_populates="coach"
    )

    __table_args__ = (
        CheckConstraint(
            "hourly_rate IS NULL OR hourly_rate > 0", name="ck_coach_hourly_rate_positive"
        ),
    )


class AvailabilityRule(TimestampMixin, Base):
    """Weekly generator for a series of availability slots."""
    __tablename__ = "availability_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    coach_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("coach_profiles.id", ondelete="CASCADE"), nullable=False
    )
    first_start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    recurrence: Mapped[Recurrence] = mapped_column(
        _enum(Recurrence), nullable=False, default=Recurrence.WEEKLY
    )
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    coach: Mapped["CoachProfile"] = relationship(back_populates="availability_rules")
    slots: Mapped[List["AvailabilitySlot"]] = relationship(back_populates="rule")

    __table_args__ = (Index("ix_availability_rules_coach_id", "coach_id"),)


class AvailabilitySlot(TimestampMixin, Base):
    """A single bookable time window. rule_id is null for one-off slots."""
    __tablename__ = "availability_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    coach_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("coach_profiles.id", ondelete="CASCADE"), nullable=False
    )
    rule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("availability_rules.id", ondelete="SET NULL"), nullable=True
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[SlotStatus] = mapped_column(
        _enum(SlotStatus), nullable=False, default=SlotStatus.AVAILABLE
    )
    recurrence: Mapped[Recurrence] = mapped_column(
        _enum(Recurrence), nullable=False, default=Recurrence.NONE
    )

    coach: Mapped["CoachProfile"] = relationship(back_populates="availability_slots")
    rule: Mapped[Optional["AvailabilityRule"]] = relationship(back_populates="slots")
    bookings: Mapped[List["Booking"]] = relationship(back_populates="slot")

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_slot_end_after_start"),
        Index("ix_availability_slots_coach_start", "coach_id", "start_time"),
        Index("ix_availability_slots_rule_id", "rule_id"),
    )


class Booking(TimestampMixin, Base):
    """
    Core booking entity, mutated only by the booking state machine
    (status, payment fields) and the webhook reconciler (payment_status).
    Status transitions: pending → confirmed | cancelled, confirmed → completed | cancelled
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    athlete_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    coach_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("coach_profiles.id"), nullable=False
    )
    slot_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("availability_slots.id"), nullable=False
    )
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )

    # Payment, amounts in minor units
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    payment_status: Mapped[Optional[PaymentStatus]] = mapped_column(
        _enum(PaymentStatus), nullable=True
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    athlete: Mapped["User"] = relationship(foreign_keys=[athlete_id])
    coach: Mapped["CoachProfile"] = relationship(foreign_keys=[coach_id])
    slot: Mapped["AvailabilitySlot"] = relationship(back_populates="bookings")
    review: Mapped[Optional["Review"]] = relationship(back_populates="booking", uselist=False)
    audit_logs: Mapped[List["BookingAuditLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        CheckConstraint(
            "amount_cents IS NULL OR amount_cents >= 50", name="ck_booking_min_charge"
        ),
        # At most one confirmed booking per slot
        Index(
            "uq_bookings_slot_confirmed",
            "slot_id",
            unique=True,
            postgresql_where=text("status = 'confirmed'"),
            sqlite_where=text("status = 'confirmed'"),
        ),
        # At most one open request per athlete per slot
        Index(
            "uq_bookings_athlete_slot_open",
            "athlete_id",
            "slot_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
            sqlite_where=text("status IN ('pending', 'confirmed')"),
        ),
        Index("ix_bookings_athlete_id", "athlete_id"),
        Index("ix_bookings_coach_id", "coach_id"),
        Index("ix_bookings_payment_intent_id", "payment_intent_id"),
    )


class BookingAuditLog(Base):
    """Immutable log of all booking status transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    booking: Mapped["Booking"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_booking_audit_logs_booking_id", "booking_id"),)


class Review(TimestampMixin, Base):
    """Athlete's review of a completed booking. One per booking."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False, unique=True
    )
    coach_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("coach_profiles.id"), nullable=False
    )
    athlete_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")

    booking: Mapped["Booking"] = relationship(back_populates="review")

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_coach_id", "coach_id"),
    )
