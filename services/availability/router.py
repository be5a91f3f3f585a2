"""
services/availability/router.py
Coach availability: one-off slots and weekly rules.
Removing availability cancels the open bookings on it first, through the
same path as a coach cancel (hold released, athlete notified).
"""

from datetime import timedelta
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from config.database import get_db
from services.availability.slots import rule_end_cap, weekly_slot_times
from services.booking.router import get_state_machine
from services.booking.state_machine import BookingStateMachine
from services.booking.store import BookingStore
from shared.middleware.auth import get_current_user
from shared.models.models import (
    AvailabilityRule,
    AvailabilitySlot,
    BookingStatus,
    CoachProfile,
    Recurrence,
    SlotStatus,
    User,
)
from shared.schemas.schemas import (
    AvailabilityResponse,
    AvailabilityRuleCreateRequest,
    AvailabilityRuleResponse,
    AvailabilitySlotCreateRequest,
    AvailabilitySlotResponse,
)
from shared.utils.errors import NotFoundError, ValidationError

router = APIRouter(prefix="/coaches/me/availability", tags=["Availability"])


async def get_coach_profile(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CoachProfile:
    profile = await BookingStore(db).get_coach_profile_for_user(current_user.id)
    if not profile:
        raise NotFoundError("Coach profile not found")
    return profile


def _rule_response(rule: AvailabilityRule, slots: List[AvailabilitySlot]) -> AvailabilityRuleResponse:
    return AvailabilityRuleResponse(
        id=rule.id,
        first_start_time=rule.first_start_time,
        duration_minutes=rule.duration_minutes,
        recurrence=rule.recurrence,
        end_date=rule.end_date.date(),
        slot_count=len(slots),
        booking_count=sum(
            1 for s in slots for b in s.bookings if b.status != BookingStatus.CANCELLED
        ),
    )


async def _retire_slots(
    db: AsyncSession,
    machine: BookingStateMachine,
    slots: List[AvailabilitySlot],
    coach_user: User,
) -> None:
    """Cancel open bookings, then delete the slots. Slots with booking history are kept as removed."""
    slot_ids = [s.id for s in slots]
    await machine.cancel_for_removed_slots(slot_ids, coach_user)
    referenced = await machine.store.slot_ids_with_bookings(slot_ids)
    for slot in slots:
        if slot.id in referenced:
            slot.status = SlotStatus.REMOVED
            slot.rule_id = None
        else:
            await db.delete(slot)


# ── Read ──────────────────────────────────────────────────────

@router.get("", response_model=AvailabilityResponse)
async def get_availability(
    profile: CoachProfile = Depends(get_coach_profile),
    db: AsyncSession = Depends(get_db),
):
    rules_result = await db.execute(
        select(AvailabilityRule)
        .options(selectinload(AvailabilityRule.slots).selectinload(AvailabilitySlot.bookings))
        .where(AvailabilityRule.coach_id == profile.id)
        .order_by(AvailabilityRule.first_start_time)
    )
    slots_result = await db.execute(
        select(AvailabilitySlot)
        .where(
            AvailabilitySlot.coach_id == profile.id,
            AvailabilitySlot.rule_id.is_(None),
            AvailabilitySlot.status == SlotStatus.AVAILABLE,
        )
        .order_by(AvailabilitySlot.start_time)
    )
    return AvailabilityResponse(
        rules=[_rule_response(r, r.slots) for r in rules_result.scalars().all()],
        one_off_slots=[
            AvailabilitySlotResponse.model_validate(s) for s in slots_result.scalars().all()
        ],
    )


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=AvailabilitySlotResponse, status_code=status.HTTP_201_CREATED)
async def create_slot(
    data: AvailabilitySlotCreateRequest,
    profile: CoachProfile = Depends(get_coach_profile),
    db: AsyncSession = Depends(get_db),
):
    """Single one-off slot."""
    if data.recurrence != Recurrence.NONE.value:
        raise ValidationError(
            "Use POST /coaches/me/availability/rules for recurring availability."
        )
    slot = AvailabilitySlot(
        coach_id=profile.id,
        start_time=data.start_time,
        end_time=data.start_time + timedelta(minutes=data.duration_minutes),
        recurrence=Recurrence.NONE,
    )
    db.add(slot)
    await db.commit()
    return slot


@router.post(
    "/rules",
    response_model=AvailabilityRuleResponse,
    response_model_exclude_unset=True,
    status_code=status.HTTP_201_CREATED,
)
async def create_rule(
    data: AvailabilityRuleCreateRequest,
    profile: CoachProfile = Depends(get_coach_profile),
    db: AsyncSession = Depends(get_db),
):
    """Weekly rule; slots are generated up front through endDate (capped at two years)."""
    cap = rule_end_cap(data.first_start_time, data.end_date)
    if cap < data.first_start_time:
        raise ValidationError("endDate must not be before firstStartTime")

    rule = AvailabilityRule(
        coach_id=profile.id,
        first_start_time=data.first_start_time,
        duration_minutes=data.duration_minutes,
        recurrence=Recurrence.WEEKLY,
        end_date=cap,
    )
    db.add(rule)
    await db.flush()

    slots = [
        AvailabilitySlot(
            coach_id=profile.id,
            rule_id=rule.id,
            start_time=start,
            end_time=end,
            recurrence=Recurrence.WEEKLY,
        )
        for start, end in weekly_slot_times(data.first_start_time, data.duration_minutes, cap)
    ]
    db.add_all(slots)
    await db.commit()

    return AvailabilityRuleResponse(
        id=rule.id,
        first_start_time=rule.first_start_time,
        duration_minutes=rule.duration_minutes,
        recurrence=rule.recurrence,
        end_date=cap.date(),
        slot_count=len(slots),
    )


# ── Delete ────────────────────────────────────────────────────

@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: UUID,
    profile: CoachProfile = Depends(get_coach_profile),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    result = await db.execute(
        select(AvailabilityRule)
        .options(selectinload(AvailabilityRule.slots))
        .where(AvailabilityRule.id == rule_id, AvailabilityRule.coach_id == profile.id)
    )
    rule = result.scalar_one_or_none()
    if not rule:
        raise NotFoundError("Rule not found")

    await _retire_slots(db, machine, list(rule.slots), current_user)
    await db.delete(rule)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_slot(
    slot_id: UUID,
    profile: CoachProfile = Depends(get_coach_profile),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    result = await db.execute(
        select(AvailabilitySlot).where(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.coach_id == profile.id,
            AvailabilitySlot.status != SlotStatus.REMOVED,
        )
    )
    slot = result.scalar_one_or_none()
    if not slot:
        raise NotFoundError("Slot not found")

    await _retire_slots(db, machine, [slot], current_user)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
