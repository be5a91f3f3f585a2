"""
tests/test_money.py
Pure helpers: session pricing, fee split, payment status ordering,
weekly slot generation.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.availability.slots import rule_end_cap, weekly_slot_times
from shared.models.models import PaymentStatus
from shared.utils.money import (
    compute_amount_cents,
    platform_fee_cents,
    transfer_amount_cents,
)
from shared.utils.payment_status import can_advance

START = datetime(2030, 5, 6, 15, 0, tzinfo=timezone.utc)


# ── Pricing ────────────────────────────────────────────────────────────────────

def test_one_hour_at_hourly_rate():
    assert compute_amount_cents(START, START + timedelta(hours=1), Decimal("75.00")) == 7500


def test_fractional_cents_round_up():
    # 7 minutes at 10.00/h = 116.666... cents
    assert compute_amount_cents(START, START + timedelta(minutes=7), Decimal("10.00")) == 117


def test_minimum_charge_applies():
    assert compute_amount_cents(START, START + timedelta(minutes=15), Decimal("1.00"), minimum=50) == 50


def test_ninety_minutes():
    assert compute_amount_cents(START, START + timedelta(minutes=90), "60") == 9000


@pytest.mark.parametrize(
    "amount, percent, fee",
    [
        (7500, 10, 750),
        (7500, 0, 0),
        (7500, 100, 7500),
        (7500, 150, 7500),
        (7500, -5, 0),
        (125, 10, 13),   # 12.5 rounds half-up
        (50, 12.5, 6),
    ],
)
def test_platform_fee(amount, percent, fee):
    assert platform_fee_cents(amount, percent) == fee
    assert transfer_amount_cents(amount, percent) == amount - fee


# ── Payment status ─────────────────────────────────────────────────────────────

def test_forward_progression():
    assert can_advance(None, PaymentStatus.PENDING_AUTHORIZATION)
    assert can_advance(PaymentStatus.PENDING_AUTHORIZATION, PaymentStatus.AUTHORIZED)
    assert can_advance(PaymentStatus.AUTHORIZED, PaymentStatus.SUCCEEDED)
    assert can_advance(PaymentStatus.PENDING_AUTHORIZATION, PaymentStatus.SUCCEEDED)


def test_no_backward_or_repeated_moves():
    assert not can_advance(PaymentStatus.AUTHORIZED, PaymentStatus.PENDING_AUTHORIZATION)
    assert not can_advance(PaymentStatus.AUTHORIZED, PaymentStatus.AUTHORIZED)


@pytest.mark.parametrize("final", [PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED])
def test_final_states_stick(final):
    for target in PaymentStatus:
        assert not can_advance(final, target)


@pytest.mark.parametrize("current", [None, PaymentStatus.PENDING_AUTHORIZATION, PaymentStatus.AUTHORIZED])
def test_failed_and_canceled_reachable_before_final(current):
    assert can_advance(current, PaymentStatus.FAILED)
    assert can_advance(current, PaymentStatus.CANCELED)


# ── Weekly slots ───────────────────────────────────────────────────────────────

def test_rule_end_cap_is_end_of_day():
    cap = rule_end_cap(START, date(2030, 5, 20))
    assert cap.date() == date(2030, 5, 20)
    assert cap.hour == 23 and cap.minute == 59


def test_rule_end_cap_limits_span():
    cap = rule_end_cap(START, date(2040, 1, 1), max_span_days=30)
    assert cap == START + timedelta(days=30)


def test_weekly_slot_times_inclusive_of_cap():
    cap = rule_end_cap(START, date(2030, 5, 20))
    times = weekly_slot_times(START, 45, cap)
    assert [s for s, _ in times] == [START, START + timedelta(weeks=1), START + timedelta(weeks=2)]
    assert all(e - s == timedelta(minutes=45) for s, e in times)


def test_weekly_slot_times_empty_when_cap_precedes_start():
    assert weekly_slot_times(START, 60, START - timedelta(seconds=1)) == []
