"""
shared/utils/money.py
Session pricing. Rates are Decimal dollars; every stored or transferred
amount is an integer number of minor units (cents). Never floats.
"""

from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Optional, Union

from config.settings import settings

Rate = Decimal
MinorUnits = int

_SECONDS_PER_HOUR = Decimal(3600)
_CENTS = Decimal(100)


def compute_amount_cents(
    start: datetime,
    end: datetime,
    rate: Union[Rate, str, int],
    minimum: Optional[MinorUnits] = None,
) -> MinorUnits:
    """
    max(minimum, ceil(hours * rate * 100)).
    Computed once at booking creation; capture and transfer read the stored value.
    """
    if minimum is None:
        minimum = settings.STRIPE_MIN_CHARGE_CENTS
    seconds = Decimal(str((end - start).total_seconds()))
    hours = seconds / _SECONDS_PER_HOUR
    cents = (hours * Decimal(rate) * _CENTS).to_integral_value(rounding=ROUND_CEILING)
    return max(minimum, int(cents))


def clamp_fee_percent(percent: Union[float, Decimal]) -> Decimal:
    return min(Decimal(100), max(Decimal(0), Decimal(str(percent))))


def platform_fee_cents(amount: MinorUnits, percent: Union[float, Decimal]) -> MinorUnits:
    """Platform share of amount, rounded half-up to whole cents."""
    fee = Decimal(amount) * clamp_fee_percent(percent) / _CENTS
    return int(fee.to_integral_value(rounding=ROUND_HALF_UP))


def transfer_amount_cents(amount: MinorUnits, percent: Union[float, Decimal]) -> MinorUnits:
    """What the coach receives. Zero or less means no transfer is made."""
    return amount - platform_fee_cents(amount, percent)
