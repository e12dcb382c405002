"""ATM strike and strike window arithmetic. Pure functions."""

from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from ..types import StrikeWindow

Number = Union[Decimal, int, str]


def compute_atm(spot: Number, gap: Number) -> Decimal:
    """
    Round spot to the nearest multiple of gap (ties round up).
    
    Example: compute_atm(24987.4, 50) == 25000
    """
    spot = Decimal(str(spot))
    gap = Decimal(str(gap))
    if gap <= 0:
        raise ValueError(f"gap must be positive, got {gap}")
    steps = (spot / gap).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return steps * gap


def generate_window(atm: Number, gap: Number, range_: int) -> StrikeWindow:
    """Build the 2*range_+1 strikes from atm - range_*gap to atm + range_*gap."""
    atm = Decimal(str(atm))
    gap = Decimal(str(gap))
    if gap <= 0:
        raise ValueError(f"gap must be positive, got {gap}")
    if range_ < 0:
        raise ValueError(f"range must not be negative, got {range_}")
    
    strikes = tuple(atm + i * gap for i in range(-range_, range_ + 1))
    return StrikeWindow(atm=atm, gap=gap, range=range_, strikes=strikes)


def has_drifted(old_atm: Number, new_atm: Number, threshold: Number) -> bool:
    """True iff the ATM moved by at least threshold."""
    return abs(Decimal(str(new_atm)) - Decimal(str(old_atm))) >= Decimal(str(threshold))
