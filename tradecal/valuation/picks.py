"""Draft pick valuation curve."""

from datetime import date, datetime
from typing import Dict, Optional


BASE_PICK_VALUE: Dict[int, float] = {
    1: 100.0,
    2: 65.0,
    3: 40.0,
    4: 20.0,
}
LATE_ROUND_VALUE = 10.0

TIME_MULTIPLIER_BY_YEARS_OUT: Dict[int, float] = {
    0: 1.00,
    1: 0.92,
    2: 0.85,
    3: 0.80,
}
TIME_FLOOR = 0.75

# years out -> volatility
PICK_VOLATILITY: Dict[int, float] = {
    0: 0.35,
    1: 0.42,
    2: 0.50,
}
DISTANT_PICK_VOLATILITY = 0.55

CLASS_STRENGTH_BASELINE = 80.0

DRAFT_MONTH = 4
DRAFT_DAY = 30


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def draft_date(year: int) -> date:
    return date(year, DRAFT_MONTH, DRAFT_DAY)


def days_to_draft(pick_year: int, as_of: datetime) -> Optional[int]:
    """Days until the pick's draft, None once it has passed."""
    days = (draft_date(pick_year) - as_of.date()).days
    if days < 0:
        return None
    return days


def rookie_fever_multiplier(days: Optional[int]) -> float:
    if days is None:
        return 1.00
    if days <= 30:
        return 1.06
    if days <= 90:
        return 1.03
    return 1.00


def time_multiplier(years_out: int) -> float:
    mult = TIME_MULTIPLIER_BY_YEARS_OUT.get(years_out, TIME_FLOOR)
    return _clamp(mult, TIME_FLOOR, 1.00)


def pick_volatility(years_out: int) -> float:
    if years_out <= 0:
        return PICK_VOLATILITY[0]
    return PICK_VOLATILITY.get(years_out, DISTANT_PICK_VOLATILITY)


def pick_value(
    pick_round: int,
    pick_year: int,
    as_of: datetime,
    class_strength: Optional[float] = None,
) -> float:
    """Curve value for a pick before league scaling.

    Base value by round, discounted by years until the draft, inflated close
    to the draft, scaled by class strength when known.
    """
    base = BASE_PICK_VALUE.get(pick_round, LATE_ROUND_VALUE)
    years_out = pick_year - as_of.year
    value = base * time_multiplier(years_out) * rookie_fever_multiplier(days_to_draft(pick_year, as_of))
    if class_strength is not None and class_strength > 0:
        value *= class_strength / CLASS_STRENGTH_BASELINE
    return value
