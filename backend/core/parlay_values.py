"""
Parlay Value & Insurance Cost Functions

Pure, deterministic lookups. No hidden state: the tables are passed in (or
default to the static configuration) so every result is reproducible.

    parlay_value(leg_count)                       1,2,4,8,16 for 1..5 legs
    insurance_cost(leg_count, streak_at_purchase) round(base x bracket multiplier)
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple

from config.engine_config import (
    BASE_INSURANCE_COSTS,
    INSURANCE_MULTIPLIERS,
    MAX_LEGS,
    MIN_LEGS,
    PARLAY_VALUES,
)
from core.resolution_errors import InvalidLegCountError

INSURANCE_MIN_LEGS = 4


def validate_leg_count(leg_count: int) -> int:
    if isinstance(leg_count, bool) or not isinstance(leg_count, int):
        raise InvalidLegCountError(f"leg_count must be an integer, got {leg_count!r}")
    if leg_count < MIN_LEGS or leg_count > MAX_LEGS:
        raise InvalidLegCountError(
            f"leg_count must be between {MIN_LEGS} and {MAX_LEGS}, got {leg_count}"
        )
    return leg_count


def parlay_value(leg_count: int, values: Optional[Dict[int, int]] = None) -> int:
    """
    Streak value of a parlay with `leg_count` legs.

    Raises:
        InvalidLegCountError: leg_count outside [1, 5]
    """
    validate_leg_count(leg_count)
    return (values or PARLAY_VALUES)[leg_count]


def is_insurance_eligible(leg_count: int) -> bool:
    return leg_count >= INSURANCE_MIN_LEGS and leg_count <= MAX_LEGS


def insurance_bracket(
    streak: int,
    multipliers: Optional[List[Tuple[int, float]]] = None
) -> Tuple[int, float]:
    """Return the (lower bound, multiplier) bracket that contains `streak`."""
    brackets = sorted(multipliers or INSURANCE_MULTIPLIERS)
    selected = brackets[0]
    for lower, multiplier in brackets:
        if streak >= lower:
            selected = (lower, multiplier)
    return selected


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def insurance_cost(
    leg_count: int,
    streak_at_purchase: int,
    base_costs: Optional[Dict[int, int]] = None,
    multipliers: Optional[List[Tuple[int, float]]] = None
) -> int:
    """
    Cost of insuring a parlay, paid out of the win gain.

    0 for parlays under 4 legs. Otherwise base (3 for 4 legs, 5 for 5 legs)
    times the multiplier of the streak bracket, rounded half-up.
    """
    if leg_count < INSURANCE_MIN_LEGS:
        return 0
    validate_leg_count(leg_count)

    base = (base_costs or BASE_INSURANCE_COSTS)[leg_count]
    _, multiplier = insurance_bracket(max(streak_at_purchase, 0), multipliers)
    return _round_half_up(base * multiplier)
