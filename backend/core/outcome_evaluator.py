"""
Outcome Evaluator - Parlay WIN / LOSS / INDETERMINATE

A parlay WINS iff every leg won. Any lost leg LOSES it.

Push and void legs are governed by an explicit PushVoidPolicy rather than an
implicit fallthrough:
- LOSS (default): a push/void leg fails the whole parlay
- VOID_LEG: push/void legs are dropped and the effective leg count shrinks;
  the remaining legs decide the outcome

Pending legs make the evaluation INDETERMINATE. So does a VOID_LEG parlay
with no leg left to decide it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Sequence, Tuple, Union
import logging

logger = logging.getLogger(__name__)


class LegOutcome(str, Enum):
    """Leg grading outcomes (set once by the external grader)"""
    PENDING = "pending"
    WIN = "win"
    LOSS = "loss"
    PUSH = "push"
    VOID = "void"


class ParlayOutcome(str, Enum):
    """Evaluation result"""
    WIN = "WIN"
    LOSS = "LOSS"
    INDETERMINATE = "INDETERMINATE"


class PushVoidPolicy(str, Enum):
    """How push/void legs affect a parlay"""
    LOSS = "LOSS"
    VOID_LEG = "VOID_LEG"

    @classmethod
    def parse(cls, value: Union[str, "PushVoidPolicy"]) -> "PushVoidPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(
                f"Unknown push/void policy {value!r}; expected one of "
                f"{[p.value for p in cls]}"
            ) from None


NEUTRAL_OUTCOMES = (LegOutcome.PUSH, LegOutcome.VOID)


@dataclass(frozen=True)
class Evaluation:
    """Result of evaluating a parlay's legs"""
    outcome: ParlayOutcome
    effective_leg_count: int
    voided_legs: Tuple[str, ...] = field(default_factory=tuple)
    reason: str = ""

    @property
    def is_final(self) -> bool:
        return self.outcome != ParlayOutcome.INDETERMINATE


LegInput = Union[LegOutcome, str, Tuple[str, Union[LegOutcome, str]]]


def _normalise(legs: Iterable[LegInput]) -> List[Tuple[str, LegOutcome]]:
    normalised = []
    for index, leg in enumerate(legs):
        if isinstance(leg, tuple):
            leg_id, outcome = leg
        else:
            leg_id, outcome = str(index), leg
        normalised.append((leg_id, LegOutcome(outcome)))
    return normalised


def evaluate(
    legs: Sequence[LegInput],
    policy: PushVoidPolicy = PushVoidPolicy.LOSS
) -> Evaluation:
    """
    Evaluate a parlay from its leg outcomes.

    Args:
        legs: leg outcomes, either bare outcomes or (leg_id, outcome) pairs
        policy: push/void handling policy

    Returns:
        Evaluation with outcome, effective leg count and voided leg ids
    """
    graded = _normalise(legs)

    if not graded:
        return Evaluation(ParlayOutcome.INDETERMINATE, 0, reason="NO_LEGS")

    pending = [leg_id for leg_id, outcome in graded if outcome == LegOutcome.PENDING]
    if pending:
        return Evaluation(
            ParlayOutcome.INDETERMINATE,
            len(graded),
            reason=f"PENDING_LEGS:{','.join(pending)}"
        )

    if any(outcome == LegOutcome.LOSS for _, outcome in graded):
        return Evaluation(ParlayOutcome.LOSS, len(graded), reason="LEG_LOST")

    neutral = tuple(leg_id for leg_id, outcome in graded if outcome in NEUTRAL_OUTCOMES)
    if not neutral:
        return Evaluation(ParlayOutcome.WIN, len(graded), reason="ALL_LEGS_WON")

    if policy == PushVoidPolicy.LOSS:
        return Evaluation(
            ParlayOutcome.LOSS,
            len(graded),
            voided_legs=neutral,
            reason="PUSH_VOID_AS_LOSS"
        )

    remaining = len(graded) - len(neutral)
    if remaining == 0:
        logger.warning(f"Every leg pushed or voided ({len(graded)} legs); parlay is indeterminate")
        return Evaluation(
            ParlayOutcome.INDETERMINATE,
            0,
            voided_legs=neutral,
            reason="ALL_LEGS_VOIDED"
        )

    return Evaluation(
        ParlayOutcome.WIN,
        remaining,
        voided_legs=neutral,
        reason="REMAINING_LEGS_WON"
    )
