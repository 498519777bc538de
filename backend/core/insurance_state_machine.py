"""
Insurance State Machine - LOCKED / UNLOCKED per user

State Rules:
- An insured parlay that LOSES locks insurance (locked_at = its resolved_at)
- An uninsured parlay that resolves (win or loss) strictly after locked_at
  unlocks insurance
- An insured parlay that WINS changes nothing

The machine is a pure function of the user's resolution order. Feeding it
resolutions out of order unlocks one resolution too early or too late, which
is why the engine serialises resolutions per user by last_leg_end_time.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple


class InsuranceTransition(str, Enum):
    NONE = "NONE"
    LOCK = "LOCK"
    UNLOCK = "UNLOCK"


@dataclass(frozen=True)
class InsuranceState:
    """Insurance eligibility for one user"""
    locked: bool = False
    locked_at: Optional[datetime] = None
    locked_by_parlay_id: Optional[str] = None


@dataclass(frozen=True)
class ResolutionRecord:
    """One parlay resolution as seen by the state machine"""
    parlay_id: str
    insured: bool
    won: bool
    resolved_at: datetime


def transition(
    state: InsuranceState,
    record: ResolutionRecord
) -> Tuple[InsuranceState, InsuranceTransition]:
    """
    Apply one resolution to the insurance state.

    Returns:
        (new state, transition that fired)
    """
    if record.insured:
        if record.won:
            return state, InsuranceTransition.NONE
        new_state = InsuranceState(
            locked=True,
            locked_at=record.resolved_at,
            locked_by_parlay_id=record.parlay_id
        )
        fired = InsuranceTransition.NONE if state.locked else InsuranceTransition.LOCK
        return new_state, fired

    if not state.locked:
        return state, InsuranceTransition.NONE

    # A lock with no recorded time predates the ledger; any later uninsured
    # resolution releases it.
    if state.locked_at is None or record.resolved_at > state.locked_at:
        return InsuranceState(), InsuranceTransition.UNLOCK

    return state, InsuranceTransition.NONE


def replay(
    records: Iterable[ResolutionRecord],
    initial: Optional[InsuranceState] = None
) -> InsuranceState:
    """Fold an ordered resolution history into the resulting insurance state."""
    state = initial or InsuranceState()
    for record in records:
        state, _ = transition(state, record)
    return state
