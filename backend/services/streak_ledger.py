"""
Streak Ledger - SOLE WRITER of user streak state
=================================================

Owns users.current_streak / longest_streak / insurance_locked (and the
derived insurance fields) plus the append-only streak_history collection.

Two steps, split so the arithmetic is testable without a database:
1. plan()   - pure: user + parlay + evaluation -> LedgerPlan
2. commit() - conditional writes inside the caller's transaction

Ledger rules:
- WIN:                new = current + parlay_value(effective legs) - insurance_cost
- LOSS, insured:      streak unchanged, insurance locked
- LOSS, uninsured:    new = 0 unconditionally
- history `at` values are strictly increasing per user
- current_streak always equals new_streak of the user's latest entry
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
import logging

from core.insurance_state_machine import (
    InsuranceState,
    InsuranceTransition,
    ResolutionRecord,
    transition,
)
from core.outcome_evaluator import Evaluation, ParlayOutcome
from core.parlay_values import parlay_value
from core.resolution_errors import ParlayDataError, TransientStorageError
from db.models import Parlay, ParlayStatus, StreakChangeType, StreakHistoryEntry, User
from db.resolution_store import ResolutionStore
from utils.timezone import TICK, truncate_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerPlan:
    """Everything one resolution writes, computed before any write happens."""
    user_id: str
    parlay_id: str
    parlay_status: ParlayStatus
    resolved_at: datetime
    expected_version: int
    old_streak: int
    new_streak: int
    longest_streak: int
    insurance_state: InsuranceState
    insurance_transition: InsuranceTransition
    total_points_earned: int
    entries: Tuple[StreakHistoryEntry, ...]
    outcome_detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def change_amount(self) -> int:
        return self.new_streak - self.old_streak

    @property
    def last_ledger_at(self) -> datetime:
        return self.entries[-1].at

    def user_fields(self) -> Dict[str, Any]:
        return {
            "current_streak": self.new_streak,
            "longest_streak": self.longest_streak,
            "insurance_locked": self.insurance_state.locked,
            "insurance_locked_at": self.insurance_state.locked_at,
            "last_insured_parlay_id": self.insurance_state.locked_by_parlay_id,
            "total_points_earned": self.total_points_earned,
            "last_ledger_at": self.last_ledger_at,
        }


def next_ledger_time(now: datetime, last_ledger_at: Optional[datetime]) -> datetime:
    """First timestamp usable for a new entry: `now`, unless the user's last
    entry is at or after it."""
    candidate = truncate_ms(now)
    if last_ledger_at is not None and candidate <= last_ledger_at:
        return last_ledger_at + TICK
    return candidate


def _entry(
    user_id: str,
    parlay_id: str,
    old_streak: int,
    new_streak: int,
    change_type: StreakChangeType,
    at: datetime,
    details: Optional[Dict[str, Any]] = None
) -> StreakHistoryEntry:
    return StreakHistoryEntry(
        entry_id=f"sh_{uuid4().hex}",
        user_id=user_id,
        parlay_id=parlay_id,
        old_streak=old_streak,
        new_streak=new_streak,
        change_amount=new_streak - old_streak,
        change_type=change_type,
        at=at,
        details=details or {},
    )


class StreakLedger:
    """
    Append-only streak ledger.

    Hard Rules:
    1. ONLY this class writes user streak / insurance fields
    2. Every mutation appends at least one streak_history entry
    3. User writes are guarded by ledger_version (optimistic concurrency)
    """

    def __init__(self, store: ResolutionStore):
        self.store = store

    # ------------------------------------------------------------------
    # Planning (pure)
    # ------------------------------------------------------------------

    @staticmethod
    def plan(user: User, parlay: Parlay, evaluation: Evaluation, now: datetime) -> LedgerPlan:
        """
        Compute the streak mutation for one parlay resolution.

        Raises:
            ParlayDataError: evaluation is INDETERMINATE or belongs to another user
        """
        if not evaluation.is_final:
            raise ParlayDataError(
                f"Parlay {parlay.parlay_id} cannot be resolved: {evaluation.reason}",
                parlay.parlay_id
            )
        if user.user_id != parlay.user_id:
            raise ParlayDataError(
                f"Parlay {parlay.parlay_id} belongs to {parlay.user_id}, not {user.user_id}",
                parlay.parlay_id
            )

        won = evaluation.outcome == ParlayOutcome.WIN
        resolved_at = next_ledger_time(now, user.last_ledger_at)
        old_streak = user.current_streak
        total_points = user.total_points_earned

        detail: Dict[str, Any] = {
            "outcome": evaluation.outcome.value,
            "effective_leg_count": evaluation.effective_leg_count,
            "voided_legs": list(evaluation.voided_legs),
            "reason": evaluation.reason,
            "insured": parlay.insured,
            "insurance_cost": parlay.insurance_cost,
        }

        if won:
            value = parlay_value(evaluation.effective_leg_count)
            net_gain = value - parlay.insurance_cost
            # Insurance can exceed the value at high brackets; the streak
            # never goes below zero.
            new_streak = max(0, old_streak + net_gain)
            total_points += max(0, new_streak - old_streak)
            change_type = StreakChangeType.WIN
            detail.update({"parlay_value": value, "net_gain": net_gain})
        elif parlay.insured:
            new_streak = old_streak
            change_type = StreakChangeType.LOSS
        else:
            new_streak = 0
            change_type = StreakChangeType.LOSS

        entries: List[StreakHistoryEntry] = [
            _entry(user.user_id, parlay.parlay_id, old_streak, new_streak, change_type, resolved_at, detail)
        ]

        state = InsuranceState(
            locked=user.insurance_locked,
            locked_at=user.insurance_locked_at,
            locked_by_parlay_id=user.last_insured_parlay_id,
        )
        record = ResolutionRecord(
            parlay_id=parlay.parlay_id,
            insured=parlay.insured,
            won=won,
            resolved_at=resolved_at,
        )
        new_state, fired = transition(state, record)

        if fired == InsuranceTransition.LOCK:
            entries.append(_entry(
                user.user_id, parlay.parlay_id, new_streak, new_streak,
                StreakChangeType.INSURANCE_LOCK, resolved_at + TICK
            ))
        elif fired == InsuranceTransition.UNLOCK:
            entries.append(_entry(
                user.user_id, parlay.parlay_id, new_streak, new_streak,
                StreakChangeType.INSURANCE_UNLOCK, resolved_at + TICK,
                {"locked_by_parlay_id": state.locked_by_parlay_id}
            ))

        return LedgerPlan(
            user_id=user.user_id,
            parlay_id=parlay.parlay_id,
            parlay_status=ParlayStatus.WON if won else ParlayStatus.LOST,
            resolved_at=resolved_at,
            expected_version=user.ledger_version,
            old_streak=old_streak,
            new_streak=new_streak,
            longest_streak=max(user.longest_streak, new_streak),
            insurance_state=new_state,
            insurance_transition=fired,
            total_points_earned=total_points,
            entries=tuple(entries),
            outcome_detail=detail,
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(self, plan: LedgerPlan, session=None) -> None:
        """
        Write the plan. Must run inside the same transaction that claimed the
        parlay. History goes first and the version-guarded user write last, so
        without a transaction a failed attempt leaves only rows the caller can
        delete by entry_id.

        Raises:
            TransientStorageError: another writer moved the user's ledger_version
        """
        self.store.insert_history(plan.entries, session)
        if not self.store.apply_user_update(plan.user_id, plan.expected_version, plan.user_fields(), session):
            raise TransientStorageError(
                f"User {plan.user_id} changed concurrently (expected ledger_version "
                f"{plan.expected_version})",
                plan.parlay_id
            )
        logger.info(
            f"Ledger: user={plan.user_id} parlay={plan.parlay_id} "
            f"{plan.old_streak} -> {plan.new_streak} ({plan.parlay_status.value}, "
            f"insurance {plan.insurance_transition.value})"
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def history(self, user_id: str, limit: Optional[int] = None) -> List[StreakHistoryEntry]:
        return self.store.get_history(user_id, limit=limit)

    def latest_entry(self, user_id: str) -> Optional[StreakHistoryEntry]:
        entries = self.store.get_history(user_id, limit=1)
        return entries[-1] if entries else None
