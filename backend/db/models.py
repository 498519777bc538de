"""
Resolution Engine Document Models
==================================

Typed, immutable views over the MongoDB documents the engine reads and
writes. Every engine component receives these values instead of raw dicts.

Collections:
------------
- users:          streak state (written only by StreakLedger)
- games:          owned by ingestion, read-only here
- legs:           owned by grading, read-only here
- parlays:        status / resolved_at written by the engine
- streak_history: append-only audit trail of streak mutations

Construction validates the parlay invariants:
1. parlay_value is a pure function of leg_count
2. insurance_cost > 0 only if insured and leg_count >= 4
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from core.outcome_evaluator import LegOutcome
from core.parlay_values import INSURANCE_MIN_LEGS, parlay_value, validate_leg_count
from core.resolution_errors import InvalidParlayError
from utils.timezone import coerce_utc

USERS = "users"
GAMES = "games"
LEGS = "legs"
PARLAYS = "parlays"
STREAK_HISTORY = "streak_history"
RESOLUTION_LOGS = "logs_resolution"


class ParlayStatus(str, Enum):
    BUILDING = "BUILDING"
    LOCKED = "LOCKED"
    WON = "WON"
    LOST = "LOST"
    RESOLUTION_FAILED = "RESOLUTION_FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ParlayStatus.WON, ParlayStatus.LOST)


# Statuses from which LOCKED -> WON/LOST may still happen
RESOLVABLE_STATUSES = (ParlayStatus.LOCKED, ParlayStatus.RESOLUTION_FAILED)


class GameStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    POSTPONED = "postponed"
    CANCELED = "canceled"


class StreakChangeType(str, Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    INSURANCE_LOCK = "INSURANCE_LOCK"
    INSURANCE_UNLOCK = "INSURANCE_UNLOCK"


@dataclass(frozen=True)
class User:
    user_id: str
    current_streak: int = 0
    longest_streak: int = 0
    insurance_locked: bool = False
    insurance_locked_at: Optional[datetime] = None
    last_insured_parlay_id: Optional[str] = None
    total_points_earned: int = 0
    ledger_version: int = 0
    last_ledger_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "User":
        return cls(
            user_id=doc["user_id"],
            current_streak=int(doc.get("current_streak", 0)),
            longest_streak=int(doc.get("longest_streak", 0)),
            insurance_locked=bool(doc.get("insurance_locked", False)),
            insurance_locked_at=coerce_utc(doc.get("insurance_locked_at")),
            last_insured_parlay_id=doc.get("last_insured_parlay_id"),
            total_points_earned=int(doc.get("total_points_earned", 0)),
            ledger_version=int(doc.get("ledger_version", 0)),
            last_ledger_at=coerce_utc(doc.get("last_ledger_at")),
        )


@dataclass(frozen=True)
class Game:
    game_id: str
    start_time: Optional[datetime]
    status: GameStatus = GameStatus.SCHEDULED
    end_time: Optional[datetime] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Game":
        return cls(
            game_id=doc["game_id"],
            start_time=coerce_utc(doc.get("start_time")),
            status=GameStatus(doc.get("status", GameStatus.SCHEDULED.value)),
            end_time=coerce_utc(doc.get("end_time")),
            home_score=doc.get("home_score"),
            away_score=doc.get("away_score"),
        )

    def has_started(self, now: datetime) -> bool:
        """A game counts as started once it leaves `scheduled` or its start
        time has passed."""
        if self.status != GameStatus.SCHEDULED:
            return True
        return self.start_time is not None and self.start_time <= now

    @property
    def finished_at(self) -> Optional[datetime]:
        return self.end_time or self.start_time


@dataclass(frozen=True)
class Leg:
    leg_id: str
    parlay_id: str
    game_id: Optional[str] = None
    outcome: LegOutcome = LegOutcome.PENDING

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Leg":
        return cls(
            leg_id=doc["leg_id"],
            parlay_id=doc["parlay_id"],
            game_id=doc.get("game_id"),
            outcome=LegOutcome(doc.get("outcome", LegOutcome.PENDING.value)),
        )

    @property
    def is_final(self) -> bool:
        return self.outcome != LegOutcome.PENDING


@dataclass(frozen=True)
class Parlay:
    """Tagged-state parlay value. `status` is the tag."""
    parlay_id: str
    user_id: str
    leg_count: int
    status: ParlayStatus
    insured: bool = False
    insurance_cost: int = 0
    parlay_value: int = 0
    locked_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    last_leg_end_time: Optional[datetime] = None
    resolution_attempts: int = 0
    failure_reason: Optional[str] = None
    failed_at: Optional[datetime] = None

    def __post_init__(self):
        validate_leg_count(self.leg_count)
        expected = parlay_value(self.leg_count)
        if self.parlay_value == 0:
            object.__setattr__(self, "parlay_value", expected)
        elif self.parlay_value != expected:
            raise InvalidParlayError(
                f"Parlay {self.parlay_id}: parlay_value {self.parlay_value} does not match "
                f"{self.leg_count} legs (expected {expected})"
            )
        if self.insurance_cost < 0:
            raise InvalidParlayError(f"Parlay {self.parlay_id}: negative insurance_cost")
        if self.insurance_cost > 0 and (not self.insured or self.leg_count < INSURANCE_MIN_LEGS):
            raise InvalidParlayError(
                f"Parlay {self.parlay_id}: insurance_cost requires an insured parlay "
                f"with at least {INSURANCE_MIN_LEGS} legs"
            )

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "Parlay":
        return cls(
            parlay_id=doc["parlay_id"],
            user_id=doc["user_id"],
            leg_count=doc.get("leg_count"),
            status=ParlayStatus(doc.get("status", ParlayStatus.BUILDING.value)),
            insured=bool(doc.get("insured", False)),
            insurance_cost=int(doc.get("insurance_cost", 0)),
            parlay_value=int(doc.get("parlay_value", 0)),
            locked_at=coerce_utc(doc.get("locked_at")),
            resolved_at=coerce_utc(doc.get("resolved_at")),
            last_leg_end_time=coerce_utc(doc.get("last_leg_end_time")),
            resolution_attempts=int(doc.get("resolution_attempts", 0)),
            failure_reason=doc.get("failure_reason"),
            failed_at=coerce_utc(doc.get("failed_at")),
        )

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


@dataclass(frozen=True)
class MalformedParlay:
    """
    Unresolved parlay document that fails Parlay validation. Carries only
    what ordering and remediation need; it can never be resolved
    automatically and blocks the user's later parlays.
    """
    parlay_id: str
    user_id: Optional[str]
    status: ParlayStatus
    reason: str
    leg_count: Optional[int] = None
    insured: bool = False
    last_leg_end_time: Optional[datetime] = None
    resolution_attempts: int = 0
    failure_reason: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: Dict[str, Any], error: Exception) -> "MalformedParlay":
        try:
            status = ParlayStatus(doc.get("status"))
        except ValueError:
            status = ParlayStatus.LOCKED
        try:
            end_time = coerce_utc(doc.get("last_leg_end_time"))
        except (TypeError, ValueError):
            end_time = None
        leg_count = doc.get("leg_count")
        attempts = doc.get("resolution_attempts")
        return cls(
            parlay_id=str(doc.get("parlay_id")),
            user_id=doc.get("user_id"),
            status=status,
            reason=str(error),
            leg_count=leg_count if isinstance(leg_count, int) else None,
            insured=bool(doc.get("insured", False)),
            last_leg_end_time=end_time,
            resolution_attempts=attempts if isinstance(attempts, int) else 0,
            failure_reason=doc.get("failure_reason"),
        )

    @property
    def is_resolved(self) -> bool:
        return False


# An entry of a user's unresolved queue
QueuedParlay = Union[Parlay, MalformedParlay]


@dataclass(frozen=True)
class StreakHistoryEntry:
    """Immutable ledger row"""
    entry_id: str
    user_id: str
    parlay_id: Optional[str]
    old_streak: int
    new_streak: int
    change_amount: int
    change_type: StreakChangeType
    at: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_doc(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "user_id": self.user_id,
            "parlay_id": self.parlay_id,
            "old_streak": self.old_streak,
            "new_streak": self.new_streak,
            "change_amount": self.change_amount,
            "change_type": self.change_type.value,
            "at": self.at,
            "details": dict(self.details),
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "StreakHistoryEntry":
        return cls(
            entry_id=doc["entry_id"],
            user_id=doc["user_id"],
            parlay_id=doc.get("parlay_id"),
            old_streak=int(doc["old_streak"]),
            new_streak=int(doc["new_streak"]),
            change_amount=int(doc["change_amount"]),
            change_type=StreakChangeType(doc["change_type"]),
            at=coerce_utc(doc["at"]),
            details=dict(doc.get("details") or {}),
        )


@dataclass(frozen=True)
class ParlayWithLegs:
    """A parlay together with its legs, as handed from the scanner onwards."""
    parlay: Parlay
    legs: Tuple[Leg, ...]

    @property
    def all_legs_final(self) -> bool:
        return bool(self.legs) and all(leg.is_final for leg in self.legs)
