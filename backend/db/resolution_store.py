"""
Resolution Store
================

MongoDB access for the resolution engine. Reads return typed models from
db.models; every write is conditional so that a stale or duplicated work item
matches nothing instead of overwriting newer state.

Transactions:
- use_transactions=True (production, replica set): each parlay resolution
  runs inside one multi-document transaction
- use_transactions=False (standalone mongod, tests): the same conditional
  writes run without a session; a failed attempt is undone with
  release_claim / delete_history

pymongo errors are translated into the engine's taxonomy:
- connection loss, write conflicts, TransientTransactionError labels
  -> TransientStorageError
- duplicate streak_history rows -> InvalidStateError (already recorded)
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple
import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from core.resolution_errors import (
    InvalidParlayError,
    InvalidStateError,
    TransientStorageError,
)
from db.models import (
    GAMES,
    LEGS,
    PARLAYS,
    RESOLVABLE_STATUSES,
    STREAK_HISTORY,
    USERS,
    Game,
    Leg,
    MalformedParlay,
    Parlay,
    ParlayStatus,
    QueuedParlay,
    StreakHistoryEntry,
    User,
)

logger = logging.getLogger(__name__)

WRITE_CONFLICT = 112


def _is_transient(error: PyMongoError) -> bool:
    if isinstance(error, ConnectionFailure):
        return True
    if error.has_error_label("TransientTransactionError"):
        return True
    if error.has_error_label("UnknownTransactionCommitResult"):
        return True
    return isinstance(error, OperationFailure) and error.code == WRITE_CONFLICT


@contextmanager
def translate_errors(operation: str, parlay_id: Optional[str] = None) -> Iterator[None]:
    """Re-raise pymongo errors as engine errors."""
    try:
        yield
    except DuplicateKeyError as e:
        raise InvalidStateError(
            f"{operation}: duplicate ledger write ({e.details})", parlay_id
        ) from e
    except PyMongoError as e:
        if not _is_transient(e):
            logger.warning(f"{operation}: non-labelled storage error treated as transient: {e}")
        raise TransientStorageError(f"{operation}: {e}", parlay_id) from e


_MALFORMED_ERRORS = (InvalidParlayError, KeyError, TypeError, ValueError)


def parse_parlay_docs(docs: Iterable[Dict[str, Any]]) -> List[QueuedParlay]:
    """Parse in input order; documents failing validation become MalformedParlay."""
    parsed: List[QueuedParlay] = []
    for doc in docs:
        try:
            parsed.append(Parlay.from_doc(doc))
        except _MALFORMED_ERRORS as e:
            logger.error(f"Malformed parlay document {doc.get('parlay_id')}: {e}")
            parsed.append(MalformedParlay.from_doc(doc, e))
    return parsed


@dataclass(frozen=True)
class ParlayPage:
    """One keyset page of parlays ordered by parlay_id."""
    parlays: Tuple[Parlay, ...] = field(default_factory=tuple)
    malformed: Tuple[MalformedParlay, ...] = field(default_factory=tuple)
    # parlay_id to continue after; None on the last page
    next_after: Optional[str] = None


class ResolutionStore:
    """
    Storage gateway for parlays, legs, games, users and the streak ledger.
    """

    def __init__(self, database: Database, use_transactions: bool = True):
        self.db = database
        self.use_transactions = use_transactions

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, parlay_id: Optional[str] = None) -> Iterator[Optional[ClientSession]]:
        """
        One atomic unit of work. Yields the session to pass to every read and
        write inside the unit (None when transactions are disabled).
        """
        if not self.use_transactions:
            with translate_errors("transaction", parlay_id):
                yield None
            return

        with translate_errors("transaction", parlay_id):
            with self.db.client.start_session() as session:
                with session.start_transaction():
                    yield session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_parlay(self, parlay_id: str, session: Optional[ClientSession] = None) -> Optional[Parlay]:
        """
        Raises:
            InvalidParlayError: the stored document fails validation
        """
        with translate_errors("get_parlay", parlay_id):
            doc = self.db[PARLAYS].find_one({"parlay_id": parlay_id}, session=session)
        if not doc:
            return None
        try:
            return Parlay.from_doc(doc)
        except InvalidParlayError:
            raise
        except _MALFORMED_ERRORS as e:
            raise InvalidParlayError(f"Parlay {parlay_id}: malformed document ({e})") from e

    def get_parlay_owner(self, parlay_id: str) -> Optional[str]:
        """user_id of the parlay without validating the document."""
        with translate_errors("get_parlay_owner", parlay_id):
            doc = self.db[PARLAYS].find_one({"parlay_id": parlay_id}, {"user_id": 1})
        return doc.get("user_id") if doc else None

    def get_legs(self, parlay_id: str, session: Optional[ClientSession] = None) -> Tuple[Leg, ...]:
        with translate_errors("get_legs", parlay_id):
            docs = list(
                self.db[LEGS].find({"parlay_id": parlay_id}, session=session).sort("leg_id", ASCENDING)
            )
        return tuple(Leg.from_doc(doc) for doc in docs)

    def get_legs_for(self, parlay_ids: Sequence[str]) -> Dict[str, Tuple[Leg, ...]]:
        if not parlay_ids:
            return {}
        with translate_errors("get_legs_for"):
            docs = list(self.db[LEGS].find({"parlay_id": {"$in": list(parlay_ids)}}).sort("leg_id", ASCENDING))
        grouped: Dict[str, List[Leg]] = {parlay_id: [] for parlay_id in parlay_ids}
        for doc in docs:
            leg = Leg.from_doc(doc)
            grouped.setdefault(leg.parlay_id, []).append(leg)
        return {parlay_id: tuple(legs) for parlay_id, legs in grouped.items()}

    def get_games(self, game_ids: Iterable[str]) -> Dict[str, Game]:
        ids = sorted({game_id for game_id in game_ids if game_id})
        if not ids:
            return {}
        with translate_errors("get_games"):
            docs = list(self.db[GAMES].find({"game_id": {"$in": ids}}))
        return {doc["game_id"]: Game.from_doc(doc) for doc in docs}

    def get_user(self, user_id: str, session: Optional[ClientSession] = None) -> Optional[User]:
        with translate_errors("get_user"):
            doc = self.db[USERS].find_one({"user_id": user_id}, session=session)
        return User.from_doc(doc) if doc else None

    def list_user_ids(self, limit: Optional[int] = None) -> List[str]:
        with translate_errors("list_user_ids"):
            cursor = self.db[USERS].find({}, {"user_id": 1}).sort("user_id", ASCENDING)
            if limit:
                cursor = cursor.limit(limit)
            return [doc["user_id"] for doc in cursor]

    def _page(self, operation: str, query: Dict[str, Any], limit: int, after: Optional[str]) -> ParlayPage:
        if after is not None:
            query = {**query, "parlay_id": {"$gt": after}}
        with translate_errors(operation):
            docs = list(self.db[PARLAYS].find(query).sort("parlay_id", ASCENDING).limit(limit))
        parsed = parse_parlay_docs(docs)
        return ParlayPage(
            parlays=tuple(p for p in parsed if isinstance(p, Parlay)),
            malformed=tuple(p for p in parsed if isinstance(p, MalformedParlay)),
            next_after=docs[-1]["parlay_id"] if len(docs) == limit else None,
        )

    def find_building_parlays(self, limit: int, after: Optional[str] = None) -> ParlayPage:
        """BUILDING parlays not locked yet, one page after `after`."""
        return self._page(
            "find_building_parlays",
            {"status": ParlayStatus.BUILDING.value, "locked_at": None},
            limit,
            after
        )

    def find_locked_unresolved(self, limit: int, after: Optional[str] = None) -> ParlayPage:
        """LOCKED unresolved parlays, one page after `after`."""
        return self._page(
            "find_locked_unresolved",
            {"status": ParlayStatus.LOCKED.value, "resolved_at": None},
            limit,
            after
        )

    def find_unresolved_queue(self, user_id: str) -> List[QueuedParlay]:
        """Every LOCKED or RESOLUTION_FAILED parlay of the user still awaiting
        resolution, malformed documents included. Ordering is applied by the
        orderer."""
        with translate_errors("find_unresolved_queue"):
            docs = list(
                self.db[PARLAYS].find({
                    "user_id": user_id,
                    "resolved_at": None,
                    "status": {"$in": [status.value for status in RESOLVABLE_STATUSES]},
                })
            )
        return parse_parlay_docs(docs)

    def find_failed(self, limit: int = 100) -> List[QueuedParlay]:
        with translate_errors("find_failed"):
            docs = list(
                self.db[PARLAYS]
                .find({"status": ParlayStatus.RESOLUTION_FAILED.value, "resolved_at": None})
                .sort("failed_at", DESCENDING)
                .limit(limit)
            )
        return parse_parlay_docs(docs)

    def get_history(
        self,
        user_id: str,
        limit: Optional[int] = None,
        session: Optional[ClientSession] = None
    ) -> List[StreakHistoryEntry]:
        """User's ledger, oldest first."""
        with translate_errors("get_history"):
            cursor = self.db[STREAK_HISTORY].find({"user_id": user_id}, session=session)
            if limit:
                cursor = cursor.sort("at", DESCENDING).limit(limit)
                docs = list(cursor)[::-1]
            else:
                docs = list(cursor.sort("at", ASCENDING))
        return [StreakHistoryEntry.from_doc(doc) for doc in docs]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def lock_parlay(self, parlay_id: str, now: datetime) -> bool:
        """BUILDING -> LOCKED. False when the parlay already moved on."""
        with translate_errors("lock_parlay", parlay_id):
            result = self.db[PARLAYS].update_one(
                {"parlay_id": parlay_id, "status": ParlayStatus.BUILDING.value, "locked_at": None},
                {"$set": {"status": ParlayStatus.LOCKED.value, "locked_at": now}}
            )
        return result.matched_count == 1

    def set_last_leg_end_time(self, parlay_id: str, end_time: datetime) -> bool:
        with translate_errors("set_last_leg_end_time", parlay_id):
            result = self.db[PARLAYS].update_one(
                {"parlay_id": parlay_id, "last_leg_end_time": None, "resolved_at": None},
                {"$set": {"last_leg_end_time": end_time}}
            )
        return result.matched_count == 1

    def claim_resolution(
        self,
        parlay_id: str,
        status: ParlayStatus,
        resolved_at: datetime,
        outcome_detail: Dict[str, Any],
        session: Optional[ClientSession] = None
    ) -> bool:
        """
        Stamp the terminal status and resolved_at. The filter is the
        idempotence guard: it only matches an unresolved, resolvable parlay.
        """
        if not status.is_terminal:
            raise ValueError(f"claim_resolution requires WON or LOST, got {status.value}")
        with translate_errors("claim_resolution", parlay_id):
            result = self.db[PARLAYS].update_one(
                {
                    "parlay_id": parlay_id,
                    "resolved_at": None,
                    "status": {"$in": [s.value for s in RESOLVABLE_STATUSES]},
                },
                {
                    "$set": {
                        "status": status.value,
                        "resolved_at": resolved_at,
                        "outcome_detail": outcome_detail,
                    },
                    "$unset": {"failure_reason": "", "failed_at": ""},
                },
                session=session
            )
        return result.matched_count == 1

    def release_claim(self, parlay: Parlay, claimed_status: ParlayStatus, resolved_at: datetime) -> bool:
        """
        Undo claim_resolution for `parlay` (as read before the claim). Only
        used without transactions; matches only the claim stamped at
        `resolved_at`.
        """
        restore: Dict[str, Any] = {"status": parlay.status.value, "resolved_at": None}
        unset: Dict[str, Any] = {"outcome_detail": ""}
        if parlay.failure_reason is not None:
            restore["failure_reason"] = parlay.failure_reason
        if parlay.failed_at is not None:
            restore["failed_at"] = parlay.failed_at
        with translate_errors("release_claim", parlay.parlay_id):
            result = self.db[PARLAYS].update_one(
                {
                    "parlay_id": parlay.parlay_id,
                    "status": claimed_status.value,
                    "resolved_at": resolved_at,
                },
                {"$set": restore, "$unset": unset}
            )
        return result.matched_count == 1

    def apply_user_update(
        self,
        user_id: str,
        expected_version: int,
        fields: Dict[str, Any],
        session: Optional[ClientSession] = None
    ) -> bool:
        """Optimistic write guarded by ledger_version."""
        version_filter: Dict[str, Any] = {"ledger_version": expected_version}
        if expected_version == 0:
            version_filter = {"$or": [{"ledger_version": 0}, {"ledger_version": {"$exists": False}}]}
        with translate_errors("apply_user_update"):
            result = self.db[USERS].update_one(
                {"user_id": user_id, **version_filter},
                {"$set": {**fields, "ledger_version": expected_version + 1}},
                session=session
            )
        return result.matched_count == 1

    def insert_history(
        self,
        entries: Sequence[StreakHistoryEntry],
        session: Optional[ClientSession] = None
    ) -> None:
        if not entries:
            return
        parlay_id = entries[0].parlay_id
        with translate_errors("insert_history", parlay_id):
            self.db[STREAK_HISTORY].insert_many([entry.to_doc() for entry in entries], session=session)

    def delete_history(self, entries: Sequence[StreakHistoryEntry]) -> int:
        """Remove entries written by an attempt that did not complete. Only
        used without transactions."""
        if not entries:
            return 0
        with translate_errors("delete_history", entries[0].parlay_id):
            result = self.db[STREAK_HISTORY].delete_many(
                {"entry_id": {"$in": [entry.entry_id for entry in entries]}}
            )
        return result.deleted_count

    def mark_failed(self, parlay_id: str, reason: str, attempts: int, now: datetime) -> bool:
        """LOCKED -> RESOLUTION_FAILED (or refresh the reason of an already
        failed parlay). Never touches a resolved parlay."""
        with translate_errors("mark_failed", parlay_id):
            result = self.db[PARLAYS].update_one(
                {
                    "parlay_id": parlay_id,
                    "resolved_at": None,
                    "status": {"$in": [s.value for s in RESOLVABLE_STATUSES]},
                },
                {
                    "$set": {
                        "status": ParlayStatus.RESOLUTION_FAILED.value,
                        "failure_reason": reason,
                        "failed_at": now,
                    },
                    "$inc": {"resolution_attempts": attempts},
                }
            )
        return result.matched_count == 1
