"""
Resolution Orderer - strict per-user order, parallel across users

Ordering key: (last_leg_end_time, parlay_id). Parlays whose end time is not
known yet sort last (their games have not finished).

Lane Rules:
- Walk the user's unresolved parlays (LOCKED or RESOLUTION_FAILED) in key order
- Release ready LOCKED parlays until the first parlay that is not ready, is
  RESOLUTION_FAILED or has a document that fails validation
- Everything after that point is withheld (ordering block) until the earlier
  parlay resolves or is remediated

Dispatch:
- One lane per user, processed sequentially by a single worker
- Lanes of different users run in parallel on a thread pool
- A per-user lock keeps two overlapping cycles off the same user
- A lane stops at the first parlay that does not resolve
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
import logging
import threading

from db.models import MalformedParlay, Parlay, ParlayStatus, QueuedParlay

logger = logging.getLogger(__name__)

_END_OF_TIME = datetime.max.replace(tzinfo=timezone.utc)


def ordering_key(parlay: QueuedParlay) -> Tuple[datetime, str]:
    return (parlay.last_leg_end_time or _END_OF_TIME, parlay.parlay_id)


@dataclass(frozen=True)
class WithheldParlay:
    parlay_id: str
    blocked_by: str
    reason: str


@dataclass(frozen=True)
class LanePlan:
    """Release plan for one user"""
    user_id: str
    released: Tuple[Parlay, ...] = field(default_factory=tuple)
    withheld: Tuple[WithheldParlay, ...] = field(default_factory=tuple)


def plan_user_lane(user_id: str, unresolved: Iterable[QueuedParlay], ready_ids: Set[str]) -> LanePlan:
    """
    Decide which of a user's parlays may resolve now, in order.

    Args:
        unresolved: every unresolved LOCKED / RESOLUTION_FAILED parlay of the user
        ready_ids: ids whose legs all have a final outcome
    """
    released: List[Parlay] = []
    withheld: List[WithheldParlay] = []
    blocker: Optional[QueuedParlay] = None
    block_reason = ""

    for parlay in sorted(unresolved, key=ordering_key):
        if blocker is not None:
            if parlay.parlay_id in ready_ids:
                withheld.append(WithheldParlay(parlay.parlay_id, blocker.parlay_id, block_reason))
            continue

        if isinstance(parlay, MalformedParlay):
            blocker, block_reason = parlay, "EARLIER_PARLAY_MALFORMED"
        elif parlay.status == ParlayStatus.RESOLUTION_FAILED:
            blocker, block_reason = parlay, "EARLIER_RESOLUTION_FAILED"
        elif parlay.parlay_id not in ready_ids:
            blocker, block_reason = parlay, "EARLIER_PARLAY_PENDING"
        else:
            released.append(parlay)

    return LanePlan(user_id=user_id, released=tuple(released), withheld=tuple(withheld))


def plan(ready: Sequence[Parlay], unresolved_by_user: Dict[str, Sequence[QueuedParlay]]) -> List[LanePlan]:
    """
    Build one lane per user that has ready parlays. A user's unresolved queue
    defaults to its ready parlays when the caller has nothing else.
    """
    ready_by_user: Dict[str, List[Parlay]] = {}
    for parlay in ready:
        ready_by_user.setdefault(parlay.user_id, []).append(parlay)

    lanes = []
    for user_id in sorted(ready_by_user):
        user_ready = ready_by_user[user_id]
        queue = {p.parlay_id: p for p in unresolved_by_user.get(user_id, ())}
        for parlay in user_ready:
            queue.setdefault(parlay.parlay_id, parlay)
        lanes.append(plan_user_lane(user_id, queue.values(), {p.parlay_id for p in user_ready}))
    return lanes


class UserLockRegistry:
    """
    Per-user advisory locks for the current process. Only users whose lane
    is running have an entry.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._held: Set[str] = set()

    def try_acquire(self, user_id: str) -> bool:
        with self._guard:
            if user_id in self._held:
                return False
            self._held.add(user_id)
            return True

    def release(self, user_id: str) -> None:
        with self._guard:
            self._held.discard(user_id)

    def is_held(self, user_id: str) -> bool:
        with self._guard:
            return user_id in self._held

    def held(self) -> Set[str]:
        with self._guard:
            return set(self._held)


@dataclass
class LaneOutcome:
    """What happened to one lane during dispatch"""
    user_id: str
    processed: List[str] = field(default_factory=list)
    stopped_at: Optional[str] = None
    busy: bool = False
    error: Optional[str] = None
    results: list = field(default_factory=list)


class ResolutionOrderer:
    """
    Releases lanes to a worker pool. `worker(parlay_id)` must return an object
    with a boolean `resolved` attribute (ResolutionResult).
    """

    def __init__(self, workers: int = 8, locks: Optional[UserLockRegistry] = None):
        self.workers = workers
        self.locks = locks if locks is not None else UserLockRegistry()

    def _run_lane(self, lane: LanePlan, worker: Callable) -> LaneOutcome:
        outcome = LaneOutcome(user_id=lane.user_id)
        if not self.locks.try_acquire(lane.user_id):
            logger.info(f"User {lane.user_id} lane already running; deferring to next cycle")
            outcome.busy = True
            return outcome
        try:
            for parlay in lane.released:
                try:
                    result = worker(parlay.parlay_id)
                except Exception as e:
                    logger.exception(f"Unexpected error resolving {parlay.parlay_id} for user {lane.user_id}")
                    outcome.stopped_at = parlay.parlay_id
                    outcome.error = str(e)
                    break
                outcome.results.append(result)
                outcome.processed.append(parlay.parlay_id)
                if not getattr(result, "resolved", False):
                    outcome.stopped_at = parlay.parlay_id
                    remaining = len(lane.released) - len(outcome.processed)
                    if remaining:
                        logger.warning(
                            f"User {lane.user_id} lane stopped at {parlay.parlay_id}; "
                            f"{remaining} later parlay(s) withheld"
                        )
                    break
        finally:
            self.locks.release(lane.user_id)
        return outcome

    def dispatch(self, lanes: Sequence[LanePlan], worker: Callable) -> List[LaneOutcome]:
        """Run every lane; returns outcomes in lane order."""
        active = [lane for lane in lanes if lane.released]
        if not active:
            return []
        if len(active) == 1 or self.workers == 1:
            return [self._run_lane(lane, worker) for lane in active]

        with ThreadPoolExecutor(max_workers=min(self.workers, len(active))) as executor:
            futures = [executor.submit(self._run_lane, lane, worker) for lane in active]
            return [future.result() for future in futures]
