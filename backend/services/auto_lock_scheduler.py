"""
Auto-Lock Scheduler
===================

BUILDING -> LOCKED once any game in the parlay has started.

Lock rule: a game has started when its status is no longer `scheduled`
or its start_time is at or before now. A parlay with no known games stays
BUILDING.

Locking is a conditional update, so a parlay edited or locked by another
process in the meantime is simply skipped.
"""
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence
import logging

from config.engine_config import EngineConfig
from db.models import Game, Leg, Parlay, ParlayStatus
from db.resolution_store import ResolutionStore
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


def any_game_started(legs: Iterable[Leg], games: Dict[str, Game], now: datetime) -> bool:
    for leg in legs:
        game = games.get(leg.game_id) if leg.game_id else None
        if game is not None and game.has_started(now):
            return True
    return False


class AutoLockScheduler:
    """Periodic lock scan over BUILDING parlays"""

    def __init__(
        self,
        store: ResolutionStore,
        config: EngineConfig,
        clock: Callable[[], datetime] = now_utc
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def should_lock_parlay(self, parlay_id: str, now: Optional[datetime] = None) -> bool:
        """True when the parlay is still BUILDING and one of its games has started."""
        now = now or self.clock()
        parlay = self.store.get_parlay(parlay_id)
        if parlay is None or parlay.status != ParlayStatus.BUILDING or parlay.locked_at is not None:
            return False
        legs = self.store.get_legs(parlay_id)
        games = self.store.get_games(leg.game_id for leg in legs)
        return any_game_started(legs, games, now)

    def lock_parlay(self, parlay_id: str, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        locked = self.store.lock_parlay(parlay_id, now)
        if locked:
            logger.info(f"Locked parlay {parlay_id} at {now.isoformat()}")
        else:
            logger.info(f"Parlay {parlay_id} no longer BUILDING; lock skipped")
        return locked

    def scan(self, now: Optional[datetime] = None) -> List[str]:
        """
        Lock every BUILDING parlay whose first game has started. BUILDING
        parlays are read in keyset pages of batch_size until the last page,
        so parlays on far-future games never hide startable ones.

        Returns:
            ids of the parlays locked by this scan
        """
        now = now or self.clock()
        locked: List[str] = []
        seen = 0
        after = None
        while True:
            page = self.store.find_building_parlays(self.config.batch_size, after=after)
            seen += len(page.parlays)
            locked.extend(self._lock_started(page.parlays, now))
            if page.next_after is None:
                break
            after = page.next_after

        if seen:
            logger.info(f"Lock scan: locked {len(locked)} of {seen} building parlays")
        return locked

    def _lock_started(self, building: Sequence[Parlay], now: datetime) -> List[str]:
        if not building:
            return []
        legs_by_parlay = self.store.get_legs_for([p.parlay_id for p in building])
        games = self.store.get_games(
            leg.game_id for legs in legs_by_parlay.values() for leg in legs
        )

        locked = []
        for parlay in building:
            if not any_game_started(legs_by_parlay.get(parlay.parlay_id, ()), games, now):
                continue
            if self.lock_parlay(parlay.parlay_id, now):
                locked.append(parlay.parlay_id)
        return locked
