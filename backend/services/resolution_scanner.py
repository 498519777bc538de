"""
Resolution Scanner
Finds LOCKED parlays whose legs are all graded and hands them to the
orderer. Read-only apart from back-filling last_leg_end_time.

LOCKED parlays are read in keyset pages of batch_size, so parlays whose legs
are still pending never crowd later ready parlays out of a scan.
"""
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional
import logging

from config.engine_config import EngineConfig
from core.resolution_orderer import ordering_key
from db.models import Game, Leg, MalformedParlay, ParlayWithLegs
from db.resolution_store import ResolutionStore

logger = logging.getLogger(__name__)


def last_leg_end_time(legs: Iterable[Leg], games: Dict[str, Game]) -> Optional[datetime]:
    """Latest finish time across the legs' games; None if no game is known."""
    times = []
    for leg in legs:
        game = games.get(leg.game_id) if leg.game_id else None
        if game is not None and game.finished_at is not None:
            times.append(game.finished_at)
    return max(times) if times else None


class ResolutionScanner:
    """Periodic discovery of parlays that are ready to resolve"""

    def __init__(
        self,
        store: ResolutionStore,
        config: EngineConfig,
        quarantine: Optional[Callable[[MalformedParlay], object]] = None
    ):
        self.store = store
        self.config = config
        self.quarantine = quarantine

    def scan(self) -> List[ParlayWithLegs]:
        """
        Up to batch_size ready parlays in ordering-key order: LOCKED,
        unresolved, at least one leg and no pending leg.
        """
        ready: List[ParlayWithLegs] = []
        seen = 0
        after = None
        while len(ready) < self.config.batch_size:
            page = self.store.find_locked_unresolved(self.config.batch_size, after=after)
            seen += len(page.parlays) + len(page.malformed)
            self._quarantine(page.malformed)

            legs_by_parlay = self.store.get_legs_for([p.parlay_id for p in page.parlays])
            for parlay in page.parlays:
                item = ParlayWithLegs(parlay, legs_by_parlay.get(parlay.parlay_id, ()))
                if item.all_legs_final:
                    ready.append(item)
                    if len(ready) == self.config.batch_size:
                        break

            if page.next_after is None:
                break
            after = page.next_after

        if not ready:
            return []

        ready = self._fill_end_times(ready)
        ready.sort(key=lambda item: ordering_key(item.parlay))

        logger.info(f"Resolution scan: {len(ready)} ready of {seen} locked parlays read")
        return ready

    def _quarantine(self, malformed: Iterable[MalformedParlay]) -> None:
        for parlay in malformed:
            logger.error(f"Parlay {parlay.parlay_id} cannot be read: {parlay.reason}")
            if self.quarantine is not None:
                self.quarantine(parlay)

    def _fill_end_times(self, ready: List[ParlayWithLegs]) -> List[ParlayWithLegs]:
        missing = [item for item in ready if item.parlay.last_leg_end_time is None]
        if not missing:
            return ready

        games = self.store.get_games(leg.game_id for item in missing for leg in item.legs)
        filled = {}
        for item in missing:
            end_time = last_leg_end_time(item.legs, games)
            if end_time is None:
                logger.warning(f"Parlay {item.parlay.parlay_id}: no game times known for its legs")
                continue
            self.store.set_last_leg_end_time(item.parlay.parlay_id, end_time)
            filled[item.parlay.parlay_id] = replace(item.parlay, last_leg_end_time=end_time)

        return [
            ParlayWithLegs(filled[item.parlay.parlay_id], item.legs)
            if item.parlay.parlay_id in filled else item
            for item in ready
        ]
