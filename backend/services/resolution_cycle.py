"""
Resolution Cycle
One periodic pass: scan -> plan lanes -> dispatch to the engine -> report.
"""
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional
import logging

from core.resolution_orderer import LaneOutcome, ResolutionOrderer, plan
from db.models import MalformedParlay, ParlayStatus
from db.resolution_store import ResolutionStore
from services.logger import log_stage
from services.resolution_engine import ResolutionEngine, ResolutionStatus
from services.resolution_scanner import ResolutionScanner

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    ready: int = 0
    lanes: int = 0
    resolved: int = 0
    skipped: int = 0
    failed: int = 0
    withheld: int = 0
    busy_users: int = 0
    errors: int = 0
    quarantined: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class ResolutionCycle:
    def __init__(
        self,
        store: ResolutionStore,
        scanner: ResolutionScanner,
        engine: ResolutionEngine,
        orderer: Optional[ResolutionOrderer] = None
    ):
        self.store = store
        self.scanner = scanner
        self.engine = engine
        self.orderer = orderer or ResolutionOrderer(workers=engine.config.workers)

    def run(self) -> CycleReport:
        report = CycleReport()
        ready = [item.parlay for item in self.scanner.scan()]
        report.ready = len(ready)
        if not ready:
            return report

        unresolved_by_user = {
            user_id: self.store.find_unresolved_queue(user_id)
            for user_id in sorted({p.user_id for p in ready})
        }
        for queue in unresolved_by_user.values():
            for queued in queue:
                if isinstance(queued, MalformedParlay) and queued.status == ParlayStatus.LOCKED:
                    self.engine.quarantine(queued)
                    report.quarantined += 1
        lanes = plan(ready, unresolved_by_user)
        report.lanes = len(lanes)
        for lane in lanes:
            report.withheld += len(lane.withheld)
            for held in lane.withheld:
                logger.info(f"Parlay {held.parlay_id} withheld behind {held.blocked_by} ({held.reason})")

        outcomes = self.orderer.dispatch(lanes, self.engine.resolve)
        self._tally(report, outcomes)

        log_stage(
            "resolution_cycle",
            "completed",
            input_payload={"ready": report.ready, "lanes": report.lanes},
            output_payload=report.to_dict(),
            level="ERROR" if report.failed or report.errors or report.quarantined else "INFO",
            database=self.store.db
        )
        logger.info(f"Resolution cycle: {report.to_dict()}")
        return report

    @staticmethod
    def _tally(report: CycleReport, outcomes: List[LaneOutcome]) -> None:
        for outcome in outcomes:
            if outcome.busy:
                report.busy_users += 1
            if outcome.error:
                report.errors += 1
            for result in outcome.results:
                if result.status == ResolutionStatus.RESOLVED:
                    report.resolved += 1
                elif result.status == ResolutionStatus.FAILED:
                    report.failed += 1
                else:
                    report.skipped += 1
