"""
Background Scheduler
Runs the two periodic resolution jobs: the lock scan and the resolution cycle
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime, timezone
import logging

from services.auto_lock_scheduler import AutoLockScheduler
from services.logger import log_stage
from services.resolution_cycle import ResolutionCycle
from services.resolution_services import ResolutionComponents

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(timezone=timezone.utc)


def run_lock_scan(lock_scheduler: AutoLockScheduler):
    """Lock BUILDING parlays whose first game has started"""
    try:
        start_time = datetime.now(timezone.utc)
        locked = lock_scheduler.scan()
        latency_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000

        log_stage(
            "auto_lock",
            "success",
            output_payload={"locked": len(locked), "latency_ms": latency_ms},
            database=lock_scheduler.store.db
        )
    except Exception as e:
        logger.exception("Lock scan failed")
        log_stage(
            "auto_lock",
            "exception",
            output_payload={"error": str(e)},
            level="ERROR",
            database=lock_scheduler.store.db
        )


def run_resolution_cycle(cycle: ResolutionCycle):
    """Resolve every ready parlay in per-user order"""
    try:
        cycle.run()
    except Exception as e:
        logger.exception("Resolution cycle failed")
        log_stage(
            "resolution_cycle",
            "exception",
            output_payload={"error": str(e)},
            level="ERROR",
            database=cycle.store.db
        )


def start_scheduler(components: ResolutionComponents):
    """
    Start background scheduler with both jobs. Each job runs one instance at
    a time; missed runs are coalesced into one.
    """
    config = components.config

    # Job 1: Auto-lock scan
    scheduler.add_job(
        func=run_lock_scan,
        args=[components.lock_scheduler],
        trigger=IntervalTrigger(seconds=config.lock_scan_interval_seconds),
        id="auto_lock_scan",
        name=f"Auto-Lock Scan ({config.lock_scan_interval_seconds}s)",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    # Job 2: Resolution cycle
    scheduler.add_job(
        func=run_resolution_cycle,
        args=[components.cycle],
        trigger=IntervalTrigger(seconds=config.resolution_scan_interval_seconds),
        id="resolution_cycle",
        name=f"Resolution Cycle ({config.resolution_scan_interval_seconds}s)",
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )

    scheduler.start()
    logger.info(
        f"Scheduler started: auto-lock every {config.lock_scan_interval_seconds}s, "
        f"resolution every {config.resolution_scan_interval_seconds}s"
    )


def stop_scheduler():
    """Stop background scheduler"""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
