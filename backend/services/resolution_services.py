"""
Resolution service wiring
Builds the engine components once per process. Routes and the scheduler
share the same instances through get_components().
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
import logging

from pymongo.database import Database

from config.engine_config import EngineConfig
from core.event_bus import RedisEventBus
from core.resolution_orderer import ResolutionOrderer
from db.resolution_store import ResolutionStore
from services.auto_lock_scheduler import AutoLockScheduler
from services.ledger_reconciliation import LedgerReconciler
from services.notification_service import EventPublisher, ResolutionNotifier
from services.resolution_cycle import ResolutionCycle
from services.resolution_engine import ResolutionEngine
from services.resolution_scanner import ResolutionScanner
from services.slack_notifier import SlackNotifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionComponents:
    config: EngineConfig
    store: ResolutionStore
    engine: ResolutionEngine
    scanner: ResolutionScanner
    lock_scheduler: AutoLockScheduler
    cycle: ResolutionCycle
    reconciler: LedgerReconciler
    bus: Optional[EventPublisher] = None


def build_components(
    config: EngineConfig,
    database: Database,
    bus: Optional[EventPublisher] = None
) -> ResolutionComponents:
    store = ResolutionStore(database, use_transactions=config.use_transactions)
    notifier = ResolutionNotifier(bus) if bus is not None else None
    engine = ResolutionEngine(store, config, notifier=notifier, alerts=SlackNotifier(config.slack_webhook_url))
    scanner = ResolutionScanner(store, config, quarantine=engine.quarantine)
    return ResolutionComponents(
        config=config,
        store=store,
        engine=engine,
        scanner=scanner,
        lock_scheduler=AutoLockScheduler(store, config),
        cycle=ResolutionCycle(store, scanner, engine, ResolutionOrderer(workers=config.workers)),
        reconciler=LedgerReconciler(store),
        bus=bus,
    )


@lru_cache(maxsize=1)
def get_components() -> ResolutionComponents:
    """Process-wide components backed by MongoDB and Redis pub/sub."""
    from db.mongo import db

    config = EngineConfig.from_env()
    logger.info(
        f"Resolution engine: workers={config.workers} batch={config.batch_size} "
        f"policy={config.push_void_policy} transactions={config.use_transactions}"
    )
    return build_components(config, db, RedisEventBus(config.redis_url))


def close_components(components: ResolutionComponents) -> None:
    """Release the event bus connection."""
    close = getattr(components.bus, "close", None)
    if close is not None:
        close()
        logger.info("Event bus closed")


def shutdown_components() -> None:
    """Close the process-wide components if they were ever built."""
    if get_components.cache_info().currsize:
        close_components(get_components())
        get_components.cache_clear()
