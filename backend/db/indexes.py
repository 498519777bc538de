"""
Database Index Definitions
===========================

Indexes backing the resolution engine's scans and uniqueness guarantees.

Apply with:
    python backend/db/indexes.py --apply
"""

from typing import Dict, List
from pymongo import ASCENDING, DESCENDING, IndexModel
from pymongo.database import Database
from pymongo.errors import PyMongoError
import logging

from db.models import GAMES, LEGS, PARLAYS, RESOLUTION_LOGS, STREAK_HISTORY, USERS

logger = logging.getLogger(__name__)


# ============================================================================
# INDEX DEFINITIONS
# ============================================================================

def get_users_indexes() -> List[IndexModel]:
    return [
        IndexModel([("user_id", ASCENDING)], unique=True, name="user_id_unique"),
    ]


def get_games_indexes() -> List[IndexModel]:
    return [
        IndexModel([("game_id", ASCENDING)], unique=True, name="game_id_unique"),
        IndexModel([("status", ASCENDING), ("start_time", ASCENDING)], name="status_start"),
    ]


def get_legs_indexes() -> List[IndexModel]:
    return [
        IndexModel([("leg_id", ASCENDING)], unique=True, name="leg_id_unique"),
        # Scanner reads every leg of a batch of parlays
        IndexModel([("parlay_id", ASCENDING)], name="parlay_id"),
    ]


def get_parlays_indexes() -> List[IndexModel]:
    return [
        IndexModel([("parlay_id", ASCENDING)], unique=True, name="parlay_id_unique"),
        # Lock scan: BUILDING parlays not yet locked
        IndexModel([("status", ASCENDING), ("locked_at", ASCENDING)], name="status_locked_at"),
        # Keyset pages of the lock and resolution scans
        IndexModel([("status", ASCENDING), ("parlay_id", ASCENDING)], name="status_parlay_id"),
        # Per-user resolution queue in ordering-key order
        IndexModel(
            [
                ("user_id", ASCENDING),
                ("resolved_at", ASCENDING),
                ("last_leg_end_time", ASCENDING),
                ("parlay_id", ASCENDING),
            ],
            name="user_resolution_queue"
        ),
    ]


def get_streak_history_indexes() -> List[IndexModel]:
    return [
        IndexModel([("entry_id", ASCENDING)], unique=True, name="entry_id_unique"),
        IndexModel([("user_id", ASCENDING), ("at", DESCENDING)], name="user_at"),
        # One entry of each type per parlay: a replayed commit cannot double-credit
        IndexModel(
            [("parlay_id", ASCENDING), ("change_type", ASCENDING)],
            unique=True,
            partialFilterExpression={"parlay_id": {"$type": "string"}},
            name="parlay_change_unique"
        ),
    ]


def get_resolution_logs_indexes() -> List[IndexModel]:
    return [
        IndexModel([("module", ASCENDING), ("timestamp", DESCENDING)], name="module_timestamp"),
    ]


INDEX_DEFINITIONS: Dict[str, List[IndexModel]] = {
    USERS: get_users_indexes(),
    GAMES: get_games_indexes(),
    LEGS: get_legs_indexes(),
    PARLAYS: get_parlays_indexes(),
    STREAK_HISTORY: get_streak_history_indexes(),
    RESOLUTION_LOGS: get_resolution_logs_indexes(),
}


# ============================================================================
# INDEX APPLICATION
# ============================================================================

def ensure_indexes(database: Database, drop_existing: bool = False) -> None:
    """
    Apply all index definitions to `database`.

    Args:
        drop_existing: drop existing indexes first (fresh deploys only)
    """
    for collection_name, indexes in INDEX_DEFINITIONS.items():
        collection = database[collection_name]

        if drop_existing:
            logger.warning(f"Dropping existing indexes on {collection_name}")
            collection.drop_indexes()

        try:
            created = collection.create_indexes(indexes)
            logger.info(f"Indexes on {collection_name}: {created}")
        except PyMongoError as e:
            logger.error(f"Failed to create indexes on {collection_name}: {e}")
            raise


def list_all_indexes(database: Database) -> Dict[str, List[str]]:
    """Existing index names per engine collection"""
    return {
        name: [idx["name"] for idx in database[name].list_indexes()]
        for name in INDEX_DEFINITIONS
    }


# ============================================================================
# CLI
# ============================================================================

if __name__ == "__main__":
    import argparse

    from db.mongo import db

    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Manage resolution engine indexes")
    parser.add_argument("--apply", action="store_true", help="Apply all indexes")
    parser.add_argument("--list", action="store_true", help="List existing indexes")
    parser.add_argument("--drop", action="store_true", help="Drop existing indexes before applying (DANGEROUS)")
    args = parser.parse_args()

    if args.apply:
        ensure_indexes(db, drop_existing=args.drop)
    elif args.list:
        for name, index_names in list_all_indexes(db).items():
            print(f"{name}: {', '.join(index_names)}")
    else:
        parser.print_help()
