import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.database import Database

from db.models import RESOLUTION_LOGS

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
DB_NAME = os.getenv("DATABASE_NAME", "streaks")

# Connection is established lazily on first operation
client = MongoClient(MONGO_URI, tz_aware=True)
db = client[DB_NAME]


def insert_log_entry(entry: Dict[str, Any], database: Optional[Database] = None):
    return (database if database is not None else db)[RESOLUTION_LOGS].insert_one(entry)
