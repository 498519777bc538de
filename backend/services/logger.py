from typing import Any, Dict, Optional
from datetime import datetime, timezone
import logging

from pymongo.database import Database
from pymongo.errors import PyMongoError

from db.mongo import insert_log_entry

_logger = logging.getLogger(__name__)


def log_stage(
    module: str,
    stage: str,
    input_payload: Optional[Dict[str, Any]] = None,
    output_payload: Optional[Dict[str, Any]] = None,
    level: str = "INFO",
    database: Optional[Database] = None
):
    """Record a job-stage summary in logs_resolution. A failed write is logged
    and never interrupts the job."""
    entry = {
        "module": module,
        "stage": stage,
        "level": level,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "input": input_payload or {},
        "output": output_payload or {},
    }
    try:
        insert_log_entry(entry, database)
    except PyMongoError as e:
        _logger.error(f"Could not record {module}/{stage}: {e}")
