"""
Resolution Engine Configuration
Static configuration for the lock scan, the resolution scan and the streak
economy. Everything here is read once at startup; nothing is discovered at
runtime.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from dotenv import load_dotenv

load_dotenv()


# ============================================================================
# STREAK ECONOMY
# ============================================================================

# Parlay value by leg count
PARLAY_VALUES: Dict[int, int] = {
    1: 1,
    2: 2,
    3: 4,
    4: 8,
    5: 16,
}

MIN_LEGS = 1
MAX_LEGS = 5

# Base insurance cost by leg count (insurance only exists for 4-5 legs)
BASE_INSURANCE_COSTS: Dict[int, int] = {
    4: 3,
    5: 5,
}

# Streak brackets as (lower bound inclusive, multiplier). Upper bound is the
# next bracket's lower bound; the last bracket is open-ended.
INSURANCE_MULTIPLIERS: List[Tuple[int, float]] = [
    (0, 1.0),
    (15, 1.67),
    (25, 2.0),
    (35, 2.67),
    (45, 3.0),
]


# ============================================================================
# SCAN / RETRY DEFAULTS
# ============================================================================

DEFAULT_LOCK_SCAN_INTERVAL_SECONDS = 60
DEFAULT_RESOLUTION_SCAN_INTERVAL_SECONDS = 60
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE_SECONDS = 0.5
DEFAULT_BACKOFF_MAX_SECONDS = 30.0
DEFAULT_WORKERS = 8
DEFAULT_BATCH_SIZE = 500


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings for the resolution engine and its two periodic scans."""
    mongo_uri: str = "mongodb://localhost:27017"
    database_name: str = "streaks"
    redis_url: str = "redis://localhost:6379"
    lock_scan_interval_seconds: int = DEFAULT_LOCK_SCAN_INTERVAL_SECONDS
    resolution_scan_interval_seconds: int = DEFAULT_RESOLUTION_SCAN_INTERVAL_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    workers: int = DEFAULT_WORKERS
    batch_size: int = DEFAULT_BATCH_SIZE
    push_void_policy: str = "LOSS"
    use_transactions: bool = True
    slack_webhook_url: str = ""
    parlay_values: Dict[int, int] = field(default_factory=lambda: dict(PARLAY_VALUES))
    base_insurance_costs: Dict[int, int] = field(default_factory=lambda: dict(BASE_INSURANCE_COSTS))
    insurance_multipliers: List[Tuple[int, float]] = field(default_factory=lambda: list(INSURANCE_MULTIPLIERS))

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build configuration from environment variables (and .env)."""
        return cls(
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "streaks"),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            lock_scan_interval_seconds=int(os.getenv(
                "LOCK_SCAN_INTERVAL_SECONDS", DEFAULT_LOCK_SCAN_INTERVAL_SECONDS)),
            resolution_scan_interval_seconds=int(os.getenv(
                "RESOLUTION_SCAN_INTERVAL_SECONDS", DEFAULT_RESOLUTION_SCAN_INTERVAL_SECONDS)),
            max_attempts=int(os.getenv("RESOLUTION_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)),
            backoff_base_seconds=float(os.getenv(
                "RESOLUTION_BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS)),
            backoff_max_seconds=float(os.getenv(
                "RESOLUTION_BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX_SECONDS)),
            workers=int(os.getenv("RESOLUTION_WORKERS", DEFAULT_WORKERS)),
            batch_size=int(os.getenv("RESOLUTION_BATCH_SIZE", DEFAULT_BATCH_SIZE)),
            push_void_policy=os.getenv("PUSH_VOID_POLICY", "LOSS").strip().upper(),
            use_transactions=_env_bool("RESOLUTION_USE_TRANSACTIONS", True),
            slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL", ""),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff before retry number `attempt` (1-based)."""
        delay = self.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self.backoff_max_seconds)
