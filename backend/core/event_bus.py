"""
Event Bus for Resolution Notifications
Implements both an in-memory Observer pattern and Redis pub/sub for pushing
resolution events to the presentation layer.

Topics:
- parlay:resolved     parlay reached WON / LOST
- streak:updated      user's streak changed (or was re-stated)
- insurance:locked    insured loss locked insurance
- insurance:unlocked  uninsured resolution released the lock

Delivery is best-effort and advisory; the streak ledger is authoritative.
"""
import json
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timezone
import logging
from collections import defaultdict

import redis

logger = logging.getLogger(__name__)

PARLAY_RESOLVED = "parlay:resolved"
STREAK_UPDATED = "streak:updated"
INSURANCE_LOCKED = "insurance:locked"
INSURANCE_UNLOCKED = "insurance:unlocked"


def _envelope(topic: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "topic": topic,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": data
    }


class InMemoryEventBus:
    """
    In-process event bus (Observer pattern). Handlers run synchronously on the
    publishing worker thread; a failing handler never affects the others.
    """

    def __init__(self, max_log_size: int = 1000):
        self.subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self.event_log: List[Dict[str, Any]] = []
        self.max_log_size = max_log_size

    def subscribe(self, topic: str, handler: Callable):
        self.subscribers[topic].append(handler)
        logger.info(f"{getattr(handler, '__name__', handler)} subscribed to {topic}")

    def unsubscribe(self, topic: str, handler: Callable):
        if topic in self.subscribers and handler in self.subscribers[topic]:
            self.subscribers[topic].remove(handler)

    def publish(self, topic: str, data: Dict[str, Any]):
        message = _envelope(topic, data)

        self.event_log.append(message)
        if len(self.event_log) > self.max_log_size:
            self.event_log = self.event_log[-self.max_log_size:]

        logger.debug(f"Published to {topic}: {data}")

        for handler in list(self.subscribers.get(topic, [])):
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Handler {getattr(handler, '__name__', handler)} failed on {topic}: {e}")

    def get_event_log(self, topic: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent events, optionally filtered by topic"""
        logs = self.event_log if not topic else [e for e in self.event_log if e["topic"] == topic]
        return logs[-limit:]


class RedisEventBus:
    """
    Redis pub/sub bus. Each topic is published on the channel of the same
    name as a JSON envelope; presentation-layer processes subscribe there.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.redis_client = client or redis.Redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True
        )

    def publish(self, topic: str, data: Dict[str, Any]) -> int:
        """Publish and return the number of receiving subscribers."""
        message = _envelope(topic, data)
        receivers = self.redis_client.publish(topic, json.dumps(message, default=str))
        logger.debug(f"Published to {topic} ({receivers} receivers)")
        return receivers

    def close(self):
        self.redis_client.close()
