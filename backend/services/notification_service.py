"""
Notification Service
Pushes resolution events to the presentation layer. Best-effort: a failed
publish is logged and dropped, never raised into the resolution path.
"""
import logging
from typing import Any, Dict, Protocol

from core.event_bus import INSURANCE_LOCKED, INSURANCE_UNLOCKED, PARLAY_RESOLVED, STREAK_UPDATED
from core.insurance_state_machine import InsuranceTransition
from services.streak_ledger import LedgerPlan

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    def publish(self, topic: str, data: Dict[str, Any]) -> Any: ...


class ResolutionNotifier:
    """Translates committed ledger plans into notification events"""

    def __init__(self, bus: EventPublisher):
        self.bus = bus

    def _send(self, topic: str, data: Dict[str, Any]) -> bool:
        try:
            self.bus.publish(topic, data)
            return True
        except Exception as e:
            logger.warning(f"Dropped {topic} notification for user {data.get('user_id')}: {e}")
            return False

    def notify_resolution(self, plan: LedgerPlan) -> int:
        """
        Publish the events for one committed resolution.

        Returns:
            number of events delivered to the bus
        """
        delivered = 0
        delivered += self._send(PARLAY_RESOLVED, {
            "user_id": plan.user_id,
            "parlay_id": plan.parlay_id,
            "status": plan.parlay_status.value,
            "resolved_at": plan.resolved_at.isoformat(),
        })
        delivered += self._send(STREAK_UPDATED, {
            "user_id": plan.user_id,
            "parlay_id": plan.parlay_id,
            "old_streak": plan.old_streak,
            "new_streak": plan.new_streak,
            "change_amount": plan.change_amount,
            "longest_streak": plan.longest_streak,
        })

        if plan.insurance_transition == InsuranceTransition.LOCK:
            delivered += self._send(INSURANCE_LOCKED, {
                "user_id": plan.user_id,
                "parlay_id": plan.parlay_id,
            })
        elif plan.insurance_transition == InsuranceTransition.UNLOCK:
            delivered += self._send(INSURANCE_UNLOCKED, {
                "user_id": plan.user_id,
                "parlay_id": plan.parlay_id,
            })
        return delivered
