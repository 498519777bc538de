"""
Resolution Engine - LOCKED -> WON / LOST
=========================================

One parlay resolution is one atomic unit:
1. Read parlay, legs and user inside the transaction
2. Check the idempotence guard (resolved_at already set -> no-op)
3. Evaluate the legs (OutcomeEvaluator, explicit PushVoidPolicy)
4. Plan the streak mutation (StreakLedger + InsuranceStateMachine)
5. Claim the parlay (status + resolved_at), write the user, append history
6. Commit; then publish notifications (best-effort)

Failure handling:
- TransientStorageError -> exponential backoff, bounded attempts
- InvalidStateError     -> SKIPPED, logged
- ParlayDataError       -> RESOLUTION_FAILED immediately (retrying cannot help)
- budget exhausted      -> RESOLUTION_FAILED + operator alert

Without transactions a failed attempt deletes its history rows and releases
its claim before the retry; if that undo fails the parlay is left for
reconciliation and an alert is sent.

Per-user ordering is NOT decided here; callers hand parlays over in the order
released by core.resolution_orderer.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
import logging
import time

from config.engine_config import EngineConfig
from core.insurance_state_machine import InsuranceTransition
from core.outcome_evaluator import ParlayOutcome, PushVoidPolicy, evaluate
from core.resolution_errors import (
    InvalidParlayError,
    InvalidStateError,
    ParlayDataError,
    PermanentFailure,
    TransientStorageError,
)
from db.models import MalformedParlay, Parlay, ParlayStatus, RESOLVABLE_STATUSES
from db.resolution_store import ResolutionStore
from services.notification_service import ResolutionNotifier
from services.slack_notifier import SlackNotifier
from services.streak_ledger import LedgerPlan, StreakLedger
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class ResolutionStatus(str, Enum):
    RESOLVED = "RESOLVED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of one resolve() call"""
    parlay_id: str
    status: ResolutionStatus
    user_id: Optional[str] = None
    parlay_status: Optional[ParlayStatus] = None
    old_streak: Optional[int] = None
    new_streak: Optional[int] = None
    insurance_transition: InsuranceTransition = InsuranceTransition.NONE
    attempts: int = 0
    reason: str = ""

    @property
    def resolved(self) -> bool:
        return self.status == ResolutionStatus.RESOLVED


class ResolutionEngine:
    """
    Orchestrates OutcomeEvaluator, InsuranceStateMachine and StreakLedger into
    one transactional step per parlay. Stateless between calls: everything is
    fetched per invocation.
    """

    def __init__(
        self,
        store: ResolutionStore,
        config: EngineConfig,
        notifier: Optional[ResolutionNotifier] = None,
        alerts: Optional[SlackNotifier] = None,
        clock: Callable[[], datetime] = now_utc,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.config = config
        self.ledger = StreakLedger(store)
        self.notifier = notifier
        self.alerts = alerts or SlackNotifier(config.slack_webhook_url)
        self.policy = PushVoidPolicy.parse(config.push_void_policy)
        self.clock = clock
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def resolve(self, parlay_id: str) -> ResolutionResult:
        """Resolve a LOCKED parlay. Safe to call repeatedly for the same id."""
        return self._resolve_with_retry(parlay_id, allow_failed=False)

    def retry_failed(self, parlay_id: str) -> ResolutionResult:
        """
        Manual remediation: resolve a RESOLUTION_FAILED parlay with a fresh
        retry budget (RESOLUTION_FAILED -> WON / LOST).
        """
        try:
            parlay = self.store.get_parlay(parlay_id)
        except InvalidParlayError as e:
            logger.error(f"Manual retry of {parlay_id} refused: {e}")
            return self._fail(parlay_id, f"DATA_ERROR: {e}", 1)
        if parlay is None:
            return ResolutionResult(parlay_id, ResolutionStatus.SKIPPED, reason="NOT_FOUND")
        if parlay.status != ParlayStatus.RESOLUTION_FAILED:
            return ResolutionResult(
                parlay_id, ResolutionStatus.SKIPPED, user_id=parlay.user_id,
                parlay_status=parlay.status, reason=f"NOT_FAILED:{parlay.status.value}"
            )
        logger.info(f"Manual retry of failed parlay {parlay_id} (previous reason: {parlay.failure_reason})")
        return self._resolve_with_retry(parlay_id, allow_failed=True)

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _resolve_with_retry(self, parlay_id: str, allow_failed: bool) -> ResolutionResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                plan = self._resolve_once(parlay_id, allow_failed)
            except InvalidStateError as e:
                logger.warning(f"Skipping parlay {parlay_id}: {e}")
                return ResolutionResult(parlay_id, ResolutionStatus.SKIPPED, attempts=attempt, reason=str(e))
            except (ParlayDataError, InvalidParlayError) as e:
                logger.error(f"Parlay {parlay_id} cannot be resolved automatically: {e}")
                return self._fail(parlay_id, f"DATA_ERROR: {e}", attempt)
            except PermanentFailure as e:
                logger.error(str(e))
                self.alerts.send_alert(
                    "CRITICAL",
                    "Partial resolution could not be rolled back",
                    str(e),
                    {"parlay_id": parlay_id, "attempts": attempt}
                )
                return ResolutionResult(
                    parlay_id, ResolutionStatus.FAILED, attempts=attempt, reason=f"ROLLBACK_FAILED: {e}"
                )
            except TransientStorageError as e:
                if attempt >= self.config.max_attempts:
                    failure = PermanentFailure(
                        f"Retry budget exhausted after {attempt} attempts: {e}", parlay_id, attempt
                    )
                    logger.error(str(failure))
                    return self._fail(parlay_id, f"RETRY_EXHAUSTED: {failure}", attempt)
                delay = self.config.backoff_delay(attempt)
                logger.warning(
                    f"Transient failure resolving {parlay_id} (attempt {attempt}/"
                    f"{self.config.max_attempts}), retrying in {delay:.2f}s: {e}"
                )
                self.sleep(delay)
                continue

            if self.notifier is not None:
                self.notifier.notify_resolution(plan)

            return ResolutionResult(
                parlay_id=parlay_id,
                status=ResolutionStatus.RESOLVED,
                user_id=plan.user_id,
                parlay_status=plan.parlay_status,
                old_streak=plan.old_streak,
                new_streak=plan.new_streak,
                insurance_transition=plan.insurance_transition,
                attempts=attempt,
            )

    # ------------------------------------------------------------------
    # One transactional attempt
    # ------------------------------------------------------------------

    def _resolve_once(self, parlay_id: str, allow_failed: bool) -> LedgerPlan:
        with self.store.transaction(parlay_id) as session:
            parlay = self.store.get_parlay(parlay_id, session=session)
            if parlay is None:
                raise InvalidStateError(f"Parlay {parlay_id} not found", parlay_id)
            if parlay.is_resolved:
                raise InvalidStateError(
                    f"Parlay {parlay_id} already resolved at {parlay.resolved_at.isoformat()}",
                    parlay_id
                )
            allowed = RESOLVABLE_STATUSES if allow_failed else (ParlayStatus.LOCKED,)
            if parlay.status not in allowed:
                raise InvalidStateError(
                    f"Parlay {parlay_id} is {parlay.status.value}, expected "
                    f"{'/'.join(s.value for s in allowed)}",
                    parlay_id
                )

            legs = self.store.get_legs(parlay_id, session=session)
            if not legs:
                raise ParlayDataError(f"Parlay {parlay_id} has no legs", parlay_id)
            if len(legs) != parlay.leg_count:
                raise ParlayDataError(
                    f"Parlay {parlay_id} declares {parlay.leg_count} legs but has {len(legs)}",
                    parlay_id
                )

            evaluation = evaluate([(leg.leg_id, leg.outcome) for leg in legs], self.policy)
            if evaluation.outcome == ParlayOutcome.INDETERMINATE and evaluation.reason.startswith("PENDING"):
                raise InvalidStateError(f"Parlay {parlay_id} still has pending legs", parlay_id)

            user = self.store.get_user(parlay.user_id, session=session)
            if user is None:
                raise ParlayDataError(f"User {parlay.user_id} for parlay {parlay_id} not found", parlay_id)

            plan = StreakLedger.plan(user, parlay, evaluation, self.clock())

            if not self.store.claim_resolution(
                parlay_id, plan.parlay_status, plan.resolved_at, plan.outcome_detail, session=session
            ):
                raise InvalidStateError(f"Parlay {parlay_id} was resolved concurrently", parlay_id)

            try:
                self.ledger.commit(plan, session=session)
            except (TransientStorageError, InvalidStateError):
                # Without a session nothing rolls back for us
                if session is None:
                    self._undo_attempt(parlay, plan)
                raise

        return plan

    def _undo_attempt(self, parlay: Parlay, plan: LedgerPlan) -> None:
        """Remove the history rows and the claim written by a failed attempt."""
        try:
            self.store.delete_history(plan.entries)
            released = self.store.release_claim(parlay, plan.parlay_status, plan.resolved_at)
        except TransientStorageError as e:
            raise PermanentFailure(
                f"Parlay {parlay.parlay_id} left partially resolved ({e}); "
                f"user {plan.user_id} needs reconciliation",
                parlay.parlay_id
            ) from e
        if not released:
            logger.warning(f"Claim on {parlay.parlay_id} at {plan.resolved_at.isoformat()} was already gone")
        logger.warning(f"Rolled back partial resolution of parlay {parlay.parlay_id}")

    # ------------------------------------------------------------------
    # Malformed documents
    # ------------------------------------------------------------------

    def quarantine(self, parlay: MalformedParlay) -> ResolutionResult:
        """Move a parlay whose stored document fails validation to
        RESOLUTION_FAILED so it surfaces for remediation."""
        return self._fail(parlay.parlay_id, f"DATA_ERROR: {parlay.reason}", 0)

    # ------------------------------------------------------------------
    # Permanent failure
    # ------------------------------------------------------------------

    def _fail(self, parlay_id: str, reason: str, attempts: int) -> ResolutionResult:
        try:
            marked = self.store.mark_failed(parlay_id, reason, attempts, self.clock())
        except TransientStorageError as e:
            # Stays LOCKED; the next scan picks it up again
            logger.error(f"Could not mark parlay {parlay_id} RESOLUTION_FAILED: {e}")
            marked = False

        if marked:
            self.alerts.send_alert(
                "CRITICAL",
                "Parlay resolution failed",
                f"Parlay {parlay_id} marked RESOLUTION_FAILED; later parlays for this user are blocked "
                f"until it is remediated.",
                {"parlay_id": parlay_id, "attempts": attempts, "reason": reason}
            )

        return ResolutionResult(
            parlay_id=parlay_id,
            status=ResolutionStatus.FAILED,
            parlay_status=ParlayStatus.RESOLUTION_FAILED if marked else None,
            attempts=attempts,
            reason=reason,
        )
