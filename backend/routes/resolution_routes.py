"""
Resolution Admin Routes
Operator endpoints for RESOLUTION_FAILED remediation and ledger inspection
"""
from fastapi import APIRouter, HTTPException, Depends, Query
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime
import logging

from services.resolution_engine import ResolutionStatus
from services.resolution_services import ResolutionComponents, get_components

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/resolution", tags=["resolution"])


class FailedParlayResponse(BaseModel):
    parlay_id: str
    user_id: Optional[str] = None
    leg_count: Optional[int] = None
    insured: bool
    last_leg_end_time: Optional[datetime] = None
    resolution_attempts: int
    failure_reason: Optional[str] = None


class RetryResponse(BaseModel):
    parlay_id: str
    status: str
    parlay_status: Optional[str] = None
    old_streak: Optional[int] = None
    new_streak: Optional[int] = None
    insurance_transition: str
    attempts: int
    reason: str = ""


class StreakHistoryResponse(BaseModel):
    entry_id: str
    parlay_id: Optional[str] = None
    old_streak: int
    new_streak: int
    change_amount: int
    change_type: str
    at: datetime
    details: Dict[str, Any] = {}


class ReconciliationResponse(BaseModel):
    user_id: str
    entries: int
    ok: bool
    issues: List[str]


@router.get("/failed", response_model=List[FailedParlayResponse])
def list_failed_parlays(
    limit: int = Query(100, ge=1, le=1000),
    components: ResolutionComponents = Depends(get_components)
):
    """Parlays waiting for manual remediation, most recent failure first"""
    return [
        FailedParlayResponse(
            parlay_id=p.parlay_id,
            user_id=p.user_id,
            leg_count=p.leg_count,
            insured=p.insured,
            last_leg_end_time=p.last_leg_end_time,
            resolution_attempts=p.resolution_attempts,
            failure_reason=p.failure_reason,
        )
        for p in components.store.find_failed(limit)
    ]


@router.post("/failed/{parlay_id}/retry", response_model=RetryResponse)
def retry_failed_parlay(
    parlay_id: str,
    components: ResolutionComponents = Depends(get_components)
):
    """
    Re-run resolution for a RESOLUTION_FAILED parlay with a fresh retry budget.
    Later parlays of the same user are picked up by the next cycle. Refused
    with 409 while a resolution lane for the same user is running.
    """
    user_id = components.store.get_parlay_owner(parlay_id)
    if user_id is None:
        result = components.engine.retry_failed(parlay_id)
    else:
        locks = components.cycle.orderer.locks
        if not locks.try_acquire(user_id):
            raise HTTPException(
                status_code=409,
                detail=f"Parlays of user {user_id} are being resolved; retry later"
            )
        try:
            result = components.engine.retry_failed(parlay_id)
        finally:
            locks.release(user_id)

    if result.status == ResolutionStatus.SKIPPED and result.reason == "NOT_FOUND":
        raise HTTPException(status_code=404, detail=f"Parlay {parlay_id} not found")
    if result.status == ResolutionStatus.SKIPPED and result.reason.startswith("NOT_FAILED"):
        raise HTTPException(status_code=409, detail=f"Parlay {parlay_id} is not RESOLUTION_FAILED")

    logger.info(f"Manual retry of {parlay_id}: {result.status.value} {result.reason}")
    return RetryResponse(
        parlay_id=result.parlay_id,
        status=result.status.value,
        parlay_status=result.parlay_status.value if result.parlay_status else None,
        old_streak=result.old_streak,
        new_streak=result.new_streak,
        insurance_transition=result.insurance_transition.value,
        attempts=result.attempts,
        reason=result.reason,
    )


@router.get("/users/{user_id}/streak-history", response_model=List[StreakHistoryResponse])
def get_streak_history(
    user_id: str,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    components: ResolutionComponents = Depends(get_components)
):
    """User's ledger, oldest first"""
    return [
        StreakHistoryResponse(
            entry_id=entry.entry_id,
            parlay_id=entry.parlay_id,
            old_streak=entry.old_streak,
            new_streak=entry.new_streak,
            change_amount=entry.change_amount,
            change_type=entry.change_type.value,
            at=entry.at,
            details=entry.details,
        )
        for entry in components.store.get_history(user_id, limit=limit)
    ]


@router.get("/users/{user_id}/reconcile", response_model=ReconciliationResponse)
def reconcile_user(
    user_id: str,
    components: ResolutionComponents = Depends(get_components)
):
    """Check the user's streak fields against their ledger"""
    report = components.reconciler.reconcile_user(user_id)
    if report is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")
    return ReconciliationResponse(**report.to_dict())
