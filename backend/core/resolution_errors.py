"""
Resolution Error Taxonomy

TransientStorageError  -> retried with exponential backoff, bounded attempts
InvalidStateError      -> skipped and logged, never fatal
ParlayDataError        -> cannot be resolved automatically, RESOLUTION_FAILED
PermanentFailure       -> retry budget exhausted, RESOLUTION_FAILED + alert

An ordering block (a later parlay withheld behind an earlier unresolved one)
is a scheduling condition, not an error; see core.resolution_orderer.
"""
from typing import Optional


class ResolutionError(Exception):
    """Base class for every error raised by the resolution engine."""

    def __init__(self, message: str, parlay_id: Optional[str] = None):
        super().__init__(message)
        self.parlay_id = parlay_id


class TransientStorageError(ResolutionError):
    """Lock contention, write conflict or lost connection. Safe to retry."""
    pass


class InvalidStateError(ResolutionError):
    """Parlay is not in a resolvable state (already resolved, wrong status,
    legs still pending)."""
    pass


class ParlayDataError(ResolutionError):
    """Stored data for the parlay cannot produce a resolution (missing user,
    no legs, indeterminate outcome)."""
    pass


class PermanentFailure(ResolutionError):
    """Retry budget exhausted; the parlay needs manual remediation."""

    def __init__(self, message: str, parlay_id: Optional[str] = None, attempts: int = 0):
        super().__init__(message, parlay_id)
        self.attempts = attempts


class InvalidParlayError(ValueError):
    """Construction-time validation failure for a parlay document."""
    pass


class InvalidLegCountError(InvalidParlayError):
    """Leg count outside the supported [1, 5] range."""
    pass
