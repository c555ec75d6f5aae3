"""Reconciler services: renewal checks, issuance runs, scheduling."""

from acmerecon.services.issuance import IssuanceOutcome, IssuanceStateMachine
from acmerecon.services.renewal import needs_issuance, renewal_threshold
from acmerecon.services.scheduler import ReconciliationScheduler

__all__ = [
    "IssuanceOutcome",
    "IssuanceStateMachine",
    "ReconciliationScheduler",
    "needs_issuance",
    "renewal_threshold",
]
