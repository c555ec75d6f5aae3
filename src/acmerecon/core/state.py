"""Reconciler state machines.

Defines the valid status transitions for issuance runs, authority
orders, and challenges.  All transitions are enforced via
:func:`assert_transition`.

Usage::

    from acmerecon.core.state import ISSUANCE_TRANSITIONS, assert_transition
    from acmerecon.core.types import IssuanceState

    assert_transition(
        IssuanceState.REQUESTED, IssuanceState.ORDER_CREATED,
        ISSUANCE_TRANSITIONS,
    )
"""

from __future__ import annotations

import logging

from acmerecon.core.types import ChallengeStatus, IssuanceState, OrderStatus

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Issuance: a linear happy path, Failed reachable from every non-terminal
# state.  Issued & Failed are terminal.
# ---------------------------------------------------------------------------

_S = IssuanceState

ISSUANCE_TRANSITIONS: dict[IssuanceState, frozenset[IssuanceState]] = {
    _S.REQUESTED: frozenset({_S.ORDER_CREATED, _S.FAILED}),
    _S.ORDER_CREATED: frozenset({_S.CHALLENGES_PENDING, _S.FAILED}),
    _S.CHALLENGES_PENDING: frozenset({_S.CHALLENGES_PUBLISHED, _S.FAILED}),
    _S.CHALLENGES_PUBLISHED: frozenset({_S.AWAITING_AUTHORITY_VALIDATION, _S.FAILED}),
    _S.AWAITING_AUTHORITY_VALIDATION: frozenset({_S.FINALIZING, _S.FAILED}),
    _S.FINALIZING: frozenset({_S.ISSUED, _S.FAILED}),
    _S.ISSUED: frozenset(),
    _S.FAILED: frozenset(),
}

TERMINAL_ISSUANCE_STATES = frozenset({_S.ISSUED, _S.FAILED})

# ---------------------------------------------------------------------------
# Order as reported by the authority.  A pending order may already be
# ready when authorizations were reused.
# ---------------------------------------------------------------------------

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.READY, OrderStatus.INVALID, OrderStatus.EXPIRED},
    ),
    OrderStatus.READY: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.VALID, OrderStatus.INVALID, OrderStatus.EXPIRED},
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.VALID, OrderStatus.INVALID}),
    OrderStatus.VALID: frozenset(),
    OrderStatus.INVALID: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.VALID, OrderStatus.INVALID, OrderStatus.EXPIRED},
)

# ---------------------------------------------------------------------------
# Challenge: pending → presented/invalid, presented → valid/invalid
# ---------------------------------------------------------------------------

CHALLENGE_TRANSITIONS: dict[ChallengeStatus, frozenset[ChallengeStatus]] = {
    ChallengeStatus.PENDING: frozenset({ChallengeStatus.PRESENTED, ChallengeStatus.INVALID}),
    ChallengeStatus.PRESENTED: frozenset({ChallengeStatus.VALID, ChallengeStatus.INVALID}),
    ChallengeStatus.VALID: frozenset(),
    ChallengeStatus.INVALID: frozenset(),
}


def assert_transition(
    current: IssuanceState | OrderStatus | ChallengeStatus,
    target: IssuanceState | OrderStatus | ChallengeStatus,
    table: dict,
) -> None:
    """Raise :class:`ValueError` if *current* → *target* is not allowed.

    Parameters
    ----------
    current:
        The current status of the resource.
    target:
        The desired new status.
    table:
        One of :data:`ISSUANCE_TRANSITIONS`, :data:`ORDER_TRANSITIONS`,
        or :data:`CHALLENGE_TRANSITIONS`.

    """
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown status {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise ValueError(msg)


def log_transition(
    resource_type: str,
    resource_id,
    from_status,
    to_status,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a state transition.

    Parameters
    ----------
    resource_type:
        ``"issuance"``, ``"order"``, or ``"challenge"``.
    resource_id:
        Request name, order URL or challenge domain.
    from_status:
        The previous status value.
    to_status:
        The new status value.
    reason:
        Optional human-readable reason for the transition.

    """
    extra = {
        "event": "state_transition",
        "resource_type": resource_type,
        "resource_id": str(resource_id),
        "from_status": from_status.value if hasattr(from_status, "value") else str(from_status),
        "to_status": to_status.value if hasattr(to_status, "value") else str(to_status),
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "%s %s: %s -> %s%s",
        resource_type,
        resource_id,
        extra["from_status"],
        extra["to_status"],
        f" ({reason})" if reason else "",
        extra=extra,
    )
