"""CertificateRequest entity and its status."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

from acmerecon.core.types import ErrorKind, RequestPhase

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def normalize_domains(domains) -> frozenset[str]:
    """Lower-case and strip a domain collection into a frozenset."""
    return frozenset(d.strip().rstrip(".").lower() for d in domains if d and d.strip())


@dataclass(frozen=True)
class RequestStatus:
    """Reconciler-owned status of a :class:`CertificateRequest`."""

    phase: RequestPhase = RequestPhase.PENDING
    attempts: int = 0
    last_error_kind: ErrorKind | None = None
    last_error_detail: str | None = None
    not_after: datetime | None = None
    secret_version: int | None = None
    updated_at: datetime = _EPOCH


@dataclass(frozen=True)
class CertificateRequest:
    """Desired state: a domain set issued by ``issuer`` into ``secret_name``.

    The desired-state fields are owned by the external caller; only ``status``
    is replaced by the reconciler.
    """

    name: str
    domains: frozenset[str]
    issuer: str
    secret_name: str
    renew_before_days: float | None = None
    status: RequestStatus = field(default_factory=RequestStatus, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "domains", normalize_domains(self.domains))
        if not self.domains:
            msg = f"CertificateRequest '{self.name}' must list at least one domain"
            raise ValueError(msg)

    def desired_key(self) -> tuple:
        """Tuple of the caller-owned fields, used to detect changes to the desired state."""
        return (
            self.domains,
            self.issuer,
            self.secret_name,
            self.renew_before_days,
        )
