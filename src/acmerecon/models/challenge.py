"""Challenge entity and the provider record handle."""

from __future__ import annotations

from dataclasses import dataclass

from acmerecon.core.types import ChallengeStatus


@dataclass(frozen=True)
class ChallengeHandle:
    """A published TXT record, as returned by ``present``."""

    domain: str
    record_name: str
    value: str
    provider_ref: str | None = None


@dataclass(frozen=True)
class Challenge:
    """One DNS-01 challenge per domain in an Order."""

    domain: str
    token: str
    url: str
    authorization_url: str
    txt_value: str
    status: ChallengeStatus = ChallengeStatus.PENDING
    handle: ChallengeHandle | None = None
    error: dict | None = None
