"""IssuerConfig entity."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class IssuerConfig:
    """An authority endpoint plus the account used to talk to it.

    Immutable once registered; many certificate requests may share one
    issuer.
    """

    name: str
    directory_url: str
    contact: tuple[str, ...]
    account_key_path: str
    backend: str = "acme"
    account_key_type: str = "ec-p256"
    eab_kid: str | None = None
    eab_hmac_key: str | None = None
    verify_ssl: bool = True
    timeout_seconds: int = 30
