"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
JSON Schema defaults exist only for documentation -- these builders
are what the reconciler actually reads.

Access pattern::

    from acmerecon.config import get_config

    dns = get_config().settings.dns
    print(dns.provider, dns.propagation_timeout_seconds)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from acmerecon.models.issuer import IssuerConfig

# ---------------------------------------------------------------------------
# Issuers
# ---------------------------------------------------------------------------


def _build_issuer(d: dict) -> IssuerConfig:
    contact = d.get("contact") or []
    if isinstance(contact, str):
        contact = [contact]
    return IssuerConfig(
        name=d["name"],
        directory_url=d["directory_url"],
        contact=tuple(c if ":" in c else f"mailto:{c}" for c in contact),
        account_key_path=d["account_key_path"],
        backend=d.get("backend", "acme"),
        account_key_type=d.get("account_key_type", "ec-p256"),
        eab_kid=d.get("eab_kid"),
        eab_hmac_key=d.get("eab_hmac_key"),
        verify_ssl=d.get("verify_ssl", True),
        timeout_seconds=d.get("timeout_seconds", 30),
    )


def _build_issuers(data: list | None) -> tuple[IssuerConfig, ...]:
    return tuple(_build_issuer(d) for d in data or [])


# ---------------------------------------------------------------------------
# DNS
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DnsSettings:
    """DNS provider selection and propagation checking."""

    provider: str
    provider_config: dict[str, Any]
    resolvers: tuple[str, ...]
    require_authoritative: bool
    query_timeout_seconds: float
    propagation_timeout_seconds: float
    propagation_poll_seconds: float


def _build_dns(data: dict | None) -> DnsSettings:
    d = data or {}
    return DnsSettings(
        provider=d.get("provider", "memory"),
        provider_config=dict(d.get("provider_config") or {}),
        resolvers=tuple(d.get("resolvers", [])),
        require_authoritative=d.get("require_authoritative", True),
        query_timeout_seconds=d.get("query_timeout_seconds", 5.0),
        propagation_timeout_seconds=d.get("propagation_timeout_seconds", 300.0),
        propagation_poll_seconds=d.get("propagation_poll_seconds", 10.0),
    )


# ---------------------------------------------------------------------------
# Authority
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthoritySettings:
    """Retry, backoff and polling behaviour towards the ACME server."""

    max_attempts: int
    rate_limit_max_attempts: int
    backoff_base_seconds: float
    backoff_max_seconds: float
    poll_interval_seconds: float
    poll_timeout_seconds: float
    user_agent: str


def _build_authority(data: dict | None) -> AuthoritySettings:
    d = data or {}
    return AuthoritySettings(
        max_attempts=d.get("max_attempts", 5),
        rate_limit_max_attempts=d.get("rate_limit_max_attempts", 10),
        backoff_base_seconds=d.get("backoff_base_seconds", 1.0),
        backoff_max_seconds=d.get("backoff_max_seconds", 60.0),
        poll_interval_seconds=d.get("poll_interval_seconds", 3.0),
        poll_timeout_seconds=d.get("poll_timeout_seconds", 300.0),
        user_agent=d.get("user_agent", "acmerecon"),
    )


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuanceSettings:
    """Per-run behaviour of the issuance state machine."""

    key_type: str
    max_run_retries: int
    run_backoff_base_seconds: float
    run_backoff_max_seconds: float
    order_deadline_seconds: float


def _build_issuance(data: dict | None) -> IssuanceSettings:
    d = data or {}
    return IssuanceSettings(
        key_type=d.get("key_type", "ec-p256"),
        max_run_retries=d.get("max_run_retries", 3),
        run_backoff_base_seconds=d.get("run_backoff_base_seconds", 30.0),
        run_backoff_max_seconds=d.get("run_backoff_max_seconds", 900.0),
        order_deadline_seconds=d.get("order_deadline_seconds", 1800.0),
    )


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RenewalSettings:
    """When a stored certificate is considered due for renewal."""

    renew_before_fraction: float
    renew_before_days: float | None
    check_interval_seconds: float


def _build_renewal(data: dict | None) -> RenewalSettings:
    d = data or {}
    return RenewalSettings(
        renew_before_fraction=d.get("renew_before_fraction", 1 / 3),
        renew_before_days=d.get("renew_before_days"),
        check_interval_seconds=d.get("check_interval_seconds", 3600.0),
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchedulerSettings:
    """Concurrency limits and shutdown behaviour."""

    max_concurrent_runs: int
    shutdown_timeout_seconds: float


def _build_scheduler(data: dict | None) -> SchedulerSettings:
    d = data or {}
    return SchedulerSettings(
        max_concurrent_runs=d.get("max_concurrent_runs", 10),
        shutdown_timeout_seconds=d.get("shutdown_timeout_seconds", 30.0),
    )


# ---------------------------------------------------------------------------
# Desired-state source
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceSettings:
    """Where certificate requests come from."""

    backend: str
    path: str | None
    poll_seconds: float
    requests: tuple[dict[str, Any], ...]


def _build_source(data: dict | None) -> SourceSettings:
    d = data or {}
    return SourceSettings(
        backend=d.get("backend", "memory"),
        path=d.get("path"),
        poll_seconds=d.get("poll_seconds", 15.0),
        requests=tuple(d.get("requests", [])),
    )


# ---------------------------------------------------------------------------
# Secret store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecretStoreSettings:
    """Where issued certificates are persisted."""

    backend: str
    path: str | None
    write_max_attempts: int


def _build_secrets(data: dict | None) -> SecretStoreSettings:
    d = data or {}
    return SecretStoreSettings(
        backend=d.get("backend", "memory"),
        path=d.get("path"),
        write_max_attempts=d.get("write_max_attempts", 3),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoggingSettings:
    """Application logging configuration (level, format)."""

    level: str
    format: str


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "json"),
    )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconcilerSettings:
    issuers: tuple[IssuerConfig, ...]
    dns: DnsSettings
    authority: AuthoritySettings
    issuance: IssuanceSettings
    renewal: RenewalSettings
    scheduler: SchedulerSettings
    source: SourceSettings
    secrets: SecretStoreSettings
    logging: LoggingSettings

    def issuer(self, name: str) -> IssuerConfig:
        """Return the issuer called *name*.

        Raises
        ------
        KeyError
            If no issuer with that name is configured.

        """
        for issuer in self.issuers:
            if issuer.name == name:
                return issuer
        msg = f"Unknown issuer '{name}'"
        raise KeyError(msg)


def build_settings(data: dict) -> ReconcilerSettings:
    """Build the full typed settings tree from raw config data.

    Called once during :class:`ReconcilerConfig` initialisation after
    schema validation and environment-variable resolution.
    """
    return ReconcilerSettings(
        issuers=_build_issuers(data.get("issuers")),
        dns=_build_dns(data.get("dns")),
        authority=_build_authority(data.get("authority")),
        issuance=_build_issuance(data.get("issuance")),
        renewal=_build_renewal(data.get("renewal")),
        scheduler=_build_scheduler(data.get("scheduler")),
        source=_build_source(data.get("source")),
        secrets=_build_secrets(data.get("secrets")),
        logging=_build_logging(data.get("logging")),
    )
