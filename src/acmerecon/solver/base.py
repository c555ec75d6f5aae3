"""DNS provider capability set.

A provider only has to create and delete TXT records; everything else
(idempotence bookkeeping, propagation checks) lives in
:class:`~acmerecon.solver.solver.ChallengeSolver`.  Providers are
selected by configuration through :mod:`acmerecon.solver.registry`.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

CHALLENGE_LABEL = "_acme-challenge"


def record_name_for(domain: str) -> str:
    """Return the TXT owner name for *domain* (wildcards stripped)."""
    return f"{CHALLENGE_LABEL}.{domain.removeprefix('*.').rstrip('.')}"


@runtime_checkable
class DnsProvider(Protocol):
    """Create and delete ``_acme-challenge`` TXT records.

    Implementations must be idempotent: creating a record that already
    exists with the same value succeeds without adding a duplicate, and
    deleting a missing record is a no-op.  Failures are reported as
    :class:`~acmerecon.core.errors.ProviderError`.
    """

    async def create_txt_record(self, domain: str, record_name: str, value: str) -> str | None:
        """Publish *value* at *record_name*; return a provider reference."""
        ...

    async def delete_txt_record(
        self,
        domain: str,
        record_name: str,
        value: str,
        provider_ref: str | None = None,
    ) -> None:
        """Remove the record previously created for *value*."""
        ...


@runtime_checkable
class TxtLookup(Protocol):
    """Anything that can report the TXT values currently visible for a name."""

    async def txt_values(self, record_name: str) -> set[str]: ...
