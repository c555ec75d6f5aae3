"""In-process DNS provider.

Keeps TXT records in a dictionary.  Used for tests and dry runs; it also
answers lookups itself, so propagation is immediate.
"""

from __future__ import annotations

import asyncio
import logging

log = logging.getLogger(__name__)


class MemoryDnsProvider:
    """Record table keyed by owner name, one entry per distinct value."""

    def __init__(self, config: dict | None = None) -> None:
        self._config = config or {}
        self._records: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()
        self.create_calls = 0
        self.delete_calls = 0

    async def create_txt_record(self, domain: str, record_name: str, value: str) -> str | None:
        async with self._lock:
            self.create_calls += 1
            self._records.setdefault(record_name, set()).add(value)
        log.debug("memory DNS: %s TXT %s (%s)", record_name, value, domain)
        return f"{record_name}:{value}"

    async def delete_txt_record(
        self,
        domain: str,
        record_name: str,
        value: str,
        provider_ref: str | None = None,
    ) -> None:
        async with self._lock:
            self.delete_calls += 1
            values = self._records.get(record_name)
            if not values:
                return
            values.discard(value)
            if not values:
                del self._records[record_name]
        log.debug("memory DNS: removed %s TXT %s (%s)", record_name, value, domain)

    async def txt_values(self, record_name: str) -> set[str]:
        async with self._lock:
            return set(self._records.get(record_name, ()))

    def records(self) -> dict[str, set[str]]:
        """Snapshot of the record table."""
        return {name: set(values) for name, values in self._records.items()}
