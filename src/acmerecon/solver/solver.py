"""DNS-01 challenge solver.

Publishes proof-of-control TXT records through a :class:`DnsProvider`,
removes them again, and waits until a published record is observable
before the authority is told to validate it.

Usage::

    solver = ChallengeSolver(provider, lookup, settings.dns)
    handle = await solver.present("example.com", txt_value)
    await solver.wait_for_propagation(handle)
    ...
    await solver.cleanup(handle)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING

from acmerecon.core.errors import ChallengePropagationTimeout, ProviderError, ReconcileError
from acmerecon.models.challenge import ChallengeHandle
from acmerecon.solver.base import record_name_for

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

    from acmerecon.config.settings import DnsSettings
    from acmerecon.solver.base import DnsProvider, TxtLookup

log = logging.getLogger(__name__)


class ChallengeSolver:
    """Idempotent present/cleanup on top of a DNS provider.

    Parameters
    ----------
    provider:
        The configured DNS provider.
    lookup:
        Source of truth for "is the record visible yet".
    settings:
        The ``dns`` configuration section (propagation timeout / poll).
    sleep, clock:
        Injectable for tests; default to :func:`asyncio.sleep` and
        :func:`time.monotonic`.

    """

    def __init__(
        self,
        provider: DnsProvider,
        lookup: TxtLookup,
        settings: DnsSettings,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._lookup = lookup
        self._settings = settings
        self._sleep = sleep
        self._clock = clock
        self._presented: dict[tuple[str, str], ChallengeHandle] = {}
        self._holders: dict[tuple[str, str], int] = {}
        self._locks: dict[tuple[str, str], tuple[asyncio.Lock, int]] = {}

    @contextlib.asynccontextmanager
    async def _guard(self, key: tuple[str, str]) -> AsyncIterator[None]:
        """Serialize work on one (domain, token); the lock lives while it has users."""
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users == 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    async def present(self, domain: str, token: str) -> ChallengeHandle:
        """Publish TXT ``_acme-challenge.<domain>`` with value *token*.

        Presenting an already-present token for the same domain returns
        the existing handle without touching the provider again; each
        such call must be matched by a :meth:`cleanup`, and the record
        is only deleted once the last holder releases it.

        Raises
        ------
        ProviderError
            If the provider fails to create the record.

        """
        key = (domain, token)
        async with self._guard(key):
            existing = self._presented.get(key)
            if existing is not None:
                self._holders[key] += 1
                log.debug(
                    "TXT for %s already presented, reusing handle (%d holders)",
                    domain,
                    self._holders[key],
                )
                return existing

            record_name = record_name_for(domain)
            try:
                ref = await self._provider.create_txt_record(domain, record_name, token)
            except ReconcileError:
                raise
            except Exception as exc:
                msg = f"DNS provider failed to create {record_name}: {exc}"
                raise ProviderError(msg) from exc

            handle = ChallengeHandle(
                domain=domain,
                record_name=record_name,
                value=token,
                provider_ref=ref,
            )
            self._presented[key] = handle
            self._holders[key] = 1
            log.info("Presented DNS-01 record %s", record_name)
            return handle

    async def cleanup(self, handle: ChallengeHandle) -> None:
        """Release *handle*; the record is removed when its last holder lets go.

        Cleaning up a handle that is not presented still asks the
        provider to delete it; missing records are a no-op.

        Raises
        ------
        ProviderError
            If the provider fails to delete an existing record.

        """
        key = (handle.domain, handle.value)
        async with self._guard(key):
            holders = self._holders.get(key, 0)
            if holders > 1:
                self._holders[key] = holders - 1
                log.debug(
                    "DNS-01 record %s still held by %d run(s), keeping it",
                    handle.record_name,
                    holders - 1,
                )
                return

            self._presented.pop(key, None)
            self._holders.pop(key, None)
            try:
                await self._provider.delete_txt_record(
                    handle.domain,
                    handle.record_name,
                    handle.value,
                    handle.provider_ref,
                )
            except ReconcileError:
                raise
            except Exception as exc:
                msg = f"DNS provider failed to delete {handle.record_name}: {exc}"
                raise ProviderError(msg) from exc
        log.info("Cleaned up DNS-01 record %s", handle.record_name)

    async def is_visible(self, handle: ChallengeHandle) -> bool:
        values = await self._lookup.txt_values(handle.record_name)
        return handle.value in values

    async def wait_for_propagation(
        self,
        handle: ChallengeHandle,
        timeout: float | None = None,
    ) -> None:
        """Poll until *handle* is observable or *timeout* elapses.

        Raises
        ------
        ChallengePropagationTimeout
            If the record is still not visible after the timeout.

        """
        timeout = self._settings.propagation_timeout_seconds if timeout is None else timeout
        interval = self._settings.propagation_poll_seconds
        deadline = self._clock() + timeout
        checks = 0

        while True:
            checks += 1
            if await self.is_visible(handle):
                log.info(
                    "DNS-01 record %s visible after %d check(s)",
                    handle.record_name,
                    checks,
                )
                return

            remaining = deadline - self._clock()
            if remaining <= 0:
                msg = (
                    f"TXT record {handle.record_name} not observable after "
                    f"{timeout:.0f}s ({checks} check(s))"
                )
                raise ChallengePropagationTimeout(msg, domain=handle.domain)

            log.debug(
                "DNS-01 record %s not visible yet, next check in %.1fs",
                handle.record_name,
                min(interval, remaining),
            )
            await self._sleep(min(interval, remaining))
