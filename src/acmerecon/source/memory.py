"""Programmatic desired-state source.

Callers :meth:`apply` and :meth:`delete` requests; a single consumer
receives the resulting events from :meth:`watch`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from acmerecon.source.base import ChangeEvent, diff_requests

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from acmerecon.models.request import CertificateRequest

log = logging.getLogger(__name__)


class MemoryDesiredStateSource:
    def __init__(self, requests: Iterable[CertificateRequest] = ()) -> None:
        self._requests: dict[str, CertificateRequest] = {r.name: r for r in requests}
        self._events: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    async def list(self) -> list[CertificateRequest]:
        return [self._requests[name] for name in sorted(self._requests)]

    def _publish(self, new: dict[str, CertificateRequest]) -> list[ChangeEvent]:
        events = diff_requests(self._requests, new)
        self._requests = new
        for event in events:
            log.debug("Desired state %s: %s", event.type.value, event.request.name)
            self._events.put_nowait(event)
        return events

    def apply(self, request: CertificateRequest) -> list[ChangeEvent]:
        """Add or replace *request*; an unchanged request emits nothing."""
        return self._publish({**self._requests, request.name: request})

    def delete(self, name: str) -> list[ChangeEvent]:
        """Remove the request called *name*; unknown names emit nothing."""
        return self._publish({k: v for k, v in self._requests.items() if k != name})

    async def watch(self) -> AsyncIterator[ChangeEvent]:
        while True:
            yield await self._events.get()
