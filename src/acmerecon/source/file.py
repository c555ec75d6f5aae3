"""YAML-file desired-state source.

The file holds either a list of requests or a mapping with a
``requests`` list::

    requests:
      - name: web
        domains: [example.com, www.example.com]
        issuer: letsencrypt
        secret_name: web-tls

:meth:`FileDesiredStateSource.watch` polls the file's mtime and emits
the difference against the last good snapshot.  A file that fails to
parse is logged and ignored until it changes again.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from acmerecon.core.retry import Sleep
from acmerecon.source.base import ChangeEvent, diff_requests, request_from_dict

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from acmerecon.models.request import CertificateRequest

log = logging.getLogger(__name__)


def _parse(text: str) -> dict[str, CertificateRequest]:
    data = yaml.safe_load(text)
    if data is None:
        items = []
    elif isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = data.get("requests") or []
    else:
        msg = "expected a list of requests or a mapping with 'requests'"
        raise ValueError(msg)
    if not isinstance(items, list):
        msg = "'requests' must be a list"
        raise ValueError(msg)

    requests: dict[str, CertificateRequest] = {}
    for item in items:
        req = request_from_dict(item)
        if req.name in requests:
            msg = f"duplicate request name '{req.name}'"
            raise ValueError(msg)
        requests[req.name] = req
    return requests


class FileDesiredStateSource:
    """Requests read from a YAML file, polled for changes.

    Parameters
    ----------
    path:
        The YAML file.  A missing file means "no requests".
    poll_seconds:
        Interval between mtime checks in :meth:`watch`.

    """

    def __init__(
        self,
        path: str | Path,
        *,
        poll_seconds: float = 15.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._path = Path(path)
        self._poll_seconds = poll_seconds
        self._sleep = sleep
        self._mtime: float | None = None
        self._snapshot: dict[str, CertificateRequest] = {}

    def _stat_mtime(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _read(self) -> dict[str, CertificateRequest]:
        """Parse the file; raises ``OSError``/``ValueError``/``yaml.YAMLError``."""
        if not self._path.exists():
            return {}
        return _parse(self._path.read_text(encoding="utf-8"))

    async def _refresh(self) -> list[ChangeEvent]:
        mtime = await asyncio.to_thread(self._stat_mtime)
        if mtime == self._mtime:
            return []
        self._mtime = mtime
        try:
            new = await asyncio.to_thread(self._read)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            log.error("Ignoring invalid desired-state file %s: %s", self._path, exc)  # noqa: TRY400
            return []
        events = diff_requests(self._snapshot, new)
        self._snapshot = new
        if events:
            log.info("Desired-state file %s changed: %d event(s)", self._path, len(events))
        return events

    async def list(self) -> list[CertificateRequest]:
        await self._refresh()
        return [self._snapshot[name] for name in sorted(self._snapshot)]

    async def watch(self) -> AsyncIterator[ChangeEvent]:
        while True:
            for event in await self._refresh():
                yield event
            await self._sleep(self._poll_seconds)
