"""In-process secret store.

Each write builds a complete :class:`SecretVersion` and swaps the
reference under a lock; readers always get a whole version.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from acmerecon.models.secret import SecretVersion
from acmerecon.store.base import validate_secret_name

if TYPE_CHECKING:
    from collections.abc import Mapping

log = logging.getLogger(__name__)


class MemorySecretStore:
    """Secrets held in memory, with full version history.

    Parameters
    ----------
    max_history:
        Versions kept per secret (current included).

    """

    def __init__(self, *, max_history: int = 10) -> None:
        self._current: dict[str, SecretVersion] = {}
        self._history: dict[str, list[SecretVersion]] = {}
        self._max_history = max_history
        self._lock = asyncio.Lock()

    async def get(self, name: str) -> SecretVersion | None:
        return self._current.get(name)

    async def put(self, name: str, data: Mapping[str, str]) -> SecretVersion:
        validate_secret_name(name)
        async with self._lock:
            previous = self._current.get(name)
            version = SecretVersion(
                version=(previous.version + 1) if previous else 1,
                data=dict(data),
                written_at=datetime.now(UTC),
            )
            history = self._history.setdefault(name, [])
            history.append(version)
            del history[: -self._max_history]
            self._current[name] = version
        log.debug("Secret %s now at version %d", name, version.version)
        return version

    def history(self, name: str) -> list[SecretVersion]:
        return list(self._history.get(name, []))
