"""Filesystem secret store.

Layout::

    <root>/<secret_name>/bundle.json

The bundle holds the version number, write time and every data key.
A new version is written to a temporary file in the same directory,
flushed, and moved over ``bundle.json`` with :func:`os.replace`, so a
reader sees either the old bundle or the new one, never a mix.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from acmerecon.core.errors import SecretStoreWriteFailure
from acmerecon.models.secret import SecretVersion
from acmerecon.store.base import validate_secret_name

if TYPE_CHECKING:
    from collections.abc import Mapping

log = logging.getLogger(__name__)

_BUNDLE = "bundle.json"


class FileSecretStore:
    """Secrets persisted as one JSON bundle per secret directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def _bundle_path(self, name: str) -> Path:
        return self._root / validate_secret_name(name) / _BUNDLE

    def _read(self, name: str) -> SecretVersion | None:
        path = self._bundle_path(name)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return SecretVersion(
                version=int(raw["version"]),
                data={str(k): str(v) for k, v in raw["data"].items()},
                written_at=datetime.fromisoformat(raw["written_at"]),
            )
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            log.warning("Secret bundle %s unreadable, treating as absent: %s", path, exc)
            return None

    def _write(self, name: str, data: Mapping[str, str]) -> SecretVersion:
        path = self._bundle_path(name)
        previous = self._read(name)
        version = SecretVersion(
            version=(previous.version + 1) if previous else 1,
            data=dict(data),
            written_at=datetime.now(UTC),
        )
        payload = json.dumps(
            {
                "version": version.version,
                "written_at": version.written_at.isoformat(),
                "data": dict(version.data),
            },
            indent=2,
            sort_keys=True,
        )

        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".bundle-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            msg = f"Failed to write secret {name} to {path}: {exc}"
            raise SecretStoreWriteFailure(msg) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

        return version

    async def get(self, name: str) -> SecretVersion | None:
        return await asyncio.to_thread(self._read, name)

    async def put(self, name: str, data: Mapping[str, str]) -> SecretVersion:
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            version = await asyncio.to_thread(self._write, name, data)
        log.debug("Secret %s written at version %d", name, version.version)
        return version
