"""Secret store loader."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from acmerecon.store.file import FileSecretStore
from acmerecon.store.memory import MemorySecretStore

if TYPE_CHECKING:
    from acmerecon.config.settings import SecretStoreSettings
    from acmerecon.store.base import SecretStore

log = logging.getLogger(__name__)


def load_secret_store(settings: SecretStoreSettings) -> SecretStore:
    """Return the configured secret store.

    Raises
    ------
    ValueError
        For an unknown backend or a ``file`` backend without ``path``.

    """
    if settings.backend == "memory":
        log.info("Using in-memory secret store")
        return MemorySecretStore()
    if settings.backend == "file":
        if not settings.path:
            msg = "secrets.path is required for the file backend"
            raise ValueError(msg)
        log.info("Using file secret store at %s", settings.path)
        return FileSecretStore(settings.path)
    msg = f"Unknown secret store backend '{settings.backend}'"
    raise ValueError(msg)
