"""Desired-state source loader."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from acmerecon.source.base import request_from_dict
from acmerecon.source.file import FileDesiredStateSource
from acmerecon.source.memory import MemoryDesiredStateSource

if TYPE_CHECKING:
    from acmerecon.config.settings import SourceSettings
    from acmerecon.source.base import DesiredStateSource

log = logging.getLogger(__name__)


def load_source(settings: SourceSettings) -> DesiredStateSource:
    """Return the configured desired-state source.

    The ``memory`` backend is seeded with ``source.requests`` from the
    configuration file.

    Raises
    ------
    ValueError
        For an unknown backend, a missing ``path``, or an invalid inline
        request.

    """
    if settings.backend == "memory":
        requests = [request_from_dict(d) for d in settings.requests]
        log.info("Using in-memory desired state with %d request(s)", len(requests))
        return MemoryDesiredStateSource(requests)
    if settings.backend == "file":
        if not settings.path:
            msg = "source.path is required for the file backend"
            raise ValueError(msg)
        log.info("Watching desired-state file %s", settings.path)
        return FileDesiredStateSource(settings.path, poll_seconds=settings.poll_seconds)
    msg = f"Unknown desired-state backend '{settings.backend}'"
    raise ValueError(msg)
