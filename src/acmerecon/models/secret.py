"""SecretVersion entity."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType


@dataclass(frozen=True)
class SecretVersion:
    """One immutable, fully written version of a target secret.

    ``data`` is a read-only mapping; a reader holding a version never
    sees it change underneath, whatever writers do afterwards.
    """

    version: int
    data: Mapping[str, str]
    written_at: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.data, MappingProxyType):
            object.__setattr__(self, "data", MappingProxyType(dict(self.data)))
