"""Secret store capability set."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

    from acmerecon.models.secret import SecretVersion

_SECRET_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,252}$")


def validate_secret_name(name: str) -> str:
    """Return *name* unchanged, or raise ``ValueError`` if it is unsafe."""
    if not _SECRET_NAME_RE.match(name) or ".." in name:
        msg = f"Invalid secret name {name!r}"
        raise ValueError(msg)
    return name


@runtime_checkable
class SecretStore(Protocol):
    """Versioned key/value secrets with atomic replacement.

    ``put`` either publishes a complete new version or leaves the
    previous one in place and raises
    :class:`~acmerecon.core.errors.SecretStoreWriteFailure`.
    """

    async def get(self, name: str) -> SecretVersion | None:
        ...

    async def put(self, name: str, data: Mapping[str, str]) -> SecretVersion:
        ...
