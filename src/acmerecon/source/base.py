"""Desired-state source capability set and request parsing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import jsonschema

from acmerecon.config.reconciler_config import load_schema
from acmerecon.core.types import ChangeType
from acmerecon.models.request import CertificateRequest

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


@dataclass(frozen=True)
class ChangeEvent:
    """A request was added, modified or deleted.

    For ``deleted`` events ``request`` is the last known version.
    """

    type: ChangeType
    request: CertificateRequest


def request_from_dict(d: dict[str, Any]) -> CertificateRequest:
    """Validate and build a :class:`CertificateRequest` from a mapping.

    Raises
    ------
    ValueError
        If *d* does not match the certificate request schema.

    """
    schema = load_schema()
    validator = jsonschema.Draft202012Validator(
        {"$ref": "#/$defs/certificate_request", "$defs": schema["$defs"]},
    )
    errors = sorted(validator.iter_errors(d), key=lambda e: list(e.absolute_path))
    if errors:
        name = d.get("name", "?") if isinstance(d, dict) else "?"
        msg = f"Invalid certificate request '{name}': " + "; ".join(e.message for e in errors)
        raise ValueError(msg)
    return CertificateRequest(
        name=d["name"],
        domains=frozenset(d["domains"]),
        issuer=d["issuer"],
        secret_name=d["secret_name"],
        renew_before_days=d.get("renew_before_days"),
    )


def diff_requests(
    old: dict[str, CertificateRequest],
    new: dict[str, CertificateRequest],
) -> list[ChangeEvent]:
    """Compute change events turning *old* into *new* (both keyed by name)."""
    events = [
        ChangeEvent(ChangeType.DELETED, req) for name, req in sorted(old.items()) if name not in new
    ]
    for name, req in sorted(new.items()):
        previous = old.get(name)
        if previous is None:
            events.append(ChangeEvent(ChangeType.ADDED, req))
        elif previous.desired_key() != req.desired_key():
            events.append(ChangeEvent(ChangeType.MODIFIED, req))
    return events


@runtime_checkable
class DesiredStateSource(Protocol):
    """Where :class:`CertificateRequest` objects come from."""

    async def list(self) -> list[CertificateRequest]:
        """Return every currently declared request."""
        ...

    def watch(self) -> AsyncIterator[ChangeEvent]:
        """Yield change events until cancelled."""
        ...
