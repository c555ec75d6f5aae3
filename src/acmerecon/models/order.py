"""Order entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from acmerecon.core.types import OrderStatus
from acmerecon.models.challenge import Challenge


@dataclass(frozen=True)
class Order:
    """One in-flight issuance attempt against the authority."""

    url: str
    request_name: str
    domains: frozenset[str]
    status: OrderStatus
    authorization_urls: tuple[str, ...]
    finalize_url: str
    certificate_url: str | None = None
    expires: datetime | None = None
    challenges: tuple[Challenge, ...] = ()
    error: dict | None = None
