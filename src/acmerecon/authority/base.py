"""Authority client capability set.

Any class satisfying :class:`AuthorityClient` can be selected through
``IssuerConfig.backend`` (``acme`` or ``ext:package.module.Class``).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable

    from acmerecon.core.types import OrderStatus
    from acmerecon.models.certificate import IssuedCertificate
    from acmerecon.models.challenge import Challenge
    from acmerecon.models.order import Order


@runtime_checkable
class AuthorityClient(Protocol):
    """Order, challenge and finalize operations against a certificate authority.

    Implementations raise only :class:`~acmerecon.core.errors.ReconcileError`
    subclasses: ``TransientNetworkError`` and ``RateLimited`` once their
    retry budgets are spent, ``AuthorityRejected`` for terminal refusals.
    """

    async def create_order(self, domains: Iterable[str], *, request_name: str = "") -> Order:
        """Open a new order for *domains*."""
        ...

    async def get_challenges(self, order: Order) -> list[Challenge]:
        """Return one DNS-01 challenge per domain still needing validation."""
        ...

    async def notify_ready(self, challenge: Challenge) -> None:
        """Tell the authority the proof for *challenge* is published."""
        ...

    async def poll_order_status(self, order: Order) -> OrderStatus:
        """Return the authority's current status of *order*."""
        ...

    async def finalize(self, order: Order, csr: bytes) -> IssuedCertificate:
        """Submit the DER *csr* and return the signed chain.

        The returned certificate carries an empty ``private_key_pem``;
        the caller attaches the key it generated the CSR with.
        """
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
