"""Error taxonomy for the reconciler.

Every failure raised by the authority client, the challenge solver or a
secret store is a :class:`ReconcileError` carrying an :class:`ErrorKind`
and a ``retryable`` flag.  The retry combinator and the issuance state
machine decide what to do purely from those two attributes.
"""

from __future__ import annotations

from typing import Any, ClassVar

from acmerecon.core.types import ErrorKind


class ReconcileError(Exception):
    """Base class for all reconciler failures.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    retryable:
        Whether the failure is transient and the operation may be retried.

    """

    kind: ClassVar[ErrorKind]
    default_retryable: ClassVar[bool] = False

    def __init__(self, detail: str, *, retryable: bool | None = None) -> None:
        self.detail = detail
        self.retryable = self.default_retryable if retryable is None else retryable
        super().__init__(detail)


class TransientNetworkError(ReconcileError):
    """Connection error, timeout, or 5xx from a remote service."""

    kind = ErrorKind.TRANSIENT_NETWORK
    default_retryable = True


class RateLimited(ReconcileError):
    """The authority asked us to slow down (HTTP 429 / ``rateLimited``).

    Parameters
    ----------
    retry_after:
        Seconds to wait before the next call, when the authority sent a
        ``Retry-After`` hint.

    """

    kind = ErrorKind.RATE_LIMITED
    default_retryable = True

    def __init__(self, detail: str, *, retry_after: float | None = None) -> None:
        super().__init__(detail)
        self.retry_after = retry_after


class AuthorityRejected(ReconcileError):
    """The authority refused the request; terminal for the Order.

    Parameters
    ----------
    problem:
        The RFC 7807 problem document returned by the authority, if any.
    status_code:
        HTTP status code of the rejecting response.

    """

    kind = ErrorKind.AUTHORITY_REJECTED

    def __init__(
        self,
        detail: str,
        *,
        problem: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(detail)
        self.problem = problem or {}
        self.status_code = status_code

    @property
    def problem_type(self) -> str:
        return self.problem.get("type", "")


class ChallengePropagationTimeout(ReconcileError):
    """A TXT record did not become observable within the configured timeout."""

    kind = ErrorKind.PROPAGATION_TIMEOUT

    def __init__(self, detail: str, *, domain: str = "") -> None:
        super().__init__(detail)
        self.domain = domain


class SecretStoreWriteFailure(ReconcileError):
    """Writing a secret failed; the previous version is left intact."""

    kind = ErrorKind.SECRET_STORE_WRITE
    default_retryable = True


class DeadlineExceeded(ReconcileError):
    """The per-Order deadline or a phase timeout elapsed."""

    kind = ErrorKind.DEADLINE_EXCEEDED


class ProviderError(ReconcileError):
    """A DNS provider failed to create or delete a record."""

    kind = ErrorKind.PROVIDER_ERROR
    default_retryable = True


class ProtocolError(ReconcileError):
    """The authority returned something we could not make sense of."""

    kind = ErrorKind.AUTHORITY_REJECTED
