"""Issuance state machine.

Drives one :class:`CertificateRequest` from ``Requested`` to ``Issued``
(or ``Failed``)::

    Requested -> OrderCreated -> ChallengesPending -> ChallengesPublished
      -> AwaitingAuthorityValidation -> Finalizing -> Issued

Every transition is checked against
:data:`~acmerecon.core.state.ISSUANCE_TRANSITIONS` and logged.  Every
presented challenge is cleaned up on the way out, whatever the outcome
(cancellation included).  A failed run is retried from ``Requested``
with exponential backoff up to ``issuance.max_run_retries`` times.

Usage::

    machine = IssuanceStateMachine(authority, solver, settings.issuance, settings.authority)
    outcome = await machine.run(request)
    if outcome.succeeded:
        store.put(request.secret_name, outcome.certificate.to_secret_data())
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from acmerecon.core.crypto import build_csr, generate_private_key, private_key_to_pem
from acmerecon.core.errors import (
    AuthorityRejected,
    ChallengePropagationTimeout,
    DeadlineExceeded,
    ReconcileError,
)
from acmerecon.core.retry import Sleep
from acmerecon.core.state import (
    CHALLENGE_TRANSITIONS,
    ISSUANCE_TRANSITIONS,
    ORDER_TRANSITIONS,
    TERMINAL_ISSUANCE_STATES,
    assert_transition,
    log_transition,
)
from acmerecon.core.types import ChallengeStatus, ErrorKind, IssuanceState, OrderStatus
from acmerecon.logging import run_context

if TYPE_CHECKING:
    from collections.abc import Callable

    from acmerecon.authority.base import AuthorityClient
    from acmerecon.config.settings import AuthoritySettings, IssuanceSettings
    from acmerecon.metrics.collector import MetricsCollector
    from acmerecon.models.certificate import IssuedCertificate
    from acmerecon.models.challenge import Challenge, ChallengeHandle
    from acmerecon.models.order import Order
    from acmerecon.models.request import CertificateRequest
    from acmerecon.solver.solver import ChallengeSolver

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuanceOutcome:
    """Result of :meth:`IssuanceStateMachine.run` / ``run_once``."""

    request_name: str
    state: IssuanceState
    attempts: int
    certificate: IssuedCertificate | None = None
    error: ReconcileError | None = None
    history: tuple[IssuanceState, ...] = ()
    order: Order | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == IssuanceState.ISSUED

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None


@dataclass
class _Run:
    """Mutable bookkeeping for one attempt; never escapes the machine."""

    request: CertificateRequest
    run_id: str
    state: IssuanceState = IssuanceState.REQUESTED
    order: Order | None = None
    handles: list[ChallengeHandle] = field(default_factory=list)
    history: list[IssuanceState] = field(default_factory=lambda: [IssuanceState.REQUESTED])


class IssuanceStateMachine:
    """Run issuance attempts for certificate requests.

    Parameters
    ----------
    authority:
        Client for the request's issuer.
    solver:
        DNS-01 challenge solver.
    settings:
        The ``issuance`` configuration section.
    authority_settings:
        The ``authority`` section (order polling interval and timeout).
    metrics:
        Optional :class:`MetricsCollector`.
    sleep, clock:
        Injectable for tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        authority: AuthorityClient,
        solver: ChallengeSolver,
        settings: IssuanceSettings,
        authority_settings: AuthoritySettings,
        *,
        metrics: MetricsCollector | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._authority = authority
        self._solver = solver
        self._settings = settings
        self._authority_settings = authority_settings
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_backoff(self, failures: int) -> float:
        """Delay before run number ``failures + 1``."""
        return min(
            self._settings.run_backoff_base_seconds * (2 ** max(failures - 1, 0)),
            self._settings.run_backoff_max_seconds,
        )

    async def run(self, request: CertificateRequest) -> IssuanceOutcome:
        """Run until issued or ``max_run_retries`` retries have failed."""
        attempt = 0
        while True:
            attempt += 1
            outcome = await self.run_once(request, attempt=attempt)
            if outcome.succeeded:
                return outcome
            if attempt > self._settings.max_run_retries:
                log.error(
                    "Issuance for '%s' failed permanently after %d run(s): %s",
                    request.name,
                    attempt,
                    outcome.error.detail if outcome.error else "unknown error",
                )
                return outcome

            delay = self.run_backoff(attempt)
            log.warning(
                "Issuance run %d for '%s' failed (%s), retrying in %.0fs",
                attempt,
                request.name,
                outcome.error_kind.value if outcome.error_kind else "unknown",
                delay,
            )
            await self._sleep(delay)

    async def run_once(self, request: CertificateRequest, *, attempt: int = 1) -> IssuanceOutcome:
        """Drive a single attempt through the state machine.

        Never raises :class:`ReconcileError`; failures are reported in
        the returned outcome.  :class:`asyncio.CancelledError`
        propagates after cleanup.
        """
        run = _Run(request=request, run_id=uuid.uuid4().hex[:12])
        with run_context(request.name, run.run_id):
            log.info(
                "Starting issuance run %d for %s (%s)",
                attempt,
                request.name,
                ", ".join(sorted(request.domains)),
            )
            try:
                try:
                    async with asyncio.timeout(self._settings.order_deadline_seconds):
                        certificate = await self._drive(run)
                except TimeoutError:
                    msg = (
                        f"Order deadline of {self._settings.order_deadline_seconds:.0f}s "
                        f"exceeded in state {run.state.value}"
                    )
                    raise DeadlineExceeded(msg) from None
            except ReconcileError as exc:
                self._fail(run, exc)
                return IssuanceOutcome(
                    request_name=request.name,
                    state=run.state,
                    attempts=attempt,
                    error=exc,
                    history=tuple(run.history),
                    order=run.order,
                )
            except asyncio.CancelledError:
                if run.state not in TERMINAL_ISSUANCE_STATES:
                    self._advance(run, IssuanceState.FAILED, reason="cancelled")
                self._record_result("cancelled")
                raise
            finally:
                await self._cleanup(run)

            self._record_result("issued")
            return IssuanceOutcome(
                request_name=request.name,
                state=run.state,
                attempts=attempt,
                certificate=certificate,
                history=tuple(run.history),
                order=run.order,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _advance(self, run: _Run, target: IssuanceState, *, reason: str | None = None) -> None:
        assert_transition(run.state, target, ISSUANCE_TRANSITIONS)
        log_transition("issuance", run.request.name, run.state, target, reason=reason)
        run.state = target
        run.history.append(target)
        if self._metrics is not None:
            self._metrics.increment("acmerecon_transitions_total", labels={"state": target.value})

    def _fail(self, run: _Run, exc: ReconcileError) -> None:
        if run.state not in TERMINAL_ISSUANCE_STATES:
            self._advance(run, IssuanceState.FAILED, reason=exc.kind.value)
        log.warning("Issuance for %s failed: %s", run.request.name, exc.detail)
        self._record_result("failed")

    def _record_result(self, result: str) -> None:
        if self._metrics is not None:
            self._metrics.increment("acmerecon_issuance_runs_total", labels={"result": result})

    def _set_order_status(self, run: _Run, status: OrderStatus) -> None:
        assert run.order is not None  # noqa: S101
        if status == run.order.status:
            return
        assert_transition(run.order.status, status, ORDER_TRANSITIONS)
        log_transition("order", run.order.url, run.order.status, status)
        run.order = replace(run.order, status=status)

    def _set_challenge_status(
        self,
        challenge: Challenge,
        status: ChallengeStatus,
        **changes,
    ) -> Challenge:
        assert_transition(challenge.status, status, CHALLENGE_TRANSITIONS)
        log_transition("challenge", challenge.domain, challenge.status, status)
        return replace(challenge, status=status, **changes)

    @staticmethod
    async def _checkpoint() -> None:
        # Yield so a pending cancellation is delivered between transitions
        await asyncio.sleep(0)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _drive(self, run: _Run) -> IssuedCertificate:
        request = run.request

        run.order = await self._authority.create_order(request.domains, request_name=request.name)
        self._advance(run, IssuanceState.ORDER_CREATED, reason=run.order.url)
        await self._checkpoint()

        challenges = await self._authority.get_challenges(run.order)
        run.order = replace(run.order, challenges=tuple(challenges))
        self._advance(run, IssuanceState.CHALLENGES_PENDING)
        await self._checkpoint()

        challenges = await self._publish(run, challenges)
        self._advance(run, IssuanceState.CHALLENGES_PUBLISHED)
        await self._checkpoint()

        for challenge in challenges:
            await self._authority.notify_ready(challenge)
        self._advance(run, IssuanceState.AWAITING_AUTHORITY_VALIDATION)
        await self._checkpoint()

        await self._await_ready(run)
        self._advance(run, IssuanceState.FINALIZING)
        await self._checkpoint()

        certificate = await self._finalize(run)
        self._advance(run, IssuanceState.ISSUED, reason=certificate.serial_number)
        return certificate

    async def _publish(self, run: _Run, challenges: list[Challenge]) -> list[Challenge]:
        """Present every challenge and wait until each is observable."""
        presented: list[Challenge] = []
        for challenge in challenges:
            handle = await self._solver.present(challenge.domain, challenge.txt_value)
            run.handles.append(handle)
            presented.append(
                self._set_challenge_status(challenge, ChallengeStatus.PRESENTED, handle=handle),
            )

        assert run.order is not None  # noqa: S101
        run.order = replace(run.order, challenges=tuple(presented))

        for index, challenge in enumerate(presented):
            try:
                await self._solver.wait_for_propagation(challenge.handle)
            except ChallengePropagationTimeout as exc:
                presented[index] = self._set_challenge_status(
                    challenge,
                    ChallengeStatus.INVALID,
                    error={"detail": exc.detail},
                )
                run.order = replace(run.order, challenges=tuple(presented))
                raise

        return presented

    async def _await_ready(self, run: _Run) -> None:
        """Poll the order until the authority reports it ``ready``."""
        assert run.order is not None  # noqa: S101
        timeout = self._authority_settings.poll_timeout_seconds
        deadline = self._clock() + timeout

        while True:
            status = await self._authority.poll_order_status(run.order)
            if status in (OrderStatus.INVALID, OrderStatus.EXPIRED):
                self._set_order_status(run, status)
                msg = f"Authority marked order {run.order.url} {status.value}"
                raise AuthorityRejected(msg)
            if status == OrderStatus.READY:
                self._set_order_status(run, status)
                return
            if status != OrderStatus.PENDING:
                msg = f"Order {run.order.url} unexpectedly {status.value} before finalize"
                raise AuthorityRejected(msg)

            if self._clock() >= deadline:
                msg = f"Order {run.order.url} not ready after {timeout:.0f}s"
                raise DeadlineExceeded(msg)
            await self._sleep(self._authority_settings.poll_interval_seconds)

    async def _finalize(self, run: _Run) -> IssuedCertificate:
        assert run.order is not None  # noqa: S101
        request = run.request

        key = generate_private_key(self._settings.key_type)
        csr = build_csr(key, request.domains)
        issued = await self._authority.finalize(run.order, csr)
        self._set_order_status(run, OrderStatus.VALID)

        if issued.domains != request.domains:
            msg = (
                f"Issued certificate covers {sorted(issued.domains)}, "
                f"expected {sorted(request.domains)}"
            )
            raise AuthorityRejected(msg)
        return replace(issued, private_key_pem=private_key_to_pem(key))

    async def _cleanup(self, run: _Run) -> None:
        """Remove every presented record; failures are logged, not raised."""
        while run.handles:
            handle = run.handles.pop()
            try:
                await self._solver.cleanup(handle)
            except ReconcileError as exc:
                log.warning("Cleanup of %s failed: %s", handle.record_name, exc.detail)
