"""Reconciliation scheduler.

Compares every declared :class:`CertificateRequest` with the certificate
stored in its target secret, on a timer and on desired-state change
events, and starts an issuance run when the two have drifted apart.

Runs are tracked in an explicit map from request name to
:class:`asyncio.Task` owned by the scheduler.  A trigger for a request
whose run is still in flight is suppressed, so a request never has more
than one run (and therefore one open Order) at a time.  A global
semaphore caps concurrent runs across requests.

Usage::

    scheduler = ReconciliationScheduler(source, store, settings)
    await scheduler.run()          # until stop()
    ...
    scheduler.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from acmerecon.authority.registry import load_authority_client
from acmerecon.core.errors import AuthorityRejected, ReconcileError
from acmerecon.core.retry import RetryPolicy, Sleep, retry_async
from acmerecon.core.types import ChangeType, RequestPhase
from acmerecon.services.issuance import IssuanceStateMachine
from acmerecon.services.renewal import needs_issuance
from acmerecon.solver.registry import build_solver
from acmerecon.source.base import diff_requests

if TYPE_CHECKING:
    from collections.abc import Callable

    from acmerecon.authority.base import AuthorityClient
    from acmerecon.config.settings import ReconcilerSettings, RenewalSettings
    from acmerecon.metrics.collector import MetricsCollector
    from acmerecon.models.certificate import IssuedCertificate
    from acmerecon.models.issuer import IssuerConfig
    from acmerecon.models.request import CertificateRequest, RequestStatus
    from acmerecon.solver.solver import ChallengeSolver
    from acmerecon.source.base import ChangeEvent, DesiredStateSource
    from acmerecon.store.base import SecretStore

log = logging.getLogger(__name__)

# Metadata keys written next to tls.crt / tls.key
META_REQUEST = "acmerecon.request"
META_SERIAL = "acmerecon.serial"
META_NOT_AFTER = "acmerecon.not-after"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconciliationScheduler:
    """Drive desired state towards stored certificates.

    Parameters
    ----------
    source:
        Where certificate requests come from.
    store:
        Where issued certificates are written.
    settings:
        The full settings tree.
    solver:
        Challenge solver shared by all runs; built from ``settings.dns``
        when omitted.
    authority_factory:
        Returns an :class:`AuthorityClient` for an issuer; defaults to
        :func:`load_authority_client`.  Clients are cached per issuer.
    metrics:
        Optional :class:`MetricsCollector`.
    clock:
        Wall clock used for renewal decisions and status timestamps.
    sleep:
        Passed to the state machines and the secret-write retry.

    """

    def __init__(  # noqa: PLR0913
        self,
        source: DesiredStateSource,
        store: SecretStore,
        settings: ReconcilerSettings,
        *,
        solver: ChallengeSolver | None = None,
        authority_factory: Callable[[IssuerConfig], AuthorityClient] | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._source = source
        self._store = store
        self._settings = settings
        self._solver = solver
        self._authority_factory = authority_factory or (
            lambda issuer: load_authority_client(issuer, settings.authority, metrics=metrics)
        )
        self._metrics = metrics
        self._clock = clock
        self._sleep = sleep

        self._requests: dict[str, CertificateRequest] = {}
        self._runs: dict[str, asyncio.Task] = {}
        self._clients: dict[str, AuthorityClient] = {}
        self._semaphore = asyncio.Semaphore(settings.scheduler.max_concurrent_runs)
        self._stop_event = asyncio.Event()
        self._write_policy = RetryPolicy(
            max_attempts=settings.secrets.write_max_attempts,
            base_delay=1.0,
            max_delay=30.0,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._runs)

    def requests(self) -> list[CertificateRequest]:
        return [self._requests[name] for name in sorted(self._requests)]

    def status(self, name: str) -> RequestStatus:
        """Return the status of request *name*; raises ``KeyError`` if unknown."""
        return self._requests[name].status

    def run_task(self, name: str) -> asyncio.Task | None:
        return self._runs.get(name)

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    async def handle_change(self, event: ChangeEvent) -> None:
        """Apply one desired-state change and re-evaluate the request."""
        request = event.request
        name = request.name

        if event.type == ChangeType.DELETED:
            if self._requests.pop(name, None) is not None:
                log.info("Request '%s' deleted", name)
            await self._cancel_run(name, reason="request deleted")
            return

        current = self._requests.get(name)
        if current is None:
            log.info("Request '%s' added", name)
            self._requests[name] = request
        elif current.desired_key() != request.desired_key():
            log.info("Request '%s' modified", name)
            await self._cancel_run(name, reason="request modified")
            self._requests[name] = request

        await self.evaluate(self._requests[name])

    async def _sync(self) -> None:
        declared = {r.name: r for r in await self._source.list()}
        for event in diff_requests(self._requests, declared):
            if event.type == ChangeType.DELETED:
                await self.handle_change(event)
            else:
                # Evaluated below together with every other request
                current = self._requests.get(event.request.name)
                if current is not None:
                    await self._cancel_run(current.name, reason="request modified")
                self._requests[event.request.name] = event.request

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, request: CertificateRequest, *, force: bool = False) -> str | None:
        """Start a run for *request* if it has drifted; return the reason.

        Requests with a run in flight are skipped, as are permanently
        failed requests unless *force* is set.
        """
        name = request.name
        if name in self._runs:
            log.debug("Run for '%s' already in flight, trigger suppressed", name)
            return None
        if request.status.phase == RequestPhase.FAILED and not force:
            log.debug("Request '%s' permanently failed, awaiting a change to the request", name)
            return None

        stored = await self._store.get(request.secret_name)
        reason = "manual trigger" if force else needs_issuance(
            request,
            stored,
            self._clock(),
            self._settings.renewal,
        )
        if reason is None:
            if request.status.phase != RequestPhase.READY and stored is not None:
                self._set_status(name, phase=RequestPhase.READY, secret_version=stored.version)
            return None

        if self._start_run(request, reason) is None:
            return None
        return reason

    def trigger(self, name: str) -> asyncio.Task | None:
        """Start a run for *name* now, clearing a permanent failure.

        Returns the (new or already running) task, or ``None`` if the
        request is unknown.
        """
        request = self._requests.get(name)
        if request is None:
            return None
        if name in self._runs:
            return self._runs[name]
        return self._start_run(request, "manual trigger")

    async def reconcile_once(self, *, wait: bool = False) -> list[str]:
        """One full pass: sync desired state and evaluate every request.

        Returns the names of requests for which a run was started.  With
        *wait*, returns only after every in-flight run has finished.
        """
        await self._sync()
        started = []
        for request in self.requests():
            try:
                reason = await self.evaluate(request)
            except Exception:
                log.exception("Evaluating request '%s' failed", request.name)
                continue
            if reason is not None:
                started.append(request.name)
        if wait:
            await self.wait_idle()
        return started

    async def wait_idle(self) -> None:
        """Wait until no run is in flight."""
        while self._runs:
            await asyncio.gather(*self._runs.values(), return_exceptions=True)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _start_run(self, request: CertificateRequest, reason: str) -> asyncio.Task | None:
        name = request.name
        if name in self._runs:
            log.debug("Run for '%s' already in flight, trigger suppressed", name)
            return None

        log.info("Triggering issuance for '%s': %s", name, reason)
        task = asyncio.create_task(self._run(request), name=f"issuance-{name}")
        self._runs[name] = task

        def _done(t: asyncio.Task) -> None:
            if self._runs.get(name) is t:
                del self._runs[name]

        task.add_done_callback(_done)
        return task

    async def _cancel_run(self, name: str, *, reason: str) -> None:
        task = self._runs.get(name)
        if task is None or task.done():
            return
        log.info("Cancelling run for '%s': %s", name, reason)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _client_for(self, issuer_name: str) -> AuthorityClient:
        client = self._clients.get(issuer_name)
        if client is None:
            try:
                issuer = self._settings.issuer(issuer_name)
            except KeyError as exc:
                msg = f"Unknown issuer '{issuer_name}'"
                raise AuthorityRejected(msg) from exc
            client = self._authority_factory(issuer)
            self._clients[issuer_name] = client
        return client

    def _machine_for(self, request: CertificateRequest) -> IssuanceStateMachine:
        if self._solver is None:
            self._solver = build_solver(self._settings.dns)
        return IssuanceStateMachine(
            self._client_for(request.issuer),
            self._solver,
            self._settings.issuance,
            self._settings.authority,
            metrics=self._metrics,
            sleep=self._sleep,
        )

    async def _run(self, request: CertificateRequest) -> None:
        name = request.name
        async with self._semaphore:
            self._set_status(name, phase=RequestPhase.ISSUING)
            try:
                outcome = await self._machine_for(request).run(request)
                if not outcome.succeeded:
                    self._set_status(
                        name,
                        phase=RequestPhase.FAILED,
                        attempts=outcome.attempts,
                        last_error_kind=outcome.error_kind,
                        last_error_detail=outcome.error.detail if outcome.error else None,
                    )
                    return

                version = await self._write_secret(request, outcome.certificate)
                self._set_status(
                    name,
                    phase=RequestPhase.READY,
                    attempts=outcome.attempts,
                    last_error_kind=None,
                    last_error_detail=None,
                    not_after=outcome.certificate.expires_at,
                    secret_version=version,
                )
                log.info(
                    "Certificate for '%s' stored in '%s' (version %d, expires %s)",
                    name,
                    request.secret_name,
                    version,
                    outcome.certificate.expires_at.isoformat(),
                )
            except ReconcileError as exc:
                self._set_status(
                    name,
                    phase=RequestPhase.FAILED,
                    last_error_kind=exc.kind,
                    last_error_detail=exc.detail,
                )
            except Exception as exc:
                log.exception("Unexpected error reconciling '%s'", name)
                self._set_status(
                    name,
                    phase=RequestPhase.FAILED,
                    last_error_kind=None,
                    last_error_detail=str(exc),
                )

    async def _write_secret(self, request: CertificateRequest, cert: IssuedCertificate) -> int:
        data = {
            **cert.to_secret_data(),
            META_REQUEST: request.name,
            META_SERIAL: cert.serial_number,
            META_NOT_AFTER: cert.expires_at.isoformat(),
        }
        try:
            version = await retry_async(
                lambda: self._store.put(request.secret_name, data),
                self._write_policy,
                sleep=self._sleep,
                description=f"write secret {request.secret_name}",
            )
        except ReconcileError:
            self._count_write("failed")
            raise
        self._count_write("ok")
        return version.version

    def _count_write(self, result: str) -> None:
        if self._metrics is not None:
            self._metrics.increment("acmerecon_secret_writes_total", labels={"result": result})

    def _set_status(self, name: str, **changes) -> None:
        request = self._requests.get(name)
        if request is None:
            return
        status = replace(request.status, updated_at=self._clock(), **changes)
        self._requests[name] = replace(request, status=status)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        async for event in self._source.watch():
            try:
                await self.handle_change(event)
            except Exception:
                log.exception("Handling %s event for '%s' failed", event.type.value, event.request.name)

    async def run(self) -> None:
        """Reconcile on every tick and on change events until :meth:`stop`."""
        self._stop_event.clear()
        watcher = asyncio.create_task(self._watch_loop(), name="desired-state-watch")
        log.info(
            "Reconciliation scheduler started (interval=%.0fs)",
            self._settings.renewal.check_interval_seconds,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.reconcile_once()
                except Exception:
                    log.exception("Reconciliation pass failed")
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self._settings.renewal.check_interval_seconds,
                    )
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            await self.shutdown()

    def update_renewal(self, renewal: RenewalSettings) -> None:
        """Swap in reloaded renewal thresholds; the next pass uses them."""
        self._settings = replace(self._settings, renewal=renewal)

    def stop(self) -> None:
        self._stop_event.set()

    async def shutdown(self, timeout: float | None = None) -> None:
        """Let in-flight runs drain for *timeout* seconds, then cancel them."""
        timeout = self._settings.scheduler.shutdown_timeout_seconds if timeout is None else timeout
        pending = list(self._runs.values())
        if pending:
            log.info("Waiting up to %.0fs for %d in-flight run(s)", timeout, len(pending))
            _done, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                log.warning("Cancelled %d run(s) at shutdown", len(still_running))

        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
        log.info("Reconciliation scheduler stopped")
