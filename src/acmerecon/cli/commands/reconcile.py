"""Reconciliation subcommands: ``run``, ``reconcile-once``, ``status``."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import signal
from datetime import UTC, datetime

from acmerecon.config import ConfigValidationError, get_config
from acmerecon.core.types import RequestPhase
from acmerecon.metrics.collector import MetricsCollector
from acmerecon.services.renewal import needs_issuance
from acmerecon.services.scheduler import ReconciliationScheduler
from acmerecon.source.registry import load_source
from acmerecon.store.registry import load_secret_store

log = logging.getLogger(__name__)

_METRICS_WRITE_SECONDS = 15.0
_LIVE_SECTIONS = frozenset({"logging", "renewal"})


def build_scheduler(config, metrics: MetricsCollector | None = None) -> ReconciliationScheduler:
    """Wire source, store, solver and authorities from *config*."""
    settings = config.settings
    return ReconciliationScheduler(
        load_source(settings.source),
        load_secret_store(settings.secrets),
        settings,
        metrics=metrics,
    )


def reload_config(scheduler: ReconciliationScheduler) -> list[str]:
    """Re-read the config file and apply the sections that can change live.

    ``logging.level`` and ``renewal`` take effect on the running
    scheduler; other changed sections are reported as needing a restart.
    Returns the applied section names.
    """
    config = get_config()
    current = config.settings
    try:
        new = config.reload_settings()
    except ConfigValidationError as exc:
        log.error("Config reload rejected, keeping current settings: %s", exc)
        return []

    reloaded = []
    if new.logging.level != current.logging.level:
        logging.getLogger("acmerecon").setLevel(new.logging.level)
        reloaded.append(f"logging.level={new.logging.level}")
    if new.renewal != current.renewal:
        scheduler.update_renewal(new.renewal)
        reloaded.append("renewal")

    restart = [
        f.name
        for f in dataclasses.fields(new)
        if f.name not in _LIVE_SECTIONS and getattr(new, f.name) != getattr(current, f.name)
    ]
    if restart:
        log.warning("Config sections changed but need a restart: %s", ", ".join(restart))
    if reloaded:
        log.info("Config hot-reloaded sections: %s", ", ".join(reloaded))
    else:
        log.info("Config reload requested but no live-reloadable changes detected")
    return reloaded


def _install_signal_handlers(scheduler: ReconciliationScheduler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform (e.g. Windows event loops)
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, scheduler.stop)
    if hasattr(signal, "SIGHUP"):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGHUP, reload_config, scheduler)


async def _write_metrics(metrics: MetricsCollector, path: str) -> None:
    try:
        await asyncio.to_thread(metrics.write_textfile, path)
    except OSError as exc:
        log.warning("Could not write metrics file %s: %s", path, exc)


async def _publish_metrics(metrics: MetricsCollector, path: str) -> None:
    while True:
        await _write_metrics(metrics, path)
        await asyncio.sleep(_METRICS_WRITE_SECONDS)


def run_forever(config, args) -> int:
    """Reconcile until SIGINT/SIGTERM, then drain in-flight runs.

    SIGHUP reloads the configuration file.
    """
    metrics = MetricsCollector()
    metrics_file = getattr(args, "metrics_file", None)

    async def _main() -> None:
        scheduler = build_scheduler(config, metrics)
        _install_signal_handlers(scheduler)
        publisher = None
        if metrics_file:
            publisher = asyncio.create_task(_publish_metrics(metrics, metrics_file))
        try:
            await scheduler.run()
        finally:
            if publisher is not None:
                publisher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await publisher
                await _write_metrics(metrics, metrics_file)

    asyncio.run(_main())
    log.info("Exiting after graceful shutdown")
    return 0


def run_once(config, args) -> int:
    """One full pass; exit code 1 if any request ended up failed."""
    metrics = MetricsCollector()
    metrics_file = getattr(args, "metrics_file", None)

    async def _main() -> int:
        scheduler = build_scheduler(config, metrics)
        try:
            started = await scheduler.reconcile_once(wait=True)
        finally:
            await scheduler.shutdown()
            if metrics_file:
                await _write_metrics(metrics, metrics_file)
        failed = [r.name for r in scheduler.requests() if r.status.phase == RequestPhase.FAILED]
        for request in scheduler.requests():
            status = request.status
            line = f"{request.name}: {status.phase.value}"
            if status.last_error_kind is not None:
                line += f" ({status.last_error_kind.value}: {status.last_error_detail})"
            print(line)  # noqa: T201
        log.info("Reconciliation pass done: %d run(s) started, %d failed", len(started), len(failed))
        return 1 if failed else 0

    return asyncio.run(_main())


def run_status(config, args) -> int:
    """Print stored certificate state and pending drift for every request."""

    async def _main() -> None:
        settings = config.settings
        source = load_source(settings.source)
        store = load_secret_store(settings.secrets)
        now = datetime.now(UTC)

        for request in await source.list():
            stored = await store.get(request.secret_name)
            reason = needs_issuance(request, stored, now, settings.renewal)
            version = f"v{stored.version}" if stored else "-"
            print(  # noqa: T201
                f"{request.name:<24} secret={request.secret_name} {version:<5} "
                f"{'up to date' if reason is None else 'needs issuance: ' + reason}",
            )

    asyncio.run(_main())
    return 0
