"""ACMERECON command-line entry point.

Usage::

    acmerecon -c /etc/acmerecon/config.yaml
    acmerecon -c config.yaml --validate-only
    acmerecon -c config.yaml run
    acmerecon -c config.yaml reconcile-once
    acmerecon -c config.yaml --metrics-file /var/lib/node_exporter/acmerecon.prom run
    acmerecon -c config.yaml status
    python -m acmerecon -c config.yaml
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

log = logging.getLogger(__name__)


def _get_version() -> str:
    from acmerecon import __version__

    return __version__


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acmerecon",
        description="ACMERECON - certificate lifecycle reconciler (ACME DNS-01)",
    )
    parser.add_argument(
        "-c",
        "--config",
        required=True,
        metavar="PATH",
        help="Path to the configuration file (YAML or JSON).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug output (full tracebacks, verbose logging).",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        default=False,
        help="Validate the configuration file and exit.",
    )
    parser.add_argument(
        "--metrics-file",
        metavar="PATH",
        default=None,
        help="Write Prometheus text-format counters to PATH (textfile collector).",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Reconcile continuously until SIGINT/SIGTERM")
    subparsers.add_parser("reconcile-once", help="Run one reconciliation pass and exit")
    subparsers.add_parser("status", help="Show each request's stored certificate and drift")

    return parser


def _print_error(message: str) -> None:
    """Print a user-facing error to stderr."""
    print(f"acmerecon: error: {message}", file=sys.stderr)  # noqa: T201


def main(argv: list[str] | None = None) -> None:
    """CLI entry point.  Parses arguments, loads config, dispatches."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    # -- resolve config path ---
    config_path = Path(args.config)
    if not config_path.is_file():
        _print_error(f"configuration file not found: {config_path}")
        sys.exit(1)

    # -- bootstrap logging early (basic stderr until config is loaded) ---
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    # -- load & validate config ---
    try:
        from acmerecon.config import ConfigValidationError, ReconcilerConfig

        config = ReconcilerConfig(config_file=config_path)
    except ConfigValidationError as exc:
        _print_error(str(exc))
        sys.exit(1)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(f"failed to load configuration: {exc}")
        sys.exit(1)

    # -- replace bootstrap logging with structured logging ---
    from acmerecon.logging import configure_logging

    configure_logging(config.settings.logging)
    if args.debug:
        logging.getLogger("acmerecon").setLevel(logging.DEBUG)

    if args.validate_only:
        _print_settings_summary(config)
        sys.exit(0)

    # -- dispatch subcommand ---
    from acmerecon.cli.commands import reconcile

    command = args.command or "run"
    try:
        if command == "status":
            code = reconcile.run_status(config, args)
        elif command == "reconcile-once":
            code = reconcile.run_once(config, args)
        else:
            code = reconcile.run_forever(config, args)
    except Exception as exc:
        if args.debug:
            raise
        _print_error(str(exc))
        sys.exit(1)
    sys.exit(code)


def _print_settings_summary(config) -> None:
    """Print a short summary of the loaded configuration."""
    s = config.settings
    lines = [
        f"Configuration OK: {config}",
        f"  issuers:   {', '.join(i.name for i in s.issuers)}",
        f"  dns:       provider={s.dns.provider} "
        f"propagation_timeout={s.dns.propagation_timeout_seconds:.0f}s",
        f"  source:    backend={s.source.backend}",
        f"  secrets:   backend={s.secrets.backend}",
        f"  renewal:   days={s.renewal.renew_before_days} "
        f"fraction={s.renewal.renew_before_fraction:.3f}",
    ]
    print("\n".join(lines))  # noqa: T201
