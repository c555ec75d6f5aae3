"""ACMERECON configuration loader.

Lifecycle::

    # 1. CLI creates the singleton (once, at startup)
    ReconcilerConfig(config_file="/etc/acmerecon/config.yaml")

    # 2. Any module retrieves it afterwards
    from acmerecon.config import get_config
    cfg = get_config()
    cfg.settings.renewal.renew_before_fraction  # typed access

    # 3. SIGHUP re-reads the file
    cfg.reload_settings()
"""

from __future__ import annotations

import functools
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from acmerecon.config.settings import ReconcilerSettings, build_settings

_SCHEMA_PATH = Path(__file__).parent / "schema.json"

_ENV_RE = re.compile(
    r"^\$\{([^}:]+?)(?::-(.*))?\}$",
    re.DOTALL,
)

_KNOWN_DNS_PROVIDERS = frozenset({"memory", "callback"})
_KNOWN_AUTHORITY_BACKENDS = frozenset({"acme"})

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Module-level singleton reference
# ---------------------------------------------------------------------------
_instance: ReconcilerConfig | None = None


def get_config() -> ReconcilerConfig:
    """Return the initialised configuration singleton.

    Raises :class:`RuntimeError` if :class:`ReconcilerConfig` has not
    been created yet (i.e. the CLI entry point has not run).
    """
    if _instance is None:
        msg = (
            "Configuration not initialised. "
            "ReconcilerConfig must be created with config_file= before calling get_config()."
        )
        raise RuntimeError(msg)
    return _instance


# ---------------------------------------------------------------------------
# Validation error collector
# ---------------------------------------------------------------------------


class ConfigValidationError(Exception):
    """Raised when schema or cross-field validation finds problems."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        body = "\n".join(f"  - {e}" for e in errors)
        super().__init__(f"Configuration validation failed:\n{body}")


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def _resolve_value(value: str, path: str) -> str:
    """Replace ``${VAR}`` or ``${VAR:-default}`` with env var value."""
    match = _ENV_RE.match(value)
    if match is None:
        return value
    var_name = match.group(1)
    fallback = match.group(2)
    resolved = os.environ.get(var_name)
    if resolved is not None:
        return resolved
    if fallback is not None:
        return fallback
    raise ConfigValidationError(
        [
            f"Environment variable '${{{var_name}}}' referenced "
            f"at '{path}' is not set and has no default",
        ],
    )


def _resolve_env_vars(
    data: Any,  # noqa: ANN401
    path: str = "",
) -> None:
    """Walk *data* in-place and resolve ``${VAR}``/``${VAR:-default}`` strings."""
    if isinstance(data, dict):
        for key in data:
            child_path = f"{path}.{key}" if path else key
            if isinstance(data[key], str):
                data[key] = _resolve_value(data[key], child_path)
            elif isinstance(data[key], (dict, list)):
                _resolve_env_vars(data[key], child_path)
    elif isinstance(data, list):
        for idx, item in enumerate(data):
            child_path = f"{path}[{idx}]"
            if isinstance(item, str):
                data[idx] = _resolve_value(item, child_path)
            elif isinstance(item, (dict, list)):
                _resolve_env_vars(item, child_path)


def _read_file(path: Path) -> dict:
    """Parse a YAML or JSON config file into a dict."""
    try:
        with path.open(encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
    except OSError as exc:
        msg = f"Cannot read config file '{path}': {exc}"
        raise ConfigValidationError([msg]) from exc
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        msg = f"Cannot parse config file '{path}': {exc}"
        raise ConfigValidationError([msg]) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        msg = f"Config file '{path}' must contain a mapping at the top level"
        raise ConfigValidationError([msg])
    return data


@functools.lru_cache(maxsize=1)
def load_schema() -> dict:
    """Return the bundled configuration JSON Schema."""
    return json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))


def _schema_errors(data: dict) -> list[str]:
    validator = jsonschema.Draft202012Validator(load_schema())
    errors = []
    for err in sorted(validator.iter_errors(data), key=lambda e: list(e.absolute_path)):
        location = ".".join(str(p) for p in err.absolute_path) or "(root)"
        errors.append(f"{location}: {err.message}")
    return errors


# ---------------------------------------------------------------------------
# Config class
# ---------------------------------------------------------------------------


class ReconcilerConfig:
    """Central configuration for the reconciler.

    The JSON schema is bundled at ``config/schema.json``; users supply
    only ``config_file``.  After construction the typed settings tree is
    available at :pyattr:`settings` and the raw dict via :pyattr:`data`.
    """

    def __init__(self, *, config_file: str | Path) -> None:
        global _instance  # noqa: PLW0603

        self._source = Path(config_file)
        self._data = self._load()
        self.additional_checks()
        self._settings: ReconcilerSettings = build_settings(self._data)
        _instance = self

    # -- lifecycle ----------------------------------------------------------

    def _load(self) -> dict:
        """Load the config file, resolve env vars, then schema-validate.

        Env-var resolution runs **before** schema validation so that
        substituted values (e.g. ``${LOG_LEVEL:-INFO}``) are checked
        against enum constraints in the schema.
        """
        data = _read_file(self._source)
        _resolve_env_vars(data)
        errors = _schema_errors(data)
        if errors:
            raise ConfigValidationError(errors)
        return data

    # -- access -------------------------------------------------------------

    @property
    def data(self) -> dict:
        return self._data

    @property
    def settings(self) -> ReconcilerSettings:
        """Fully-typed, frozen settings tree."""
        return self._settings

    # -- cross-field validation ---------------------------------------------

    def additional_checks(self) -> None:  # noqa: C901, PLR0912
        """Semantic & cross-field validation run after schema validation."""
        errors: list[str] = []
        warnings: list[str] = []

        issuers = self._data.get("issuers") or []
        dns_cfg = self._data.get("dns") or {}
        authority = self._data.get("authority") or {}
        issuance = self._data.get("issuance") or {}
        renewal = self._data.get("renewal") or {}
        source = self._data.get("source") or {}
        secrets = self._data.get("secrets") or {}

        # -- issuers --
        names = [i.get("name") for i in issuers]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            errors.append(f"issuers contain duplicate names: {dupes}")
        for idx, issuer in enumerate(issuers):
            backend = issuer.get("backend", "acme")
            if backend not in _KNOWN_AUTHORITY_BACKENDS and not backend.startswith("ext:"):
                errors.append(
                    f"issuers[{idx}].backend '{backend}' is unknown; "
                    f"built-in options: {sorted(_KNOWN_AUTHORITY_BACKENDS)}",
                )
            if bool(issuer.get("eab_kid")) != bool(issuer.get("eab_hmac_key")):
                errors.append(
                    f"issuers[{idx}]: eab_kid and eab_hmac_key must be set together",
                )
            if not issuer.get("contact"):
                warnings.append(
                    f"issuers[{idx}] ('{issuer.get('name')}') has no contact -- "
                    "the authority cannot send expiry notices",
                )
            if issuer.get("verify_ssl") is False:
                warnings.append(
                    f"issuers[{idx}].verify_ssl is false -- TLS to the authority "
                    "is not verified",
                )

        # -- dns --
        provider = dns_cfg.get("provider", "memory")
        if provider not in _KNOWN_DNS_PROVIDERS and not provider.startswith("ext:"):
            errors.append(
                f"dns.provider '{provider}' is unknown; built-in options: "
                f"{sorted(_KNOWN_DNS_PROVIDERS)}. "
                "Use 'ext:fully.qualified.Class' for custom providers.",
            )
        if provider == "callback":
            pcfg = dns_cfg.get("provider_config") or {}
            for key in ("create_script", "delete_script"):
                if not pcfg.get(key):
                    errors.append(
                        f"dns.provider_config.{key} is required when dns.provider is 'callback'",
                    )
        if provider == "memory":
            warnings.append(
                "dns.provider is 'memory' -- records are not published to real DNS",
            )
        poll = dns_cfg.get("propagation_poll_seconds", 10)
        timeout = dns_cfg.get("propagation_timeout_seconds", 300)
        if poll > timeout:
            errors.append(
                f"dns.propagation_poll_seconds ({poll}) must be <= "
                f"dns.propagation_timeout_seconds ({timeout})",
            )

        # -- authority --
        base = authority.get("backoff_base_seconds", 1)
        cap = authority.get("backoff_max_seconds", 60)
        if base > cap:
            errors.append(
                f"authority.backoff_base_seconds ({base}) must be <= "
                f"authority.backoff_max_seconds ({cap})",
            )

        # -- issuance --
        run_base = issuance.get("run_backoff_base_seconds", 30)
        run_cap = issuance.get("run_backoff_max_seconds", 900)
        if run_base > run_cap:
            errors.append(
                f"issuance.run_backoff_base_seconds ({run_base}) must be <= "
                f"issuance.run_backoff_max_seconds ({run_cap})",
            )
        deadline = issuance.get("order_deadline_seconds", 1800)
        if deadline < timeout:
            warnings.append(
                f"issuance.order_deadline_seconds ({deadline}) is shorter than "
                f"dns.propagation_timeout_seconds ({timeout}) -- the order "
                "deadline will fire before propagation times out",
            )

        # -- renewal --
        if renewal.get("renew_before_days") and "renew_before_fraction" in renewal:
            warnings.append(
                "renewal.renew_before_days and renewal.renew_before_fraction are "
                "both set -- renew_before_days takes precedence",
            )

        # -- source --
        issuer_names = set(names)
        if source.get("backend") == "file" and not source.get("path"):
            errors.append("source.path is required when source.backend is 'file'")
        for idx, req in enumerate(source.get("requests", [])):
            if req.get("issuer") not in issuer_names:
                errors.append(
                    f"source.requests[{idx}].issuer '{req.get('issuer')}' "
                    f"does not match any configured issuer",
                )
        req_names = [r.get("name") for r in source.get("requests", [])]
        req_dupes = sorted({n for n in req_names if req_names.count(n) > 1})
        if req_dupes:
            errors.append(f"source.requests contain duplicate names: {req_dupes}")

        # -- secrets --
        if secrets.get("backend") == "file" and not secrets.get("path"):
            errors.append("secrets.path is required when secrets.backend is 'file'")
        if secrets.get("backend", "memory") == "memory":
            warnings.append(
                "secrets.backend is 'memory' -- issued certificates are lost on restart",
            )

        for w in warnings:
            log.warning("Config warning: %s", w)

        if errors:
            raise ConfigValidationError(errors)

    # -- helpers ------------------------------------------------------------

    def reload_settings(self) -> ReconcilerSettings:
        """Re-read the config file and rebuild settings.

        Does not reset the singleton.  Called on SIGHUP.  If the new file
        fails validation the previous data and settings are kept and
        :class:`ConfigValidationError` propagates.
        """
        previous = self._data
        self._data = self._load()
        try:
            self.additional_checks()
        except ConfigValidationError:
            self._data = previous
            raise
        self._settings = build_settings(self._data)
        return self._settings

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton -- testing only."""
        global _instance  # noqa: PLW0603
        _instance = None

    def __repr__(self) -> str:
        return f"<ReconcilerConfig config_file={self._source}>"
