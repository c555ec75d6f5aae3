"""Configuration subsystem for ACMERECON.

Public API::

    from acmerecon.config import get_config, ReconcilerConfig

    # At startup (CLI only):
    ReconcilerConfig(config_file="config.yaml")

    # Everywhere else:
    cfg = get_config()
    timeout = cfg.settings.dns.propagation_timeout_seconds
"""

from acmerecon.config.reconciler_config import (
    ConfigValidationError,
    ReconcilerConfig,
    get_config,
)
from acmerecon.config.settings import (
    AuthoritySettings,
    DnsSettings,
    IssuanceSettings,
    LoggingSettings,
    ReconcilerSettings,
    RenewalSettings,
    SchedulerSettings,
    SecretStoreSettings,
    SourceSettings,
    build_settings,
)

__all__ = [
    "AuthoritySettings",
    "ConfigValidationError",
    "DnsSettings",
    "IssuanceSettings",
    "LoggingSettings",
    "ReconcilerConfig",
    "ReconcilerSettings",
    "RenewalSettings",
    "SchedulerSettings",
    "SecretStoreSettings",
    "SourceSettings",
    "build_settings",
    "get_config",
]
