"""DNS provider registry.

Loads the configured DNS provider by name (built-in types and custom
``ext:`` extensions) and pairs it with the matching record lookup.

Usage::

    from acmerecon.solver.registry import build_solver

    solver = build_solver(settings.dns)
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from acmerecon.core.errors import ProviderError
from acmerecon.solver.base import DnsProvider, TxtLookup
from acmerecon.solver.propagation import DnsPropagationChecker
from acmerecon.solver.solver import ChallengeSolver

if TYPE_CHECKING:
    from acmerecon.config.settings import DnsSettings

log = logging.getLogger(__name__)

# Maps config string → (module_path, class_name)
_BUILTIN_PROVIDERS: dict[str, tuple[str, str]] = {
    "memory": ("acmerecon.solver.memory", "MemoryDnsProvider"),
    "callback": ("acmerecon.solver.callback", "CallbackDnsProvider"),
}


def load_dns_provider(settings: DnsSettings) -> DnsProvider:
    """Load and return the configured DNS provider.

    Raises
    ------
    ProviderError
        If the provider cannot be loaded or does not implement the
        :class:`DnsProvider` capability set.

    """
    name = settings.provider

    if name in _BUILTIN_PROVIDERS:
        mod_path, cls_name = _BUILTIN_PROVIDERS[name]
    elif name.startswith("ext:"):
        mod_path, _, cls_name = name[4:].rpartition(".")
        if not mod_path:
            msg = (
                f"Invalid external DNS provider '{name[4:]}': must be fully "
                "qualified (e.g. 'mypackage.module.ClassName')"
            )
            raise ProviderError(msg, retryable=False)
    else:
        msg = (
            f"Unknown DNS provider '{name}'; "
            f"built-in options: {sorted(_BUILTIN_PROVIDERS)}. "
            "Use 'ext:mypackage.module.ClassName' for custom providers."
        )
        raise ProviderError(msg, retryable=False)

    try:
        module = importlib.import_module(mod_path)
        cls = getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load DNS provider '{name}': {exc}"
        raise ProviderError(msg, retryable=False) from exc

    provider = cls(settings.provider_config)
    if not isinstance(provider, DnsProvider):
        msg = f"DNS provider '{name}' must implement create_txt_record and delete_txt_record"
        raise ProviderError(msg, retryable=False)

    log.info("Loaded DNS provider: %s", name)
    return provider


def build_solver(settings: DnsSettings, provider: DnsProvider | None = None) -> ChallengeSolver:
    """Build a :class:`ChallengeSolver` for the configured provider.

    A provider that can answer lookups itself (e.g. ``memory``) is
    used for propagation checks; otherwise real DNS is queried.
    """
    provider = provider or load_dns_provider(settings)
    lookup: TxtLookup
    if isinstance(provider, TxtLookup):
        lookup = provider
    else:
        lookup = DnsPropagationChecker(settings)
    return ChallengeSolver(provider, lookup, settings)
