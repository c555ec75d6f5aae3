"""Authority backend registry.

Maps ``IssuerConfig.backend`` to an :class:`AuthorityClient` class:
``acme`` for the built-in RFC 8555 client, ``ext:package.module.Class``
for custom backends.  External classes are constructed with
``(issuer, settings)``.
"""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from acmerecon.authority.base import AuthorityClient
from acmerecon.core.errors import AuthorityRejected

if TYPE_CHECKING:
    from acmerecon.config.settings import AuthoritySettings
    from acmerecon.metrics.collector import MetricsCollector
    from acmerecon.models.issuer import IssuerConfig

log = logging.getLogger(__name__)

# Maps config string → (module_path, class_name)
_BUILTIN_BACKENDS: dict[str, tuple[str, str]] = {
    "acme": ("acmerecon.authority.acme", "AcmeAuthorityClient"),
}


def _resolve_class(backend: str) -> type:
    if backend in _BUILTIN_BACKENDS:
        mod_path, cls_name = _BUILTIN_BACKENDS[backend]
    elif backend.startswith("ext:"):
        mod_path, _, cls_name = backend[4:].rpartition(".")
        if not mod_path:
            msg = (
                f"Invalid external authority backend '{backend[4:]}': must be "
                "fully qualified (e.g. 'mypackage.module.ClassName')"
            )
            raise AuthorityRejected(msg)
    else:
        msg = (
            f"Unknown authority backend '{backend}'; "
            f"built-in options: {sorted(_BUILTIN_BACKENDS)}"
        )
        raise AuthorityRejected(msg)

    try:
        module = importlib.import_module(mod_path)
        return getattr(module, cls_name)
    except (ImportError, AttributeError) as exc:
        msg = f"Failed to load authority backend '{backend}': {exc}"
        raise AuthorityRejected(msg) from exc


def load_authority_client(
    issuer: IssuerConfig,
    settings: AuthoritySettings,
    *,
    metrics: MetricsCollector | None = None,
) -> AuthorityClient:
    """Instantiate the authority client for *issuer*.

    Built-in backends also receive *metrics*.

    Raises
    ------
    AuthorityRejected
        If the backend cannot be loaded or does not satisfy
        :class:`AuthorityClient`.

    """
    cls = _resolve_class(issuer.backend)
    if issuer.backend in _BUILTIN_BACKENDS:
        client = cls(issuer, settings, metrics=metrics)
    else:
        client = cls(issuer, settings)
    if not isinstance(client, AuthorityClient):
        msg = f"Authority backend '{issuer.backend}' does not implement AuthorityClient"
        raise AuthorityRejected(msg)
    log.info("Loaded authority backend '%s' for issuer '%s'", issuer.backend, issuer.name)
    return client
