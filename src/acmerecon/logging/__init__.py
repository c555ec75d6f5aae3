"""Logging subsystem for ACMERECON.

Public API::

    from acmerecon.logging import configure_logging, run_context

    configure_logging(settings.logging)
"""

from acmerecon.logging.setup import configure_logging, run_context

__all__ = ["configure_logging", "run_context"]
