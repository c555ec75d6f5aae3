"""DNS-01 challenge solving.

Exports the provider capability set, the solver, and the registry
helpers.
"""

from acmerecon.solver.base import DnsProvider, TxtLookup, record_name_for
from acmerecon.solver.registry import build_solver, load_dns_provider
from acmerecon.solver.solver import ChallengeSolver

__all__ = [
    "ChallengeSolver",
    "DnsProvider",
    "TxtLookup",
    "build_solver",
    "load_dns_provider",
    "record_name_for",
]
