"""Certificate authority clients."""

from acmerecon.authority.acme import AcmeAuthorityClient, parse_retry_after
from acmerecon.authority.base import AuthorityClient
from acmerecon.authority.registry import load_authority_client

__all__ = [
    "AcmeAuthorityClient",
    "AuthorityClient",
    "load_authority_client",
    "parse_retry_after",
]
