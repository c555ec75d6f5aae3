"""Target secret stores."""

from acmerecon.store.base import SecretStore, validate_secret_name
from acmerecon.store.file import FileSecretStore
from acmerecon.store.memory import MemorySecretStore
from acmerecon.store.registry import load_secret_store

__all__ = [
    "FileSecretStore",
    "MemorySecretStore",
    "SecretStore",
    "load_secret_store",
    "validate_secret_name",
]
