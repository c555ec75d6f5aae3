"""Key, CSR and certificate helpers.

Generates certificate private keys, builds CSRs covering a domain set,
and extracts metadata (validity window, SAN names, serial, fingerprint)
from PEM chains returned by the authority or read back from a secret.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from acmerecon.core.types import KeyType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from acmerecon.core.jws import AccountKey

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----",
    re.DOTALL,
)

_RSA_SIZES = {
    KeyType.RSA_2048: 2048,
    KeyType.RSA_3072: 3072,
    KeyType.RSA_4096: 4096,
}

_EC_CURVES = {
    KeyType.EC_P256: ec.SECP256R1,
    KeyType.EC_P384: ec.SECP384R1,
}


@dataclass(frozen=True)
class CertificateInfo:
    """Metadata parsed from the leaf of a PEM chain."""

    not_before: datetime
    not_after: datetime
    domains: frozenset[str]
    serial_number: str
    fingerprint: str


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_private_key(key_type: KeyType | str = KeyType.EC_P256) -> AccountKey:
    """Generate a fresh private key of the requested type."""
    key_type = KeyType(key_type)
    if key_type in _EC_CURVES:
        return ec.generate_private_key(_EC_CURVES[key_type]())
    return rsa.generate_private_key(public_exponent=65537, key_size=_RSA_SIZES[key_type])


def private_key_to_pem(key: AccountKey) -> str:
    """Serialise *key* as unencrypted PKCS#8 PEM."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def load_private_key(pem: str | bytes) -> AccountKey:
    """Parse an unencrypted PEM private key.

    Raises
    ------
    ValueError
        If the PEM is malformed or not an RSA/EC key.

    """
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        msg = f"Unsupported private key type {type(key).__name__}"
        raise ValueError(msg)
    return key


def load_or_create_account_key(path: str | Path, key_type: KeyType | str) -> AccountKey:
    """Load the account key at *path*, generating it on first use.

    The file is created with mode ``0600``.
    """
    key_path = Path(path)
    if key_path.exists():
        return load_private_key(key_path.read_bytes())

    key = generate_private_key(key_type)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(private_key_to_pem(key), encoding="ascii")
    key_path.chmod(0o600)
    return key


# ---------------------------------------------------------------------------
# CSR
# ---------------------------------------------------------------------------


def build_csr(key: AccountKey, domains: Iterable[str]) -> bytes:
    """Build a DER-encoded CSR whose SAN lists every domain.

    The first domain (sorted, non-wildcard preferred) becomes the CN.
    """
    names = sorted(domains, key=lambda d: (d.startswith("*."), d))
    if not names:
        msg = "Cannot build a CSR for an empty domain set"
        raise ValueError(msg)

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])]))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in names]),
            critical=False,
        )
    )
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.DER)


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


def split_pem_chain(pem_chain: str) -> list[str]:
    """Split a PEM bundle into individual certificate blocks."""
    return _PEM_CERT_RE.findall(pem_chain)


def parse_certificate_chain(pem_chain: str) -> CertificateInfo:
    """Parse the leaf of *pem_chain* and extract its metadata.

    Raises
    ------
    ValueError
        If the chain contains no parseable certificate.

    """
    blocks = split_pem_chain(pem_chain)
    if not blocks:
        msg = "PEM chain contains no certificates"
        raise ValueError(msg)

    leaf = x509.load_pem_x509_certificate(blocks[0].encode("ascii"))

    domains: set[str] = set()
    try:
        san = leaf.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        domains.update(n.lower() for n in san.value.get_values_for_type(x509.DNSName))
    except x509.ExtensionNotFound:
        pass

    return CertificateInfo(
        not_before=leaf.not_valid_before_utc,
        not_after=leaf.not_valid_after_utc,
        domains=frozenset(domains),
        serial_number=format(leaf.serial_number, "x"),
        fingerprint=hashlib.sha256(leaf.public_bytes(serialization.Encoding.DER)).hexdigest(),
    )
