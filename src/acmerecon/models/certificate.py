"""IssuedCertificate entity."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

SECRET_CERT_KEY = "tls.crt"
SECRET_KEY_KEY = "tls.key"


@dataclass(frozen=True)
class IssuedCertificate:
    """Certificate chain plus private key, as stored in the target secret.

    Attributes
    ----------
    pem_chain:
        Full PEM chain (leaf first).
    private_key_pem:
        PKCS#8 PEM of the certificate's private key.
    issued_at:
        Leaf ``notBefore``.
    expires_at:
        Leaf ``notAfter``; always strictly after ``issued_at``.
    domains:
        DNS names from the leaf SAN.

    """

    pem_chain: str
    private_key_pem: str
    issued_at: datetime
    expires_at: datetime
    domains: frozenset[str]
    serial_number: str = ""
    fingerprint: str = ""

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            msg = (
                f"Certificate expiry {self.expires_at.isoformat()} must be after "
                f"issuance {self.issued_at.isoformat()}"
            )
            raise ValueError(msg)

    @property
    def lifetime(self) -> timedelta:
        return self.expires_at - self.issued_at

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    @classmethod
    def from_pem(cls, pem_chain: str, private_key_pem: str) -> IssuedCertificate:
        """Build from a PEM chain, reading validity and SAN from the leaf."""
        from acmerecon.core.crypto import parse_certificate_chain  # noqa: PLC0415

        info = parse_certificate_chain(pem_chain)
        return cls(
            pem_chain=pem_chain,
            private_key_pem=private_key_pem,
            issued_at=info.not_before,
            expires_at=info.not_after,
            domains=info.domains,
            serial_number=info.serial_number,
            fingerprint=info.fingerprint,
        )

    @classmethod
    def from_secret_data(cls, data: dict[str, str]) -> IssuedCertificate:
        """Rebuild from a stored secret; raises ``KeyError``/``ValueError``."""
        return cls.from_pem(data[SECRET_CERT_KEY], data[SECRET_KEY_KEY])

    def to_secret_data(self) -> dict[str, str]:
        return {
            SECRET_CERT_KEY: self.pem_chain,
            SECRET_KEY_KEY: self.private_key_pem,
        }
