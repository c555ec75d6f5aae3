"""Entity models for the reconciler.

All models are frozen dataclasses.  Use :func:`dataclasses.replace`
for modifications (copy-on-write).
"""

from acmerecon.models.certificate import IssuedCertificate
from acmerecon.models.challenge import Challenge, ChallengeHandle
from acmerecon.models.issuer import IssuerConfig
from acmerecon.models.order import Order
from acmerecon.models.request import CertificateRequest, RequestStatus
from acmerecon.models.secret import SecretVersion

__all__ = [
    "CertificateRequest",
    "Challenge",
    "ChallengeHandle",
    "IssuedCertificate",
    "IssuerConfig",
    "Order",
    "RequestStatus",
    "SecretVersion",
]
