"""Enumerated types for the ACMERECON reconciler.

All enums inherit from ``StrEnum`` so their ``.value`` is a plain
string that serialises naturally into logs, status records and JSON.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Order (authority-side view, RFC 8555 §7.1.6)
# ---------------------------------------------------------------------------


class OrderStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


# ---------------------------------------------------------------------------
# Challenge (solver-side view)
# ---------------------------------------------------------------------------


class ChallengeStatus(StrEnum):
    PENDING = "pending"
    PRESENTED = "presented"
    VALID = "valid"
    INVALID = "invalid"


# ---------------------------------------------------------------------------
# Issuance run
# ---------------------------------------------------------------------------


class IssuanceState(StrEnum):
    REQUESTED = "Requested"
    ORDER_CREATED = "OrderCreated"
    CHALLENGES_PENDING = "ChallengesPending"
    CHALLENGES_PUBLISHED = "ChallengesPublished"
    AWAITING_AUTHORITY_VALIDATION = "AwaitingAuthorityValidation"
    FINALIZING = "Finalizing"
    ISSUED = "Issued"
    FAILED = "Failed"


# ---------------------------------------------------------------------------
# CertificateRequest status
# ---------------------------------------------------------------------------


class RequestPhase(StrEnum):
    PENDING = "pending"
    ISSUING = "issuing"
    READY = "ready"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    AUTHORITY_REJECTED = "authority_rejected"
    PROPAGATION_TIMEOUT = "propagation_timeout"
    SECRET_STORE_WRITE = "secret_store_write"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    PROVIDER_ERROR = "provider_error"


# ---------------------------------------------------------------------------
# Desired-state change feed
# ---------------------------------------------------------------------------


class ChangeType(StrEnum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


class KeyType(StrEnum):
    EC_P256 = "ec-p256"
    EC_P384 = "ec-p384"
    RSA_2048 = "rsa-2048"
    RSA_3072 = "rsa-3072"
    RSA_4096 = "rsa-4096"
