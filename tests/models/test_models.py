"""Unit tests for acmerecon.models: Frozen dataclass models."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta

import pytest

from acmerecon.core.types import ChallengeStatus, OrderStatus, RequestPhase
from acmerecon.models import (
    CertificateRequest,
    Challenge,
    IssuedCertificate,
    Order,
    RequestStatus,
    SecretVersion,
)
from acmerecon.models.certificate import SECRET_CERT_KEY, SECRET_KEY_KEY
from acmerecon.models.request import normalize_domains

# ---------------------------------------------------------------------------
# TestCertificateRequest
# ---------------------------------------------------------------------------


class TestCertificateRequest:
    def test_domains_normalised(self):
        req = CertificateRequest(
            name="web",
            domains=frozenset({" Example.COM. ", "www.example.com"}),
            issuer="le",
            secret_name="web-tls",
        )
        assert req.domains == frozenset({"example.com", "www.example.com"})

    def test_empty_domains_rejected(self):
        with pytest.raises(ValueError, match="at least one domain"):
            CertificateRequest(name="x", domains=frozenset({"  "}), issuer="le", secret_name="s")

    def test_default_status(self):
        req = CertificateRequest(name="web", domains={"a.example.com"}, issuer="le", secret_name="s")
        assert req.status.phase == RequestPhase.PENDING
        assert req.status.attempts == 0
        assert req.status.last_error_kind is None

    def test_status_ignored_in_equality(self):
        a = CertificateRequest(name="web", domains={"a.example.com"}, issuer="le", secret_name="s")
        b = dataclasses.replace(a, status=RequestStatus(phase=RequestPhase.READY))
        assert a == b

    def test_desired_key_tracks_caller_fields(self):
        a = CertificateRequest(name="web", domains={"a.example.com"}, issuer="le", secret_name="s")
        assert a.desired_key() != dataclasses.replace(a, renew_before_days=10).desired_key()
        assert a.desired_key() == dataclasses.replace(a, status=RequestStatus(attempts=3)).desired_key()

    def test_frozen(self):
        req = CertificateRequest(name="web", domains={"a.example.com"}, issuer="le", secret_name="s")
        with pytest.raises(dataclasses.FrozenInstanceError):
            req.name = "other"

    def test_normalize_wildcard_kept(self):
        assert normalize_domains(["*.Example.com"]) == frozenset({"*.example.com"})


# ---------------------------------------------------------------------------
# TestOrderAndChallenge
# ---------------------------------------------------------------------------


class TestOrderAndChallenge:
    def test_challenge_defaults(self):
        ch = Challenge(
            domain="a.example.com",
            token="t",
            url="https://ca.test/c/1",
            authorization_url="https://ca.test/a/1",
            txt_value="v",
        )
        assert ch.status == ChallengeStatus.PENDING
        assert ch.handle is None

    def test_order_replace(self):
        order = Order(
            url="https://ca.test/o/1",
            request_name="web",
            domains=frozenset({"a.example.com"}),
            status=OrderStatus.PENDING,
            authorization_urls=("https://ca.test/a/1",),
            finalize_url="https://ca.test/o/1/finalize",
        )
        ready = dataclasses.replace(order, status=OrderStatus.READY)
        assert ready.status == OrderStatus.READY
        assert order.status == OrderStatus.PENDING
        assert ready.challenges == ()


# ---------------------------------------------------------------------------
# TestIssuedCertificate
# ---------------------------------------------------------------------------


class TestIssuedCertificate:
    def test_from_pem(self, cert_factory):
        start = datetime(2026, 3, 1, tzinfo=UTC)
        pem, key_pem = cert_factory({"a.example.com"}, not_before=start)
        cert = IssuedCertificate.from_pem(pem, key_pem)

        assert cert.domains == frozenset({"a.example.com"})
        assert cert.issued_at == start
        assert cert.expires_at == start + timedelta(days=90)
        assert cert.lifetime == timedelta(days=90)
        assert cert.remaining(start + timedelta(days=10)) == timedelta(days=80)
        assert cert.serial_number

    def test_expiry_must_follow_issuance(self):
        now = datetime.now(UTC)
        with pytest.raises(ValueError, match="must be after"):
            IssuedCertificate(
                pem_chain="",
                private_key_pem="",
                issued_at=now,
                expires_at=now,
                domains=frozenset({"a.example.com"}),
            )

    def test_secret_data_roundtrip(self, cert_factory):
        pem, key_pem = cert_factory({"a.example.com"})
        cert = IssuedCertificate.from_pem(pem, key_pem)
        data = cert.to_secret_data()
        assert data == {SECRET_CERT_KEY: pem, SECRET_KEY_KEY: key_pem}
        assert IssuedCertificate.from_secret_data(data) == cert

    def test_from_secret_data_missing_key(self):
        with pytest.raises(KeyError):
            IssuedCertificate.from_secret_data({SECRET_CERT_KEY: "x"})


# ---------------------------------------------------------------------------
# TestSecretVersion
# ---------------------------------------------------------------------------


class TestSecretVersion:
    def test_data_is_read_only_copy(self):
        source = {"tls.crt": "c"}
        version = SecretVersion(version=1, data=source, written_at=datetime.now(UTC))
        source["tls.crt"] = "changed"
        assert version.data["tls.crt"] == "c"
        with pytest.raises(TypeError):
            version.data["tls.crt"] = "x"
