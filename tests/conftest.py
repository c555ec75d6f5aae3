"""Root conftest for the ACMERECON test suite."""

from __future__ import annotations

import itertools
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)

from acmerecon.config.settings import build_settings  # noqa: E402
from acmerecon.core.types import OrderStatus  # noqa: E402
from acmerecon.models.certificate import IssuedCertificate  # noqa: E402
from acmerecon.models.challenge import Challenge  # noqa: E402
from acmerecon.models.order import Order  # noqa: E402

# ---------------------------------------------------------------------------
# Minimal config data shared by multiple test modules
# ---------------------------------------------------------------------------


@pytest.fixture()
def minimal_config_data(tmp_path: Path) -> dict:
    """Return a dict containing the minimum required config fields."""
    return {
        "issuers": [
            {
                "name": "test-ca",
                "directory_url": "https://ca.test/directory",
                "account_key_path": str(tmp_path / "account.pem"),
                "contact": ["ops@example.com"],
            },
        ],
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    """Write *minimal_config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(minimal_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg


@pytest.fixture()
def settings(minimal_config_data: dict):
    """Typed settings tuned for fast tests (tiny intervals, no run retries)."""
    data = {
        **minimal_config_data,
        "dns": {"propagation_timeout_seconds": 5, "propagation_poll_seconds": 1},
        "authority": {
            "backoff_base_seconds": 0.01,
            "backoff_max_seconds": 0.05,
            "poll_interval_seconds": 0.01,
            "poll_timeout_seconds": 5,
        },
        "issuance": {
            "max_run_retries": 0,
            "run_backoff_base_seconds": 0.01,
            "run_backoff_max_seconds": 0.05,
            "order_deadline_seconds": 30,
        },
    }
    return build_settings(data)


# ---------------------------------------------------------------------------
# Singleton cleanup, autouse so every test gets a fresh slate
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the ReconcilerConfig singleton before and after every test."""
    from acmerecon.config.reconciler_config import ReconcilerConfig

    ReconcilerConfig.reset()
    yield
    ReconcilerConfig.reset()


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo ``configure_logging`` so caplog keeps seeing ``acmerecon`` records."""
    import logging

    logger = logging.getLogger("acmerecon")
    yield
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


def make_certificate_pem(
    domains,
    *,
    not_before: datetime | None = None,
    lifetime: timedelta = timedelta(days=90),
) -> tuple[str, str]:
    """Build a self-signed leaf for *domains*; returns ``(cert_pem, key_pem)``."""
    key = ec.generate_private_key(ec.SECP256R1())
    not_before = (not_before or datetime.now(UTC)).replace(microsecond=0)
    names = sorted(domains)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, names[0])])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + lifetime)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in names]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


@pytest.fixture()
def cert_factory():
    """Return :func:`make_certificate_pem`."""
    return make_certificate_pem


# ---------------------------------------------------------------------------
# In-process authority
# ---------------------------------------------------------------------------


class FakeAuthority:
    """Scriptable :class:`AuthorityClient` that signs whatever it is asked for.

    Attributes
    ----------
    statuses:
        Order statuses returned by successive ``poll_order_status`` calls
        (the last one repeats).
    issue_domains:
        When set, certificates cover these names instead of the order's.
    gate:
        When set, ``finalize`` waits for it, keeping the run in flight.

    """

    def __init__(self, *, lifetime: timedelta = timedelta(days=90)) -> None:
        self.lifetime = lifetime
        self.statuses: list[OrderStatus] = [OrderStatus.READY]
        self.issue_domains: frozenset[str] | None = None
        self.gate = None
        self.orders: list[Order] = []
        self.notified: list[Challenge] = []
        self.finalized: list[Order] = []
        self.closed = False
        self._ids = itertools.count(1)
        self._poll_index = 0

    async def create_order(self, domains, *, request_name=""):
        n = next(self._ids)
        domains = frozenset(domains)
        order = Order(
            url=f"https://ca.test/order/{n}",
            request_name=request_name,
            domains=domains,
            status=OrderStatus.PENDING,
            authorization_urls=tuple(f"https://ca.test/authz/{n}/{d}" for d in sorted(domains)),
            finalize_url=f"https://ca.test/order/{n}/finalize",
        )
        self.orders.append(order)
        return order

    async def get_challenges(self, order):
        return [
            Challenge(
                domain=d,
                token=f"token-{d}",
                url=f"{order.url}/chall/{d}",
                authorization_url=f"{order.url}/authz/{d}",
                txt_value=f"txt-{d}",
            )
            for d in sorted(order.domains)
        ]

    async def notify_ready(self, challenge):
        self.notified.append(challenge)

    async def poll_order_status(self, order):
        status = self.statuses[min(self._poll_index, len(self.statuses) - 1)]
        self._poll_index += 1
        return status

    async def finalize(self, order, csr):
        if self.gate is not None:
            await self.gate.wait()
        self.finalized.append(order)
        cert_pem, _ = make_certificate_pem(
            self.issue_domains or order.domains,
            lifetime=self.lifetime,
        )
        return IssuedCertificate.from_pem(cert_pem, "")

    async def aclose(self):
        self.closed = True


@pytest.fixture()
def fake_authority() -> FakeAuthority:
    return FakeAuthority()
