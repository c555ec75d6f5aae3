"""Tests for AcmeAuthorityClient against an in-process ACME server.

The server is an ``httpx.MockTransport`` handler; individual responses
can be overridden per path to inject rate limiting, 5xx errors,
``badNonce`` and outright rejections.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from acmerecon.authority import AcmeAuthorityClient, parse_retry_after
from acmerecon.core.crypto import build_csr, generate_private_key
from acmerecon.core.errors import (
    AuthorityRejected,
    DeadlineExceeded,
    ProtocolError,
    RateLimited,
    TransientNetworkError,
)
from acmerecon.core.jws import b64url_decode, b64url_encode, dns01_txt_value, jwk_from_key
from acmerecon.core.types import ErrorKind, IssuanceState, OrderStatus
from acmerecon.metrics.collector import MetricsCollector
from acmerecon.models import CertificateRequest
from acmerecon.models.issuer import IssuerConfig
from acmerecon.services.issuance import IssuanceStateMachine
from acmerecon.solver import ChallengeSolver
from acmerecon.solver.memory import MemoryDnsProvider

BASE = "https://ca.test"

# ---------------------------------------------------------------------------
# Fake ACME server
# ---------------------------------------------------------------------------


def _decode(part: str):
    return json.loads(b64url_decode(part)) if part else None


class FakeAcmeServer:
    """Minimal RFC 8555 server for a single order.

    Attributes
    ----------
    overrides:
        ``path -> [httpx.Response, ...]`` served (and consumed) before
        the normal handler for that path.
    authz:
        Authorization objects keyed by path.
    poll_statuses:
        Statuses returned by successive order polls after finalize
        (the last one repeats).

    """

    def __init__(self, cert_pem: str) -> None:
        self.cert_pem = cert_pem
        self.overrides: dict[str, list[httpx.Response]] = {}
        self.requests: list[tuple[str, str, dict | None, dict | None]] = []
        self.poll_statuses = ["valid"]
        self.finalize_status = "processing"
        self.authz = {
            "/authz/1": {
                "status": "pending",
                "identifier": {"type": "dns", "value": "example.com"},
                "challenges": [
                    {"type": "http-01", "url": f"{BASE}/chall/http", "token": "tok-http"},
                    {"type": "dns-01", "url": f"{BASE}/chall/1", "token": "tok-1"},
                ],
            },
        }
        self._nonces = itertools.count(1)
        self._polls = 0
        self.finalized = False

    # -- helpers -------------------------------------------------------

    def _headers(self, extra: dict | None = None) -> dict:
        return {"Replay-Nonce": f"nonce-{next(self._nonces)}", **(extra or {})}

    def _json(self, body, status=200, headers=None) -> httpx.Response:
        return httpx.Response(status, json=body, headers=self._headers(headers))

    def _order(self, status: str) -> dict:
        body = {
            "status": status,
            "identifiers": [{"type": "dns", "value": "example.com"}],
            "authorizations": [f"{BASE}{p}" for p in self.authz],
            "finalize": f"{BASE}/order/1/finalize",
        }
        if status == "valid":
            body["certificate"] = f"{BASE}/cert/1"
        return body

    def calls(self, path: str) -> list:
        return [r for r in self.requests if r[1] == path]

    # -- handler -------------------------------------------------------

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        protected = payload = None
        if request.method == "POST":
            body = json.loads(request.content)
            protected = _decode(body["protected"])
            payload = _decode(body["payload"])
        self.requests.append((request.method, path, protected, payload))

        queued = self.overrides.get(path)
        if queued:
            response = queued.pop(0)
            response.headers.setdefault("Replay-Nonce", f"nonce-{next(self._nonces)}")
            return response

        if path == "/directory":
            return httpx.Response(
                200,
                json={
                    "newNonce": f"{BASE}/new-nonce",
                    "newAccount": f"{BASE}/new-account",
                    "newOrder": f"{BASE}/new-order",
                },
            )
        if path == "/new-nonce":
            return httpx.Response(200, headers=self._headers())
        if path == "/new-account":
            return self._json({"status": "valid"}, 201, {"Location": f"{BASE}/acct/1"})
        if path == "/new-order":
            return self._json(self._order("pending"), 201, {"Location": f"{BASE}/order/1"})
        if path in self.authz:
            return self._json(self.authz[path])
        if path.startswith("/chall/"):
            return self._json({"status": "processing"})
        if path == "/order/1/finalize":
            self.finalized = True
            return self._json(self._order(self.finalize_status))
        if path == "/order/1":
            if not self.finalized:
                return self._json(self._order("ready"))
            status = self.poll_statuses[min(self._polls, len(self.poll_statuses) - 1)]
            self._polls += 1
            return self._json(self._order(status))
        if path == "/cert/1":
            return httpx.Response(
                200,
                text=self.cert_pem,
                headers=self._headers({"Content-Type": "application/pem-certificate-chain"}),
            )
        return self._json({"type": "urn:ietf:params:acme:error:malformed"}, 404)


def _problem(status: int, ptype: str, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status,
        json={"type": f"urn:ietf:params:acme:error:{ptype}", "detail": ptype},
        headers={"Content-Type": "application/problem+json", **(headers or {})},
    )


class _FakeTime:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def server(cert_factory):
    cert_pem, _ = cert_factory(["example.com"])
    return FakeAcmeServer(cert_pem)


@pytest.fixture()
def fake_time():
    return _FakeTime()


@pytest.fixture()
def account_key():
    return generate_private_key("ec-p256")


@pytest.fixture()
def issuer(tmp_path):
    return IssuerConfig(
        name="test-ca",
        directory_url=f"{BASE}/directory",
        contact=("mailto:ops@example.com",),
        account_key_path=str(tmp_path / "account.pem"),
    )


@pytest.fixture()
def metrics():
    return MetricsCollector()


@pytest.fixture()
def make_client(server, settings, fake_time, account_key, issuer, metrics):
    def _make(issuer_config=None):
        return AcmeAuthorityClient(
            issuer_config or issuer,
            settings.authority,
            account_key=account_key,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)),
            metrics=metrics,
            sleep=fake_time.sleep,
            clock=fake_time.clock,
        )

    return _make


@pytest.fixture()
def client(make_client):
    return make_client()


# ---------------------------------------------------------------------------
# Retry-After parsing
# ---------------------------------------------------------------------------


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("30") == 30.0

    def test_http_date(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 01 Jan 2026 12:01:30 GMT", now=now) == 90.0

    def test_date_in_past_clamps_to_zero(self):
        now = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 01 Jan 2026 11:00:00 GMT", now=now) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_missing_or_garbage(self, value):
        assert parse_retry_after(value) is None


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestIssuanceFlow:
    async def test_create_order_registers_account_first(self, client, server):
        order = await client.create_order(["example.com"], request_name="web")

        assert order.url == f"{BASE}/order/1"
        assert order.request_name == "web"
        assert order.status is OrderStatus.PENDING
        assert order.domains == frozenset({"example.com"})
        assert order.finalize_url == f"{BASE}/order/1/finalize"
        assert client.account_url == f"{BASE}/acct/1"

        _, _, acct_protected, acct_payload = server.calls("/new-account")[0]
        assert "jwk" in acct_protected
        assert acct_payload["termsOfServiceAgreed"] is True
        assert acct_payload["contact"] == ["mailto:ops@example.com"]

        _, _, order_protected, order_payload = server.calls("/new-order")[0]
        assert order_protected["kid"] == f"{BASE}/acct/1"
        assert order_protected["url"] == f"{BASE}/new-order"
        assert order_payload == {"identifiers": [{"type": "dns", "value": "example.com"}]}

    async def test_account_registered_once(self, client, server):
        await client.create_order(["example.com"])
        await client.create_order(["example.com"])
        assert len(server.calls("/new-account")) == 1

    async def test_nonces_are_not_reused(self, client, server):
        await client.create_order(["example.com"])
        await client.create_order(["example.com"])
        nonces = [r[2]["nonce"] for r in server.requests if r[0] == "POST"]
        assert len(nonces) == len(set(nonces))

    async def test_get_challenges_picks_dns01(self, client, account_key):
        order = await client.create_order(["example.com"])
        (challenge,) = await client.get_challenges(order)

        assert challenge.domain == "example.com"
        assert challenge.token == "tok-1"
        assert challenge.url == f"{BASE}/chall/1"
        assert challenge.authorization_url == f"{BASE}/authz/1"
        assert challenge.txt_value == dns01_txt_value("tok-1", jwk_from_key(account_key))

    async def test_notify_ready_posts_empty_object(self, client, server):
        order = await client.create_order(["example.com"])
        (challenge,) = await client.get_challenges(order)
        await client.notify_ready(challenge)

        assert server.calls("/chall/1")[0][3] == {}

    async def test_poll_order_status(self, client):
        order = await client.create_order(["example.com"])
        assert await client.poll_order_status(order) is OrderStatus.READY

    async def test_finalize_downloads_chain(self, client, server, fake_time):
        server.poll_statuses = ["processing", "valid"]
        order = await client.create_order(["example.com"])
        csr = build_csr(generate_private_key("ec-p256"), ["example.com"])

        cert = await client.finalize(order, csr)

        assert cert.domains == frozenset({"example.com"})
        assert cert.private_key_pem == ""
        assert server.calls("/order/1/finalize")[0][3] == {"csr": b64url_encode(csr)}
        assert len(server.calls("/order/1")) == 2
        assert len(fake_time.sleeps) == 2

    async def test_aclose_leaves_injected_client_open(self, client):
        await client.aclose()
        assert client._http.is_closed is False


# ---------------------------------------------------------------------------
# Authorizations
# ---------------------------------------------------------------------------


class TestAuthorizations:
    async def test_valid_authorization_skipped(self, client, server):
        server.authz["/authz/1"]["status"] = "valid"
        order = await client.create_order(["example.com"])
        assert await client.get_challenges(order) == []

    async def test_wildcard_prefix(self, client, server):
        server.authz["/authz/1"]["wildcard"] = True
        order = await client.create_order(["*.example.com"])
        (challenge,) = await client.get_challenges(order)
        assert challenge.domain == "*.example.com"

    async def test_invalid_authorization_rejected(self, client, server):
        server.authz["/authz/1"]["status"] = "invalid"
        order = await client.create_order(["example.com"])
        with pytest.raises(AuthorityRejected, match="is invalid"):
            await client.get_challenges(order)

    async def test_no_dns01_offered(self, client, server):
        server.authz["/authz/1"]["challenges"] = [
            {"type": "http-01", "url": f"{BASE}/chall/http", "token": "t"},
        ]
        order = await client.create_order(["example.com"])
        with pytest.raises(AuthorityRejected, match="no dns-01"):
            await client.get_challenges(order)

    async def test_challenge_invalid_on_notify(self, client, server):
        order = await client.create_order(["example.com"])
        (challenge,) = await client.get_challenges(order)
        server.overrides["/chall/1"] = [
            httpx.Response(
                200,
                json={"status": "invalid", "error": {"detail": "TXT mismatch"}},
            ),
        ]
        with pytest.raises(AuthorityRejected, match="TXT mismatch"):
            await client.notify_ready(challenge)


# ---------------------------------------------------------------------------
# Error mapping and retries
# ---------------------------------------------------------------------------


class TestErrorMapping:
    async def test_rate_limited_honours_retry_after(self, client, server, fake_time, metrics):
        server.overrides["/new-order"] = [_problem(429, "rateLimited", {"Retry-After": "30"})]

        order = await client.create_order(["example.com"])

        assert order.url == f"{BASE}/order/1"
        assert fake_time.sleeps[0] >= 30
        assert len(server.calls("/new-order")) == 2
        assert metrics.get("acmerecon_rate_limited_total", labels={"issuer": "test-ca"}) == 1

    async def test_rate_limited_problem_type_without_429(self, client, server, fake_time):
        server.overrides["/new-order"] = [_problem(403, "rateLimited")]
        await client.create_order(["example.com"])
        assert len(fake_time.sleeps) == 1

    async def test_rate_limit_budget_exhausted(self, client, server, settings):
        server.overrides["/new-order"] = [
            _problem(429, "rateLimited") for _ in range(settings.authority.rate_limit_max_attempts)
        ]
        with pytest.raises(RateLimited):
            await client.create_order(["example.com"])
        assert len(server.calls("/new-order")) == settings.authority.rate_limit_max_attempts

    async def test_server_error_retried(self, client, server, fake_time):
        server.overrides["/authz/1"] = [httpx.Response(503, text="busy")]
        order = await client.create_order(["example.com"])

        (challenge,) = await client.get_challenges(order)

        assert challenge.token == "tok-1"
        assert len(server.calls("/authz/1")) == 2
        assert len(fake_time.sleeps) == 1

    async def test_client_error_is_terminal(self, client, server, fake_time):
        server.overrides["/new-order"] = [_problem(403, "rejectedIdentifier")]

        with pytest.raises(AuthorityRejected) as exc_info:
            await client.create_order(["example.com"])

        assert exc_info.value.status_code == 403
        assert exc_info.value.problem_type == "urn:ietf:params:acme:error:rejectedIdentifier"
        assert exc_info.value.retryable is False
        assert len(server.calls("/new-order")) == 1
        assert fake_time.sleeps == []

    async def test_bad_nonce_retried_once_without_backoff(self, client, server, fake_time):
        server.overrides["/new-order"] = [_problem(400, "badNonce")]

        await client.create_order(["example.com"])

        first, second = server.calls("/new-order")
        assert first[2]["nonce"] != second[2]["nonce"]
        assert fake_time.sleeps == []

    async def test_repeated_bad_nonce_rejected(self, client, server):
        server.overrides["/new-order"] = [_problem(400, "badNonce"), _problem(400, "badNonce")]
        with pytest.raises(AuthorityRejected, match="badNonce"):
            await client.create_order(["example.com"])

    async def test_transport_errors_exhaust_budget(self, settings, fake_time, account_key, issuer):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        client = AcmeAuthorityClient(
            issuer,
            settings.authority,
            account_key=account_key,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=fake_time.sleep,
        )
        with pytest.raises(TransientNetworkError, match="refused"):
            await client.create_order(["example.com"])
        assert len(calls) == settings.authority.max_attempts

    async def test_directory_missing_fields(self, client, server):
        server.overrides["/directory"] = [httpx.Response(200, json={"newNonce": "x"})]
        with pytest.raises(ProtocolError, match="newAccount"):
            await client.create_order(["example.com"])


# ---------------------------------------------------------------------------
# Malformed replies
# ---------------------------------------------------------------------------


class TestMalformedReplies:
    async def test_html_challenge_reply(self, client, server):
        order = await client.create_order(["example.com"])
        (challenge,) = await client.get_challenges(order)
        server.overrides["/chall/1"] = [httpx.Response(200, text="<html>proxy</html>")]

        with pytest.raises(ProtocolError, match="Malformed challenge object"):
            await client.notify_ready(challenge)

    async def test_html_order_reply(self, client, server):
        server.overrides["/new-order"] = [
            httpx.Response(201, text="<html>proxy</html>", headers={"Location": f"{BASE}/order/1"}),
        ]
        with pytest.raises(ProtocolError, match="Malformed order object"):
            await client.create_order(["example.com"])

    async def test_non_object_authorization(self, client, server):
        server.overrides["/authz/1"] = [httpx.Response(200, json=["not", "an", "object"])]
        order = await client.create_order(["example.com"])
        with pytest.raises(ProtocolError, match="expected a JSON object"):
            await client.get_challenges(order)

    async def test_dns01_challenge_without_token(self, client, server):
        server.authz["/authz/1"]["challenges"] = [{"type": "dns-01", "url": f"{BASE}/chall/1"}]
        order = await client.create_order(["example.com"])
        with pytest.raises(ProtocolError, match="Malformed challenge"):
            await client.get_challenges(order)

    async def test_html_finalize_reply(self, client, server):
        order = await client.create_order(["example.com"])
        server.overrides["/order/1/finalize"] = [httpx.Response(200, text="<html/>")]
        with pytest.raises(ProtocolError):
            await client.finalize(order, b"csr")

    async def test_issuance_run_reports_failure(self, client, server, settings):
        server.overrides["/chall/1"] = [httpx.Response(200, text="<html>proxy</html>")]
        provider = MemoryDnsProvider()
        solver = ChallengeSolver(provider, provider, settings.dns)
        machine = IssuanceStateMachine(client, solver, settings.issuance, settings.authority)
        request = CertificateRequest(
            name="web",
            domains=frozenset({"example.com"}),
            issuer="test-ca",
            secret_name="web-tls",
        )

        outcome = await machine.run(request)

        assert outcome.state is IssuanceState.FAILED
        assert outcome.error_kind is ErrorKind.AUTHORITY_REJECTED
        assert isinstance(outcome.error, ProtocolError)
        assert provider.records() == {}


# ---------------------------------------------------------------------------
# Finalize failures
# ---------------------------------------------------------------------------


class TestFinalizeFailures:
    async def test_order_invalid_after_finalize(self, client, server):
        server.poll_statuses = ["invalid"]
        order = await client.create_order(["example.com"])
        with pytest.raises(AuthorityRejected, match="failed during finalization"):
            await client.finalize(order, b"csr")

    async def test_processing_forever_hits_poll_timeout(self, client, server, fake_time):
        server.poll_statuses = ["processing"]
        order = await client.create_order(["example.com"])
        with pytest.raises(DeadlineExceeded, match="still processing"):
            await client.finalize(order, b"csr")
        assert fake_time.now >= 5

    async def test_unparseable_chain(self, client, server):
        server.overrides["/cert/1"] = [httpx.Response(200, text="not a pem")]
        order = await client.create_order(["example.com"])
        with pytest.raises(ProtocolError, match="Could not parse"):
            await client.finalize(order, b"csr")


# ---------------------------------------------------------------------------
# External account binding
# ---------------------------------------------------------------------------


class TestExternalAccountBinding:
    async def test_eab_included_in_new_account(self, make_client, server, issuer, account_key):
        mac_key = b64url_encode(b"0123456789abcdef0123456789abcdef")
        client = make_client(replace(issuer, eab_kid="kid-7", eab_hmac_key=mac_key))

        await client.create_order(["example.com"])

        payload = server.calls("/new-account")[0][3]
        eab = payload["externalAccountBinding"]
        assert _decode(eab["protected"]) == {
            "alg": "HS256",
            "kid": "kid-7",
            "url": f"{BASE}/new-account",
        }
        assert _decode(eab["payload"]) == jwk_from_key(account_key)


def test_order_expiry_parsed():
    body = {
        "status": "pending",
        "identifiers": [{"type": "dns", "value": "Example.com"}],
        "authorizations": [],
        "finalize": f"{BASE}/f",
        "expires": (datetime(2026, 1, 1, tzinfo=UTC) + timedelta(days=7)).isoformat(),
    }
    order = AcmeAuthorityClient._parse_order(f"{BASE}/o", body, request_name="r")
    assert order.domains == frozenset({"example.com"})
    assert order.expires == datetime(2026, 1, 8, tzinfo=UTC)
