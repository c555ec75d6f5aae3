"""ACME (RFC 8555) authority client.

Speaks the order/challenge/finalize protocol to an external CA over
``httpx.AsyncClient``.  Every HTTP exchange goes through
:func:`~acmerecon.core.retry.retry_async`, so transient failures and
rate limiting are absorbed here and only terminal outcomes reach the
issuance state machine.

Error mapping:

- connection errors, timeouts, 5xx -> :class:`TransientNetworkError`
- 429 or ``urn:ietf:params:acme:error:rateLimited`` -> :class:`RateLimited`
  (honouring ``Retry-After``)
- any other 4xx -> :class:`AuthorityRejected`
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import httpx

from acmerecon.core.crypto import load_or_create_account_key
from acmerecon.core.errors import (
    AuthorityRejected,
    DeadlineExceeded,
    ProtocolError,
    RateLimited,
    TransientNetworkError,
)
from acmerecon.core.jws import b64url_encode, dns01_txt_value, jwk_from_key, sign_eab, sign_jws
from acmerecon.core.retry import RetryPolicy, Sleep, retry_async
from acmerecon.core.types import ChallengeStatus, ErrorKind, OrderStatus
from acmerecon.models.certificate import IssuedCertificate
from acmerecon.models.challenge import Challenge
from acmerecon.models.order import Order

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from acmerecon.config.settings import AuthoritySettings
    from acmerecon.core.jws import AccountKey
    from acmerecon.metrics.collector import MetricsCollector
    from acmerecon.models.issuer import IssuerConfig

log = logging.getLogger(__name__)

_PROBLEM_PREFIX = "urn:ietf:params:acme:error:"
_JOSE_CONTENT_TYPE = "application/jose+json"
_PEM_CHAIN_TYPE = "application/pem-certificate-chain"
_DNS01 = "dns-01"


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP date).

    Returns ``None`` when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        log.debug("Ignoring unparseable Retry-After header: %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max((when - now).total_seconds(), 0.0)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _json_object(response: httpx.Response, what: str) -> dict[str, Any]:
    """Decode a JSON object body, mapping garbage to :class:`ProtocolError`."""
    try:
        body = response.json()
    except ValueError as exc:
        msg = f"Malformed {what} from {response.request.url}: {exc}"
        raise ProtocolError(msg) from exc
    if not isinstance(body, dict):
        msg = f"Malformed {what} from {response.request.url}: expected a JSON object"
        raise ProtocolError(msg)
    return body


def _problem_from(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"detail": response.text[:200]}
    return body if isinstance(body, dict) else {}


class AcmeAuthorityClient:
    """ACME client bound to one :class:`IssuerConfig`.

    Parameters
    ----------
    issuer:
        Directory URL, contacts, account key location and EAB credentials.
    settings:
        The ``authority`` configuration section.
    account_key:
        Pre-loaded account key; when omitted it is loaded from (or
        generated at) ``issuer.account_key_path`` on first use.
    http_client:
        An existing ``httpx.AsyncClient`` (tests pass one with a
        ``MockTransport``).  A client created here is closed by
        :meth:`aclose`.
    metrics:
        Optional collector; rate-limit responses are counted.
    sleep, clock:
        Injectable for tests.

    """

    def __init__(  # noqa: PLR0913
        self,
        issuer: IssuerConfig,
        settings: AuthoritySettings,
        *,
        account_key: AccountKey | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._issuer = issuer
        self._metrics = metrics
        self._settings = settings
        self._key = account_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            verify=issuer.verify_ssl,
            timeout=issuer.timeout_seconds,
            headers={"User-Agent": settings.user_agent},
        )
        self._sleep = sleep
        self._clock = clock
        self._policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.backoff_base_seconds,
            max_delay=settings.backoff_max_seconds,
            attempts_by_kind={ErrorKind.RATE_LIMITED: settings.rate_limit_max_attempts},
        )
        self._directory: dict[str, Any] | None = None
        self._nonces: list[str] = []
        self._account_url: str | None = None
        self._jwk: dict[str, Any] | None = None
        self._account_lock = asyncio.Lock()

    @property
    def issuer(self) -> IssuerConfig:
        return self._issuer

    @property
    def account_url(self) -> str | None:
        return self._account_url

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Perform one HTTP exchange and map failures onto the error taxonomy."""
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            msg = f"{method} {url} failed: {exc}"
            raise TransientNetworkError(msg) from exc

        nonce = response.headers.get("Replay-Nonce")
        if nonce:
            self._nonces.append(nonce)

        if response.status_code < 400:  # noqa: PLR2004
            return response

        problem = _problem_from(response)
        ptype = problem.get("type", "")
        detail = problem.get("detail") or f"HTTP {response.status_code}"

        if response.status_code == 429 or ptype == f"{_PROBLEM_PREFIX}rateLimited":  # noqa: PLR2004
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            if self._metrics is not None:
                self._metrics.increment(
                    "acmerecon_rate_limited_total",
                    labels={"issuer": self._issuer.name},
                )
            msg = f"Rate limited by authority at {url}: {detail}"
            raise RateLimited(msg, retry_after=retry_after)
        if response.status_code >= 500:  # noqa: PLR2004
            msg = f"Authority error {response.status_code} at {url}: {detail}"
            raise TransientNetworkError(msg)

        msg = f"Authority rejected {method} {url}: {detail}"
        raise AuthorityRejected(msg, problem=problem, status_code=response.status_code)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        description: str,
        **kwargs: Any,
    ) -> httpx.Response:
        return await retry_async(
            lambda: self._send(method, url, **kwargs),
            self._policy,
            sleep=self._sleep,
            description=description,
        )

    async def _get_directory(self) -> dict[str, Any]:
        if self._directory is None:
            response = await self._request(
                "GET",
                self._issuer.directory_url,
                description="fetch directory",
            )
            directory = _json_object(response, "ACME directory")
            missing = [f for f in ("newNonce", "newAccount", "newOrder") if f not in directory]
            if missing:
                msg = f"ACME directory at {self._issuer.directory_url} lacks {missing}"
                raise ProtocolError(msg)
            self._directory = directory
        return self._directory

    async def _next_nonce(self) -> str:
        if self._nonces:
            return self._nonces.pop()
        directory = await self._get_directory()
        await self._request("HEAD", directory["newNonce"], description="fetch nonce")
        if not self._nonces:
            msg = "Authority did not return a Replay-Nonce"
            raise ProtocolError(msg)
        return self._nonces.pop()

    async def _post_once(
        self,
        url: str,
        payload: dict[str, Any] | None,
        *,
        use_kid: bool,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Sign and POST; a ``badNonce`` rejection is retried once with a fresh nonce."""
        headers = {"Content-Type": _JOSE_CONTENT_TYPE, **(headers or {})}
        for attempt in (1, 2):
            nonce = await self._next_nonce()
            body = sign_jws(
                self._account_key(),
                payload,
                url=url,
                nonce=nonce,
                kid=self._account_url if use_kid else None,
            )
            try:
                return await self._send(
                    "POST",
                    url,
                    json=body,
                    headers=headers,
                )
            except AuthorityRejected as exc:
                if attempt == 1 and exc.problem_type == f"{_PROBLEM_PREFIX}badNonce":
                    log.debug("badNonce from %s, retrying with a fresh nonce", url)
                    continue
                raise
        msg = "unreachable"  # pragma: no cover
        raise AssertionError(msg)  # pragma: no cover

    async def _post(
        self,
        url: str,
        payload: dict[str, Any] | None,
        *,
        description: str,
        use_kid: bool = True,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if use_kid:
            await self._ensure_account()
        return await retry_async(
            lambda: self._post_once(url, payload, use_kid=use_kid, headers=headers),
            self._policy,
            sleep=self._sleep,
            description=description,
        )

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def _account_key(self) -> AccountKey:
        if self._key is None:
            self._key = load_or_create_account_key(
                self._issuer.account_key_path,
                self._issuer.account_key_type,
            )
        return self._key

    def _account_jwk(self) -> dict[str, Any]:
        if self._jwk is None:
            self._jwk = jwk_from_key(self._account_key())
        return self._jwk

    async def _ensure_account(self) -> str:
        """Register (or look up) the ACME account and cache its URL."""
        async with self._account_lock:
            if self._account_url:
                return self._account_url

            directory = await self._get_directory()
            url = directory["newAccount"]
            payload: dict[str, Any] = {"termsOfServiceAgreed": True}
            if self._issuer.contact:
                payload["contact"] = list(self._issuer.contact)
            if self._issuer.eab_kid and self._issuer.eab_hmac_key:
                payload["externalAccountBinding"] = sign_eab(
                    eab_kid=self._issuer.eab_kid,
                    hmac_key_b64=self._issuer.eab_hmac_key,
                    account_jwk=self._account_jwk(),
                    url=url,
                )

            response = await self._post(
                url,
                payload,
                description="register account",
                use_kid=False,
            )
            location = response.headers.get("Location")
            if not location:
                msg = "newAccount response carried no Location header"
                raise ProtocolError(msg)
            self._account_url = location
            log.info(
                "ACME account ready for issuer '%s': %s",
                self._issuer.name,
                location,
            )
            return location

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_order(
        url: str,
        body: dict[str, Any],
        *,
        request_name: str,
        domains: frozenset[str] | None = None,
        challenges: tuple[Challenge, ...] = (),
    ) -> Order:
        try:
            status = OrderStatus(body["status"])
            identifiers = frozenset(i["value"].lower() for i in body.get("identifiers", []))
            return Order(
                url=url,
                request_name=request_name,
                domains=domains if domains is not None else identifiers,
                status=status,
                authorization_urls=tuple(body.get("authorizations", [])),
                finalize_url=body["finalize"],
                certificate_url=body.get("certificate"),
                expires=_parse_timestamp(body.get("expires")),
                challenges=challenges,
                error=body.get("error"),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            msg = f"Malformed order object from {url}: {exc}"
            raise ProtocolError(msg) from exc

    async def create_order(self, domains: Iterable[str], *, request_name: str = "") -> Order:
        """POST ``newOrder`` for *domains* and return the created :class:`Order`."""
        wanted = frozenset(domains)
        directory = await self._get_directory()
        payload = {"identifiers": [{"type": "dns", "value": d} for d in sorted(wanted)]}
        response = await self._post(directory["newOrder"], payload, description="create order")

        url = response.headers.get("Location")
        if not url:
            msg = "newOrder response carried no Location header"
            raise ProtocolError(msg)
        body = _json_object(response, "order object")
        order = self._parse_order(url, body, request_name=request_name, domains=wanted)
        log.info(
            "Created order %s for %d domain(s) (%s)",
            url,
            len(wanted),
            order.status.value,
        )
        return order

    async def _fetch_order(self, order: Order) -> Order:
        response = await self._post(order.url, None, description="poll order")
        return self._parse_order(
            order.url,
            _json_object(response, "order object"),
            request_name=order.request_name,
            domains=order.domains,
            challenges=order.challenges,
        )

    async def poll_order_status(self, order: Order) -> OrderStatus:
        """POST-as-GET the order URL and return its status."""
        return (await self._fetch_order(order)).status

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    async def get_challenges(self, order: Order) -> list[Challenge]:
        """Fetch each authorization and pick its ``dns-01`` challenge.

        Authorizations the authority already considers ``valid`` need no
        proof and are skipped.

        Raises
        ------
        AuthorityRejected
            If an authorization is in a failed state or offers no
            ``dns-01`` challenge.

        """
        jwk = self._account_jwk()
        challenges: list[Challenge] = []

        for authz_url in order.authorization_urls:
            response = await self._post(authz_url, None, description="fetch authorization")
            body = _json_object(response, "authorization object")
            status = body.get("status")
            try:
                domain = body["identifier"]["value"].lower()
            except (KeyError, TypeError, AttributeError) as exc:
                msg = f"Malformed authorization object from {authz_url}: {exc}"
                raise ProtocolError(msg) from exc
            if body.get("wildcard"):
                domain = f"*.{domain}"

            if status == "valid":
                log.debug("Authorization for %s already valid, skipping", domain)
                continue
            if status != "pending":
                msg = f"Authorization for {domain} is {status}"
                raise AuthorityRejected(msg, problem=body.get("error"))

            try:
                dns_challenge = next(
                    (c for c in body.get("challenges", []) if c.get("type") == _DNS01),
                    None,
                )
                if dns_challenge is None:
                    msg = f"Authority offered no {_DNS01} challenge for {domain}"
                    raise AuthorityRejected(msg)
                token = dns_challenge["token"]
                challenge_url = dns_challenge["url"]
            except (KeyError, TypeError, AttributeError) as exc:
                msg = f"Malformed challenge in authorization {authz_url}: {exc}"
                raise ProtocolError(msg) from exc

            challenges.append(
                Challenge(
                    domain=domain,
                    token=token,
                    url=challenge_url,
                    authorization_url=authz_url,
                    txt_value=dns01_txt_value(token, jwk),
                ),
            )

        return challenges

    async def notify_ready(self, challenge: Challenge) -> None:
        """POST ``{}`` to the challenge URL to request validation."""
        response = await self._post(challenge.url, {}, description="respond to challenge")
        body = _json_object(response, "challenge object")
        if body.get("status") == ChallengeStatus.INVALID.value:
            error = body.get("error") or {}
            msg = f"Challenge for {challenge.domain} rejected: {error.get('detail', 'invalid')}"
            raise AuthorityRejected(msg, problem=error)
        log.debug("Challenge for %s submitted (%s)", challenge.domain, body.get("status"))

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def _await_valid(self, order: Order) -> Order:
        deadline = self._clock() + self._settings.poll_timeout_seconds
        while order.status in (OrderStatus.READY, OrderStatus.PROCESSING):
            if self._clock() >= deadline:
                msg = (
                    f"Order {order.url} still {order.status.value} after "
                    f"{self._settings.poll_timeout_seconds:.0f}s"
                )
                raise DeadlineExceeded(msg)
            await self._sleep(self._settings.poll_interval_seconds)
            order = await self._fetch_order(order)

        if order.status != OrderStatus.VALID:
            detail = (order.error or {}).get("detail", order.status.value)
            msg = f"Order {order.url} failed during finalization: {detail}"
            raise AuthorityRejected(msg, problem=order.error)
        return order

    async def finalize(self, order: Order, csr: bytes) -> IssuedCertificate:
        """Submit *csr*, wait for the order to become valid, download the chain."""
        response = await self._post(
            order.finalize_url,
            {"csr": b64url_encode(csr)},
            description="finalize order",
        )
        order = self._parse_order(
            order.url,
            _json_object(response, "order object"),
            request_name=order.request_name,
            domains=order.domains,
            challenges=order.challenges,
        )
        order = await self._await_valid(order)

        if not order.certificate_url:
            msg = f"Valid order {order.url} carried no certificate URL"
            raise ProtocolError(msg)

        response = await self._post(
            order.certificate_url,
            None,
            description="download certificate",
            headers={"Accept": _PEM_CHAIN_TYPE},
        )
        try:
            issued = IssuedCertificate.from_pem(response.text, "")
        except ValueError as exc:
            msg = f"Could not parse certificate chain from {order.certificate_url}: {exc}"
            raise ProtocolError(msg) from exc

        log.info(
            "Downloaded certificate serial=%s expiring %s",
            issued.serial_number,
            issued.expires_at.isoformat(),
        )
        return issued

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
