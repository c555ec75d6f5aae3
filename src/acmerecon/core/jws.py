"""JWS signing and JWK utilities for the ACME client (RFC 7515 / 7517 / 7638).

Uses the ``cryptography`` library directly -- no josepy dependency.
Produces JWS Flattened JSON Serialization objects ready to be POSTed
to an ACME server, plus the key-authorization helpers used by DNS-01.
"""

from __future__ import annotations

import base64
import hashlib
import hmac as _hmac
import json
import logging
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa, utils

log = logging.getLogger(__name__)

AccountKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

# --- Constants -----------------------------------------------------------

_EC_ALGORITHMS: dict[str, tuple[str, hashes.HashAlgorithm, int]] = {
    # curve name -> (JWS alg, hash, coordinate size in bytes)
    "secp256r1": ("ES256", hashes.SHA256(), 32),
    "secp384r1": ("ES384", hashes.SHA384(), 48),
}

_JWK_CURVE_NAMES = {
    "secp256r1": "P-256",
    "secp384r1": "P-384",
}


# --- Base64url helpers (RFC 7515 S2) -------------------------------------


def b64url_encode(b: bytes) -> str:
    """Encode bytes to base64url without padding."""
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    """Decode a base64url string (no padding required)."""
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _int_to_b64(value: int, length: int | None = None) -> str:
    size = length or max(1, (value.bit_length() + 7) // 8)
    return b64url_encode(value.to_bytes(size, "big"))


# --- JWK -----------------------------------------------------------------


def jwk_from_key(key: AccountKey) -> dict[str, Any]:
    """Return the public JWK dictionary for an account private key.

    Raises
    ------
    ValueError
        If the key type or curve is not supported.

    """
    if isinstance(key, rsa.RSAPrivateKey):
        numbers = key.public_key().public_numbers()
        return {"e": _int_to_b64(numbers.e), "kty": "RSA", "n": _int_to_b64(numbers.n)}

    if isinstance(key, ec.EllipticCurvePrivateKey):
        curve = key.curve.name
        if curve not in _EC_ALGORITHMS:
            msg = f"Unsupported EC curve '{curve}'; supported: {sorted(_EC_ALGORITHMS)}"
            raise ValueError(msg)
        size = _EC_ALGORITHMS[curve][2]
        numbers = key.public_key().public_numbers()
        return {
            "crv": _JWK_CURVE_NAMES[curve],
            "kty": "EC",
            "x": _int_to_b64(numbers.x, size),
            "y": _int_to_b64(numbers.y, size),
        }

    msg = f"Unsupported account key type {type(key).__name__}"
    raise ValueError(msg)


def algorithm_for(key: AccountKey) -> str:
    """Return the JWS ``alg`` value matching *key*."""
    if isinstance(key, rsa.RSAPrivateKey):
        return "RS256"
    return _EC_ALGORITHMS[key.curve.name][0]


def compute_thumbprint(jwk_dict: dict[str, Any]) -> str:
    """Compute the RFC 7638 JWK Thumbprint using SHA-256.

    Construct the canonical JSON representation with required members
    in lexicographic order, then return the base64url-encoded SHA-256
    hash.
    """
    kty = jwk_dict.get("kty")

    if kty == "RSA":
        canonical = {"e": jwk_dict["e"], "kty": "RSA", "n": jwk_dict["n"]}
    elif kty == "EC":
        canonical = {
            "crv": jwk_dict["crv"],
            "kty": "EC",
            "x": jwk_dict["x"],
            "y": jwk_dict["y"],
        }
    else:
        msg = f"Cannot compute thumbprint for kty '{kty}'"
        raise ValueError(msg)

    # RFC 7638 requires members in lexicographic order, no whitespace
    canonical_json = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical_json.encode("ascii")).digest()
    return b64url_encode(digest)


# --- Key authorization (RFC 8555 S8.1, S8.4) -----------------------------


def key_authorization(token: str, jwk_dict: dict[str, Any]) -> str:
    """Compute the key authorization string: ``token.thumbprint``."""
    return f"{token}.{compute_thumbprint(jwk_dict)}"


def dns01_txt_value(token: str, jwk_dict: dict[str, Any]) -> str:
    """Return the TXT record value proving control for *token*.

    The base64url-encoded SHA-256 digest of the key authorization.
    """
    digest = hashlib.sha256(key_authorization(token, jwk_dict).encode("ascii")).digest()
    return b64url_encode(digest)


# --- Signing -------------------------------------------------------------


def _sign(key: AccountKey, signing_input: bytes) -> bytes:
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    _alg, hash_alg, size = _EC_ALGORITHMS[key.curve.name]
    der = key.sign(signing_input, ec.ECDSA(hash_alg))
    r, s = utils.decode_dss_signature(der)
    # JWS wants the raw r || s concatenation, not DER
    return r.to_bytes(size, "big") + s.to_bytes(size, "big")


def sign_jws(
    key: AccountKey,
    payload: dict[str, Any] | None,
    *,
    url: str,
    nonce: str | None,
    kid: str | None = None,
) -> dict[str, str]:
    """Build a flattened JWS for an ACME request.

    Parameters
    ----------
    key:
        The account private key.
    payload:
        JSON payload, or ``None`` for POST-as-GET (empty payload).
    url:
        The request URL (bound into the protected header).
    nonce:
        A fresh ``Replay-Nonce``; ``None`` only for EAB inner objects.
    kid:
        The account URL.  When omitted the public ``jwk`` is embedded
        instead (``newAccount`` requests).

    """
    protected: dict[str, Any] = {"alg": algorithm_for(key), "url": url}
    if nonce is not None:
        protected["nonce"] = nonce
    if kid:
        protected["kid"] = kid
    else:
        protected["jwk"] = jwk_from_key(key)

    protected_b64 = b64url_encode(json.dumps(protected, separators=(",", ":")).encode())
    payload_b64 = (
        "" if payload is None else b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    )
    signature = _sign(key, f"{protected_b64}.{payload_b64}".encode("ascii"))
    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": b64url_encode(signature),
    }


def sign_eab(
    *,
    eab_kid: str,
    hmac_key_b64: str,
    account_jwk: dict[str, Any],
    url: str,
) -> dict[str, str]:
    """Build the External Account Binding inner JWS (RFC 8555 §7.3.4).

    An HS256 JWS over the account's public JWK, keyed by the MAC key
    issued out of band by the CA.
    """
    protected = {"alg": "HS256", "kid": eab_kid, "url": url}
    protected_b64 = b64url_encode(json.dumps(protected, separators=(",", ":")).encode())
    payload_b64 = b64url_encode(json.dumps(account_jwk, separators=(",", ":")).encode())
    signing_input = f"{protected_b64}.{payload_b64}".encode("ascii")
    mac = _hmac.new(b64url_decode(hmac_key_b64), signing_input, "sha256").digest()
    return {
        "protected": protected_b64,
        "payload": payload_b64,
        "signature": b64url_encode(mac),
    }
