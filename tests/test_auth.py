from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time

import pytest

from open_llm_gateway.gateway.auth import TokenVerifier, issue_token

SECRET = "shared-secret"


def _token(claims: object, secret: str = SECRET, urlsafe: bool = False) -> str:
    raw = json.dumps(claims, separators=(",", ":")).encode("utf-8")
    encoder = base64.urlsafe_b64encode if urlsafe else base64.b64encode
    encoded = encoder(raw).decode("ascii")
    if urlsafe:
        encoded = encoded.rstrip("=")
    signature = hmac.new(
        secret.encode("utf-8"), encoded.encode("ascii"), hashlib.sha256
    ).hexdigest()
    return f"{encoded}.{signature}"


def test_issued_token_verifies() -> None:
    token = issue_token(SECRET, ttl_seconds=60, claims={"sub": "client-1"})

    verified = TokenVerifier(SECRET).verify(token)

    assert verified is not None
    assert verified.claims["sub"] == "client-1"
    assert verified.expires_at > int(time.time())


def test_url_safe_unpadded_payload_is_accepted() -> None:
    token = _token({"exp": int(time.time()) + 60, "note": "??>>"}, urlsafe=True)

    assert TokenVerifier(SECRET).verify(token) is not None


def test_uppercase_signature_is_accepted() -> None:
    encoded, _, signature = issue_token(SECRET, ttl_seconds=60).rpartition(".")

    assert TokenVerifier(SECRET).verify(f"{encoded}.{signature.upper()}") is not None


@pytest.mark.parametrize(
    "header_value",
    [
        None,
        "",
        "no-separator",
        ".abc",
        "abc.",
        _token({"exp": 4102444800}, secret="other-secret"),
        _token({"exp": 1}),
        _token({"exp": "4102444800"}),
        _token({"exp": True}),
        _token({"sub": "missing-exp"}),
        _token(["not", "an", "object"]),
    ],
)
def test_invalid_tokens_are_rejected(header_value: str | None) -> None:
    assert TokenVerifier(SECRET).verify(header_value) is None


def test_expiry_boundary_is_exclusive() -> None:
    token = _token({"exp": 1_000})
    verifier = TokenVerifier(SECRET)

    assert verifier.verify(token, now=999.5) is not None
    assert verifier.verify(token, now=1_000) is None


def test_tampered_payload_is_rejected() -> None:
    _, _, signature = issue_token(SECRET, ttl_seconds=60).rpartition(".")
    tampered = base64.b64encode(b'{"exp":4102444800,"admin":true}').decode("ascii")

    assert TokenVerifier(SECRET).verify(f"{tampered}.{signature}") is None


def test_verifier_requires_secret() -> None:
    with pytest.raises(ValueError):
        TokenVerifier("")
