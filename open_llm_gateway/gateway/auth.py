from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
import time
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from open_llm_gateway.errors import ErrorKind, NormalizedError

AUTH_HEADER = "x-auth-token"


@dataclass(frozen=True, slots=True)
class AuthToken:
    payload: bytes
    signature: str
    claims: dict[str, Any]

    @property
    def expires_at(self) -> int:
        return int(self.claims["exp"])


def _sign(secret: bytes, encoded_payload: str) -> str:
    return hmac.new(secret, encoded_payload.encode("ascii"), hashlib.sha256).hexdigest()


def _b64decode(value: str) -> bytes:
    normalized = value.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized, validate=True)


def issue_token(secret: str, *, ttl_seconds: int, claims: dict[str, Any] | None = None) -> str:
    body = {**(claims or {}), "exp": int(time.time()) + int(ttl_seconds)}
    encoded = base64.b64encode(
        json.dumps(body, separators=(",", ":")).encode("utf-8")
    ).decode("ascii")
    return f"{encoded}.{_sign(secret.encode('utf-8'), encoded)}"


class TokenVerifier:
    def __init__(self, secret: str):
        if not secret:
            raise ValueError("TokenVerifier requires a non-empty shared secret.")
        self._secret = secret.encode("utf-8")

    def verify(self, header_value: str | None, *, now: float | None = None) -> AuthToken | None:
        if not header_value:
            return None
        encoded, sep, signature = header_value.strip().rpartition(".")
        if not sep or not encoded or not signature or not signature.isascii():
            return None

        try:
            expected = _sign(self._secret, encoded)
        except UnicodeEncodeError:
            return None
        if not hmac.compare_digest(expected, signature.lower()):
            return None

        try:
            payload = _b64decode(encoded)
            claims = json.loads(payload)
        except (binascii.Error, ValueError):
            return None
        if not isinstance(claims, dict):
            return None

        exp = claims.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        if not math.isfinite(exp):
            return None
        current = time.time() if now is None else now
        if exp <= int(current):
            return None

        return AuthToken(payload=payload, signature=signature, claims=claims)


class Authenticator:
    def __init__(self, verifier: TokenVerifier):
        self.verifier = verifier

    async def authenticate_request(
        self, request: Request, *, headers: dict[str, str] | None = None
    ) -> JSONResponse | None:
        token = self.verifier.verify(request.headers.get(AUTH_HEADER))
        if token is None:
            return _unauthorized(headers or {})
        request.state.auth = token
        return None


def _unauthorized(headers: dict[str, str]) -> JSONResponse:
    error = NormalizedError.of(ErrorKind.AUTH_FAILED, "Authentication required.")
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_payload(),
        headers=headers,
    )
