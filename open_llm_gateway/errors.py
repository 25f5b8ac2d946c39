from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    AUTH_FAILED = "AuthFailed"
    PAYMENT_REQUIRED = "PaymentRequired"
    MODEL_LOADING = "ModelLoading"
    RATE_LIMITED = "RateLimited"
    MODEL_NOT_FOUND = "ModelNotFound"
    INVALID_REQUEST = "InvalidRequest"
    CONTEXT_LIMIT_EXCEEDED = "ContextLimitExceeded"
    UPSTREAM_UNAVAILABLE = "UpstreamUnavailable"
    UPSTREAM_UNKNOWN = "UpstreamUnknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS_BY_KIND[self]


_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.MODEL_LOADING,
        ErrorKind.UPSTREAM_UNAVAILABLE,
    }
)

_HTTP_STATUS_BY_KIND = {
    ErrorKind.AUTH_FAILED: 401,
    ErrorKind.PAYMENT_REQUIRED: 402,
    ErrorKind.MODEL_LOADING: 503,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.MODEL_NOT_FOUND: 404,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.CONTEXT_LIMIT_EXCEEDED: 400,
    ErrorKind.UPSTREAM_UNAVAILABLE: 502,
    ErrorKind.UPSTREAM_UNKNOWN: 502,
}

_CONTEXT_LIMIT_MARKERS = (
    "context length",
    "context_length",
    "context window",
    "maximum context",
    "too many tokens",
    "input validation error: `inputs` tokens",
)


@dataclass(slots=True)
class UpstreamAttempt:
    """Audit record of a single upstream try."""

    candidate_id: str
    dialect: str
    http_status: int | None = None
    raw_body: str | None = None

    def summary(self) -> dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "dialect": self.dialect,
            "http_status": self.http_status,
        }


@dataclass(slots=True)
class NormalizedError:
    kind: ErrorKind
    message: str
    upstream_status: int | None = None
    upstream_detail: str | None = None
    retryable: bool = False
    attempts: list[UpstreamAttempt] = field(default_factory=list)
    retry_after_seconds: float | None = None

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        upstream_status: int | None = None,
        upstream_detail: str | None = None,
    ) -> NormalizedError:
        return cls(
            kind=kind,
            message=message,
            upstream_status=upstream_status,
            upstream_detail=upstream_detail,
            retryable=kind.retryable,
        )

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {
            "code": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.upstream_detail is not None:
            error["details"] = _decode_detail(self.upstream_detail)
        if self.upstream_status is not None:
            error["upstream_status"] = self.upstream_status
        if self.attempts:
            error["attempts"] = [attempt.summary() for attempt in self.attempts]
        return {"error": error}


def _decode_detail(detail: str) -> Any:
    try:
        return json.loads(detail)
    except ValueError:
        return detail


def upstream_error_message(body: Any) -> str:
    """Best-effort human message out of a provider error body."""
    if isinstance(body, str):
        text = body.strip()
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, str):
            return parsed.strip()
        body = parsed
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message")
            if message is not None:
                return str(message).strip()
        elif error is not None:
            return str(error).strip()
        for key in ("message", "detail"):
            if body.get(key) is not None:
                return str(body[key]).strip()
    if body is None:
        return ""
    return json.dumps(body, ensure_ascii=True, default=str)


def is_not_chat_model_error(status_code: int, body: Any) -> bool:
    if status_code != 400:
        return False
    message = upstream_error_message(body).lower()
    if "not a chat model" in message:
        return True
    return "v1/chat/completions" in message and "not supported" in message


def is_context_limit_error(body: Any) -> bool:
    message = upstream_error_message(body).lower()
    return any(marker in message for marker in _CONTEXT_LIMIT_MARKERS)


def classify_upstream_error(
    status_code: int,
    raw_body: str | None,
    *,
    model: str | None = None,
) -> NormalizedError:
    upstream_message = upstream_error_message(raw_body)
    model_label = model or "unknown"

    if status_code in {401, 403}:
        kind = ErrorKind.AUTH_FAILED
        message = (
            f"Upstream rejected the gateway credential (status {status_code})."
        )
    elif status_code == 402:
        kind = ErrorKind.PAYMENT_REQUIRED
        message = "Upstream requires payment or credits for this model."
    elif status_code == 503:
        kind = ErrorKind.MODEL_LOADING
        message = (
            f"Model '{model_label}' is loading or temporarily unavailable. "
            "Try again shortly."
        )
    elif status_code == 429:
        kind = ErrorKind.RATE_LIMITED
        message = "Upstream rate limit reached."
    elif status_code == 404:
        kind = ErrorKind.MODEL_NOT_FOUND
        message = (
            f"Model '{model_label}' was not found or inference is disabled. "
            "Check the model id."
        )
    elif status_code == 400:
        if is_context_limit_error(raw_body):
            kind = ErrorKind.CONTEXT_LIMIT_EXCEEDED
            message = "Request exceeds the model context length."
        else:
            kind = ErrorKind.INVALID_REQUEST
            message = f"Upstream rejected the request: {upstream_message or 'bad request'}"
    elif status_code in {502, 504}:
        kind = ErrorKind.UPSTREAM_UNAVAILABLE
        message = f"Upstream gateway error (status {status_code})."
    else:
        kind = ErrorKind.UPSTREAM_UNKNOWN
        message = f"Unexpected upstream status {status_code}."

    return NormalizedError.of(
        kind,
        message,
        upstream_status=status_code,
        upstream_detail=raw_body,
    )
