from __future__ import annotations

import json
import math
from collections.abc import Collection
from dataclasses import dataclass
from typing import Any, Literal, cast

from open_llm_gateway.errors import ErrorKind, NormalizedError

Role = Literal["system", "user", "assistant"]

VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})
PROMPT_FIELDS = ("input", "inputs", "prompt", "message")
MAX_TOKENS_FIELDS = ("max_tokens", "maxTokens", "max_new_tokens")


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: Role
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class CanonicalRequest:
    messages: tuple[ChatMessage, ...]
    model_key: str
    max_tokens: int | None = None
    temperature: float | None = None
    stream: bool = False


def coerce_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, dict)):
        return bool(value)
    return True


def _coerce_message(raw: Any, index: int) -> ChatMessage | NormalizedError:
    if not isinstance(raw, dict):
        return ChatMessage(role="user", content=coerce_content(raw))

    raw_role = raw.get("role")
    role = "user" if raw_role is None else str(raw_role).strip().lower() or "user"
    if role not in VALID_ROLES:
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST,
            f"messages[{index}].role must be one of system, user, assistant.",
        )
    return ChatMessage(role=cast(Role, role), content=coerce_content(raw.get("content")))


def _integral(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _coerce_max_tokens(value: Any) -> int | None | NormalizedError:
    if value is None:
        return None
    parsed = _integral(value)
    if parsed is None or parsed <= 0:
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST, "max_tokens must be a positive integer."
        )
    return parsed


def _coerce_temperature(value: Any) -> float | None | NormalizedError:
    if value is None:
        return None
    if isinstance(value, bool):
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST, "temperature must be a number."
        )
    try:
        parsed = float(value)
    except (TypeError, ValueError, OverflowError):
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST, "temperature must be a number."
        )
    if not math.isfinite(parsed):
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST, "temperature must be a finite number."
        )
    if parsed < 0:
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST, "temperature must not be negative."
        )
    return parsed


def _first_present(sources: list[dict[str, Any]], keys: tuple[str, ...]) -> Any:
    for source in sources:
        for key in keys:
            if source.get(key) is not None:
                return source[key]
    return None


def _coerce_stream(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def normalize_request(
    payload: Any,
    *,
    default_model: str,
    known_models: Collection[str] | None = None,
) -> CanonicalRequest | NormalizedError:
    if not isinstance(payload, dict):
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST, "Expected a JSON object request body."
        )

    messages: list[ChatMessage] = []
    raw_messages = payload.get("messages")
    if isinstance(raw_messages, list) and raw_messages:
        for index, raw in enumerate(raw_messages):
            message = _coerce_message(raw, index)
            if isinstance(message, NormalizedError):
                return message
            messages.append(message)
    else:
        for key in PROMPT_FIELDS:
            value = payload.get(key)
            if _is_present(value):
                messages.append(ChatMessage(role="user", content=coerce_content(value)))
                break

    if not messages:
        return NormalizedError.of(
            ErrorKind.INVALID_REQUEST,
            "Missing 'messages' or 'input'/'inputs'/'prompt'/'message' in request body.",
        )

    parameters = payload.get("parameters")
    sources = [payload]
    if isinstance(parameters, dict):
        sources.append(parameters)

    max_tokens = _coerce_max_tokens(_first_present(sources, MAX_TOKENS_FIELDS))
    if isinstance(max_tokens, NormalizedError):
        return max_tokens
    temperature = _coerce_temperature(_first_present(sources, ("temperature",)))
    if isinstance(temperature, NormalizedError):
        return temperature

    raw_model = payload.get("model")
    model_key = str(raw_model).strip() if raw_model is not None else ""
    if known_models is not None and model_key not in known_models:
        model_key = ""

    return CanonicalRequest(
        messages=tuple(messages),
        model_key=model_key or default_model,
        max_tokens=max_tokens,
        temperature=temperature,
        stream=_coerce_stream(payload.get("stream", False)),
    )
