from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from open_llm_gateway.config import Dialect, ModelProfile
from open_llm_gateway.normalizer import CanonicalRequest, ChatMessage

TURN_START = "<|im_start|>"
TURN_END = "<|im_end|>"
ASSISTANT_TURN_OPEN = f"{TURN_START}assistant\n"

DEFAULT_MAX_TOKENS = 512
DEFAULT_TEMPERATURE = 0.7

_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}


@dataclass(frozen=True, slots=True)
class UpstreamPayload:
    candidate_id: str
    dialect: Dialect
    url: str
    body: dict[str, Any]
    stream: bool
    auth_required: bool = True
    completion_fallback: bool = False


def _with_system_turn(
    messages: Iterable[ChatMessage], system_prompt: str
) -> list[ChatMessage]:
    ordered = list(messages)
    if not ordered or ordered[0].role != "system":
        ordered.insert(0, ChatMessage(role="system", content=system_prompt))
    return ordered


def render_chat_template(
    messages: Iterable[ChatMessage], system_prompt: str
) -> str:
    parts = [
        f"{TURN_START}{message.role}\n{message.content}{TURN_END}\n"
        for message in _with_system_turn(messages, system_prompt)
    ]
    parts.append(ASSISTANT_TURN_OPEN)
    return "".join(parts)


def parse_chat_template(rendered: str) -> list[ChatMessage]:
    """Recover closed turns from a rendered template; the open assistant turn is ignored."""
    turns: list[ChatMessage] = []
    for segment in rendered.split(TURN_START)[1:]:
        if TURN_END not in segment:
            continue
        body, _, _ = segment.partition(TURN_END)
        role, _, content = body.partition("\n")
        turns.append(ChatMessage(role=role, content=content))  # type: ignore[arg-type]
    return turns


def render_flat_prompt(messages: Iterable[ChatMessage]) -> str:
    lines = [
        f"{_ROLE_LABELS[message.role]}: {message.content}" for message in messages
    ]
    lines.append(f"{_ROLE_LABELS['assistant']}:")
    return "\n".join(lines)


def _max_tokens(request: CanonicalRequest) -> int:
    return request.max_tokens if request.max_tokens is not None else DEFAULT_MAX_TOKENS


def _temperature(request: CanonicalRequest) -> float:
    return (
        request.temperature
        if request.temperature is not None
        else DEFAULT_TEMPERATURE
    )


def translate(
    request: CanonicalRequest,
    profile: ModelProfile,
    *,
    candidate_id: str | None = None,
) -> UpstreamPayload:
    upstream_id = candidate_id or profile.upstream_id
    if profile.dialect is Dialect.RAW_TEMPLATE:
        body: dict[str, Any] = {
            "inputs": render_chat_template(request.messages, profile.system_prompt),
            "parameters": {
                "max_new_tokens": _max_tokens(request),
                "temperature": _temperature(request),
                "return_full_text": False,
                "stream": request.stream,
            },
        }
    else:
        body = {
            "model": upstream_id,
            "messages": [message.as_dict() for message in request.messages],
            "max_tokens": _max_tokens(request),
            "temperature": _temperature(request),
            "stream": request.stream,
        }
    return UpstreamPayload(
        candidate_id=upstream_id,
        dialect=profile.dialect,
        url=profile.endpoint_for(upstream_id),
        body=body,
        stream=request.stream,
        auth_required=profile.requires_auth_header,
    )


def translate_completion_fallback(
    request: CanonicalRequest,
    profile: ModelProfile,
    candidate_id: str,
    completion_endpoint_template: str,
) -> UpstreamPayload:
    return UpstreamPayload(
        candidate_id=candidate_id,
        dialect=Dialect.CHAT_JSON,
        url=completion_endpoint_template.format(upstream_id=candidate_id),
        body={
            "model": candidate_id,
            "prompt": render_flat_prompt(request.messages),
            "max_tokens": _max_tokens(request),
            "temperature": _temperature(request),
            "stream": request.stream,
        },
        stream=request.stream,
        auth_required=profile.requires_auth_header,
        completion_fallback=True,
    )
