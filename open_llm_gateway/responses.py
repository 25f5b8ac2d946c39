from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from typing import Any

import httpx
from fastapi.responses import JSONResponse, StreamingResponse

from open_llm_gateway.config import Dialect
from open_llm_gateway.errors import NormalizedError

logger = logging.getLogger("uvicorn.error")

STREAM_MEDIA_TYPE = "text/event-stream"

_CONTROL_TOKEN_PATTERN = re.compile(
    r"<\|im_start\|>(?:(?:system|user|assistant)[ \t]*\n)?"
    r"|<\|(?:im_start|im_end|endoftext|eot_id|end_of_text|begin_of_text|"
    r"start_header_id|end_header_id|assistant|user|system|end)\|>"
    r"|</?s>|\[/?INST\]|<<SYS>>|<</SYS>>"
)
_LEADING_HEADING_PATTERN = re.compile(r"^[ \t]*(?:#{1,6}[ \t]+)+", re.MULTILINE)


def sanitize_generated_text(text: str) -> str:
    """Strip provider control tokens and leading Markdown heading markers.

    Runs to a fixed point so applying it to its own output changes nothing.
    """
    previous = None
    while previous != text:
        previous = text
        text = _CONTROL_TOKEN_PATTERN.sub("", text)
        text = _LEADING_HEADING_PATTERN.sub("", text)
        text = text.strip()
    return text


def _first_choice(body: Any) -> dict[str, Any] | None:
    if not isinstance(body, dict):
        return None
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    return first if isinstance(first, dict) else None


def _extract_chat_text(body: Any) -> str | None:
    choice = _first_choice(body)
    if choice is None:
        return None
    message = choice.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    if isinstance(choice.get("text"), str):
        return choice["text"]
    return None


def _extract_raw_text(body: Any) -> str | None:
    if isinstance(body, list) and body:
        first = body[0]
        if isinstance(first, str):
            return first
        body = first
    if isinstance(body, dict):
        if isinstance(body.get("generated_text"), str):
            return body["generated_text"]
        if isinstance(body.get("output_text"), str):
            return body["output_text"]
        return _extract_chat_text(body)
    if isinstance(body, str):
        return body
    return None


def extract_text(body: Any, dialect: Dialect) -> str | None:
    if dialect is Dialect.RAW_TEMPLATE:
        text = _extract_raw_text(body)
        return sanitize_generated_text(text) if text is not None else None
    return _extract_chat_text(body)


def buffered_success_response(
    *,
    body: Any,
    dialect: Dialect,
    headers: dict[str, str],
) -> JSONResponse:
    text = extract_text(body, dialect)
    if text is None:
        logger.info("response_extraction_degraded dialect=%s", dialect.value)
    return JSONResponse(
        status_code=200,
        content={"response": body if text is None else text, "raw": body},
        headers=headers,
    )


def stream_relay_response(
    *,
    upstream: httpx.Response,
    chunks: AsyncIterator[bytes] | None = None,
    headers: dict[str, str],
    request_id: str,
) -> StreamingResponse:
    body = chunks if chunks is not None else upstream.aiter_bytes()

    async def relay() -> AsyncIterator[bytes]:
        relayed = 0
        try:
            async for chunk in body:
                relayed += len(chunk)
                yield chunk
        except httpx.HTTPError as exc:
            logger.warning(
                "stream_relay_upstream_error request_id=%s bytes=%d error_type=%s error=%s",
                request_id,
                relayed,
                exc.__class__.__name__,
                str(exc),
            )
        finally:
            await upstream.aclose()
            logger.info(
                "stream_relay_closed request_id=%s bytes=%d", request_id, relayed
            )

    return StreamingResponse(
        content=relay(),
        status_code=200,
        headers={**headers, "cache-control": "no-cache"},
        media_type=STREAM_MEDIA_TYPE,
    )


def error_response(
    error: NormalizedError,
    *,
    headers: dict[str, str],
) -> JSONResponse:
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_payload(),
        headers=headers,
    )
