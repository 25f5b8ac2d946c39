from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from open_llm_gateway.config import ModelProfile
from open_llm_gateway.errors import (
    ErrorKind,
    NormalizedError,
    UpstreamAttempt,
    classify_upstream_error,
    is_not_chat_model_error,
)
from open_llm_gateway.normalizer import CanonicalRequest
from open_llm_gateway.translator import (
    UpstreamPayload,
    translate,
    translate_completion_fallback,
)

logger = logging.getLogger("uvicorn.error")

AuditHook = Callable[[dict[str, Any]], None]
SleepFn = Callable[[float], Awaitable[None]]

AUDIT_BODY_PREVIEW_CHARS = 512


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    multiplier: float = 2.0
    max_delay_seconds: float = 4.0

    def __post_init__(self) -> None:
        self.max_attempts = max(1, int(self.max_attempts))
        self.initial_delay_seconds = max(0.0, float(self.initial_delay_seconds))
        self.multiplier = max(1.0, float(self.multiplier))
        self.max_delay_seconds = max(
            self.initial_delay_seconds, float(self.max_delay_seconds)
        )

    def delay_for(self, retry_number: int, retry_after: float | None = None) -> float:
        delay = self.initial_delay_seconds * (self.multiplier ** max(0, retry_number - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay_seconds)


@dataclass(slots=True)
class InvocationResult:
    payload: UpstreamPayload
    attempts: list[UpstreamAttempt]
    stream: httpx.Response | None = None
    chunks: AsyncIterator[bytes] | None = None
    body: Any = None


@dataclass(slots=True)
class _InvocationRun:
    request_id: str
    model_key: str
    attempts: list[UpstreamAttempt] = field(default_factory=list)
    started: float = field(default_factory=time.perf_counter)


def _parse_retry_after_seconds(headers: httpx.Headers) -> float | None:
    raw = (headers.get("retry-after") or "").strip()
    if not raw:
        return None

    try:
        seconds = float(raw)
        if seconds >= 0:
            return seconds
    except ValueError:
        pass

    try:
        retry_dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    delta = (retry_dt - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delta)


async def _replay(
    first_chunk: bytes, rest: AsyncIterator[bytes]
) -> AsyncIterator[bytes]:
    yield first_chunk
    async for chunk in rest:
        yield chunk


def _decode_body(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class UpstreamInvoker:
    def __init__(
        self,
        *,
        api_key: str,
        completion_endpoint_template: str,
        timeout_seconds: float = 60.0,
        connect_timeout_seconds: float = 5.0,
        retry_policy: RetryPolicy | None = None,
        audit_hook: AuditHook | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._api_key = api_key
        self._completion_endpoint_template = completion_endpoint_template
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.retry_policy = retry_policy or RetryPolicy()
        self._audit_hook = audit_hook
        self._sleep = sleep
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=self.timeout_seconds,
                connect=max(0.1, min(float(connect_timeout_seconds), self.timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    async def invoke(
        self,
        request: CanonicalRequest,
        profile: ModelProfile,
        *,
        request_id: str = "-",
    ) -> InvocationResult | NormalizedError:
        run = _InvocationRun(request_id=request_id, model_key=profile.model_key)
        candidates = profile.candidate_ids
        last_error: NormalizedError | None = None

        for index, candidate_id in enumerate(candidates):
            payload = translate(request, profile, candidate_id=candidate_id)
            outcome = await self._invoke_candidate(
                request=request,
                profile=profile,
                payload=payload,
                run=run,
            )
            if isinstance(outcome, InvocationResult):
                return outcome

            last_error = outcome
            has_more_candidates = index < len(candidates) - 1
            if outcome.kind is ErrorKind.MODEL_NOT_FOUND and has_more_candidates:
                logger.info(
                    "upstream_candidate_advance request_id=%s model=%s from=%s to=%s",
                    request_id,
                    profile.model_key,
                    candidate_id,
                    candidates[index + 1],
                )
                continue

            outcome.attempts = list(run.attempts)
            if outcome.kind is not ErrorKind.MODEL_NOT_FOUND or len(candidates) == 1:
                return outcome
            break

        return self._exhausted_error(run=run, candidates=candidates, last_error=last_error)

    def _exhausted_error(
        self,
        *,
        run: _InvocationRun,
        candidates: list[str],
        last_error: NormalizedError | None,
    ) -> NormalizedError:
        logger.error(
            "upstream_exhausted request_id=%s model=%s candidates=%s attempts=%d elapsed_ms=%.1f",
            run.request_id,
            run.model_key,
            ",".join(candidates),
            len(run.attempts),
            (time.perf_counter() - run.started) * 1000.0,
        )
        self._audit(
            "upstream_exhausted",
            request_id=run.request_id,
            model=run.model_key,
            candidates=candidates,
            attempts=[attempt.summary() for attempt in run.attempts],
        )
        error = NormalizedError.of(
            ErrorKind.MODEL_NOT_FOUND,
            f"All model candidates failed for '{run.model_key}': {', '.join(candidates)}.",
            upstream_status=last_error.upstream_status if last_error else None,
            upstream_detail=last_error.upstream_detail if last_error else None,
        )
        error.attempts = list(run.attempts)
        return error

    async def _invoke_candidate(
        self,
        *,
        request: CanonicalRequest,
        profile: ModelProfile,
        payload: UpstreamPayload,
        run: _InvocationRun,
    ) -> InvocationResult | NormalizedError:
        outcome = await self._invoke_with_retry(payload=payload, run=run)
        if isinstance(outcome, InvocationResult):
            return outcome
        if payload.completion_fallback or outcome.upstream_status != 400:
            return outcome
        if not is_not_chat_model_error(400, outcome.upstream_detail):
            return outcome

        fallback_payload = translate_completion_fallback(
            request,
            profile,
            payload.candidate_id,
            self._completion_endpoint_template,
        )
        logger.info(
            "upstream_dialect_fallback request_id=%s candidate=%s url=%s",
            run.request_id,
            payload.candidate_id,
            fallback_payload.url,
        )
        self._audit(
            "upstream_dialect_fallback",
            request_id=run.request_id,
            model=run.model_key,
            candidate=payload.candidate_id,
        )
        return await self._invoke_with_retry(payload=fallback_payload, run=run)

    async def _invoke_with_retry(
        self,
        *,
        payload: UpstreamPayload,
        run: _InvocationRun,
    ) -> InvocationResult | NormalizedError:
        policy = self.retry_policy
        attempt_number = 0
        while True:
            attempt_number += 1
            outcome = await self._send(
                payload=payload,
                run=run,
                attempt_number=attempt_number,
            )
            if isinstance(outcome, InvocationResult):
                return outcome
            if not outcome.retryable or attempt_number >= policy.max_attempts:
                return outcome

            delay = policy.delay_for(attempt_number, outcome.retry_after_seconds)
            logger.info(
                "upstream_retry request_id=%s candidate=%s attempt=%d/%d code=%s delay_s=%.2f",
                run.request_id,
                payload.candidate_id,
                attempt_number,
                policy.max_attempts,
                outcome.kind.value,
                delay,
            )
            self._audit(
                "upstream_retry",
                request_id=run.request_id,
                candidate=payload.candidate_id,
                attempt=attempt_number,
                code=outcome.kind.value,
                delay_seconds=delay,
            )
            await self._sleep(delay)

    def _headers(self, payload: UpstreamPayload) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if payload.stream else "application/json",
        }
        if payload.auth_required:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _record_attempt(
        self,
        *,
        payload: UpstreamPayload,
        run: _InvocationRun,
        attempt_number: int,
        status_code: int | None,
        raw_body: str | None,
        attempt_started: float,
    ) -> None:
        attempt = UpstreamAttempt(
            candidate_id=payload.candidate_id,
            dialect=payload.dialect.value,
            http_status=status_code,
            raw_body=raw_body,
        )
        run.attempts.append(attempt)
        latency_ms = round((time.perf_counter() - attempt_started) * 1000.0, 3)
        logger.info(
            "upstream_attempt request_id=%s candidate=%s dialect=%s completion_fallback=%s "
            "attempt=%d status=%s latency_ms=%.1f",
            run.request_id,
            payload.candidate_id,
            payload.dialect.value,
            payload.completion_fallback,
            attempt_number,
            status_code,
            latency_ms,
        )
        self._audit(
            "upstream_attempt",
            request_id=run.request_id,
            model=run.model_key,
            attempt=attempt_number,
            completion_fallback=payload.completion_fallback,
            latency_ms=latency_ms,
            body_preview=(raw_body or "")[:AUDIT_BODY_PREVIEW_CHARS],
            **attempt.summary(),
        )

    async def _send(
        self,
        *,
        payload: UpstreamPayload,
        run: _InvocationRun,
        attempt_number: int,
    ) -> InvocationResult | NormalizedError:
        attempt_started = time.perf_counter()
        try:
            request = self.client.build_request(
                "POST",
                payload.url,
                json=payload.body,
                headers=self._headers(payload),
            )
        except ValueError as exc:
            logger.warning(
                "upstream_request_unencodable request_id=%s candidate=%s error=%s",
                run.request_id,
                payload.candidate_id,
                exc,
            )
            return NormalizedError.of(
                ErrorKind.INVALID_REQUEST,
                f"Request could not be encoded for upstream: {exc}",
            )
        upstream: httpx.Response | None = None
        try:
            async with asyncio.timeout(self.timeout_seconds):
                upstream = await self.client.send(request, stream=True)
                if upstream.status_code == 200 and payload.stream:
                    return await self._stream_outcome(
                        upstream=upstream,
                        payload=payload,
                        run=run,
                        attempt_number=attempt_number,
                        attempt_started=attempt_started,
                    )
                raw = (await upstream.aread()).decode("utf-8", errors="replace")
        except (TimeoutError, httpx.TimeoutException):
            if upstream is not None:
                await upstream.aclose()
            self._record_attempt(
                payload=payload,
                run=run,
                attempt_number=attempt_number,
                status_code=None,
                raw_body=None,
                attempt_started=attempt_started,
            )
            logger.warning(
                "upstream_timeout request_id=%s candidate=%s timeout_s=%.1f",
                run.request_id,
                payload.candidate_id,
                self.timeout_seconds,
            )
            return NormalizedError.of(
                ErrorKind.UPSTREAM_UNAVAILABLE,
                f"Upstream did not answer within {self.timeout_seconds:.0f}s "
                f"(model: {payload.candidate_id}).",
            )
        except httpx.RequestError as exc:
            if upstream is not None:
                await upstream.aclose()
            self._record_attempt(
                payload=payload,
                run=run,
                attempt_number=attempt_number,
                status_code=None,
                raw_body=None,
                attempt_started=attempt_started,
            )
            error_type = exc.__class__.__name__
            logger.warning(
                "upstream_request_error request_id=%s candidate=%s error_type=%s error=%s",
                run.request_id,
                payload.candidate_id,
                error_type,
                str(exc) or repr(exc),
            )
            return NormalizedError.of(
                ErrorKind.UPSTREAM_UNAVAILABLE,
                f"Could not reach upstream ({error_type}): {str(exc) or repr(exc)}",
            )
        finally:
            if upstream is not None and not (upstream.status_code == 200 and payload.stream):
                await upstream.aclose()

        self._record_attempt(
            payload=payload,
            run=run,
            attempt_number=attempt_number,
            status_code=upstream.status_code,
            raw_body=raw,
            attempt_started=attempt_started,
        )
        if upstream.status_code == 200:
            return InvocationResult(
                payload=payload,
                attempts=run.attempts,
                body=_decode_body(raw),
            )

        error = classify_upstream_error(
            upstream.status_code, raw, model=payload.candidate_id
        )
        if error.retryable:
            error.retry_after_seconds = _parse_retry_after_seconds(upstream.headers)
        logger.warning(
            "upstream_error request_id=%s candidate=%s status=%d code=%s",
            run.request_id,
            payload.candidate_id,
            upstream.status_code,
            error.kind.value,
        )
        return error

    async def _stream_outcome(
        self,
        *,
        upstream: httpx.Response,
        payload: UpstreamPayload,
        run: _InvocationRun,
        attempt_number: int,
        attempt_started: float,
    ) -> InvocationResult | NormalizedError:
        chunks = upstream.aiter_bytes()
        try:
            first_chunk: bytes | None = await anext(chunks)
        except StopAsyncIteration:
            first_chunk = None
        self._record_attempt(
            payload=payload,
            run=run,
            attempt_number=attempt_number,
            status_code=upstream.status_code,
            raw_body=None,
            attempt_started=attempt_started,
        )
        if first_chunk is None:
            await upstream.aclose()
            return NormalizedError.of(
                ErrorKind.UPSTREAM_UNKNOWN,
                f"Upstream returned an empty stream (model: {payload.candidate_id}).",
                upstream_status=upstream.status_code,
            )
        return InvocationResult(
            payload=payload,
            attempts=run.attempts,
            stream=upstream,
            chunks=_replay(first_chunk, chunks),
        )
