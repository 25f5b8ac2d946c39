from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from open_llm_gateway.config import GatewayConfigurationError, load_gateway_config
from open_llm_gateway.errors import NormalizedError
from open_llm_gateway.gateway.audit import JsonlAuditLogger
from open_llm_gateway.gateway.auth import Authenticator, TokenVerifier
from open_llm_gateway.normalizer import normalize_request
from open_llm_gateway.proxy import RetryPolicy, UpstreamInvoker
from open_llm_gateway.resolver import ModelResolver
from open_llm_gateway.responses import (
    buffered_success_response,
    error_response,
    stream_relay_response,
)
from open_llm_gateway.settings import Settings, get_settings

app = FastAPI(
    title="Open-LLM Gateway",
    description="Chat gateway translating one client protocol to several upstream dialects.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

GATEWAY_PATH = "/"
UNSUPPORTED_METHODS = ["GET", "PUT", "PATCH", "DELETE", "HEAD"]


def _cors_headers() -> dict[str, str]:
    settings: Settings = getattr(app.state, "settings", None) or get_settings()
    return settings.cors_headers


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method != "POST" or request.url.path != GATEWAY_PATH:
        return await call_next(request)

    request_id = _request_id(request)
    request.state.request_id = request_id
    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(
            request,
            headers={**_cors_headers(), "x-gateway-request-id": request_id},
        )
        if auth_error is not None:
            logger.info("request_rejected request_id=%s code=AuthFailed", request_id)
            return auth_error

    return await call_next(request)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    missing = settings.missing_credentials()
    if missing:
        raise GatewayConfigurationError(
            f"Missing required credentials: {', '.join(missing)}. "
            "Set them in the environment before starting the gateway."
        )

    gateway_config = load_gateway_config(settings.model_profiles_path)
    resolver = ModelResolver.from_config(gateway_config)
    audit_logger = JsonlAuditLogger(
        path=settings.audit_log_path,
        enabled=settings.audit_log_enabled,
    )

    app.state.settings = settings
    app.state.resolver = resolver
    app.state.authenticator = Authenticator(
        TokenVerifier(settings.gateway_shared_secret or "")
    )
    app.state.audit_logger = audit_logger
    app.state.invoker = UpstreamInvoker(
        api_key=settings.upstream_api_key or "",
        completion_endpoint_template=gateway_config.completion_endpoint_template,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        audit_hook=audit_logger.log if audit_logger.enabled else None,
    )
    logger.info(
        (
            "startup complete model_profiles_path=%s models=%d default_model=%s "
            "retry_max_attempts=%d timeout_s=%.1f audit_log_enabled=%s"
        ),
        settings.model_profiles_path,
        len(resolver.profiles),
        resolver.default_model,
        settings.retry_max_attempts,
        settings.upstream_timeout_seconds,
        settings.audit_log_enabled,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    invoker: UpstreamInvoker | None = getattr(app.state, "invoker", None)
    if invoker is not None:
        await invoker.close()
    audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
    if audit_logger is not None:
        audit_logger.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse(content={"status": "ok"}, headers=_cors_headers())


@app.options(GATEWAY_PATH)
async def preflight() -> Response:
    return Response(status_code=204, headers=_cors_headers())


@app.api_route(GATEWAY_PATH, methods=UNSUPPORTED_METHODS)
async def method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": {"code": "MethodNotAllowed", "message": "Use POST."}},
        headers={**_cors_headers(), "allow": "POST, OPTIONS"},
    )


async def _read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return {}


@app.post(GATEWAY_PATH)
async def chat(request: Request) -> Response:
    request_id = getattr(request.state, "request_id", None) or _request_id(request)
    headers = {**_cors_headers(), "x-gateway-request-id": request_id}
    resolver: ModelResolver = app.state.resolver
    invoker: UpstreamInvoker = app.state.invoker

    canonical = normalize_request(
        await _read_json_body(request),
        default_model=resolver.default_model,
    )
    if isinstance(canonical, NormalizedError):
        logger.info(
            "request_rejected request_id=%s code=%s message=%s",
            request_id,
            canonical.kind.value,
            canonical.message,
        )
        return error_response(canonical, headers=headers)

    profile = resolver.resolve(canonical.model_key)
    logger.info(
        "gateway_request request_id=%s model=%s upstream=%s dialect=%s messages=%d stream=%s",
        request_id,
        profile.model_key,
        profile.upstream_id,
        profile.dialect.value,
        len(canonical.messages),
        canonical.stream,
    )

    outcome = await invoker.invoke(canonical, profile, request_id=request_id)
    if isinstance(outcome, NormalizedError):
        logger.warning(
            "gateway_error request_id=%s model=%s code=%s upstream_status=%s attempts=%d",
            request_id,
            profile.model_key,
            outcome.kind.value,
            outcome.upstream_status,
            len(outcome.attempts),
        )
        return error_response(outcome, headers=headers)

    headers["x-gateway-model"] = profile.model_key
    headers["x-gateway-upstream-model"] = outcome.payload.candidate_id
    if outcome.stream is not None:
        return stream_relay_response(
            upstream=outcome.stream,
            chunks=outcome.chunks,
            headers=headers,
            request_id=request_id,
        )
    return buffered_success_response(
        body=outcome.body,
        dialect=outcome.payload.dialect,
        headers=headers,
    )

