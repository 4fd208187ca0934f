from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from free_tier_router.client_identity import client_key_from_headers
from free_tier_router.config import load_router_config
from free_tier_router.errors import (
    InvalidRequestError,
    ProviderNotConfiguredError,
    RouterError,
)
from free_tier_router.orchestrator import ChatRequest, RoutingOrchestrator
from free_tier_router.provider import ProviderClient
from free_tier_router.runtime.counter_store import build_counter_store
from free_tier_router.settings import get_settings

app = FastAPI(
    title="Free-Tier Router",
    description="Quota-enforcing chat-completion proxy with model fallback.",
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    expose_headers=["X-Free-Remaining", "X-Free-Limit", "Retry-After"],
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    router_config = load_router_config(settings)
    counter_store = build_counter_store(redis_url=settings.redis_url, logger=logger)
    provider: ProviderClient | None = None
    if settings.provider_is_configured:
        provider = ProviderClient(
            api_key=str(settings.openrouter_api_key).strip(),
            base_url=settings.provider_base_url,
            app_referer=settings.app_referer,
            app_title=settings.app_title,
            connect_timeout_seconds=settings.provider_connect_timeout_seconds,
            read_timeout_seconds=settings.provider_read_timeout_seconds,
            write_timeout_seconds=settings.provider_write_timeout_seconds,
            pool_timeout_seconds=settings.provider_pool_timeout_seconds,
            no_structured_output_models=set(
                router_config.no_structured_output_models
            ),
        )
    else:
        logger.error("provider_unconfigured reason=OPENROUTER_API_KEY not set")

    app.state.settings = settings
    app.state.router_config = router_config
    app.state.counter_store = counter_store
    app.state.provider = provider
    app.state.orchestrator = RoutingOrchestrator.from_config(
        router_config,
        store=counter_store,
        provider=provider if provider is not None else _UnconfiguredProvider(),
    )
    logger.info(
        (
            "startup complete models=%d default_model=%s daily_limit=%d "
            "burst_max=%d burst_window_seconds=%.1f counter_store=%s provider_configured=%s"
        ),
        len(router_config.fallback_models),
        router_config.default_model,
        router_config.daily_limit,
        router_config.burst_max_requests,
        router_config.burst_window_seconds,
        counter_store.__class__.__name__,
        provider is not None,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    provider: ProviderClient | None = getattr(app.state, "provider", None)
    if provider is not None:
        await provider.close()
    counter_store = getattr(app.state, "counter_store", None)
    close = getattr(counter_store, "close", None)
    if close is not None:
        await close()
    logger.info("shutdown complete")


class _UnconfiguredProvider:
    """Placeholder so /api/quota works without a key; chat routes reject first."""

    async def attempt(self, *_args: Any, **_kwargs: Any) -> Any:
        raise ProviderNotConfiguredError()


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/quota")
async def quota(request: Request) -> JSONResponse:
    orchestrator: RoutingOrchestrator = app.state.orchestrator
    client_key = _client_key(request)
    used, remaining = await orchestrator.peek_remaining(client_key)
    return JSONResponse(
        content={
            "used": used,
            "remaining": remaining,
            "limit": orchestrator.quota.daily_limit,
        },
        headers=orchestrator.quota_headers(remaining),
    )


async def _route_chat_request(request: Request) -> Response:
    try:
        payload = await request.json()
    except Exception as exc:
        raise InvalidRequestError(f"Expected JSON body: {exc}") from exc

    chat_request = ChatRequest.from_payload(payload)
    if getattr(app.state, "provider", None) is None:
        raise ProviderNotConfiguredError()
    orchestrator: RoutingOrchestrator = app.state.orchestrator
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    try:
        result = await orchestrator.route(
            chat_request,
            _client_key(request),
            request_id=request_id,
        )
    except RouterError:
        raise
    except Exception as exc:
        logger.exception(
            "proxy_error request_id=%s error_type=%s",
            request_id,
            exc.__class__.__name__,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers=result.headers,
    )


@app.post("/api/chat")
async def chat(request: Request) -> Response:
    return await _route_chat_request(request)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    return await _route_chat_request(request)


def _client_key(request: Request) -> str:
    peer = request.client.host if request.client is not None else None
    return client_key_from_headers(request.headers, peer)


@app.exception_handler(RouterError)
async def router_error_handler(_: Request, exc: RouterError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_body(),
        headers=exc.headers,
    )


def run() -> None:
    import uvicorn

    uvicorn.run("free_tier_router.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
