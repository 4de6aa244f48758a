"""FastAPI application for the AI proxy gateway.

Exposes a single ``/ai-proxy`` endpoint that authenticates the caller,
enforces the per-user rate limit and credit balance, forwards the
conversation to the requested AI provider, and returns the completion text.
Every response carries permissive CORS headers and baseline security headers.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from uplift_gateway.config import load_config
from uplift_gateway.errors import GatewayError, InternalError
from uplift_gateway.gateway import Gateway, build_gateway
from uplift_gateway.models import ErrorResponse, HealthResponse, ProxyResponse
from uplift_gateway.telemetry import logger, setup_logging

CONFIG_PATH = os.getenv("GATEWAY_CONFIG", "config/example.config.json")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

RESPONSE_HEADERS = {**CORS_HEADERS, **SECURITY_HEADERS}

DEFAULT_DRAIN_TIMEOUT = 5.0


def get_gateway(application: FastAPI) -> Gateway:
    """Return the application's gateway, building it from config on first use."""
    if application.state.gateway is None:
        cfg = load_config(CONFIG_PATH)
        setup_logging(cfg.log_file)
        application.state.gateway = build_gateway(cfg)
        application.state.drain_timeout = cfg.interactions.drain_timeout_seconds
    return application.state.gateway


def _error_response(exc: GatewayError) -> JSONResponse:
    """Build the JSON error body for a rejected request."""
    body = ErrorResponse(**exc.to_body())
    return JSONResponse(status_code=exc.status, content=body.model_dump(exclude_none=True))


def create_app(gateway: Optional[Gateway] = None) -> FastAPI:
    """Create the ASGI app.

    Args:
        gateway: A pre-built gateway. When omitted, one is built from the
            config file at ``GATEWAY_CONFIG`` on startup (or first request).
    """

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        get_gateway(application)
        yield
        await application.state.gateway.interactions.drain(
            timeout=application.state.drain_timeout
        )

    application = FastAPI(title="AI Proxy Gateway", version="1.0.0", lifespan=lifespan)
    application.state.gateway = gateway
    application.state.drain_timeout = DEFAULT_DRAIN_TIMEOUT

    @application.middleware("http")
    async def add_response_headers(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers.update(RESPONSE_HEADERS)
        return response

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        # Any verb without a route, custom ones included, lands here.
        if exc.status_code == 405:
            return JSONResponse(
                status_code=405,
                content={"error": "Method not allowed"},
                headers={**RESPONSE_HEADERS, "Allow": "POST, OPTIONS"},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers={**RESPONSE_HEADERS, **(exc.headers or {})},
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error serving %s", request.url.path)
        error = InternalError(detail=str(exc))
        return JSONResponse(
            status_code=error.status, content=error.to_body(), headers=RESPONSE_HEADERS
        )

    @application.options("/ai-proxy")
    async def ai_proxy_preflight() -> Response:
        """CORS preflight: 200, headers only."""
        return Response(status_code=200)

    @application.post("/ai-proxy", response_model=None)
    async def ai_proxy(request: Request) -> JSONResponse:
        """Forward one conversation to the requested AI provider."""
        gw = get_gateway(request.app)
        raw_body = await request.body()
        try:
            result = await gw.handle(raw_body, request.headers.get("authorization"))
        except GatewayError as exc:
            return _error_response(exc)
        return JSONResponse(
            status_code=200, content=ProxyResponse(response=result.text).model_dump()
        )

    @application.get("/health", response_model=None)
    async def health(request: Request) -> JSONResponse:
        """Report which providers have credentials configured."""
        gw = get_gateway(request.app)
        body = HealthResponse(
            status="healthy",
            providers=gw.providers.statuses(),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        return JSONResponse(status_code=200, content=body.model_dump())

    return application


app = create_app()
