"""FastAPI application factory for the governance service.

- Governance API: /api/v1/governance/*  (JWT required)
- healthz, metrics, docs: exempt from auth
- Domain errors map to a uniform {error, message} body
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.routing import Match

from src.gateway.middleware.auth import authenticate_header
from src.shared.errors import (
    AuthenticationError,
    AuthorizationError,
    GovernanceError,
    InvalidInputError,
    PolicyNotFoundError,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from contextlib import AbstractAsyncContextManager

    from fastapi import APIRouter
    from prometheus_client import CollectorRegistry

_EXEMPT_PATHS = frozenset(
    {
        "/healthz",
        "/metrics",
        "/docs",
        "/openapi.json",
        "/redoc",
    }
)

# Most specific first: StoreTimeoutError is a StoreUnavailableError.
_ERROR_STATUS: tuple[tuple[type[GovernanceError], int], ...] = (
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (PolicyNotFoundError, 404),
    (InvalidInputError, 422),
    (StoreUnavailableError, 503),
    (GovernanceError, 500),
)


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})


def create_app(
    *,
    jwt_secret: str | None = None,
    cors_origins: list[str] | None = None,
    routers: list[APIRouter] | None = None,
    metrics_registry: CollectorRegistry | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        jwt_secret: JWT signing secret. Falls back to JWT_SECRET_KEY env var.
        cors_origins: Allowed CORS origins. Falls back to CORS_ORIGINS env var.
        routers: API routers to mount (normally the governance router).
        metrics_registry: Registry exposed on /metrics. Defaults to the global one.
        lifespan: Async context manager factory for startup/shutdown lifecycle.

    Returns:
        Configured FastAPI application.
    """
    secret = jwt_secret or os.environ.get("JWT_SECRET_KEY", "")
    if not secret:
        msg = "JWT_SECRET_KEY must be provided via argument or environment variable"
        raise ValueError(msg)

    origins = cors_origins or [
        o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()
    ]

    app = FastAPI(
        title="LLM Governance API",
        description="Budget admission, usage metering and provider health for LLM calls",
        version="0.1.0",
        docs_url="/docs",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.jwt_secret = secret

    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["Authorization", "Content-Type"],
        )

    # -- Error handlers --

    @app.exception_handler(GovernanceError)
    async def _governance_error(_: Request, exc: GovernanceError) -> JSONResponse:
        status_code = next(code for cls, code in _ERROR_STATUS if isinstance(exc, cls))
        return _error_response(status_code, exc.code, str(exc))

    # Uniform {error, message} schema for Starlette's own 404/405.
    @app.exception_handler(StarletteHTTPException)
    async def _http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        code_map = {
            404: "NOT_FOUND",
            405: "METHOD_NOT_ALLOWED",
        }
        return _error_response(
            exc.status_code,
            code_map.get(exc.status_code, "HTTP_ERROR"),
            exc.detail or f"HTTP {exc.status_code}",
        )

    # -- Auth middleware --

    @app.middleware("http")
    async def jwt_auth_middleware(request: Request, call_next: Any) -> Response:
        path = request.url.path

        # CORS preflight (OPTIONS) must pass through to CORSMiddleware
        if request.method == "OPTIONS" or path in _EXEMPT_PATHS:
            return await call_next(request)

        # Unknown paths return 404, not 401.
        route_matched = any(route.matches(request.scope)[0] != Match.NONE for route in app.routes)
        if not route_matched:
            return await call_next(request)

        try:
            payload = authenticate_header(request.headers.get("authorization", ""), secret=secret)
        except AuthenticationError as exc:
            return _error_response(401, exc.code, str(exc))

        request.state.user_id = payload.user_id
        request.state.org_id = payload.org_id
        request.state.role = payload.role
        return await call_next(request)

    # -- Exempt routes --

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics", tags=["system"], include_in_schema=False)
    async def metrics() -> Response:
        from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

        return Response(
            content=generate_latest(metrics_registry or REGISTRY),
            media_type=CONTENT_TYPE_LATEST,
        )

    for router in routers or []:
        app.include_router(router)

    return app
