"""FastAPI application factory with role-based route mounting."""

import os
from typing import Literal

from fastapi import FastAPI, Request, Response

from zapdesk.observability.correlation import (
    CORRELATION_ID_HEADER,
    accept_or_generate,
    reset_correlation_id,
    set_correlation_id,
)

from .routes import conversations, health, instances, webhooks_evolution

# api: operator API + webhooks; webhooks: ingestion only (no bearer-auth routes)
AppRole = Literal["api", "webhooks"]


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "api" if env var is not set.

    Returns:
        Configured FastAPI application.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "api")  # type: ignore[assignment]

    app = FastAPI(
        title="zapdesk",
        docs_url=None,
        redoc_url=None,
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = accept_or_generate(request.headers.get(CORRELATION_ID_HEADER))
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(health.router)
    app.include_router(webhooks_evolution.router)

    if role != "webhooks":
        app.include_router(conversations.router)
        app.include_router(instances.router)

    return app
