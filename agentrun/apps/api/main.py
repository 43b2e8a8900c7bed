from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from agentrun.apps.api.errors import (
    agent_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from agentrun.apps.api.response import API_VERSION
from agentrun.apps.api.routes.governance import router as governance_router
from agentrun.apps.api.routes.health import router as health_router
from agentrun.apps.api.routes.threads import router as threads_router
from agentrun.core.config import get_settings
from agentrun.core.errors import AgentRunError
from agentrun.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "http_request method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(AgentRunError, agent_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(threads_router, prefix=f"/{API_VERSION}")
    app.include_router(governance_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
