"""Custom ASGI middleware used by the FastAPI app."""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from campaign_broker.core.logging import request_id_ctx_var

# Probes are polled constantly; keep them out of the INFO access log.
QUIET_PATHS = frozenset({"/api/healthz", "/api/readyz"})


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id and emits one access log line for it."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_ctx_var.set(request_id)
        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            path = request.url.path
            log = logger.bind(
                method=request.method,
                path=path,
                status=response.status_code if response is not None else 500,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            if path in QUIET_PATHS:
                log.debug("request_completed")
            else:
                log.info("request_completed")
            request_id_ctx_var.reset(token)
