import logging
import time
import uuid
from typing import Awaitable, Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from mediaflow.core.logging_config import request_id_ctx_var

logger = logging.getLogger("mediaflow.request")

_MAX_REQUEST_ID_LENGTH = 128


def _incoming_request_id(request: Request) -> str | None:
    raw = (request.headers.get("x-request-id") or "").strip()
    if not raw or len(raw) > _MAX_REQUEST_ID_LENGTH or not raw.isprintable():
        return None
    return raw


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id (echoed as X-Request-ID) and logs one line per response."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        request_id = _incoming_request_id(request) or uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx_var.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
