import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mediaflow.api.v1 import api_router
from mediaflow.core.config import settings
from mediaflow.core.logging_config import configure_logging
from mediaflow.core.redis_client import close_redis
from mediaflow.middleware import RequestLoggingMiddleware
from mediaflow.schemas.error import ErrorResponse
from mediaflow.services import orphan_cleanup_scheduler, variant_backfill_scheduler

logger = logging.getLogger(__name__)

_ERROR_CODES = {
    400: "bad_request",
    404: "not_found",
    409: "conflict",
    413: "payload_too_large",
    429: "rate_limited",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    orphan_cleanup_scheduler.start(app)
    variant_backfill_scheduler.start(app)
    try:
        yield
    finally:
        await variant_backfill_scheduler.stop(app)
        await orphan_cleanup_scheduler.stop(app)
        await close_redis()


def get_application() -> FastAPI:
    configure_logging(settings.log_json)
    tags_metadata = [
        {"name": "uploads", "description": "Form attachments and delegated uploads"},
        {"name": "media", "description": "Media assets and image variants"},
    ]
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        payload = ErrorResponse(error=exc.detail, code=_ERROR_CODES.get(exc.status_code))
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(payload.model_dump(exclude_none=True)),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        payload = ErrorResponse(error=errors, code="validation_error")
        return JSONResponse(status_code=422, content=payload.model_dump(exclude_none=True))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", extra={"path": request.url.path, "method": request.method})
        payload = ErrorResponse(error="Internal server error", code="internal_error")
        return JSONResponse(status_code=500, content=payload.model_dump(exclude_none=True))

    return app


app = get_application()
