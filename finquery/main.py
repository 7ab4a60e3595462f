# =============================================================================
# FastAPI Application — App Factory, Lifespan, Error Rendering
# =============================================================================
#
# Run locally:
#   uvicorn finquery.main:app --reload
#
# Lifespan:
#   startup   configure logging, build the QueryService, start the cache
#             sweep task
#   shutdown  cancel the sweep task, dispose of the DB engine
#
# Every QueryServiceError is rendered as the standard answer body
#   {message, data: [], insights: [], cached: false, executionTime: 0, error}
# with the error's status code and headers. Anything unexpected is logged
# with its traceback and rendered as internal_error without detail.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from finquery.api import monitoring, query
from finquery.api.deps import get_query_service
from finquery.api.middleware import RequestContextMiddleware
from finquery.config import settings
from finquery.db.engine import async_engine
from finquery.errors import InternalError, QueryServiceError
from finquery.log_context import setup_logging
from finquery.models.responses import HealthResponse, SynthesizedResponse
from finquery.services.cache import sweep_periodically

logger = logging.getLogger(__name__)

INVALID_REQUEST = "invalid_request"


def error_body(code: str, message: str) -> dict:
    return SynthesizedResponse(message=message, error=code).wire()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)

    service = get_query_service()
    sweeper = asyncio.create_task(
        sweep_periodically(service.cache, settings.cache_sweep_interval_seconds),
    )

    yield

    logger.info("Shutting down %s", settings.app_name)
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await async_engine.dispose()


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------


async def query_service_error_handler(request: Request, exc: QueryServiceError) -> JSONResponse:
    return JSONResponse(
        error_body(exc.code, exc.public_message),
        status_code=exc.status_code,
        headers=exc.headers(),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
        for err in exc.errors()
    )
    logger.info("Rejected request body: %s", problems)
    return JSONResponse(
        error_body(INVALID_REQUEST, f"Invalid request: {problems}"),
        status_code=400,
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = InternalError()
    return JSONResponse(error_body(error.code, error.public_message), status_code=500)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        description=(
            "Answers natural-language questions about receipt spending: "
            "resolves them to data functions, executes them concurrently, "
            "and returns plain-language insights, cached and optionally "
            "streamed."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(QueryServiceError, query_service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(query.router)
    app.include_router(monitoring.router)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health() -> HealthResponse:
        return HealthResponse(version=settings.app_version, service=settings.app_name)

    return app


app = create_app()
