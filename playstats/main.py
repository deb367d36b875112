from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from http import HTTPStatus

import anyio
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from playstats.api.health import router as health_router
from playstats.core.logging import configure_logging
from playstats.core.metrics import ERROR_COUNT, REQUEST_COUNT, REQUEST_LATENCY
from playstats.core.settings import get_settings
from playstats.db.session import run_with_db_retry
from playstats.timescale import service as timescale_service
from playstats.timescale.router import router as timescale_router
from playstats.utils.correlation import get_correlation_id, set_correlation_id
from playstats.utils.error_payloads import error_payload
from playstats.utils.errors import AppError


@asynccontextmanager
async def lifespan(app: FastAPI):
    log = logging.getLogger("playstats.startup")
    settings = get_settings()

    db_ready = False
    for attempt in range(1, settings.startup_db_max_attempts + 1):
        try:

            def _validate_db(session):
                session.execute(text("SELECT 1"))

            run_with_db_retry(_validate_db, operation_name="startup_validation")
            db_ready = True
            break
        except Exception as exc:
            log.warning("startup_db_not_ready attempt=%d error=%s", attempt, exc)
            await anyio.sleep(min(2.0 * attempt, 10.0))

    if not db_ready:
        log.error("startup_db_unavailable: continuing without timescale convergence")
    elif settings.timescale_converge_on_startup:
        # Convergence failure is non-fatal; the API serves raw tables meanwhile.
        result = await anyio.to_thread.run_sync(timescale_service.converge)
        if not result.success:
            log.error("startup_timescale_converge_failed", extra={"actions": result.actions})

    yield


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-Id"))
        start = time.perf_counter()
        status_code = HTTPStatus.INTERNAL_SERVER_ERROR
        metric_path = _metric_path_template(request)
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.perf_counter() - start
            REQUEST_LATENCY.labels(path=metric_path).observe(duration)
            REQUEST_COUNT.labels(
                method=request.method,
                path=metric_path,
                status=str(int(status_code)),
            ).inc()
        response.headers["X-Correlation-Id"] = correlation_id
        return response

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        code, classification = _map_http_error(exc.status_code)
        payload = error_payload(
            code=code,
            message=str(exc.detail),
            classification=classification,
        )
        ERROR_COUNT.labels(code=code, classification=classification).inc()
        return _error_response(exc.status_code, payload)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        detail = jsonable_encoder(exc.errors())
        payload = error_payload(
            code="validation_error",
            message="Request validation failed",
            classification="client",
            extra={"detail": detail},
        )
        ERROR_COUNT.labels(code="validation_error", classification="client").inc()
        return _error_response(422, payload)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        ERROR_COUNT.labels(code=exc.detail.code, classification=exc.detail.classification).inc()
        payload = error_payload(
            code=exc.detail.code,
            message=exc.detail.message,
            classification=exc.detail.classification,
            extra=exc.detail.extra,
        )
        return _error_response(exc.detail.status_code, payload)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
        logging.getLogger("playstats").warning("db_error", extra={"detail": str(exc)})
        ERROR_COUNT.labels(code="db_error", classification="dependency").inc()
        payload = error_payload(
            code="db_error",
            message="Database error",
            classification="dependency",
        )
        return _error_response(503, payload)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logging.getLogger("playstats").exception("unhandled_error")
        ERROR_COUNT.labels(code="internal_error", classification="server").inc()
        payload = error_payload(
            code="internal_error",
            message="Unexpected error",
            classification="server",
        )
        return _error_response(500, payload)

    app.include_router(health_router)
    app.include_router(timescale_router, prefix="/internal")

    return app


def _map_http_error(status_code: int) -> tuple[str, str]:
    if status_code == 401:
        return "unauthorized", "client"
    if status_code == 404:
        return "not_found", "client"
    if status_code == 409:
        return "conflict", "client"
    if 400 <= status_code < 500:
        return "bad_request", "client"
    return "http_error", "server"


def _error_response(status_code: int, payload: dict) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=payload)
    correlation_id = get_correlation_id()
    if correlation_id:
        response.headers["X-Correlation-Id"] = correlation_id
    return response


def _metric_path_template(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if isinstance(path, str) and path:
        return path
    return request.url.path


app = create_app()
