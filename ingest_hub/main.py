from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from ingest_hub.errors import ApiError
from ingest_hub.routes import ingest, internal
from ingest_hub.routes._deps import error_response, request_id_from_request, trace_id_from_request
from ingest_hub.schemas import success_envelope
from ingest_hub.store import ingestion, store

logger = logging.getLogger(__name__)

_DEFAULT_CORS_ORIGINS = "http://127.0.0.1:5173,http://localhost:5173"


def _cors_origins(environ: Mapping[str, str] | None = None) -> list[str]:
    env = os.environ if environ is None else environ
    raw = env.get("CORS_ALLOW_ORIGINS", _DEFAULT_CORS_ORIGINS)
    return [x.strip() for x in raw.split(",") if x.strip()]


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # Background kicks still running finish on their own threads.
    logger.info("api shutting down; releasing ingest background executor")
    ingestion.shutdown(wait=False)


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        not_found = exc.status_code == 404
        return error_response(
            request,
            code="REQ_NOT_FOUND" if not_found else "REQ_HTTP_ERROR",
            message="resource not found" if not_found else str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )


def create_app() -> FastAPI:
    app = FastAPI(title="Ingest Hub API", version="0.1.0", lifespan=_lifespan)
    allow_origins = _cors_origins()
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", "").strip() or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    _install_error_handlers(app)

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {
                "status": "ok",
                "backend": store.backend,
                "background_enabled": ingestion.settings.background_enabled,
            },
            trace_id_from_request(request),
        )

    app.include_router(ingest.router)
    app.include_router(internal.router)
    return app


app = create_app()
