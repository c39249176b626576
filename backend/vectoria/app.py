"""FastAPI application setup for Vectoria."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from vectoria.api.dependencies import (
    get_app_settings,
    get_embedding_service,
    get_pipeline,
    get_query_service,
    get_registry,
    get_workspace,
)
from vectoria.api.routes_admin import router as admin_router
from vectoria.api.routes_datasets import router as datasets_router
from vectoria.api.routes_query import router as query_router
from vectoria.core.errors import (
    ConsistencyViolation,
    DatasetNotFoundError,
    ImportFormatError,
    IndexNotBuiltError,
    InputValidationError,
    NumericAnomalyError,
    ProcessingCancelled,
    StageFailure,
    VectoriaError,
)
from vectoria.core.logging import configure_logging

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[VectoriaError], int], ...] = (
    (DatasetNotFoundError, 404),
    (InputValidationError, 422),
    (ImportFormatError, 400),
    (StageFailure, 409),
    (NumericAnomalyError, 409),
    (ConsistencyViolation, 409),
    (IndexNotBuiltError, 409),
    (ProcessingCancelled, 409),
)


def status_for(exc: VectoriaError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app() -> FastAPI:
    app = FastAPI(
        title="Vectoria",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(datasets_router, prefix="/datasets", tags=["datasets"])
    app.include_router(query_router, prefix="/datasets", tags=["query"])
    app.include_router(admin_router, prefix="", tags=["admin"])

    @app.exception_handler(VectoriaError)
    async def handle_vectoria_error(request: Request, exc: VectoriaError) -> JSONResponse:
        status = status_for(exc)
        if status >= 500:
            logger.error("Unhandled error on %s: %s", request.url.path, exc)
        body = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, StageFailure):
            body["stage"] = exc.stage
        return JSONResponse(status_code=status, content=body)

    @app.on_event("startup")
    async def startup() -> None:
        """Warm up core singletons on startup."""
        get_app_settings()
        get_workspace()
        get_embedding_service()
        get_pipeline()
        get_query_service()
        get_registry()

    return app


configure_logging()

app = create_app()
