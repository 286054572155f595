"""FastAPI application entry point."""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from backend.api.admin import router as admin_router
from backend.api.backup import router as backup_router
from backend.api.explorer import router as explorer_router
from backend.api.health import router as health_router
from backend.config import Settings
from backend.database import create_engine, init_schema
from backend.exceptions import (
    HashMismatchError,
    IncompleteCommitError,
    InternalServerError,
    OffsetConflictError,
    ProtocolError,
)
from backend.services.backup_service import BackupService
from backend.services.metadata_service import MetadataStore
from backend.storage.content_store import ContentStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)


def ensure_data_dir(settings: Settings) -> None:
    """Create the data directory scaffold without touching existing content."""
    data_dir = settings.data_dir
    if data_dir.exists() and not data_dir.is_dir():
        msg = f"Data path exists but is not a directory: {data_dir}"
        raise NotADirectoryError(msg)

    if not data_dir.exists():
        logger.info("Creating data directory at %s", data_dir)
        data_dir.mkdir(parents=True)

    backups_dir = settings.backups_dir
    if not backups_dir.exists():
        backups_dir.mkdir()
        logger.info("Created missing backups directory: %s", backups_dir)


async def initialize_state(app: FastAPI) -> None:
    """Open the metadata database and storage and attach the services to app state."""
    settings: Settings = app.state.settings

    try:
        ensure_data_dir(settings)
    except Exception as exc:
        logger.critical("Failed to initialize data directory at %s: %s.", settings.data_dir, exc)
        raise

    try:
        engine, session_factory = create_engine(settings)
        await init_schema(engine)
    except Exception as exc:
        logger.critical(
            "Failed to initialize metadata database: %s. Check database path and permissions.",
            exc,
        )
        raise
    app.state.engine = engine
    app.state.session_factory = session_factory

    default_location = (
        settings.storage_locations[0] if settings.storage_locations else settings.default_store_dir
    )
    try:
        content_store = ContentStore(settings.storage_config_path, default_location)
        for extra_location in settings.storage_locations[1:]:
            content_store.add_location(extra_location)
    except Exception as exc:
        logger.critical("Failed to initialize storage locations: %s.", exc)
        raise
    app.state.content_store = content_store
    logger.info(
        "Storage: %d location(s), active %s",
        len(content_store.locations),
        content_store.active.root,
    )

    metadata_store = MetadataStore(session_factory, settings.data_dir)
    app.state.metadata_store = metadata_store
    app.state.backup_service = BackupService(
        content_store,
        metadata_store,
        strict_commit=settings.strict_commit,
        max_upload_bytes=settings.max_upload_bytes,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting hashvault (debug=%s)", settings.debug)

    await initialize_state(app)

    yield

    try:
        await app.state.engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("hashvault stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="hashvault",
        description="Content-addressed backup receiver",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health_router)
    app.include_router(backup_router)
    app.include_router(explorer_router)
    app.include_router(admin_router)

    # Global exception handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(ProtocolError)
    async def protocol_error_handler(request: Request, exc: ProtocolError) -> JSONResponse:
        logger.warning("ProtocolError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(HashMismatchError)
    async def hash_mismatch_handler(request: Request, exc: HashMismatchError) -> JSONResponse:
        logger.error("HashMismatchError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=400,
            content={"detail": "hash mismatch", "computed": exc.computed},
        )

    @app.exception_handler(OffsetConflictError)
    async def offset_conflict_handler(request: Request, exc: OffsetConflictError) -> JSONResponse:
        logger.warning("OffsetConflictError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={"detail": "offset conflict", "bytes": exc.stored_bytes},
        )

    @app.exception_handler(IncompleteCommitError)
    async def incomplete_commit_handler(
        request: Request, exc: IncompleteCommitError
    ) -> JSONResponse:
        logger.warning("IncompleteCommitError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=409,
            content={"detail": "missing content", "missingHashes": exc.missing},
        )

    @app.exception_handler(InternalServerError)
    async def internal_server_error_handler(
        request: Request, exc: InternalServerError
    ) -> JSONResponse:
        logger.error(
            "InternalServerError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(OSError)
    async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
        if isinstance(exc, (ConnectionError, TimeoutError)):
            raise exc
        logger.error("OSError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Storage operation failed"},
        )

    @app.exception_handler(json.JSONDecodeError)
    async def json_error_handler(request: Request, exc: json.JSONDecodeError) -> JSONResponse:
        logger.error(
            "JSONDecodeError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Data integrity error"},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(TypeError)
    async def type_error_handler(request: Request, exc: TypeError) -> JSONResponse:
        logger.error(
            "[BUG] TypeError in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Metadata store temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "backend.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
