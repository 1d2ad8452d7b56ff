"""
FastAPI application entry point.

This module builds the FastAPI application, configures middleware, maps
ingestion errors onto HTTP responses and registers the API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from candidate_intake.api.routers import health, mapping, uploads
from candidate_intake.core.config import Settings, settings
from candidate_intake.core.exceptions import (
    FileAlreadyImportedException,
    FileTooLargeException,
    InfrastructureException,
    IngestionException,
    InputRejectedException,
    InvalidMappingException,
    JobNotFoundException,
    JobStateException,
    OracleResponseException,
    SpreadsheetReadException,
)
from candidate_intake.core.logging_config import configure_logging
from candidate_intake.db.session import get_engine
from candidate_intake.domain.imports.service import IngestionService

logger = logging.getLogger(__name__)

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings)

# Most specific first.
_STATUS_CODES = (
    (FileTooLargeException, 413),
    (FileAlreadyImportedException, 409),
    (InputRejectedException, 400),
    (SpreadsheetReadException, 400),
    (InvalidMappingException, 400),
    (JobNotFoundException, 404),
    (JobStateException, 409),
    (InfrastructureException, 503),
    (OracleResponseException, 502),
)


def status_code_for(exc: IngestionException) -> int:
    for exc_type, status_code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def ingestion_exception_handler(request: Request, exc: IngestionException) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    content: dict = {"detail": exc.message}
    if isinstance(exc, FileAlreadyImportedException):
        content["existing_job_id"] = exc.job_id
    if isinstance(exc, InfrastructureException):
        content["retryable"] = True
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    engine: Optional[Engine] = None,
    config: Settings = settings,
    *,
    service_factory: Optional[Any] = None,
) -> FastAPI:
    """
    Build the application.

    ``engine`` and ``service_factory`` let tests run against an isolated
    database and a service with a fake mapping oracle.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the ingestion service on startup and drain it on shutdown."""
        db_engine = engine if engine is not None else get_engine()
        if service_factory is not None:
            service = service_factory(db_engine, config)
        else:
            service = IngestionService(db_engine, config)
        service.start()
        app.state.ingestion_service = service
        logger.info("Ingestion service ready (upload dir: %s)", config.upload_dir)
        try:
            yield
        finally:
            service.stop()
            app.state.ingestion_service = None

    application = FastAPI(
        title="Candidate Intake API",
        version="1.0.0",
        description="Bulk spreadsheet ingestion of recruitment candidates",
        debug=config.debug,
        lifespan=lifespan,
    )

    # Allow origins from environment variable or defaults for development
    allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    allowed_origins = [origin.strip() for origin in allowed_origins]

    application.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(IngestionException, ingestion_exception_handler)

    application.include_router(uploads.router, prefix="/api")
    application.include_router(mapping.router, prefix="/api")
    application.include_router(health.router, prefix="/api")

    @application.get("/")
    async def root():
        """Root endpoint returning API information."""
        return {"message": "Candidate Intake API", "version": "1.0.0"}

    return application


app = create_app()
