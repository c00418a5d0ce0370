"""FastAPI application for the spool photo intake service."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session, sessionmaker

from common.config import Settings, get_settings
from common.logging import configure_logging, get_logger

from .errors import (
    BatchSetupError,
    ExtractionError,
    ImageStoreError,
    ImageTooLarge,
    IntakeError,
    InvalidTransition,
    RecordNotFound,
    SessionCancelled,
    SessionExpired,
    SessionForbidden,
    SessionNotFound,
    UnsupportedImageType,
)
from .orchestrator import Extractor
from .routes import uploads_router
from .service import IntakeServices

LOGGER = get_logger(__name__)

# Most specific first; the first matching class wins.
ERROR_STATUS = (
    (SessionNotFound, 404),
    (RecordNotFound, 404),
    (SessionForbidden, 403),
    (SessionCancelled, 409),
    (InvalidTransition, 409),
    (SessionExpired, 410),
    (ImageTooLarge, 413),
    (UnsupportedImageType, 415),
    (ImageStoreError, 400),
    (BatchSetupError, 400),
    (ExtractionError, 502),
)


def status_for(exc: IntakeError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    settings: Optional[Settings] = None,
    extractor: Optional[Extractor] = None,
    session_factory: Optional[sessionmaker[Session]] = None,
) -> FastAPI:
    """Build the intake API; collaborators can be injected for tests."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        LOGGER.info("Starting intake service", environment=settings.environment)
        app.state.intake = IntakeServices.build(
            settings, session_factory=session_factory, extractor=extractor
        )
        yield
        await app.state.intake.aclose()
        app.state.intake = None
        LOGGER.info("Intake service stopped")

    app = FastAPI(
        title="Spool Intake Service",
        description="Photo-to-record extraction for filament spools",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(uploads_router)

    upload_root = settings.upload_dir / "uploads"
    upload_root.mkdir(parents=True, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=str(upload_root)), name="uploads")

    @app.exception_handler(IntakeError)
    async def intake_error_handler(request: Request, exc: IntakeError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            LOGGER.error("Intake request failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status_code, content={"error": str(exc)})

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "service": settings.service_name}

    return app


__all__ = ["ERROR_STATUS", "create_app", "status_for"]
