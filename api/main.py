# api/main.py
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routes import admin, health
from services.errors import (
    LicenseEngineError,
    NotFound,
    PermissionDenied,
    PersistenceError,
    PlatformError,
    QuotaExceeded,
    ReloadParseError,
    TemplateInUse,
    ValidationError,
)

# First match wins, so subclasses come before their parents
ERROR_STATUS = [
    (TemplateInUse, 409),
    (QuotaExceeded, 409),
    (ValidationError, 422),
    (NotFound, 404),
    (PermissionDenied, 403),
    (ReloadParseError, 400),
    (PlatformError, 503),
    (PersistenceError, 503),
]


def status_for(exc: LicenseEngineError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(engine, manage_lifecycle: bool = True) -> FastAPI:
    """Build the admin API around a running (or about to run) LicenseEngine"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await engine.start()
        yield
        if manage_lifecycle:
            await engine.stop()

    app = FastAPI(title="License Engine API", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine

    app.include_router(health.router, prefix="/api/v1", tags=["health"])
    app.include_router(admin.router, prefix="/api/v1", tags=["admin"])

    @app.exception_handler(LicenseEngineError)
    async def engine_error_handler(request: Request, exc: LicenseEngineError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"detail": str(exc), "message": exc.user_message, "retryable": exc.retryable},
        )

    @app.get("/")
    async def root():
        return {"message": "License Engine API"}

    return app
