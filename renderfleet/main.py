import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from renderfleet.api import permissions, renders, sites, storage, workers
from renderfleet.config import get_settings
from renderfleet.constants.error_codes import get_error_spec
from renderfleet.exceptions import InputValidationError, RenderfleetError
from renderfleet.middleware.request_context import create_request_context, envelope
from renderfleet.models.database import engine, init_db
from renderfleet.schemas.envelope import ErrorInfo

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    yield
    # Shutdown
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


def _error_response(status_code: int, error: ErrorInfo) -> JSONResponse:
    body = envelope(create_request_context(), error=error)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body.model_dump(exclude_none=True)),
    )


@app.exception_handler(RenderfleetError)
async def renderfleet_exception_handler(request: Request, exc: RenderfleetError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {request.method} {request.url.path}: [{exc.code}] {exc.message}")
    return _error_response(exc.status_code, exc.to_error_info())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render request validation errors (422) in the envelope format."""
    error = InputValidationError.from_errors(exc.errors())
    return _error_response(error.status_code, error.to_error_info())


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(500, error)


# Routers
app.include_router(workers.router, prefix="/api/workers", tags=["workers"])
app.include_router(sites.router, prefix="/api/sites", tags=["sites"])
app.include_router(renders.router, prefix="/api/renders", tags=["renders"])
app.include_router(permissions.router, prefix="/api/permissions", tags=["permissions"])
app.include_router(storage.router, prefix="/api/storage", tags=["storage"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": settings.app_version}
