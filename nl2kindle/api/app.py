"""FastAPI application factory."""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nl2kindle.api.deps import Services, build_services
from nl2kindle.api.routers import conversions, email
from nl2kindle.config import Settings, load_settings
from nl2kindle.errors import PipelineError, RateLimitedError
from nl2kindle.logger import get_logger

logger = get_logger("api")


async def _pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers = {
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(exc.remaining),
            "X-RateLimit-Reset": str(int(exc.reset_time)),
        }
    body = {"error": exc.message}
    if exc.details:
        body["details"] = exc.details
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid request", "details": exc.errors()})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())
    app = FastAPI(title="nl2kindle", version="0.1.0")
    app.state.services = services or build_services(settings)

    app.add_exception_handler(PipelineError, _pipeline_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)

    app.include_router(email.router, prefix="/api/email", tags=["email"])
    app.include_router(conversions.router, prefix="/api", tags=["conversions"])

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app
