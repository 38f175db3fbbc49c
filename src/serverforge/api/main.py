"""FastAPI main application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from serverforge import __version__
from serverforge.api.routers import ai_servers, credits, hosted
from serverforge.config import settings
from serverforge.domain.errors import (
    ConfigurationError,
    ExecutionError,
    ExternalServiceError,
    GenerationParseError,
    InsufficientCreditsError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ServerForgeError,
    ValidationError,
)

logger = structlog.get_logger()

# Most specific first; HostedServerUnavailableError is a NotFoundError.
_STATUS_BY_ERROR = (
    (InsufficientCreditsError, 402),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (InvalidRequestError, 400),
    (ValidationError, 422),
    (GenerationParseError, 502),
    (ExternalServiceError, 502),
    (ConfigurationError, 503),
    (ExecutionError, 500),
)


def status_for_error(exc: ServerForgeError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings.setup_logging()
    settings.ensure_directories()
    logger.info(
        "serverforge_startup",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        data_root=str(settings.data_root),
        sandbox_backend=settings.sandbox_backend,
    )
    yield
    # Shutdown
    logger.info("serverforge_shutdown")


app = FastAPI(
    title="ServerForge",
    description="AI-generated image servers: generate, verify, accept, host",
    version=__version__,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return concise request validation details."""
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Request validation failed",
            "errors": [
                {
                    "field": " -> ".join(str(part) for part in err.get("loc", [])),
                    "type": err.get("type", "unknown"),
                    "msg": err.get("msg", "validation error"),
                }
                for err in exc.errors()
            ],
        },
    )


@app.exception_handler(ServerForgeError)
async def domain_exception_handler(request: Request, exc: ServerForgeError):
    """Translate domain errors into HTTP responses."""
    status_code = status_for_error(exc)
    content = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientCreditsError):
        content["required"] = exc.required
        content["balance"] = exc.balance
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    if isinstance(exc, ExternalServiceError) and exc.status_code is not None:
        content["upstream_status"] = exc.status_code

    log = logger.error if status_code >= 500 else logger.info
    log("request_failed", path=request.url.path, status_code=status_code, error=str(exc))
    return JSONResponse(status_code=status_code, content=content)


# Routers
app.include_router(ai_servers.router, prefix="/api/v1")
app.include_router(hosted.router, prefix="/api/v1")
app.include_router(credits.router, prefix="/api/v1")


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "sandbox_backend": settings.sandbox_backend}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "ServerForge",
        "version": __version__,
        "description": "AI-generated image servers: generate, verify, accept, host",
    }
