"""
Minefield Main Application Entry Point
FastAPI-based mines wagering backend.
"""

import sys
from pathlib import Path

# Add parent directory to path so imports work when running directly
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent.parent))

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import uvicorn
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.core.logger import init_logging, get_logger
from app.config import settings
from app.core.exceptions import InvalidConfiguration, LedgerError, MinesError, TileIndexOutOfRange
from app.core.security import limiter
from app.routers import api
from app.routers.auth import router as auth_router

# Initialize logging first
init_logging(
    level=settings.logging.level,
    log_to_file=settings.logging.log_to_file,
    formatter=settings.logging.formatter,
    log_file_path=settings.paths.get_log_path(),
)
logger = get_logger("main")


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        # Round projections change on every reveal
        if request.url.path.startswith("/api"):
            response.headers["Cache-Control"] = "no-store"

        return response


# ==================== Exception Handlers ====================


async def mines_error_handler(request: Request, exc: MinesError):
    """Render game errors as {"error": kind, "detail": message}."""
    extra = {"path": request.url.path, "kind": exc.kind, **exc.context}
    if isinstance(exc, LedgerError):
        logger.error("Ledger failure", extra=extra)
    else:
        logger.debug("Rejected game action", extra=extra)
    return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed game intents get the same error kinds as the engine's own checks."""
    if not request.url.path.startswith("/api/games/mines"):
        return await request_validation_exception_handler(request, exc)

    first = exc.errors()[0] if exc.errors() else {}
    field_name = str((first.get("loc") or ("request",))[-1])
    detail = f"{field_name}: {first.get('msg', 'invalid value')}"

    if field_name == "tile_index":
        error = TileIndexOutOfRange(detail)
    else:
        error = InvalidConfiguration(detail)
    return await mines_error_handler(request, error)


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return ORJSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "detail": str(exc) if settings.server.debug else None,
        },
    )


# ==================== Application Setup ====================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.server.name,
        docs_url="/docs" if settings.server.debug else None,
        redoc_url=None,
        default_response_class=ORJSONResponse,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(MinesError, mines_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if settings.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(auth_router)
    app.include_router(api.router, prefix="/api")

    @app.get("/health")
    async def health():
        return {"status": "ok", "name": settings.server.name}

    return app


app = create_app()

logger.info(f"Application '{settings.server.name}' initialized")
logger.info(f"Debug mode: {settings.server.debug}")


# ==================== Main Entry Point ====================

if __name__ == "__main__":
    logger.info(f"Starting server on {settings.server.host}:{settings.server.port}")
    uvicorn.run(
        "app.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.debug,
    )
