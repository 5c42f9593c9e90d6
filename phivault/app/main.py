"""
PHI Vault - FastAPI Application

Thin HTTP gateway over the ledger-facing operation surface.

Security Hardening:
- JWT-based identity required for all protected endpoints
- Rate limiting to prevent abuse (can be disabled in test mode)
- Core errors mapped to their taxonomy tag and status code
- Custom exception handling to prevent PHI leakage
- Database security validation on startup
"""

from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from phivault.app import settings
from phivault.app.db.migrate import check_db_security
from phivault.app.errors import PhiVaultError
from phivault.app.logging_config import configure_logging
from phivault.app.routes import access, audit, consents, health, keys, records
from phivault.app.runtime import get_runtime
from phivault.app.security.rate_limit import limiter

logger = structlog.get_logger(__name__)


def sanitize_error_detail(detail: Any) -> dict:
    """
    Sanitize error details to prevent PHI leakage.

    Dict details are produced by our own code and assumed safe; anything
    else is replaced with a generic message.
    """
    if isinstance(detail, dict):
        return detail
    return {
        "error": "internal_error",
        "message": "An error occurred processing your request",
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup:
    - Configure structured logging
    - Build the runtime (migrates the SQLite ledger when that backend is used)
    - Validate database security configuration
    """
    configure_logging()
    get_runtime()

    if settings.LEDGER_BACKEND == "sqlite":
        security_status = check_db_security()
        if not security_status.get("wal_enabled"):
            logger.warning("database_wal_disabled")
        if not security_status.get("permissions_secure"):
            logger.warning("database_permissions_insecure")

    yield


app = FastAPI(
    title="PHI Vault",
    description="Envelope encryption, consent and access control for protected health information",
    version="0.1.0",
    lifespan=lifespan,
    debug=False,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(PhiVaultError)
async def phivault_exception_handler(request: Request, exc: PhiVaultError):
    """Core errors carry their own status and an identifiers-only body."""
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions without leaking PHI."""
    return JSONResponse(status_code=exc.status_code, content=sanitize_error_detail(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle validation errors without echoing the request body.

    Pydantic errors can include submitted values, which may be PHI, so only
    field paths, error types and messages are returned.
    """
    errors = []
    for error in exc.errors():
        errors.append(
            {
                "field": " -> ".join(str(loc) for loc in error["loc"]),
                "type": error["type"],
                "message": error["msg"],
            }
        )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": errors,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all: no stack traces or request data reach the client."""
    logger.error("unhandled_exception", exc_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "An unexpected error occurred"},
    )


app.include_router(health.router)
app.include_router(records.router)
app.include_router(keys.router)
app.include_router(consents.router)
app.include_router(access.router)
app.include_router(audit.router)


@app.get("/")
async def root():
    return {"service": "PHI Vault", "version": "0.1.0", "status": "operational"}
