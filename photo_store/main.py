"""
main.py — photo store FastAPI application entry point.

Start with: uvicorn photo_store.main:app --reload --port 8000
(run from the repository root)
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from photo_store.config import settings
from photo_store.errors import (
    InvalidSessionIdError,
    InvalidSignatureError,
    MalformedEventError,
    MissingEmailError,
    PaymentProviderError,
    PurchaseStoreError,
)

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Initialize Redis connection pool (purchase records + cart side channel)
      2. Build the Stripe gateway (one StripeClient for the process)
    Shutdown:
      1. Close Redis pool
    """
    # --- 1. Redis ---
    from photo_store.cache import create_redis_pool
    app.state.redis = await create_redis_pool()

    # --- 2. Stripe ---
    from photo_store.checkout.gateway import StripeGateway
    app.state.payments = StripeGateway.from_settings()
    logger.info("Stripe gateway initialized (mode=%s)", "TEST" if settings.use_test_stripe else "LIVE")

    logger.info("Photo store v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.redis.aclose()
    logger.info("Redis connection pool closed")
    logger.info("Photo store shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Photo Store API",
    version=settings.app_version,
    description=(
        "Checkout, Stripe webhook ingestion and download entitlements "
        "for digital photo purchases."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Stripe-Signature"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers — registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        # Build dot-notation field path, excluding the top-level 'body' loc
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """
    Converts FastAPI HTTPException to standard error format with semantic code.
    """
    code_map = {
        400: "BAD_REQUEST",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(InvalidSessionIdError)
async def invalid_session_id_handler(
    request: Request, exc: InvalidSessionIdError
) -> JSONResponse:
    return _make_error_response(code="INVALID_SESSION_ID", message=str(exc), status_code=400)


@app.exception_handler(MissingEmailError)
async def missing_email_handler(
    request: Request, exc: MissingEmailError
) -> JSONResponse:
    return _make_error_response(code="MISSING_EMAIL", message=str(exc), status_code=400)


@app.exception_handler(MalformedEventError)
async def malformed_event_handler(
    request: Request, exc: MalformedEventError
) -> JSONResponse:
    return _make_error_response(code="MALFORMED_EVENT", message=str(exc), status_code=400)


@app.exception_handler(InvalidSignatureError)
async def invalid_signature_handler(
    request: Request, exc: InvalidSignatureError
) -> JSONResponse:
    """Fixed message — never reveal why verification failed."""
    return _make_error_response(
        code="INVALID_SIGNATURE",
        message="Webhook signature verification failed",
        status_code=400,
    )


@app.exception_handler(PurchaseStoreError)
async def store_error_handler(
    request: Request, exc: PurchaseStoreError
) -> JSONResponse:
    """
    Store outage or unsettled contention. Nothing was released, so the client
    should re-check the purchase and try again.
    """
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return _make_error_response(
        code="STORE_UNAVAILABLE",
        message="A temporary problem occurred. Please try again in a moment.",
        status_code=503,
    )


@app.exception_handler(PaymentProviderError)
async def payment_provider_error_handler(
    request: Request, exc: PaymentProviderError
) -> JSONResponse:
    if exc.user_error:
        return _make_error_response(code="PAYMENT_ERROR", message=str(exc), status_code=400)
    return _make_error_response(
        code="PAYMENT_PROVIDER_ERROR",
        message="An error occurred while processing your request. Please try again.",
        status_code=502,
    )


@app.exception_handler(ValueError)
async def value_error_handler(
    request: Request, exc: ValueError
) -> JSONResponse:
    """
    Catches explicit ValueError raises from business logic (validator.py).
    Surfaces as 422 VALIDATION_ERROR so the caller understands it's a data issue.
    """
    return _make_error_response(
        code="VALIDATION_ERROR",
        message=str(exc),
        status_code=422,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Returns service health status."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from photo_store.checkout.routes import router as checkout_router
from photo_store.purchases.routes import router as purchases_router

app.include_router(checkout_router)
app.include_router(purchases_router)
