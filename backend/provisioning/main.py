"""
Customer Provisioning — FastAPI Application Factory
====================================================

What:  Builds the FastAPI app: middleware, routes, exception handlers and the
       lifespan that wires engine → store → provider → coordinator.
Who:   uvicorn (uvicorn provisioning.main:app), tests (create_app()).

Application Architecture:
    ┌─────────────────────────────────────────────────────┐
    │                   FastAPI App                       │
    │  Middleware:  Request ID → Logging → GZip → CORS    │
    │                                                     │
    │  Routes:                                            │
    │   POST /customers        GET /customers/{key}       │
    │   POST /customers/reconcile          GET /health    │
    │                                                     │
    │  Exception Handlers:                                │
    │   Validation→400  NotFound→404  InProgress→409      │
    │   Rejected/Failed→422  Unavailable→502  DB→500      │
    └─────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, config validation, build components onto app.state
              (skipped for any component a test already placed there)
    Shutdown: dispose the engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from provisioning import __version__
from provisioning.config import Settings, settings as default_settings
from provisioning.database import dispose_engine, make_engine, make_session_factory
from provisioning.exceptions import (
    DatabaseError,
    NotFoundError,
    ProviderRejected,
    ProviderUnavailable,
    ProvisioningError,
    ProvisioningFailed,
    ProvisioningInProgress,
    ValidationError,
)
from provisioning.middleware.logging import RequestLoggingMiddleware
from provisioning.middleware.request_id import RequestIDMiddleware, request_id_var
from provisioning.routes import customers, health
from provisioning.services.link_store import CustomerLinkStore
from provisioning.services.provisioning_service import ProvisioningCoordinator
from provisioning.services.stripe_provider import StripeProvider

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(log_level: str) -> None:
    """Configure root logging once, to stdout, and quiet chatty libraries."""
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Component Wiring
# ══════════════════════════════════════════════════════════════════════════

def build_components(app: FastAPI, config: Settings) -> None:
    """
    Construct engine, store, provider and coordinator from explicit settings.

    Components already present on app.state are left alone, which is how
    tests substitute a mock provider or a SQLite store.
    """
    state = app.state
    if getattr(state, "engine", None) is None:
        state.engine = make_engine(
            config.database_url,
            pool_size=config.db_pool_size,
            max_overflow=config.db_max_overflow,
            pool_pre_ping=config.db_pool_pre_ping,
            echo=config.log_level == "DEBUG",
        )
    if getattr(state, "provider", None) is None:
        state.provider = StripeProvider(
            api_key=config.stripe_secret_key,
            api_version=config.stripe_api_version,
            timeout=config.provider_timeout,
            max_attempts=config.retry_max_attempts,
            min_wait=config.retry_min_wait,
            max_wait=config.retry_max_wait,
            failure_threshold=config.cb_failure_threshold,
            recovery_timeout=config.cb_recovery_timeout,
            health_cache_ttl=config.provider_health_cache_ttl,
        )
    if getattr(state, "coordinator", None) is None:
        store = CustomerLinkStore(make_session_factory(state.engine))
        state.coordinator = ProvisioningCoordinator(
            store=store,
            provider=state.provider,
            search_consistency_window=timedelta(seconds=config.search_consistency_window),
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: Settings = app.state.settings

    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("Customer provisioning service starting up...")

    try:
        config.validate_required_for_production()
    except ValueError as e:
        # Keep serving so /health can report the problem
        logger.error("Configuration error: %s", str(e))

    build_components(app, config)

    logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("Customer provisioning service shutting down...")
    await dispose_engine(app.state.engine)
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

HTTP_ERROR_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
}


def _error(
    status_code: int,
    error: str,
    message: str,
    headers: Optional[dict] = None,
    **extra,
) -> JSONResponse:
    content = {"error": error, "message": message, **extra, "request_id": request_id_var.get("")}
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map typed provisioning outcomes to HTTP responses.

    Handlers are looked up along the exception MRO, so CircuitBreakerOpenError
    is answered by the ProviderUnavailable handler. Internal details (SQL,
    Stripe error bodies) only ever reach the log.
    """

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        """FastAPI answers body validation with 422; this API reserves 422 for provider rejections."""
        errors = [
            {
                "loc": [str(part) for part in err.get("loc", ())],
                "msg": str(err.get("msg", "")),
                "type": str(err.get("type", "")),
            }
            for err in exc.errors()
        ]
        logger.info("[%s] Malformed request to %s: %s", request_id_var.get(""), request.url.path, errors)
        return _error(400, "validation_error", "Request validation failed", details={"errors": errors})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        """Framework and auth errors (401 from internal_auth, unknown routes) in the common envelope."""
        error = HTTP_ERROR_CODES.get(exc.status_code, "http_error")
        return _error(exc.status_code, error, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        return _error(400, "validation_error", exc.message, details=exc.context)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error(404, "not_found", exc.message)

    @app.exception_handler(ProvisioningInProgress)
    async def handle_in_progress(request: Request, exc: ProvisioningInProgress):
        logger.info("[%s] Provisioning in progress for %s", request_id_var.get(""), exc.account_key)
        return _error(409, "in_progress", exc.message)

    @app.exception_handler(ProvisioningFailed)
    async def handle_provisioning_failed(request: Request, exc: ProvisioningFailed):
        return _error(422, "rejected", exc.message, reason=exc.reason)

    @app.exception_handler(ProviderRejected)
    async def handle_provider_rejected(request: Request, exc: ProviderRejected):
        logger.warning("[%s] Provider rejected request: %s", request_id_var.get(""), exc.reason)
        return _error(422, "rejected", exc.message, reason=exc.reason)

    @app.exception_handler(ProviderUnavailable)
    async def handle_provider_unavailable(request: Request, exc: ProviderUnavailable):
        logger.warning(
            "[%s] Provider unavailable: %s | Context: %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error(502, "unavailable", exc.message, headers=headers)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error(
            "[%s] Database error: %s | Context: %s", request_id_var.get(""), exc.message, exc.context
        )
        return _error(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(ProvisioningError)
    async def handle_provisioning_error(request: Request, exc: ProvisioningError):
        logger.error(
            "[%s] Unhandled provisioning error %s: %s | Context: %s",
            request_id_var.get(""),
            type(exc).__name__,
            exc.message,
            exc.context,
        )
        return _error(500, "server_error", "An internal error occurred. Please try again later.")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return _error(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or default_settings

    app = FastAPI(
        title="Customer Provisioning API",
        description=(
            "Creates exactly one Stripe customer per internal account and keeps "
            "the link consistent across retries, duplicate signups and provider outages."
        ),
        version=__version__,
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.internal_api_keys = config.internal_api_keys_list
    app.state.reconcile_defaults = {
        "older_than_seconds": config.reconcile_stale_after,
        "limit": config.reconcile_batch_size,
        "min_age": config.reconcile_min_age,
    }

    # Last added runs first: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(customers.router)
    app.include_router(health.router)

    return app


app = create_app()
