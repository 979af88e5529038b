"""FastAPI application setup and configuration."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from evently_escrow.config import settings
from evently_escrow.api import api_router
from evently_escrow.database import init_database, close_database
from evently_escrow.middleware import (
    ErrorHandlerMiddleware,
    LoggingMiddleware,
    request_validation_handler,
)
from evently_escrow.utils.dependencies import (
    EscrowComponents,
    build_components,
    get_components,
    set_components,
)
from evently_escrow.utils.logging_config import setup_logging

# Set up logging
setup_logging(
    log_level="DEBUG" if settings.debug else settings.log_level,
    log_file=settings.log_file or ("logs/evently_escrow.log" if settings.environment == "production" else None),
    enable_json_logging=settings.enable_json_logging or settings.environment == "production",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting Evently Escrow")
    uses_database = settings.ledger_backend == "sql" or settings.payment_rail_backend == "ledger"
    if uses_database:
        await init_database()

    components = build_components(settings)
    initialize = getattr(components.locks, "initialize", None)
    if initialize is not None:
        await initialize()
    set_components(components)
    logger.info("Escrow components ready")

    yield

    logger.info("Shutting down Evently Escrow")
    close = getattr(components.locks, "close", None)
    if close is not None:
        await close()
    set_components(None)
    if uses_database:
        await close_database()
    logger.info("Connections closed")


app = FastAPI(
    title="Evently Escrow API",
    description="""
    ## Evently Escrow

    Attendance-based escrow for event tickets.

    Attendees pay a ticket deposit into a per-event escrow account. After
    the event, everyone who was checked in gets their deposit back plus a
    share of the no-show pool; the organizer receives the rest. Cancelling
    an event refunds every deposit in full.

    ### Flow

    1. The organizer creates an event with a ticket price, end time and redistribution percentage
    2. Attendees buy tickets (`POST /events/{id}/tickets`)
    3. The organizer marks attendance, directly or by scanning check-in tokens
    4. After the end time the organizer finalizes the event and is paid their share
    5. Attendees withdraw their deposit plus bonus (`POST /events/{id}/withdrawals`)

    Free events (ticket price 0) take registrations instead of tickets and never move funds.

    ### Authentication

    Requests carry a JWT in the `Authorization: Bearer <token>` header. The
    token's `sub` claim is the calling account.

    ### Amounts

    Amounts are integers in the currency's smallest unit, returned together
    with a display string. Ticket prices are submitted as decimal strings.

    ### Error Handling

    Errors are returned as:

    ```json
    {
      "error": {
        "error_code": "ERROR_CODE",
        "message": "Human readable error message",
        "details": {},
        "suggestions": []
      },
      "error_id": "...",
      "timestamp": "..."
    }
    ```
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "events",
            "description": "Event creation, settlement and cancellation"
        },
        {
            "name": "participants",
            "description": "Ticket purchases, attendance, withdrawals and check-in"
        },
        {
            "name": "registrations",
            "description": "Registrations for free events"
        },
        {
            "name": "health",
            "description": "System health and monitoring endpoints"
        }
    ],
    lifespan=lifespan,
)

# 1. Logging middleware (first to capture all requests)
app.add_middleware(
    LoggingMiddleware,
    log_requests=settings.enable_request_logging,
    log_responses=settings.enable_request_logging,
    log_request_body=settings.debug,
)

# 2. Error handling middleware (catch all errors)
app.add_middleware(
    ErrorHandlerMiddleware,
    debug=settings.debug
)

# 3. CORS middleware (last in the middleware stack)
if settings.debug:
    # Development: Allow all origins
    cors_origins = ["*"]
    cors_allow_credentials = False  # Cannot use credentials with wildcard origins
else:
    cors_origins = settings.cors_origins
    cors_allow_credentials = settings.cors_allow_credentials

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
    expose_headers=settings.cors_expose_headers
)

app.add_exception_handler(RequestValidationError, request_validation_handler)

# Include API routes
app.include_router(api_router)


@app.get("/", tags=["health"])
async def root():
    """Root endpoint for API information."""
    return {
        "message": "Evently Escrow API",
        "version": "1.0.0",
        "docs_url": "/docs",
        "redoc_url": "/redoc",
        "status": "operational"
    }


@app.get("/health", tags=["health"])
async def health_check():
    """
    Basic health check endpoint.

    Use this endpoint for simple uptime monitoring.
    """
    return {"status": "healthy", "service": "evently-escrow"}


@app.get("/health/detailed", tags=["health"])
async def detailed_health_check(components: EscrowComponents = Depends(get_components)):
    """
    Detailed health check with service dependencies.

    Reports the database, the lock backend, Celery workers and the
    payment rail circuit breaker.
    """
    from evently_escrow.utils.health_check import get_health_status
    return await get_health_status(components)
