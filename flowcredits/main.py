"""
Flow Credits - prepaid credit ledger for workflow initiation

FastAPI application entry point.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import observability modules
from flowcredits.config import settings
from flowcredits.errors import DataIntegrityViolation, LedgerError
from flowcredits.logging_config import configure_logging, get_logger
from flowcredits.sentry_config import capture_exception, configure_sentry
from flowcredits.middleware.logging import LoggingMiddleware
from flowcredits.routes.metrics import router as metrics_router

# Import route modules
from flowcredits.routes.credits import router as credits_router
from flowcredits.routes.reservations import router as reservations_router
from flowcredits.routes.payments import router as payments_router
from flowcredits.routes.webhooks import router as webhooks_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Prepaid credit ledger: bulk pricing, reservations, consumption, refunds and balance alerts",
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Render every ledger error as {"error": {...}} with its HTTP status."""
    log = get_logger(route=request.url.path, method=request.method)
    headers = {}

    if isinstance(exc, DataIntegrityViolation):
        log.error("data_integrity_violation", **exc.to_dict())
        capture_exception(exc)
    else:
        log.info("ledger_error", code=exc.code, message=exc.message)

    if exc.retryable:
        headers["Retry-After"] = str(getattr(exc, "retry_after", 1))

    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.to_dict()},
        headers=headers,
    )


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include ledger routes
app.include_router(credits_router)
app.include_router(reservations_router)
app.include_router(payments_router)

# Include webhook routes
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "database": "connected"
    }
