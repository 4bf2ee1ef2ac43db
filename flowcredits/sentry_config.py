"""
Sentry configuration for error tracking.

Captures unhandled exceptions and ledger integrity failures with tenant context.
"""
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from flowcredits.config import settings
from flowcredits.logging_config import get_logger

log = get_logger(component="sentry")


def configure_sentry():
    """
    Initialize Sentry with FastAPI and SQLAlchemy integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        log.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    log.info("sentry_initialized", environment=settings.ENVIRONMENT)


def add_context(event, hint):
    """
    Attach ledger error details to events raised from ledger code.

    Ledger exceptions carry a structured context (tenant, payment,
    reservation) which is copied into the event extras.
    """
    exc_info = hint.get("exc_info") if hint else None
    if exc_info:
        exc = exc_info[1]
        to_dict = getattr(exc, "to_dict", None)
        if callable(to_dict):
            event.setdefault("extra", {})["ledger_error"] = to_dict()
    return event


def capture_exception(exc_info=None):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except DataIntegrityViolation as exc:
            capture_exception(exc)
            raise
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info"):
    """
    Capture a message to Sentry.

    Usage:
        capture_message("Balance drift detected", level="error")
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_message(message, level=level)
