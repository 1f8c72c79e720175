"""
Sentry Integration for Netyora Chat

Error tracking for the HTTP surface, the realtime gateway and the
attachment sweep. Disabled unless SENTRY_DSN is configured.
"""

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration

from core.errors import ChatError

logger = logging.getLogger(__name__)


def init_sentry(
    dsn: Optional[str] = None,
    environment: Optional[str] = None,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry error tracking.

    Args:
        dsn: Sentry DSN. If not provided, uses SENTRY_DSN env var.
        environment: Environment name (development, staging, production).
        release: Release version string.

    Returns:
        True when Sentry was initialized.
    """
    sentry_dsn = dsn or os.getenv("SENTRY_DSN")

    if not sentry_dsn:
        logger.info("Sentry DSN not configured. Error tracking disabled.")
        return False

    env = environment or os.getenv("ENVIRONMENT", "development")
    rel = release or os.getenv("SENTRY_RELEASE", "development")

    sentry_sdk.init(
        dsn=sentry_dsn,
        environment=env,
        release=rel,
        traces_sample_rate=0.1 if env == "production" else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            AsyncioIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            HttpxIntegration(),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        before_send=before_send,
        before_send_transaction=before_send_transaction,
    )

    logger.info(f"Sentry initialized for environment: {env}")
    return True


def before_send(event, hint):
    """Drop expected chat errors and scrub credentials."""
    exception = hint.get("exc_info")

    if exception:
        exc_type, exc_value, _ = exception

        # 4xx chat errors are client mistakes, not bugs
        if isinstance(exc_value, ChatError) and exc_value.status_code < 500:
            return None

        if exc_type.__name__ in ("ConnectionResetError", "BrokenPipeError", "CancelledError"):
            return None

    if event.get("request"):
        headers = event["request"].get("headers", {})
        if "Authorization" in headers:
            headers["Authorization"] = "[Filtered]"
        # Websocket handshakes carry the token in the query string
        if event["request"].get("query_string"):
            event["request"]["query_string"] = "[Filtered]"

    return event


def before_send_transaction(event, hint):
    """Skip health check transactions."""
    transaction_name = event.get("transaction", "")
    if transaction_name.endswith("/health"):
        return None
    return event


def capture_exception(exception: Exception, **kwargs) -> Optional[str]:
    """Capture an exception to Sentry."""
    return sentry_sdk.capture_exception(exception, **kwargs)
