"""
Tent Migrate - Sentry error tracking

Job failures are reported with the job key as a tag. MAC authorization
headers never leave the process.
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

SCRUBBED_HEADERS = {"authorization", "cookie", "set-cookie"}

# Cooperative cancellation, not errors
IGNORED_EXCEPTION_NAMES = {"CancelledError", "JobCancelledError"}


def init_sentry(dsn: Optional[str], environment: str = "development") -> bool:
    """
    Initialize Sentry. Returns False (tracking disabled) when no DSN is set.
    """
    if not dsn:
        logger.info("SENTRY_DSN not set, error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=0.05 if environment == "production" else 1.0,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            AsyncioIntegration(),
            HttpxIntegration(),
            # Workers log item failures at WARNING; only job failures become events
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        before_send=before_send,
        ignore_errors=[KeyboardInterrupt, SystemExit],
    )

    logger.info(f"Sentry initialized ({environment})")
    return True


def _scrub_headers(headers):
    if not isinstance(headers, dict):
        return
    for name in list(headers):
        if name.lower() in SCRUBBED_HEADERS:
            headers[name] = "[Filtered]"


def before_send(event, hint):
    exc_info = hint.get("exc_info")
    if exc_info and exc_info[0] is not None and exc_info[0].__name__ in IGNORED_EXCEPTION_NAMES:
        return None

    _scrub_headers((event.get("request") or {}).get("headers"))
    for crumb in (event.get("breadcrumbs") or {}).get("values", []):
        _scrub_headers((crumb.get("data") or {}).get("headers"))
    return event


def capture_exception(exception: Exception, job_key: Optional[str] = None) -> Optional[str]:
    """Report an exception, tagged with the job it belongs to. Returns the event id."""
    with sentry_sdk.new_scope() as scope:
        if job_key:
            scope.set_tag("job_key", job_key)
        return sentry_sdk.capture_exception(exception)


def add_breadcrumb(message: str, category: str = "migration", data: Optional[dict] = None) -> None:
    sentry_sdk.add_breadcrumb(message=message, category=category, level="info", data=data or {})
