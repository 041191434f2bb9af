"""
Sentry integration for error tracking.
"""
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.core.config import settings


def init_sentry(dsn: Optional[str] = None, traces_sample_rate: float = 0.1) -> bool:
    """
    Initialize Sentry for error tracking and performance monitoring.

    Args:
        dsn: Sentry DSN. If None, Sentry stays disabled.
        traces_sample_rate: Fraction of transactions to trace outside production/staging

    Returns:
        True if Sentry was initialized
    """
    if not dsn:
        return False

    if settings.ENVIRONMENT == "production":
        traces_sample_rate = 0.2
    elif settings.ENVIRONMENT == "staging":
        traces_sample_rate = 0.5

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.ENVIRONMENT,
        release=f"{settings.APP_NAME}@{settings.APP_VERSION}",
        traces_sample_rate=traces_sample_rate,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        send_default_pii=False,  # visitor ids stay out of Sentry
        attach_stacktrace=True,
        max_breadcrumbs=50,
    )
    return True


def capture_exception(error: Exception, context: Optional[dict] = None):
    """
    Manually capture an exception to Sentry.

    A no-op when Sentry was never initialized.

    Args:
        error: Exception to capture
        context: Optional context data to include
    """
    with sentry_sdk.new_scope() as scope:
        if context:
            for key, value in context.items():
                scope.set_context(key, value)

        sentry_sdk.capture_exception(error)
