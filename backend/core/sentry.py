"""
Sentry Error Tracking
Error reporting for the matching API and interest workers. Disabled unless
SENTRY_DSN is set.
"""
import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from backend.core.config import settings

logger = logging.getLogger(__name__)

UNTRACED_TRANSACTIONS = {"/health", "/health/ready"}


def drop_probe_transactions(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """Skip performance events for health probes."""
    if event.get("transaction") in UNTRACED_TRANSACTIONS:
        return None
    return event


def init_sentry() -> bool:
    """
    Start the Sentry SDK for this process.

    Returns:
        True if reporting is enabled.
    """
    if not settings.sentry_dsn:
        logger.info("Sentry disabled: no DSN configured")
        return False

    environment = settings.sentry_environment or settings.environment
    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=environment,
            release=f"askmatch@{settings.app_version}",
            traces_sample_rate=settings.sentry_traces_sample_rate,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                CeleryIntegration(),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            before_send_transaction=drop_probe_transactions,
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"Sentry init failed: {e}")
        return False

    logger.info(f"Sentry enabled for {environment}")
    return True


def capture_exception(
    error: Exception,
    user_id: str | None = None,
    extra: dict[str, Any] | None = None,
) -> str | None:
    """
    Report an exception with the searcher or portfolio owner attached.

    Returns:
        Sentry event id, or None when reporting is disabled.
    """
    with sentry_sdk.new_scope() as scope:
        if user_id:
            scope.set_user({"id": user_id})
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_exception(error)
