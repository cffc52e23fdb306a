"""
Sentry Error Tracking
=====================

Error tracking for the API process and the arq worker.

Related files:
- careassist/main.py: initializes Sentry when the app is created
- careassist/workers/arq_worker.py: initializes Sentry on worker startup
- careassist/services/outbox.py: reports failed background jobs

Visitor transcripts may carry health and insurance details, and CRM
tokens are credentials. `scrub_event` masks both before anything leaves
the process.

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays off when unset)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

FILTERED = "[Filtered]"

# Keys whose values never reach Sentry (request bodies, extras, job payloads)
SENSITIVE_KEYS = frozenset({
    "content",
    "last_message",
    "insurance_info",
    "medical_notes",
    "phone",
    "email",
    "access_token",
    "refresh_token",
    "code",
    "code_verifier",
    "webhook_url",
    "authorization",
    "cookie",
})


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: FILTERED if str(k).lower() in SENSITIVE_KEYS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def scrub_event(event: Dict[str, Any], hint: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Mask transcript text and credentials in a Sentry event (before_send hook)."""
    for section in ("request", "extra", "contexts"):
        if section in event:
            event[section] = _scrub(event[section])
    return event


def init_sentry() -> bool:
    """Initialize the Sentry SDK once per process.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=scrub_event,
            release=os.environ.get("RELEASE_VERSION"),
        )
    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False

    logger.debug(f"[SENTRY] Initialized for {environment} environment")
    return True


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """Report a handled exception, tagging the job or property it belongs to.

    Example:
        except httpx.HTTPError as e:
            capture_exception(e, extra={"operation": "create_lead", "property_id": pid})
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                if key in ("operation", "property_id", "conversation_id", "job_id"):
                    scope.set_tag(key, str(value))
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
