"""Error reporting for the API and the outbox worker.

Logging is stdlib `logging` with a bracketed component tag per module;
this package only adds Sentry.
"""

from careassist.telemetry.sentry import capture_exception, init_sentry, scrub_event

__all__ = ["capture_exception", "init_sentry", "scrub_event"]
