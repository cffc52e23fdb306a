"""Outbox job name -> handler.

Handlers take `(db, payload)`, write through the session and never commit;
`outbox.run_job` commits their writes together with the success mark.
Payload ids arrive as strings.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from careassist.services.crm_export_service import LeadExportService
from careassist.services.lead_extraction_service import LeadExtractionService
from careassist.services.notification_service import NotificationDispatcher, NotificationEvent
from careassist.services.outbox import (
    JOB_DISPATCH_NOTIFICATION,
    JOB_EVALUATE_TRIGGER,
    JOB_LEAD_EXTRACTION,
    JobHandler,
)
from careassist.services.salesforce_client import SalesforceClient
from careassist.services.trigger_service import TriggerEvaluator, TriggerEvent

logger = logging.getLogger(__name__)


def build_job_handlers(
    extraction_service: Optional[LeadExtractionService] = None,
    evaluator: Optional[TriggerEvaluator] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Dict[str, JobHandler]:
    """Wire handlers; collaborators are built from settings on first use."""

    def lead_extraction(db: Session, payload: Dict[str, Any]) -> Any:
        nonlocal extraction_service
        if extraction_service is None:
            extraction_service = LeadExtractionService.from_settings()
        return extraction_service.process_conversation(
            db,
            UUID(payload["conversation_id"]),
            rescan=bool(payload.get("rescan", False)),
        )

    def evaluate_trigger(db: Session, payload: Dict[str, Any]) -> Any:
        nonlocal evaluator
        if evaluator is None:
            evaluator = TriggerEvaluator(LeadExportService(SalesforceClient()))
        return evaluator.evaluate(db, TriggerEvent(payload["event"]), UUID(payload["conversation_id"]))

    def dispatch_notification(db: Session, payload: Dict[str, Any]) -> Any:
        nonlocal dispatcher
        if dispatcher is None:
            dispatcher = NotificationDispatcher.from_settings()
        conversation_id = payload.get("conversation_id")
        return dispatcher.dispatch(
            db,
            UUID(payload["property_id"]),
            NotificationEvent(payload["event_type"]),
            UUID(conversation_id) if conversation_id else None,
        )

    return {
        JOB_LEAD_EXTRACTION: lead_extraction,
        JOB_EVALUATE_TRIGGER: evaluate_trigger,
        JOB_DISPATCH_NOTIFICATION: dispatch_notification,
    }


_handlers: Optional[Dict[str, JobHandler]] = None


def get_job_handlers() -> Dict[str, JobHandler]:
    """Process-wide handler table (one OpenAI/httpx client per worker)."""
    global _handlers
    if _handlers is None:
        _handlers = build_job_handlers()
    return _handlers
