"""Trigger evaluator: per-property auto-export rules.

WHAT:
    Maps a conversation event to its rule on `SalesforceSettings` and, when
    the rule is on and the property is connected, exports the conversation's
    visitor with the matching export type.

WHY:
    The rule set is a fixed enumeration (four booleans), not user-defined
    logic. A disabled rule produces no CRM call and no log entry. Evaluation
    always runs from an outbox job, never inside the request that caused the
    event.

REFERENCES:
    - careassist/services/crm_export_service.py (LeadExportService)
    - careassist/services/job_handlers.py (evaluate_trigger job)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from careassist.models import Conversation, ExportTypeEnum, SalesforceSettings
from careassist.services.crm_export_service import ExportBatchResult, LeadExportService

logger = logging.getLogger(__name__)


class TriggerEvent(str, enum.Enum):
    escalation = "escalation"
    conversation_end = "conversation_end"
    insurance_detected = "insurance_detected"
    phone_detected = "phone_detected"


# event -> (rule column, export type)
TRIGGER_RULES = {
    TriggerEvent.escalation: ("auto_export_on_escalation", ExportTypeEnum.auto_escalation),
    TriggerEvent.conversation_end: ("auto_export_on_conversation_end", ExportTypeEnum.auto_conversation_end),
    TriggerEvent.insurance_detected: ("auto_export_on_insurance_detected", ExportTypeEnum.auto_insurance),
    TriggerEvent.phone_detected: ("auto_export_on_phone_detected", ExportTypeEnum.auto_phone),
}


@dataclass
class TriggerOutcome:
    event: TriggerEvent
    fired: bool
    reason: Optional[str] = None
    export: Optional[ExportBatchResult] = None


class TriggerEvaluator:
    """
    Usage:
        evaluator = TriggerEvaluator(LeadExportService(SalesforceClient()))
        outcome = evaluator.evaluate(db, TriggerEvent.escalation, conversation_id)
    """

    def __init__(self, exporter: LeadExportService):
        self.exporter = exporter

    def evaluate(self, db: Session, event: TriggerEvent, conversation_id: UUID) -> TriggerOutcome:
        event = TriggerEvent(event)
        rule, export_type = TRIGGER_RULES[event]

        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            logger.warning("[TRIGGER] Conversation %s not found for %s", conversation_id, event.value)
            return TriggerOutcome(event, fired=False, reason="conversation_not_found")

        crm = (
            db.query(SalesforceSettings)
            .filter(SalesforceSettings.property_id == conversation.property_id)
            .first()
        )
        if crm is None or not getattr(crm, rule):
            logger.debug("[TRIGGER] %s rule off for property %s", event.value, conversation.property_id)
            return TriggerOutcome(event, fired=False, reason="rule_disabled")

        if not crm.is_connected:
            logger.warning(
                "[TRIGGER] %s rule on for property %s but Salesforce is not connected",
                event.value, conversation.property_id,
            )
            return TriggerOutcome(event, fired=False, reason="not_connected")

        result = self.exporter.export_visitors(
            db,
            [conversation.visitor_id],
            export_type=export_type,
            property_id=conversation.property_id,
            conversation_id=conversation.id,
        )
        logger.info(
            "[TRIGGER] %s export for conversation %s: %d/%d",
            event.value, conversation.id, result.exported, result.total,
        )
        return TriggerOutcome(event, fired=True, export=result)
