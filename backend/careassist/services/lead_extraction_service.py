"""
Lead Extraction
===============

Turns a visitor's chat transcript into structured lead fields.

Related files:
- careassist/models.py: Visitor lead columns
- careassist/services/outbox.py: follow-up jobs (phone notification, triggers)
- careassist/services/trigger_service.py: phone/insurance export rules

Design:
- OpenAI tool calling with a fixed ten-field schema and a forced tool choice
- Temperature=0; the prompt asks only for facts the visitor stated
- Additive merge: a field is written only while it is still null, so re-running
  on a longer transcript never clobbers earlier values or human edits
- Any backend failure (timeout, HTTP error, no tool call, bad JSON) means
  "nothing extracted this round", never an error for the caller
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from openai import OpenAI
from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from careassist.deps import get_settings
from careassist.models import Conversation, Message, SenderTypeEnum, Visitor
from careassist.services.outbox import JOB_DISPATCH_NOTIFICATION, JOB_EVALUATE_TRIGGER, enqueue_job

logger = logging.getLogger(__name__)

LEAD_FIELDS = (
    "name",
    "email",
    "phone",
    "age",
    "occupation",
    "addiction_history",
    "drug_of_choice",
    "treatment_interest",
    "insurance_info",
    "urgency_level",
)

EXTRACT_TOOL_NAME = "extract_visitor_info"

EXTRACTION_SYSTEM_PROMPT = (
    "You are an information extraction assistant. Analyze the conversation and extract "
    "any personal information the visitor has shared naturally. Only extract information "
    "that was explicitly stated by the visitor (user messages), not inferred. If "
    "information is not clearly stated, do not include it."
)

EXTRACT_VISITOR_INFO_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": EXTRACT_TOOL_NAME,
        "description": "Extract personal information from the conversation",
        "parameters": {
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "The visitor's name if they mentioned it"},
                "email": {"type": "string", "description": "The visitor's email address if they shared it"},
                "phone": {"type": "string", "description": "The visitor's phone number if they shared it"},
                "age": {"type": "string", "description": "The visitor's age or age range if mentioned"},
                "occupation": {
                    "type": "string",
                    "description": "The visitor's job, profession, or occupation if mentioned",
                },
                "addiction_history": {
                    "type": "string",
                    "description": "Any mention of past or current substance use, addiction history, "
                                   "how long they have been struggling, or relapse history",
                },
                "drug_of_choice": {
                    "type": "string",
                    "description": "Specific substances mentioned like alcohol, opioids, heroin, fentanyl, "
                                   "meth, cocaine, prescription pills, benzodiazepines, marijuana, etc.",
                },
                "treatment_interest": {
                    "type": "string",
                    "description": "What type of treatment they are seeking: inpatient, outpatient, detox, "
                                   "residential, PHP, IOP, therapy, counseling, rehab",
                },
                "insurance_info": {
                    "type": "string",
                    "description": "Insurance provider mentioned (Blue Cross, Aetna, Cigna, etc.), Medicaid, "
                                   "Medicare, self-pay, or concerns about payment/cost",
                },
                "urgency_level": {
                    "type": "string",
                    "description": "How urgent their situation is: crisis/immediate need, ready to start "
                                   "treatment, planning for near future, or just researching options",
                },
            },
            "additionalProperties": False,
        },
    },
}


class LeadExtractor:
    """
    Structured-extraction backend (OpenAI chat completions + tool call).

    Usage:
        extractor = LeadExtractor()
        fields = extractor.extract([{"role": "user", "content": "I'm Dana"}])
        # {"name": "Dana"}
    """

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, timeout: Optional[float] = None):
        """
        Args:
            client: Optional OpenAI client (for testing/mocking).
                    If None, one is created from settings.
        """
        settings = get_settings()
        self.model = model or settings.LEAD_EXTRACTION_MODEL
        self.timeout = timeout if timeout is not None else settings.LEAD_EXTRACTION_TIMEOUT_SECONDS
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise ValueError(
                    "OPENAI_API_KEY not configured. "
                    "Set it in your .env file or environment."
                )
            client = OpenAI(
                api_key=settings.OPENAI_API_KEY,
                base_url=settings.OPENAI_BASE_URL,
                timeout=self.timeout,
                max_retries=1,
            )
        self.client = client

    def extract(self, transcript: List[Dict[str, str]]) -> Dict[str, str]:
        """Return the fields the visitor explicitly stated; empty dict on any failure."""
        if not transcript:
            return {}

        conversation_text = "\n".join(f"{m['role']}: {m['content']}" for m in transcript)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=[
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": f"Extract any personal information from this conversation:\n\n{conversation_text}",
                    },
                ],
                tools=[EXTRACT_VISITOR_INFO_TOOL],
                tool_choice={"type": "function", "function": {"name": EXTRACT_TOOL_NAME}},
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning("[LEAD_EXTRACT] Extraction call failed: %s", e)
            return {}

        return parse_tool_arguments(response)


def parse_tool_arguments(response: Any) -> Dict[str, str]:
    """Pull the extract_visitor_info arguments out of a completion response."""
    try:
        tool_calls = response.choices[0].message.tool_calls or []
    except (AttributeError, IndexError, TypeError):
        return {}

    for call in tool_calls:
        if getattr(call.function, "name", None) != EXTRACT_TOOL_NAME:
            continue
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except (TypeError, ValueError):
            logger.warning("[LEAD_EXTRACT] Tool call arguments were not valid JSON")
            return {}
        if not isinstance(arguments, dict):
            return {}
        return normalize_fields(arguments)

    return {}


def normalize_fields(raw: Dict[str, Any]) -> Dict[str, str]:
    """Keep known fields with non-empty string values, stripped."""
    cleaned: Dict[str, str] = {}
    for name in LEAD_FIELDS:
        value = raw.get(name)
        if isinstance(value, str) and value.strip():
            cleaned[name] = value.strip()
    return cleaned


def merge_lead_fields(
    db: Session,
    visitor: Visitor,
    extracted: Dict[str, str],
    *,
    overwrite: bool = False,
) -> List[str]:
    """Apply extracted values to the visitor row.

    Each field is written with a conditional UPDATE (`WHERE field IS NULL OR
    field = ''`), so two overlapping extraction passes cannot both fill the
    same field: the database decides, not the session's possibly stale copy.

    Args:
        overwrite: Explicit re-scan; replaces existing values too.

    Returns:
        Fields that were null and are now filled by this call.
    """
    db.flush()
    newly_filled: List[str] = []
    for name, value in extracted.items():
        if name not in LEAD_FIELDS:
            continue
        column = getattr(Visitor, name)
        result = db.execute(
            update(Visitor)
            .where(Visitor.id == visitor.id, or_(column.is_(None), column == ""))
            .values({name: value})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            newly_filled.append(name)
        elif overwrite:
            db.execute(
                update(Visitor)
                .where(Visitor.id == visitor.id)
                .values({name: value})
                .execution_options(synchronize_session=False)
            )

    db.expire(visitor)
    return newly_filled


def build_transcript(db: Session, visitor: Visitor) -> List[Dict[str, str]]:
    """All messages of the visitor's conversations, oldest conversation first."""
    rows = (
        db.query(Message)
        .join(Conversation, Conversation.id == Message.conversation_id)
        .filter(Conversation.visitor_id == visitor.id)
        .order_by(Conversation.created_at, Message.sequence_number)
        .all()
    )
    return [
        {
            "role": "user" if m.sender_type == SenderTypeEnum.visitor else "assistant",
            "content": m.content,
        }
        for m in rows
    ]


@dataclass
class ExtractionOutcome:
    extracted: Dict[str, str] = field(default_factory=dict)
    newly_filled: List[str] = field(default_factory=list)
    job_ids: List[UUID] = field(default_factory=list)

    @property
    def updated(self) -> bool:
        return bool(self.newly_filled)


class LeadExtractionService:
    """
    Runs extraction for a conversation and schedules follow-ups.

    Follow-ups fire only for fields filled by this pass:
    - phone: `phone_submission` notification + phone trigger evaluation
    - insurance_info: insurance trigger evaluation
    """

    def __init__(self, extractor: LeadExtractor):
        self.extractor = extractor

    @classmethod
    def from_settings(cls) -> "LeadExtractionService":
        return cls(LeadExtractor())

    def process_conversation(self, db: Session, conversation_id: UUID, *, rescan: bool = False) -> ExtractionOutcome:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            logger.warning("[LEAD_EXTRACT] Conversation %s not found", conversation_id)
            return ExtractionOutcome()

        visitor = conversation.visitor
        transcript = build_transcript(db, visitor)
        if not transcript:
            return ExtractionOutcome()

        extracted = self.extractor.extract(transcript)
        if not extracted:
            logger.debug("[LEAD_EXTRACT] Nothing extracted for visitor %s", visitor.id)
            return ExtractionOutcome()

        newly_filled = merge_lead_fields(db, visitor, extracted, overwrite=rescan)
        db.flush()

        outcome = ExtractionOutcome(extracted=extracted, newly_filled=newly_filled)
        if newly_filled:
            logger.info("[LEAD_EXTRACT] Visitor %s: filled %s", visitor.id, ", ".join(newly_filled))

        if "phone" in newly_filled:
            notify = enqueue_job(
                db,
                JOB_DISPATCH_NOTIFICATION,
                {
                    "event_type": "phone_submission",
                    "property_id": conversation.property_id,
                    "conversation_id": conversation.id,
                },
            )
            trigger = enqueue_job(
                db,
                JOB_EVALUATE_TRIGGER,
                {"event": "phone_detected", "conversation_id": conversation.id},
            )
            outcome.job_ids.extend([notify.id, trigger.id])

        if "insurance_info" in newly_filled:
            trigger = enqueue_job(
                db,
                JOB_EVALUATE_TRIGGER,
                {"event": "insurance_detected", "conversation_id": conversation.id},
            )
            outcome.job_ids.append(trigger.id)

        return outcome
