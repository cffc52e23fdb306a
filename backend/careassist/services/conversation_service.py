"""Conversation store operations for the visitor side of the chat.

WHAT:
    Visitor/session resolution, create-or-reuse of conversations, visitor
    message ingress, presence pings, closing (explicit and stale) and read
    receipts.

WHY:
    Every write here that should cause background work (notifications, lead
    extraction, conversation-end export) enqueues an outbox job in the same
    transaction, so the widget request returns without waiting on any
    integration.

REFERENCES:
    - careassist/services/sequencer.py (append_message)
    - careassist/services/outbox.py (enqueue_job)
    - careassist/routers/widget.py (HTTP surface)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from careassist.models import (
    Conversation,
    ConversationStatusEnum,
    Message,
    Property,
    SenderTypeEnum,
    Visitor,
    utcnow,
)
from careassist.services.outbox import (
    JOB_DISPATCH_NOTIFICATION,
    JOB_EVALUATE_TRIGGER,
    JOB_LEAD_EXTRACTION,
    enqueue_job,
)
from careassist.services.sequencer import append_message

logger = logging.getLogger(__name__)

STALE_SECONDS_DEFAULT = 45
STALE_SECONDS_MIN = 10
STALE_SECONDS_MAX = 3600


class VisitorSessionError(Exception):
    """Visitor id/session id pair does not match (or the visitor is unknown)."""


class ConversationClosedError(Exception):
    """A visitor tried to write into a closed conversation."""


@dataclass
class ConversationStart:
    conversation: Conversation
    visitor: Visitor
    created: bool
    job_ids: List[UUID] = field(default_factory=list)


@dataclass
class VisitorMessageResult:
    message: Message
    extraction_scheduled: bool
    job_ids: List[UUID] = field(default_factory=list)


# ----------------------------------------------------------------------
# Visitors and conversations
# ----------------------------------------------------------------------

def get_or_create_visitor(db: Session, property_id: UUID, session_id: str) -> Visitor:
    visitor = (
        db.query(Visitor)
        .filter(Visitor.property_id == property_id, Visitor.session_id == session_id)
        .first()
    )
    if visitor:
        return visitor

    visitor = Visitor(property_id=property_id, session_id=session_id)
    db.add(visitor)
    db.flush()
    logger.info("[CONVERSATION] New visitor %s on property %s", visitor.id, property_id)
    return visitor


def authenticate_visitor(db: Session, visitor_id: UUID, session_id: str, property_id: Optional[UUID] = None) -> Visitor:
    """Check that the widget's visitor id and session id belong together.

    Raises:
        VisitorSessionError: Unknown visitor, wrong session or wrong property.
    """
    visitor = db.get(Visitor, visitor_id)
    if visitor is None or visitor.session_id != session_id:
        raise VisitorSessionError("Invalid visitor session")
    if property_id is not None and visitor.property_id != property_id:
        raise VisitorSessionError("Visitor does not belong to this property")
    return visitor


def get_visitor_conversation(db: Session, conversation_id: UUID, visitor: Visitor) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None or conversation.visitor_id != visitor.id:
        raise VisitorSessionError("Conversation does not belong to this visitor")
    return conversation


def latest_open_conversation(db: Session, visitor: Visitor) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.visitor_id == visitor.id,
            Conversation.status != ConversationStatusEnum.closed,
        )
        .order_by(Conversation.created_at.desc())
        .first()
    )


def start_conversation(db: Session, prop: Property, session_id: str) -> ConversationStart:
    """Return the visitor's open conversation, or create one.

    A new conversation starts pending with the AI enabled and fires the
    `new_conversation` notification event.
    """
    visitor = get_or_create_visitor(db, prop.id, session_id)

    existing = latest_open_conversation(db, visitor)
    if existing:
        return ConversationStart(conversation=existing, visitor=visitor, created=False)

    now = utcnow()
    conversation = Conversation(
        property_id=prop.id,
        visitor_id=visitor.id,
        status=ConversationStatusEnum.pending,
        ai_enabled=True,
        last_sequence_number=0,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.flush()

    job = enqueue_job(
        db,
        JOB_DISPATCH_NOTIFICATION,
        {"event_type": "new_conversation", "property_id": prop.id, "conversation_id": conversation.id},
    )
    logger.info("[CONVERSATION] Created %s for visitor %s", conversation.id, visitor.id)
    return ConversationStart(conversation=conversation, visitor=visitor, created=True, job_ids=[job.id])


# ----------------------------------------------------------------------
# Messages
# ----------------------------------------------------------------------

def record_visitor_message(
    db: Session,
    conversation: Conversation,
    content: str,
    *,
    extraction_every: int = 1,
) -> VisitorMessageResult:
    """Append a visitor message and schedule lead extraction on cadence.

    Extraction runs after every `extraction_every`-th visitor message of the
    conversation. Flushes; the caller commits.

    Raises:
        ConversationClosedError: If the conversation is closed.
    """
    if conversation.status == ConversationStatusEnum.closed:
        raise ConversationClosedError("Conversation is closed")

    message = append_message(
        db,
        conversation,
        sender_type=SenderTypeEnum.visitor,
        content=content,
        read=False,
    )

    visitor_messages = (
        db.query(func.count(Message.id))
        .filter(Message.conversation_id == conversation.id, Message.sender_type == SenderTypeEnum.visitor)
        .scalar()
    )

    job_ids: List[UUID] = []
    every = max(1, extraction_every)
    scheduled = visitor_messages % every == 0
    if scheduled:
        job = enqueue_job(db, JOB_LEAD_EXTRACTION, {"conversation_id": conversation.id})
        job_ids.append(job.id)

    return VisitorMessageResult(message=message, extraction_scheduled=scheduled, job_ids=job_ids)


def mark_visitor_messages_read(db: Session, conversation: Conversation) -> int:
    """Flip `read` on unread visitor messages; the only Message mutation."""
    result = db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation.id,
            Message.sender_type == SenderTypeEnum.visitor,
            Message.read.is_(False),
        )
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------

def close_conversation(db: Session, conversation: Conversation, *, reason: str = "manual") -> List[UUID]:
    """Close a conversation and schedule the conversation-end trigger.

    Closing an already-closed conversation is a no-op. Any queued AI reply
    is dropped.
    """
    if conversation.status == ConversationStatusEnum.closed:
        return []

    now = utcnow()
    conversation.status = ConversationStatusEnum.closed
    conversation.closed_at = now
    conversation.updated_at = now
    conversation.ai_queued_preview = None
    conversation.ai_queued_at = None
    conversation.ai_queued_paused = False
    db.flush()

    job = enqueue_job(
        db,
        JOB_EVALUATE_TRIGGER,
        {"event": "conversation_end", "conversation_id": conversation.id},
    )
    logger.info("[CONVERSATION] Closed %s (%s)", conversation.id, reason)
    return [job.id]


def record_presence(db: Session, conversation: Conversation, status: str) -> List[UUID]:
    """Widget presence ping.

    "active" marks the conversation active and bumps updated_at (keeps it out
    of the stale sweep); "closed" closes it.
    """
    if status == "closed":
        return close_conversation(db, conversation, reason="widget_closed")
    if status != "active":
        raise ValueError(f"Invalid presence status: {status}")

    conversation.status = ConversationStatusEnum.active
    conversation.closed_at = None
    conversation.updated_at = utcnow()
    db.flush()
    return []


def clamp_stale_seconds(value: Optional[int]) -> int:
    if value is None:
        return STALE_SECONDS_DEFAULT
    return min(STALE_SECONDS_MAX, max(STALE_SECONDS_MIN, int(value)))


def close_stale_conversations(
    db: Session,
    stale_seconds: Optional[int] = None,
    property_ids: Optional[Iterable[UUID]] = None,
) -> List[UUID]:
    """Close active conversations idle longer than `stale_seconds` (clamped 10..3600).

    Returns:
        Ids of the outbox jobs created (one conversation-end trigger each).
    """
    threshold = utcnow() - timedelta(seconds=clamp_stale_seconds(stale_seconds))

    query = db.query(Conversation).filter(
        Conversation.status == ConversationStatusEnum.active,
        Conversation.updated_at < threshold,
    )
    if property_ids is not None:
        ids = list(property_ids)
        if not ids:
            return []
        query = query.filter(Conversation.property_id.in_(ids))

    job_ids: List[UUID] = []
    for conversation in query.all():
        job_ids.extend(close_conversation(db, conversation, reason="stale"))

    if job_ids:
        logger.info("[CONVERSATION] Closed %d stale conversations", len(job_ids))
    return job_ids
