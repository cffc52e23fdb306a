"""Dashboard conversation endpoints (agent side).

WHAT:
    Agent messages (handoff), explicit AI toggle, close, read receipts,
    lead re-scan and human edits of visitor lead fields.

WHY:
    Every state change commits together with its outbox jobs; the worker is
    nudged afterwards. An agent reply therefore never waits on, or fails
    because of, CRM export or notification delivery.

REFERENCES:
    - careassist/services/handoff_service.py
    - careassist/services/conversation_service.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from careassist.database import get_db
from careassist.deps import get_current_user, get_outbox_notifier
from careassist.models import Conversation, Property, User, Visitor
from careassist.schemas import (
    AgentMessageCreate,
    AIToggle,
    ConversationOut,
    HandoffOut,
    MessageOut,
    ReadReceiptOut,
    VisitorOut,
    VisitorUpdate,
)
from careassist.services import conversation_service
from careassist.services.handoff_service import HandoffController, HandoffResult
from careassist.services.outbox import JOB_LEAD_EXTRACTION, enqueue_job

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Conversations"])


def _owned_conversation(db: Session, conversation_id: UUID, user: User) -> Conversation:
    conversation = (
        db.query(Conversation)
        .join(Property, Property.id == Conversation.property_id)
        .filter(Conversation.id == conversation_id, Property.owner_id == user.id)
        .first()
    )
    if not conversation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return conversation


def _handoff_out(result: HandoffResult, conversation: Conversation) -> HandoffOut:
    return HandoffOut(
        state_before=result.state_before.value,
        state_after=result.state_after.value,
        escalated=result.escalated,
        message=MessageOut.model_validate(result.message) if result.message else None,
        conversation=ConversationOut.model_validate(conversation),
    )


@router.post("/conversations/{conversation_id}/messages", response_model=HandoffOut, status_code=status.HTTP_201_CREATED)
async def post_agent_message(
    conversation_id: UUID,
    payload: AgentMessageCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    """Agent reply. The first one hands the conversation to the human."""
    conversation = _owned_conversation(db, conversation_id, current_user)
    result = HandoffController(db).record_agent_message(conversation, payload.content, current_user)
    db.commit()
    db.refresh(conversation)
    await notify(result.job_ids)
    return _handoff_out(result, conversation)


@router.post("/conversations/{conversation_id}/ai-toggle", response_model=HandoffOut)
async def toggle_ai(
    conversation_id: UUID,
    payload: AIToggle,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    conversation = _owned_conversation(db, conversation_id, current_user)
    result = HandoffController(db).set_ai_enabled(conversation, payload.enabled, current_user)
    db.commit()
    db.refresh(conversation)
    await notify(result.job_ids)
    return _handoff_out(result, conversation)


@router.post("/conversations/{conversation_id}/close", response_model=ConversationOut)
async def close_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    conversation = _owned_conversation(db, conversation_id, current_user)
    job_ids = conversation_service.close_conversation(db, conversation, reason="agent")
    db.commit()
    db.refresh(conversation)
    await notify(job_ids)
    return conversation


@router.post("/conversations/{conversation_id}/read", response_model=ReadReceiptOut)
async def mark_read(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    conversation = _owned_conversation(db, conversation_id, current_user)
    count = conversation_service.mark_visitor_messages_read(db, conversation)
    db.commit()
    return ReadReceiptOut(marked_read=count)


@router.post("/conversations/{conversation_id}/rescan", status_code=status.HTTP_202_ACCEPTED)
async def rescan_conversation(
    conversation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    """Explicit re-scan; unlike automatic extraction it may replace values."""
    conversation = _owned_conversation(db, conversation_id, current_user)
    job = enqueue_job(db, JOB_LEAD_EXTRACTION, {"conversation_id": conversation.id, "rescan": True})
    db.commit()
    await notify([job.id])
    logger.info("[LEAD_EXTRACT] Re-scan of %s requested by %s", conversation.id, current_user.email)
    return {"job_id": str(job.id), "status": "scheduled"}


@router.patch("/visitors/{visitor_id}", response_model=VisitorOut)
async def update_visitor(
    visitor_id: UUID,
    payload: VisitorUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Human edit of lead fields; the only path besides re-scan that overwrites."""
    visitor = (
        db.query(Visitor)
        .join(Property, Property.id == Visitor.property_id)
        .filter(Visitor.id == visitor_id, Property.owner_id == current_user.id)
        .first()
    )
    if not visitor:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Visitor not found")

    for name, value in payload.model_dump(exclude_unset=True).items():
        setattr(visitor, name, value)
    db.commit()
    db.refresh(visitor)
    return visitor
