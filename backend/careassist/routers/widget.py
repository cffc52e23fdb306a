"""Widget endpoints (visitor side of the chat).

WHAT:
    Create-or-reuse conversations, visitor messages, cursor polling, AI reply
    delivery and the queued-reply controls, presence pings.

WHY:
    The widget is unauthenticated; each call proves ownership with the
    visitor id + session id pair issued at conversation start. Background
    work triggered here goes through the outbox and is kicked after commit,
    so a down integration never fails a widget call.

REFERENCES:
    - careassist/services/conversation_service.py
    - careassist/services/handoff_service.py
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from careassist.database import get_db
from careassist.deps import get_outbox_notifier, get_settings
from careassist.models import Conversation, Property
from careassist.schemas import (
    AIQueueAction,
    AIReplyCreate,
    AIReplyOut,
    ConversationCreate,
    ConversationOut,
    ConversationStartOut,
    MessageOut,
    PresenceUpdate,
    VisitorMessageCreate,
)
from careassist.services import conversation_service
from careassist.services.conversation_service import ConversationClosedError, VisitorSessionError
from careassist.services.handoff_service import HandoffController, HandoffError
from careassist.services.sequencer import messages_after

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/widget", tags=["Widget"])


def _visitor_conversation(db: Session, conversation_id: UUID, visitor_id: UUID, session_id: str) -> Conversation:
    try:
        visitor = conversation_service.authenticate_visitor(db, visitor_id, session_id)
        return conversation_service.get_visitor_conversation(db, conversation_id, visitor)
    except VisitorSessionError as e:
        # Same answer for unknown and foreign conversations
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


@router.post("/conversations", response_model=ConversationStartOut)
async def create_conversation(
    payload: ConversationCreate,
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    """Return the visitor's open conversation or start a new one."""
    prop = db.get(Property, payload.property_id)
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")

    start = conversation_service.start_conversation(db, prop, payload.session_id)
    db.commit()
    db.refresh(start.conversation)
    await notify(start.job_ids)

    return ConversationStartOut(
        conversation=ConversationOut.model_validate(start.conversation),
        visitor_id=start.visitor.id,
        created=start.created,
    )


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut, status_code=status.HTTP_201_CREATED)
async def post_visitor_message(
    conversation_id: UUID,
    payload: VisitorMessageCreate,
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    conversation = _visitor_conversation(db, conversation_id, payload.visitor_id, payload.session_id)
    try:
        result = conversation_service.record_visitor_message(
            db,
            conversation,
            payload.content,
            extraction_every=get_settings().LEAD_EXTRACTION_EVERY_N_MESSAGES,
        )
    except ConversationClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    db.commit()
    db.refresh(result.message)
    await notify(result.job_ids)
    return result.message


@router.get("/conversations/{conversation_id}/messages", response_model=list[MessageOut])
async def poll_messages(
    conversation_id: UUID,
    visitor_id: UUID = Query(...),
    session_id: str = Query(...),
    after_sequence: int = Query(0, ge=0),
    limit: int = Query(200, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Messages with sequence_number > after_sequence, ascending."""
    conversation = _visitor_conversation(db, conversation_id, visitor_id, session_id)
    return messages_after(db, conversation.id, after_sequence=after_sequence, limit=limit)


@router.post("/conversations/{conversation_id}/ai-reply", response_model=AIReplyOut)
async def post_ai_reply(
    conversation_id: UUID,
    payload: AIReplyCreate,
    db: Session = Depends(get_db),
):
    """Route an AI-generated reply: sent, queued or suppressed."""
    conversation = _visitor_conversation(db, conversation_id, payload.visitor_id, payload.session_id)
    try:
        result = HandoffController(db).submit_ai_reply(
            conversation,
            payload.content,
            agent_present=payload.agent_present,
            window_ms=payload.window_ms,
        )
    except HandoffError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    db.commit()
    db.refresh(conversation)
    return AIReplyOut(
        outcome=result.outcome.value,
        message=MessageOut.model_validate(result.message) if result.message else None,
        conversation=ConversationOut.model_validate(conversation),
    )


@router.post("/conversations/{conversation_id}/ai-queue", response_model=AIReplyOut)
async def update_ai_queue(
    conversation_id: UUID,
    payload: AIQueueAction,
    db: Session = Depends(get_db),
):
    """Queue, clear, pause, resume or deliver the parked AI reply."""
    conversation = _visitor_conversation(db, conversation_id, payload.visitor_id, payload.session_id)
    controller = HandoffController(db)
    outcome = payload.action
    message = None

    try:
        if payload.action == "queue":
            controller.queue_ai_reply(conversation, payload.preview, window_ms=payload.window_ms)
            outcome = "queued"
        elif payload.action == "clear":
            controller.cancel_queue(conversation)
            outcome = "cleared"
        elif payload.action in ("pause", "resume"):
            controller.pause_queue(conversation, payload.action == "pause")
            outcome = "paused" if payload.action == "pause" else "resumed"
        else:
            result = controller.deliver_queued_reply(conversation, payload.preview)
            outcome = result.outcome.value
            message = result.message
    except HandoffError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    db.commit()
    db.refresh(conversation)
    return AIReplyOut(
        outcome=outcome,
        message=MessageOut.model_validate(message) if message else None,
        conversation=ConversationOut.model_validate(conversation),
    )


@router.post("/presence", response_model=ConversationOut)
async def update_presence(
    payload: PresenceUpdate,
    db: Session = Depends(get_db),
    notify=Depends(get_outbox_notifier),
):
    """Widget heartbeat ("active") or tab close ("closed")."""
    conversation = _visitor_conversation(db, payload.conversation_id, payload.visitor_id, payload.session_id)
    job_ids = conversation_service.record_presence(db, conversation, payload.status)
    db.commit()
    db.refresh(conversation)
    await notify(job_ids)
    return conversation
