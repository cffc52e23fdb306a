"""Handoff controller: AI/human state for a conversation.

WHAT:
    Owns `Conversation.ai_enabled` and the queued-AI-reply sub-state.

STATES:
    AI_ACTIVE     ai_enabled=True, the AI answers the visitor
    HUMAN_ACTIVE  ai_enabled=False, a human agent has taken over

    Orthogonal: AI_REPLY_QUEUED {preview, queued_at, paused} while an agent
    is present in the conversation.

STATE TRANSITIONS:
    AI_ACTIVE → agent sends any message → HUMAN_ACTIVE
    AI_ACTIVE → manual toggle off → HUMAN_ACTIVE
    HUMAN_ACTIVE → manual toggle on → AI_ACTIVE (the only way back)

    Entering HUMAN_ACTIVE clears any queued AI reply, moves a pending
    conversation to active, bumps updated_at and schedules the escalation
    trigger evaluation plus the escalation notification through the outbox.

WHY:
    Nothing automated may re-enable the AI once a human took over, so the
    only writer of ai_enabled=True is `set_ai_enabled(..., True)`.

REFERENCES:
    - careassist/services/sequencer.py (message append)
    - careassist/services/trigger_service.py (escalation export rule)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from careassist.models import (
    Conversation,
    ConversationStatusEnum,
    Message,
    SenderTypeEnum,
    User,
    utcnow,
)
from careassist.services.outbox import (
    JOB_DISPATCH_NOTIFICATION,
    JOB_EVALUATE_TRIGGER,
    enqueue_job,
)
from careassist.services.sequencer import append_message

logger = logging.getLogger(__name__)

# sender_id stamped on AI-authored agent messages
AI_SENDER_ID = "ai-bot"


class HandoffState(str, enum.Enum):
    ai_active = "AI_ACTIVE"
    human_active = "HUMAN_ACTIVE"


class AIReplyOutcome(str, enum.Enum):
    sent = "sent"
    queued = "queued"
    suppressed = "suppressed"      # human took over and nobody is watching
    delivered = "delivered"
    paused = "paused"
    not_due = "not_due"
    no_queue = "no_queue"          # canceled, already delivered, or never queued


class HandoffError(Exception):
    """Raised when an operation is not valid for the conversation's state."""


@dataclass
class HandoffResult:
    """
    Result of a handoff operation.

    Attributes:
        state_before: Handoff state before the operation
        state_after: Handoff state after the operation
        escalated: True if this call moved AI_ACTIVE -> HUMAN_ACTIVE
        message: Message appended by the operation, if any
        outcome: For AI reply operations, what happened to the reply
        job_ids: Outbox jobs created (to nudge the worker after commit)
    """

    state_before: HandoffState
    state_after: HandoffState
    escalated: bool = False
    message: Optional[Message] = None
    outcome: Optional[AIReplyOutcome] = None
    job_ids: List[UUID] = field(default_factory=list)


def handoff_state(conversation: Conversation) -> HandoffState:
    return HandoffState.ai_active if conversation.ai_enabled else HandoffState.human_active


class HandoffController:
    """
    Handoff state machine over one session.

    Methods flush but never commit; the caller commits so the state change
    and its outbox jobs land atomically.

    Usage:
        controller = HandoffController(db)
        result = controller.record_agent_message(conversation, "Hi, I'm Sam", agent)
        db.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Human actions
    # ------------------------------------------------------------------

    def record_agent_message(self, conversation: Conversation, content: str, agent: User) -> HandoffResult:
        """Append a human agent message; the first one hands the conversation over.

        An agent writing into a closed conversation reopens it.
        """
        before = handoff_state(conversation)
        if conversation.status == ConversationStatusEnum.closed:
            conversation.status = ConversationStatusEnum.active
            conversation.closed_at = None

        message = append_message(
            self.db,
            conversation,
            sender_type=SenderTypeEnum.agent,
            content=content,
            sender_id=str(agent.id),
            read=True,
        )
        if conversation.assigned_agent_id is None:
            conversation.assigned_agent_id = agent.id

        job_ids = self._take_over(conversation, reason="agent_message")
        self.db.flush()

        return HandoffResult(
            state_before=before,
            state_after=handoff_state(conversation),
            escalated=bool(job_ids),
            message=message,
            job_ids=job_ids,
        )

    def set_ai_enabled(self, conversation: Conversation, enabled: bool, actor: User) -> HandoffResult:
        """Explicit toggle from the dashboard. The only path back to AI_ACTIVE."""
        before = handoff_state(conversation)
        job_ids: List[UUID] = []

        if enabled:
            if not conversation.ai_enabled:
                conversation.ai_enabled = True
                conversation.updated_at = utcnow()
                logger.info("[HANDOFF] AI re-enabled on %s by %s", conversation.id, actor.email)
        else:
            job_ids = self._take_over(conversation, reason="manual_toggle")
            if conversation.assigned_agent_id is None:
                conversation.assigned_agent_id = actor.id

        self.db.flush()
        return HandoffResult(
            state_before=before,
            state_after=handoff_state(conversation),
            escalated=bool(job_ids),
            job_ids=job_ids,
        )

    # ------------------------------------------------------------------
    # AI replies and the queue
    # ------------------------------------------------------------------

    def submit_ai_reply(
        self,
        conversation: Conversation,
        content: str,
        *,
        agent_present: bool = False,
        window_ms: Optional[int] = None,
    ) -> HandoffResult:
        """Route an AI-generated reply.

        Sent immediately in AI_ACTIVE with nobody watching; queued whenever an
        agent is present; dropped in HUMAN_ACTIVE with no agent present.
        """
        self._require_open(conversation)
        state = handoff_state(conversation)

        if agent_present:
            self.queue_ai_reply(conversation, content, window_ms=window_ms)
            return HandoffResult(state_before=state, state_after=state, outcome=AIReplyOutcome.queued)

        if state == HandoffState.human_active:
            logger.info("[HANDOFF] AI reply suppressed on %s (human active, no agent present)", conversation.id)
            return HandoffResult(state_before=state, state_after=state, outcome=AIReplyOutcome.suppressed)

        message = self._append_ai_message(conversation, content)
        return HandoffResult(state_before=state, state_after=state, message=message, outcome=AIReplyOutcome.sent)

    def queue_ai_reply(self, conversation: Conversation, preview: Optional[str], *, window_ms: Optional[int] = None) -> None:
        """Park an AI reply; replaces any earlier queued reply and unpauses."""
        self._require_open(conversation)
        conversation.ai_queued_preview = preview
        conversation.ai_queued_at = utcnow()
        conversation.ai_queued_paused = False
        if window_ms is not None:
            conversation.ai_queued_window_ms = window_ms
        self.db.flush()
        logger.info("[HANDOFF] AI reply queued on %s (window_ms=%s)", conversation.id, window_ms)

    def pause_queue(self, conversation: Conversation, paused: bool) -> None:
        if not conversation.has_queued_reply:
            raise HandoffError("No queued AI reply to pause or resume")
        conversation.ai_queued_paused = paused
        self.db.flush()

    def cancel_queue(self, conversation: Conversation) -> None:
        """Direct state clear; in-flight generation is not interrupted."""
        self._clear_queue(conversation)
        self.db.flush()

    def deliver_queued_reply(self, conversation: Conversation, content: Optional[str] = None) -> HandoffResult:
        """Deliver the queued reply if it is still queued, unpaused and due.

        The queue is claimed with a conditional UPDATE keyed on the
        `ai_queued_at` this call read. A cancel, pause or requeue committed
        by another request after this session loaded the row makes the claim
        match nothing, so the reply is not sent.

        Args:
            content: Final text; defaults to the queued preview.
        """
        self.db.flush()
        self.db.refresh(conversation)
        state = handoff_state(conversation)

        def _result(outcome: AIReplyOutcome, message: Optional[Message] = None) -> HandoffResult:
            return HandoffResult(state_before=state, state_after=state, message=message, outcome=outcome)

        if not conversation.has_queued_reply or conversation.status == ConversationStatusEnum.closed:
            return _result(AIReplyOutcome.no_queue)
        if conversation.ai_queued_paused:
            return _result(AIReplyOutcome.paused)
        if conversation.ai_queued_window_ms:
            due_at = conversation.ai_queued_at + timedelta(milliseconds=conversation.ai_queued_window_ms)
            if utcnow() < due_at:
                return _result(AIReplyOutcome.not_due)

        text = content or conversation.ai_queued_preview
        claimed = self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation.id,
                Conversation.ai_queued_at == conversation.ai_queued_at,
                Conversation.ai_queued_paused.is_(False),
                Conversation.status != ConversationStatusEnum.closed,
            )
            .values(ai_queued_preview=None, ai_queued_at=None, ai_queued_paused=False)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.expire(conversation, ["ai_queued_preview", "ai_queued_at", "ai_queued_paused"])

        if claimed != 1:
            logger.info("[HANDOFF] Queued reply on %s changed before delivery", conversation.id)
            if conversation.has_queued_reply and conversation.ai_queued_paused:
                return _result(AIReplyOutcome.paused)
            return _result(AIReplyOutcome.no_queue)
        if not text:
            return _result(AIReplyOutcome.no_queue)

        message = self._append_ai_message(conversation, text)
        return _result(AIReplyOutcome.delivered, message)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append_ai_message(self, conversation: Conversation, content: str) -> Message:
        return append_message(
            self.db,
            conversation,
            sender_type=SenderTypeEnum.agent,
            content=content,
            sender_id=AI_SENDER_ID,
            read=False,
        )

    def _take_over(self, conversation: Conversation, *, reason: str) -> List[UUID]:
        """Enter HUMAN_ACTIVE. Returns outbox job ids when this was a transition."""
        was_ai = conversation.ai_enabled

        self._clear_queue(conversation)
        if conversation.status == ConversationStatusEnum.pending:
            conversation.status = ConversationStatusEnum.active
        conversation.updated_at = utcnow()

        if not was_ai:
            return []

        conversation.ai_enabled = False
        logger.info("[HANDOFF] %s AI_ACTIVE -> HUMAN_ACTIVE (%s)", conversation.id, reason)

        trigger_job = enqueue_job(
            self.db,
            JOB_EVALUATE_TRIGGER,
            {"event": "escalation", "conversation_id": conversation.id},
        )
        notify_job = enqueue_job(
            self.db,
            JOB_DISPATCH_NOTIFICATION,
            {
                "event_type": "escalation",
                "property_id": conversation.property_id,
                "conversation_id": conversation.id,
            },
        )
        return [trigger_job.id, notify_job.id]

    @staticmethod
    def _clear_queue(conversation: Conversation) -> None:
        conversation.ai_queued_preview = None
        conversation.ai_queued_at = None
        conversation.ai_queued_paused = False

    @staticmethod
    def _require_open(conversation: Conversation) -> None:
        if conversation.status == ConversationStatusEnum.closed:
            raise HandoffError("Conversation is closed")
