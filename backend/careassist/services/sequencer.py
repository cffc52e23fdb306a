"""Message sequencer.

WHAT:
    Allocates per-conversation sequence numbers and appends messages.

WHY:
    Widget and dashboard pollers use "greatest sequence_number seen" as their
    cursor, so two messages must never share a number and numbers must rise
    in commit order. Reading max(sequence_number) and adding one races when
    the visitor and an agent write at the same instant.

    Allocation is a single `UPDATE conversations SET last_sequence_number =
    last_sequence_number + 1 ... RETURNING`, executed in the same transaction
    as the message INSERT. The row lock taken by the UPDATE serializes
    concurrent writers to one conversation until the insert commits, and the
    (conversation_id, sequence_number) unique constraint backs it up.

REFERENCES:
    - careassist/models.py (Conversation.last_sequence_number, uq_message_conversation_sequence)
    - careassist/services/conversation_service.py (visitor ingress)
    - careassist/services/handoff_service.py (agent ingress)
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from careassist.models import Conversation, Message, SenderTypeEnum, utcnow

logger = logging.getLogger(__name__)


class ConversationNotFound(Exception):
    """Raised when a conversation id does not exist."""


def next_sequence(db: Session, conversation_id: UUID) -> int:
    """Reserve the next sequence number for a conversation.

    Runs in the caller's transaction and must be followed by the message
    INSERT before commit; the reservation is held by the row lock until then.
    A conversation created in the same session must be flushed first. A
    rolled-back transaction releases the number, so numbers are gap-tolerant
    but never duplicated.

    Raises:
        ConversationNotFound: If the conversation does not exist.
    """
    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_sequence_number=Conversation.last_sequence_number + 1)
        .returning(Conversation.last_sequence_number)
        .execution_options(synchronize_session=False)
    )
    sequence = result.scalar_one_or_none()
    if sequence is None:
        raise ConversationNotFound(f"Conversation {conversation_id} not found")
    return sequence


def append_message(
    db: Session,
    conversation: Conversation,
    *,
    sender_type: SenderTypeEnum,
    content: str,
    sender_id: Optional[str] = None,
    read: bool = False,
) -> Message:
    """Allocate a sequence number and insert the message in one transaction.

    Bumps `conversation.updated_at` so inbox ordering follows the latest
    message. Flushes but does not commit.
    """
    sequence = next_sequence(db, conversation.id)
    now = utcnow()

    message = Message(
        conversation_id=conversation.id,
        sender_type=sender_type,
        sender_id=sender_id,
        content=content,
        sequence_number=sequence,
        read=read,
        created_at=now,
    )
    db.add(message)
    conversation.updated_at = now
    db.flush()

    logger.debug(
        "[SEQUENCER] conversation=%s sequence=%d sender=%s",
        conversation.id, sequence, sender_type.value,
    )
    return message


def messages_after(db: Session, conversation_id: UUID, after_sequence: int = 0, limit: int = 200) -> List[Message]:
    """Messages with sequence_number > after_sequence, ascending (poller cursor)."""
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.sequence_number > after_sequence)
        .order_by(Message.sequence_number)
        .limit(limit)
        .all()
    )
