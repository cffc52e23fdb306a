"""SQLAlchemy ORM models and enums.

This module defines the conversation/lead schema using UUID primary keys and
explicit relationships. CRM credentials live in `salesforce_settings` next to
the per-property trigger rules; tokens are only ever stored encrypted
(see careassist.security).
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import Column, String, DateTime, Enum, Integer, ForeignKey, JSON, Text, Boolean, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class ConversationStatusEnum(str, enum.Enum):
    pending = "pending"
    active = "active"
    closed = "closed"


class SenderTypeEnum(str, enum.Enum):
    visitor = "visitor"
    agent = "agent"


class ExportTypeEnum(str, enum.Enum):
    manual = "manual"
    auto_escalation = "auto_escalation"
    auto_conversation_end = "auto_conversation_end"
    auto_insurance = "auto_insurance"
    auto_phone = "auto_phone"


class NotificationChannelEnum(str, enum.Enum):
    email = "email"
    slack = "slack"
    in_app = "in_app"


class NotificationStatusEnum(str, enum.Enum):
    sent = "sent"
    failed = "failed"
    skipped = "skipped"


class CRMConnectionStatusEnum(str, enum.Enum):
    connected = "connected"
    disconnected = "disconnected"


class OutboxStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


# Tenants -------------------------------------------------------

class User(Base):
    """A tenant user (property owner / agent) who signs into the dashboard."""
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    properties = relationship("Property", back_populates="owner")

    def __str__(self):
        return f"{self.name} ({self.email})"


class Property(Base):
    """Property is a tenant's website: the multi-tenancy boundary.

    Conversations, visitors, CRM credentials, trigger rules and notification
    channel configuration all hang off a property.
    """
    __tablename__ = "properties"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    domain = Column(String, nullable=True)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    owner = relationship("User", back_populates="properties")
    visitors = relationship("Visitor", back_populates="tenant")
    conversations = relationship("Conversation", back_populates="tenant")
    salesforce_settings = relationship("SalesforceSettings", back_populates="tenant", uselist=False)
    email_settings = relationship("EmailNotificationSettings", back_populates="tenant", uselist=False)
    slack_settings = relationship("SlackNotificationSettings", back_populates="tenant", uselist=False)

    def __str__(self):
        return self.name


# Conversations -------------------------------------------------

class Visitor(Base):
    """One chat session on a property, accumulating lead fields over time.

    Lead fields are filled by automated extraction only while they are null;
    after that only a human edit or an explicit re-scan changes them.
    """
    __tablename__ = "visitors"
    __table_args__ = (UniqueConstraint("property_id", "session_id", name="uq_visitor_session"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False, index=True)
    session_id = Column(String, nullable=False)

    # Lead fields
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    age = Column(String, nullable=True)
    occupation = Column(String, nullable=True)
    addiction_history = Column(Text, nullable=True)
    drug_of_choice = Column(String, nullable=True)
    treatment_interest = Column(String, nullable=True)
    insurance_info = Column(String, nullable=True)
    urgency_level = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Property", back_populates="visitors")
    conversations = relationship("Conversation", back_populates="visitor", order_by="Conversation.created_at")

    @property
    def display_label(self) -> str:
        return self.name or self.email or str(self.id)

    def __str__(self):
        return self.display_label


class Conversation(Base):
    """The exchange between one visitor and the AI or a human agent.

    `ai_enabled` is the handoff state: True while the AI answers, False once a
    human took over. `last_sequence_number` is the per-conversation counter the
    message sequencer increments atomically. The `ai_queued_*` columns hold
    an AI reply parked while a human is present.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_property_updated", "property_id", "updated_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False)
    visitor_id = Column(UUID(as_uuid=True), ForeignKey("visitors.id"), nullable=False, index=True)
    status = Column(
        Enum(ConversationStatusEnum, values_callable=_enum_values),
        default=ConversationStatusEnum.pending,
        nullable=False,
    )
    ai_enabled = Column(Boolean, default=True, nullable=False)
    assigned_agent_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=True)
    last_sequence_number = Column(Integer, default=0, nullable=False)

    # Queued AI reply (human-priority window)
    ai_queued_preview = Column(Text, nullable=True)
    ai_queued_at = Column(DateTime, nullable=True)
    ai_queued_paused = Column(Boolean, default=False, nullable=False)
    ai_queued_window_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    closed_at = Column(DateTime, nullable=True)

    tenant = relationship("Property", back_populates="conversations")
    visitor = relationship("Visitor", back_populates="conversations")
    assigned_agent = relationship("User")
    messages = relationship("Message", back_populates="conversation", order_by="Message.sequence_number")
    exports = relationship("ExportRecord", back_populates="conversation")

    @property
    def has_queued_reply(self) -> bool:
        return self.ai_queued_at is not None

    def __str__(self):
        return f"Conversation {self.id} ({self.status.value})"


class Message(Base):
    """Append-only chat message. Only `read` is ever updated."""
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence_number", name="uq_message_conversation_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_type = Column(Enum(SenderTypeEnum, values_callable=_enum_values), nullable=False)
    sender_id = Column(String, nullable=True)  # agent user id, or the AI sender id
    content = Column(Text, nullable=False)
    sequence_number = Column(Integer, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")


# CRM -----------------------------------------------------------

class SalesforceSettings(Base):
    """Per-property CRM credential, trigger rules and field mapping.

    WHAT:
        Encrypted access/refresh tokens plus instance URL, the four automatic
        export rules, the CRM-field -> visitor-field mapping and the
        single-use pending OAuth record (CSRF nonce, PKCE verifier, expiry).
    WHY:
        `token_version` increments on every token rotation so concurrent
        refreshers can detect that another worker already rotated the token.
        `consumed_oauth_csrf` remembers the last redeemed nonce so a replayed
        callback fails distinctly from an unknown state.
    """
    __tablename__ = "salesforce_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False, unique=True)
    enabled = Column(Boolean, default=False, nullable=False)
    connection_status = Column(
        Enum(CRMConnectionStatusEnum, values_callable=_enum_values),
        default=CRMConnectionStatusEnum.disconnected,
        nullable=False,
    )
    instance_url = Column(String, nullable=True)
    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    token_version = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    connected_at = Column(DateTime, nullable=True)

    # Trigger rules
    auto_export_on_escalation = Column(Boolean, default=False, nullable=False)
    auto_export_on_conversation_end = Column(Boolean, default=False, nullable=False)
    auto_export_on_insurance_detected = Column(Boolean, default=False, nullable=False)
    auto_export_on_phone_detected = Column(Boolean, default=False, nullable=False)

    # {"Phone": "phone", "Email": "email", ...}
    field_mappings = Column(JSON, nullable=True)

    # Pending OAuth handshake (single use)
    pending_oauth_csrf = Column(String, nullable=True)
    pending_code_verifier = Column(String, nullable=True)
    pending_oauth_expires_at = Column(DateTime, nullable=True)
    consumed_oauth_csrf = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Property", back_populates="salesforce_settings")

    @property
    def is_connected(self) -> bool:
        return bool(
            self.instance_url
            and self.access_token_enc
            and self.connection_status == CRMConnectionStatusEnum.connected
        )

    def __str__(self):
        return f"Salesforce settings for {self.property_id} ({self.connection_status.value})"


class ExportRecord(Base):
    """A confirmed CRM write: conversation -> external lead id."""
    __tablename__ = "salesforce_exports"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    salesforce_lead_id = Column(String, nullable=False)
    export_type = Column(Enum(ExportTypeEnum, values_callable=_enum_values), nullable=False)
    exported_at = Column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="exports")


# Notifications -------------------------------------------------

class NotificationLogEntry(Base):
    """Audit record of one dispatch attempt on one channel. Never updated."""
    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("ix_notification_logs_property_created", "property_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=True)
    notification_type = Column(String, nullable=False)  # new_conversation, escalation, phone_submission, salesforce_export, export_failed
    channel = Column(Enum(NotificationChannelEnum, values_callable=_enum_values), nullable=False)
    recipient = Column(String, nullable=False)
    status = Column(Enum(NotificationStatusEnum, values_callable=_enum_values), nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class EmailNotificationSettings(Base):
    __tablename__ = "email_notification_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False, unique=True)
    enabled = Column(Boolean, default=True, nullable=False)
    recipients = Column(JSON, nullable=True)  # list of email addresses
    notify_on_new_conversation = Column(Boolean, default=True, nullable=False)
    notify_on_escalation = Column(Boolean, default=True, nullable=False)
    notify_on_phone_submission = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Property", back_populates="email_settings")


class SlackNotificationSettings(Base):
    __tablename__ = "slack_notification_settings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    property_id = Column(UUID(as_uuid=True), ForeignKey("properties.id"), nullable=False, unique=True)
    enabled = Column(Boolean, default=False, nullable=False)
    webhook_url = Column(String, nullable=True)
    channel_name = Column(String, nullable=True)
    notify_on_new_conversation = Column(Boolean, default=True, nullable=False)
    notify_on_escalation = Column(Boolean, default=True, nullable=False)
    notify_on_phone_submission = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    tenant = relationship("Property", back_populates="slack_settings")


# Background jobs -----------------------------------------------

class OutboxJob(Base):
    """Durable background job written in the same transaction as its trigger.

    The arq worker claims rows with an atomic status flip, so a job never runs
    twice concurrently; failed attempts go back to pending with a delay until
    `max_attempts` is reached.
    """
    __tablename__ = "outbox_jobs"
    __table_args__ = (
        Index("ix_outbox_jobs_status_available", "status", "available_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_name = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(
        Enum(OutboxStatusEnum, values_callable=_enum_values),
        default=OutboxStatusEnum.pending,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    last_error = Column(Text, nullable=True)
    available_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    def __str__(self):
        return f"{self.job_name} ({self.status.value}, attempts={self.attempts})"
