"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, HttpUrl, field_validator

from .models import (
    ConversationStatusEnum,
    CRMConnectionStatusEnum,
    ExportTypeEnum,
    NotificationChannelEnum,
    NotificationStatusEnum,
    SenderTypeEnum,
)
from .services.lead_extraction_service import LEAD_FIELDS


# Widget ---------------------------------------------------------

class WidgetSession(BaseModel):
    """Visitor credentials carried on every widget call."""

    visitor_id: UUID
    session_id: str = Field(min_length=1, max_length=200)


class ConversationCreate(BaseModel):
    """Payload for create-or-reuse of a widget conversation."""

    property_id: UUID
    session_id: str = Field(min_length=1, max_length=200, description="Widget session id")

    model_config = {
        "json_schema_extra": {
            "example": {
                "property_id": "6f1c0a6e-4a3e-4b7e-9c55-0d2f4c9b8a11",
                "session_id": "sess_2f7c9b",
            }
        }
    }


class VisitorMessageCreate(WidgetSession):
    content: str = Field(min_length=1, max_length=5000)


class AIReplyCreate(WidgetSession):
    content: str = Field(min_length=1, max_length=5000)
    agent_present: bool = Field(default=False, description="A human agent is viewing the conversation")
    window_ms: Optional[int] = Field(default=None, ge=0, le=600_000)


class AIQueueAction(WidgetSession):
    action: Literal["queue", "clear", "pause", "resume", "deliver"]
    preview: Optional[str] = Field(default=None, max_length=5000)
    window_ms: Optional[int] = Field(default=None, ge=0, le=600_000)


class PresenceUpdate(WidgetSession):
    conversation_id: UUID
    status: Literal["active", "closed"]


class MessageOut(BaseModel):
    id: UUID
    conversation_id: UUID
    sender_type: SenderTypeEnum
    sender_id: Optional[str] = None
    content: str
    sequence_number: int
    read: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ConversationOut(BaseModel):
    id: UUID
    property_id: UUID
    visitor_id: UUID
    status: ConversationStatusEnum
    ai_enabled: bool
    assigned_agent_id: Optional[UUID] = None
    last_sequence_number: int
    ai_queued_preview: Optional[str] = None
    ai_queued_at: Optional[datetime] = None
    ai_queued_paused: bool = False
    ai_queued_window_ms: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ConversationStartOut(BaseModel):
    conversation: ConversationOut
    visitor_id: UUID
    created: bool


class AIReplyOut(BaseModel):
    outcome: str
    message: Optional[MessageOut] = None
    conversation: ConversationOut


# Dashboard ------------------------------------------------------

class AgentMessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=5000)


class AIToggle(BaseModel):
    enabled: bool


class HandoffOut(BaseModel):
    state_before: str
    state_after: str
    escalated: bool
    message: Optional[MessageOut] = None
    conversation: ConversationOut


class ReadReceiptOut(BaseModel):
    marked_read: int


class VisitorOut(BaseModel):
    id: UUID
    property_id: UUID
    session_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    age: Optional[str] = None
    occupation: Optional[str] = None
    addiction_history: Optional[str] = None
    drug_of_choice: Optional[str] = None
    treatment_interest: Optional[str] = None
    insurance_info: Optional[str] = None
    urgency_level: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class VisitorUpdate(BaseModel):
    """Human edit of lead fields. Only fields present in the body change."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    age: Optional[str] = None
    occupation: Optional[str] = None
    addiction_history: Optional[str] = None
    drug_of_choice: Optional[str] = None
    treatment_interest: Optional[str] = None
    insurance_info: Optional[str] = None
    urgency_level: Optional[str] = None


# Salesforce -----------------------------------------------------

class OAuthStartOut(BaseModel):
    authorization_url: str


class SalesforceSettingsOut(BaseModel):
    property_id: UUID
    enabled: bool
    connection_status: CRMConnectionStatusEnum
    instance_url: Optional[str] = None
    connected_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    auto_export_on_escalation: bool
    auto_export_on_conversation_end: bool
    auto_export_on_insurance_detected: bool
    auto_export_on_phone_detected: bool
    field_mappings: Dict[str, str] = Field(default_factory=dict)


class SalesforceSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    auto_export_on_escalation: Optional[bool] = None
    auto_export_on_conversation_end: Optional[bool] = None
    auto_export_on_insurance_detected: Optional[bool] = None
    auto_export_on_phone_detected: Optional[bool] = None
    field_mappings: Optional[Dict[str, str]] = Field(
        default=None,
        description="Salesforce Lead field -> visitor field",
        examples=[{"LastName": "name", "Email": "email", "Phone": "phone"}],
    )

    @field_validator("field_mappings")
    @classmethod
    def _known_visitor_fields(cls, value):
        if value is None:
            return value
        unknown = sorted({v for v in value.values() if v not in LEAD_FIELDS})
        if unknown:
            raise ValueError(f"Unknown visitor fields: {', '.join(unknown)}")
        return value


class ExportRequest(BaseModel):
    """Manual export; `property_id="all"` exports across every owned property."""

    property_id: UUID | Literal["all"]
    visitor_ids: List[UUID] = Field(min_length=1, max_length=500)


class ExportOut(BaseModel):
    exported: int
    total: int
    errors: List[str] = Field(default_factory=list)


class LeadFieldOut(BaseModel):
    name: str
    label: Optional[str] = None
    type: Optional[str] = None
    required: bool = False


class MigrationOut(BaseModel):
    migrated: int
    skipped: int
    errors: List[str] = Field(default_factory=list)


class ExportRecordOut(BaseModel):
    id: UUID
    conversation_id: UUID
    salesforce_lead_id: str
    export_type: ExportTypeEnum
    exported_at: datetime

    model_config = {"from_attributes": True}


# Notifications --------------------------------------------------

class EmailSettingsIn(BaseModel):
    enabled: bool = True
    recipients: List[EmailStr] = Field(default_factory=list, max_length=20)
    notify_on_new_conversation: bool = True
    notify_on_escalation: bool = True
    notify_on_phone_submission: bool = True


class EmailSettingsOut(EmailSettingsIn):
    property_id: UUID
    recipients: List[str] = Field(default_factory=list)

    model_config = {"from_attributes": True}


class SlackSettingsIn(BaseModel):
    enabled: bool = False
    webhook_url: Optional[HttpUrl] = None
    channel_name: Optional[str] = Field(default=None, max_length=100)
    notify_on_new_conversation: bool = True
    notify_on_escalation: bool = True
    notify_on_phone_submission: bool = True


class SlackSettingsOut(BaseModel):
    property_id: UUID
    enabled: bool
    webhook_configured: bool
    channel_name: Optional[str] = None
    notify_on_new_conversation: bool
    notify_on_escalation: bool
    notify_on_phone_submission: bool


class NotificationLogOut(BaseModel):
    id: UUID
    property_id: UUID
    conversation_id: Optional[UUID] = None
    notification_type: str
    channel: NotificationChannelEnum
    recipient: str
    status: NotificationStatusEnum
    error_message: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationLogPage(BaseModel):
    items: List[NotificationLogOut]
    total: int
    page: int
    page_size: int
