"""
Notification Dispatcher.

WHAT:
    Fans a conversation event out to the property's channels:
    - Email (Resend), one send per recipient
    - Slack (incoming webhook, Block Kit payload)
    - In-app (the log entry is the notification)

WHY:
    Tenants need to hear about new conversations, escalations and captured
    phone numbers wherever they work. Every attempt, sent, failed or skipped,
    lands in `notification_logs`, so a failing channel is visible in the
    dashboard instead of vanishing.

DESIGN:
    - Channels share one `send(recipient, payload) -> ChannelResult` contract
    - A channel failure never stops the remaining recipients or channels
    - Skips carry a reason: disabled, no_recipients, event_disabled, not_configured

REFERENCES:
    - Resend Python SDK: https://resend.com/docs/api-reference/emails/send-email
    - Slack Incoming Webhooks: https://api.slack.com/messaging/webhooks
    - Slack Block Kit: https://api.slack.com/block-kit
"""

from __future__ import annotations

import enum
import html
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from uuid import UUID

import httpx
import resend
from sqlalchemy.orm import Session

from careassist.models import (
    Conversation,
    EmailNotificationSettings,
    Message,
    NotificationChannelEnum,
    NotificationLogEntry,
    NotificationStatusEnum,
    Property,
    SenderTypeEnum,
    SlackNotificationSettings,
)

logger = logging.getLogger(__name__)


class NotificationEvent(str, enum.Enum):
    new_conversation = "new_conversation"
    escalation = "escalation"
    phone_submission = "phone_submission"


class SkipReason(str, enum.Enum):
    disabled = "disabled"
    no_recipients = "no_recipients"
    event_disabled = "event_disabled"
    not_configured = "not_configured"


EVENT_FLAGS = {
    NotificationEvent.new_conversation: "notify_on_new_conversation",
    NotificationEvent.escalation: "notify_on_escalation",
    NotificationEvent.phone_submission: "notify_on_phone_submission",
}

EVENT_HEADLINES = {
    NotificationEvent.new_conversation: ("💬", "New Conversation"),
    NotificationEvent.escalation: ("🔴", "Conversation Escalated"),
    NotificationEvent.phone_submission: ("📞", "Phone Number Captured"),
}


@dataclass
class ChannelResult:
    status: NotificationStatusEnum
    error: Optional[str] = None


@dataclass
class NotificationPayload:
    """Everything a channel needs to render one event."""

    event: NotificationEvent
    property_name: str
    property_domain: Optional[str]
    visitor_label: str
    conversation_id: Optional[UUID]
    conversation_url: str
    visitor_phone: Optional[str] = None
    last_message: Optional[str] = None
    slack_channel: Optional[str] = None

    @property
    def event_detail(self) -> str:
        if self.event == NotificationEvent.escalation:
            return "Escalation, needs a human agent"
        if self.event == NotificationEvent.phone_submission:
            return f"Phone: {self.visitor_phone or 'N/A'}"
        return "New chat started"

    @property
    def headline(self) -> str:
        emoji, title = EVENT_HEADLINES[self.event]
        return f"{emoji} {title}"

    @property
    def fallback_text(self) -> str:
        return f"{self.headline} on {self.property_name}: {self.visitor_label}"


def record_notification(
    db: Session,
    *,
    property_id: UUID,
    notification_type: str,
    channel: NotificationChannelEnum,
    recipient: str,
    status: NotificationStatusEnum,
    conversation_id: Optional[UUID] = None,
    error_message: Optional[str] = None,
) -> NotificationLogEntry:
    """Write one immutable log entry. Flushes; the caller commits."""
    entry = NotificationLogEntry(
        property_id=property_id,
        conversation_id=conversation_id,
        notification_type=notification_type,
        channel=channel,
        recipient=recipient,
        status=status,
        error_message=error_message[:500] if error_message else None,
    )
    db.add(entry)
    db.flush()
    return entry


# =============================================================================
# CHANNELS
# =============================================================================

class NotificationChannel(ABC):
    channel: NotificationChannelEnum

    @abstractmethod
    def send(self, recipient: str, payload: NotificationPayload) -> ChannelResult:
        ...


class EmailChannel(NotificationChannel):
    """
    Transactional email via Resend.

    Without an API key every send is reported as skipped so the log still
    shows the attempt.
    """

    channel = NotificationChannelEnum.email

    def __init__(self, api_key: Optional[str], from_email: str):
        self.api_key = api_key
        self.from_email = from_email

    def send(self, recipient: str, payload: NotificationPayload) -> ChannelResult:
        if not self.api_key:
            logger.warning("[NOTIFY] Resend not configured, email to %s skipped", recipient)
            return ChannelResult(NotificationStatusEnum.skipped, SkipReason.not_configured.value)

        resend.api_key = self.api_key
        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": [recipient],
                "subject": f"{payload.headline} - {payload.property_name}",
                "html": render_email_html(payload),
                "text": render_email_text(payload),
            })
        except Exception as e:
            logger.error("[NOTIFY] Email to %s failed: %s", recipient, e)
            return ChannelResult(NotificationStatusEnum.failed, str(e))

        message_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
        logger.info("[NOTIFY] Email sent to %s (id=%s)", recipient, message_id)
        return ChannelResult(NotificationStatusEnum.sent)


class ChatOpsChannel(NotificationChannel):
    """Slack incoming webhook. `recipient` is the webhook URL."""

    channel = NotificationChannelEnum.slack

    def __init__(self, http_client: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.http = http_client or httpx.Client(timeout=timeout)

    def send(self, recipient: str, payload: NotificationPayload) -> ChannelResult:
        body = build_slack_payload(payload)
        try:
            response = self.http.post(recipient, json=body, headers={"Content-Type": "application/json"})
        except httpx.HTTPError as e:
            logger.error("[NOTIFY] Slack webhook request failed: %s", e)
            return ChannelResult(NotificationStatusEnum.failed, f"Slack request failed: {e}")

        if response.status_code == 200 and response.text == "ok":
            logger.info("[NOTIFY] Slack message sent")
            return ChannelResult(NotificationStatusEnum.sent)

        error = f"Slack API error: {response.status_code} - {response.text}"
        logger.error("[NOTIFY] %s", error)
        return ChannelResult(NotificationStatusEnum.failed, error)


class InAppChannel(NotificationChannel):
    """The log entry written by the dispatcher is what the dashboard bell reads."""

    channel = NotificationChannelEnum.in_app

    def send(self, recipient: str, payload: NotificationPayload) -> ChannelResult:
        return ChannelResult(NotificationStatusEnum.sent)


# =============================================================================
# RENDERING
# =============================================================================

def build_slack_payload(payload: NotificationPayload) -> Dict[str, Any]:
    """Block Kit message: header, fields, last message, button, context."""
    blocks: List[Dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": payload.headline, "emoji": True}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Property:*\n{payload.property_name}"},
                {"type": "mrkdwn", "text": f"*Domain:*\n{payload.property_domain or '-'}"},
                {"type": "mrkdwn", "text": f"*Visitor:*\n{payload.visitor_label}"},
                {"type": "mrkdwn", "text": f"*Event:*\n{payload.event_detail}"},
            ],
        },
    ]

    if payload.last_message:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Last message:*\n> {payload.last_message[:500]}"},
        })

    blocks.append({
        "type": "actions",
        "elements": [{
            "type": "button",
            "text": {"type": "plain_text", "text": "View Conversation", "emoji": True},
            "url": payload.conversation_url,
            "style": "primary",
        }],
    })

    if payload.conversation_id:
        blocks.append({
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"Conversation ID: `{str(payload.conversation_id)[:8]}`"}],
        })

    body: Dict[str, Any] = {"text": payload.fallback_text, "blocks": blocks}
    if payload.slack_channel:
        body["channel"] = payload.slack_channel
    return body


def render_email_text(payload: NotificationPayload) -> str:
    lines = [
        payload.headline,
        "",
        f"Property: {payload.property_name}",
        f"Visitor: {payload.visitor_label}",
        f"Event: {payload.event_detail}",
    ]
    if payload.last_message:
        lines += ["", f"Last message: {payload.last_message[:500]}"]
    lines += ["", f"View conversation: {payload.conversation_url}"]
    return "\n".join(lines)


def render_email_html(payload: NotificationPayload) -> str:
    esc = html.escape
    last = (
        f'<p style="margin: 16px 0; padding: 12px; background: #f3f4f6; border-radius: 8px;">'
        f"{esc(payload.last_message[:500])}</p>"
        if payload.last_message else ""
    )
    return (
        '<div style="font-family: -apple-system, BlinkMacSystemFont, \'Segoe UI\', Roboto, sans-serif; max-width: 600px;">'
        f'<h2 style="margin: 0 0 16px;">{esc(payload.headline)}</h2>'
        f"<p><strong>Property:</strong> {esc(payload.property_name)}</p>"
        f"<p><strong>Visitor:</strong> {esc(payload.visitor_label)}</p>"
        f"<p><strong>Event:</strong> {esc(payload.event_detail)}</p>"
        f"{last}"
        f'<p><a href="{esc(payload.conversation_url)}" style="color: #3b82f6;">View conversation</a></p>'
        "</div>"
    )


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class DispatchSummary:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    entries: List[NotificationLogEntry] = field(default_factory=list)

    def add(self, entry: NotificationLogEntry) -> None:
        self.entries.append(entry)
        if entry.status == NotificationStatusEnum.sent:
            self.sent += 1
        elif entry.status == NotificationStatusEnum.failed:
            self.failed += 1
        else:
            self.skipped += 1


class NotificationDispatcher:
    """
    Dispatches one event to every configured channel of a property.

    Usage:
        dispatcher = NotificationDispatcher.from_settings()
        summary = dispatcher.dispatch(db, property_id, NotificationEvent.escalation, conversation_id)
        db.commit()
    """

    def __init__(
        self,
        email: EmailChannel,
        chat_ops: ChatOpsChannel,
        in_app: Optional[InAppChannel] = None,
        dashboard_base_url: str = "http://localhost:3000",
    ):
        self.email = email
        self.chat_ops = chat_ops
        self.in_app = in_app or InAppChannel()
        self.dashboard_base_url = dashboard_base_url.rstrip("/")

    @classmethod
    def from_settings(cls) -> "NotificationDispatcher":
        from careassist.deps import get_settings

        settings = get_settings()
        return cls(
            email=EmailChannel(settings.RESEND_API_KEY, settings.NOTIFICATION_FROM_EMAIL),
            chat_ops=ChatOpsChannel(timeout=settings.NOTIFICATION_HTTP_TIMEOUT_SECONDS),
            dashboard_base_url=settings.FRONTEND_URL,
        )

    def build_payload(
        self,
        db: Session,
        prop: Property,
        event: NotificationEvent,
        conversation: Optional[Conversation],
    ) -> NotificationPayload:
        visitor = conversation.visitor if conversation else None
        last_message = None
        if conversation is not None:
            last = (
                db.query(Message)
                .filter(Message.conversation_id == conversation.id, Message.sender_type == SenderTypeEnum.visitor)
                .order_by(Message.sequence_number.desc())
                .first()
            )
            last_message = last.content if last else None

        return NotificationPayload(
            event=event,
            property_name=prop.name or "Your Property",
            property_domain=prop.domain,
            visitor_label=(visitor.name or visitor.email) if visitor and (visitor.name or visitor.email) else "Anonymous Visitor",
            visitor_phone=visitor.phone if visitor else None,
            conversation_id=conversation.id if conversation else None,
            conversation_url=(
                f"{self.dashboard_base_url}/dashboard?conversation={conversation.id}"
                if conversation else f"{self.dashboard_base_url}/dashboard"
            ),
            last_message=last_message,
        )

    def dispatch(
        self,
        db: Session,
        property_id: UUID,
        event: NotificationEvent,
        conversation_id: Optional[UUID] = None,
    ) -> DispatchSummary:
        """Send to every channel; one log entry per recipient attempt or skip. Flushes."""
        event = NotificationEvent(event)
        summary = DispatchSummary()

        prop = db.get(Property, property_id)
        if prop is None:
            logger.warning("[NOTIFY] Property %s not found, %s not dispatched", property_id, event.value)
            return summary

        conversation = db.get(Conversation, conversation_id) if conversation_id else None
        payload = self.build_payload(db, prop, event, conversation)

        def log(channel: NotificationChannelEnum, recipient: str, result: ChannelResult) -> None:
            summary.add(record_notification(
                db,
                property_id=property_id,
                notification_type=event.value,
                channel=channel,
                recipient=recipient,
                status=result.status,
                conversation_id=conversation_id,
                error_message=result.error,
            ))

        self._dispatch_email(db, property_id, event, payload, log)
        self._dispatch_slack(db, property_id, event, payload, log)
        log(NotificationChannelEnum.in_app, "dashboard", self.in_app.send("dashboard", payload))

        logger.info(
            "[NOTIFY] %s for property %s: sent=%d failed=%d skipped=%d",
            event.value, property_id, summary.sent, summary.failed, summary.skipped,
        )
        return summary

    def _dispatch_email(self, db, property_id, event, payload, log) -> None:
        settings = (
            db.query(EmailNotificationSettings)
            .filter(EmailNotificationSettings.property_id == property_id)
            .first()
        )
        if settings is None:
            return

        skip = _skip_reason(settings, event)
        recipients = [r for r in (settings.recipients or []) if r]
        if skip is None and not recipients:
            skip = SkipReason.no_recipients
        if skip is not None:
            log(NotificationChannelEnum.email, ", ".join(recipients) or "-",
                ChannelResult(NotificationStatusEnum.skipped, skip.value))
            return

        for recipient in recipients:
            try:
                result = self.email.send(recipient, payload)
            except Exception as e:
                logger.exception("[NOTIFY] Email channel raised for %s", recipient)
                result = ChannelResult(NotificationStatusEnum.failed, str(e))
            log(NotificationChannelEnum.email, recipient, result)

    def _dispatch_slack(self, db, property_id, event, payload, log) -> None:
        settings = (
            db.query(SlackNotificationSettings)
            .filter(SlackNotificationSettings.property_id == property_id)
            .first()
        )
        if settings is None:
            return

        label = settings.channel_name or "slack"
        skip = _skip_reason(settings, event)
        if skip is None and not settings.webhook_url:
            skip = SkipReason.not_configured
        if skip is not None:
            log(NotificationChannelEnum.slack, label, ChannelResult(NotificationStatusEnum.skipped, skip.value))
            return

        try:
            result = self.chat_ops.send(settings.webhook_url, replace(payload, slack_channel=settings.channel_name))
        except Exception as e:
            logger.exception("[NOTIFY] Slack channel raised")
            result = ChannelResult(NotificationStatusEnum.failed, str(e))
        log(NotificationChannelEnum.slack, label, result)


def _skip_reason(settings, event: NotificationEvent) -> Optional[SkipReason]:
    if not settings.enabled:
        return SkipReason.disabled
    if not getattr(settings, EVENT_FLAGS[event]):
        return SkipReason.event_disabled
    return None
