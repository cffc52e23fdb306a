"""Notification channel settings and delivery log."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from careassist.database import get_db
from careassist.deps import get_current_user, get_owned_property
from careassist.models import (
    EmailNotificationSettings,
    NotificationChannelEnum,
    NotificationLogEntry,
    NotificationStatusEnum,
    SlackNotificationSettings,
    User,
)
from careassist.schemas import (
    EmailSettingsIn,
    EmailSettingsOut,
    NotificationLogOut,
    NotificationLogPage,
    SlackSettingsIn,
    SlackSettingsOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


def _email_settings(db: Session, property_id: UUID) -> EmailNotificationSettings:
    settings = db.query(EmailNotificationSettings).filter(EmailNotificationSettings.property_id == property_id).first()
    if settings is None:
        settings = EmailNotificationSettings(property_id=property_id, enabled=True, recipients=[])
        db.add(settings)
        db.flush()
    return settings


def _slack_settings(db: Session, property_id: UUID) -> SlackNotificationSettings:
    settings = db.query(SlackNotificationSettings).filter(SlackNotificationSettings.property_id == property_id).first()
    if settings is None:
        settings = SlackNotificationSettings(property_id=property_id, enabled=False)
        db.add(settings)
        db.flush()
    return settings


def _slack_out(settings: SlackNotificationSettings) -> SlackSettingsOut:
    # The webhook URL is a credential; only its presence is returned
    return SlackSettingsOut(
        property_id=settings.property_id,
        enabled=settings.enabled,
        webhook_configured=bool(settings.webhook_url),
        channel_name=settings.channel_name,
        notify_on_new_conversation=settings.notify_on_new_conversation,
        notify_on_escalation=settings.notify_on_escalation,
        notify_on_phone_submission=settings.notify_on_phone_submission,
    )


@router.get("/settings/email", response_model=EmailSettingsOut)
async def get_email_settings(
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prop = get_owned_property(db, property_id, current_user)
    settings = _email_settings(db, prop.id)
    db.commit()
    return EmailSettingsOut(
        property_id=settings.property_id,
        enabled=settings.enabled,
        recipients=settings.recipients or [],
        notify_on_new_conversation=settings.notify_on_new_conversation,
        notify_on_escalation=settings.notify_on_escalation,
        notify_on_phone_submission=settings.notify_on_phone_submission,
    )


@router.put("/settings/email", response_model=EmailSettingsOut)
async def update_email_settings(
    payload: EmailSettingsIn,
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prop = get_owned_property(db, property_id, current_user)
    settings = _email_settings(db, prop.id)
    settings.enabled = payload.enabled
    settings.recipients = list(dict.fromkeys(str(r).lower() for r in payload.recipients))
    settings.notify_on_new_conversation = payload.notify_on_new_conversation
    settings.notify_on_escalation = payload.notify_on_escalation
    settings.notify_on_phone_submission = payload.notify_on_phone_submission
    db.commit()
    db.refresh(settings)
    logger.info("[NOTIFY] Email settings updated for property %s (%d recipients)", prop.id, len(settings.recipients))
    return EmailSettingsOut(
        property_id=settings.property_id,
        enabled=settings.enabled,
        recipients=settings.recipients,
        notify_on_new_conversation=settings.notify_on_new_conversation,
        notify_on_escalation=settings.notify_on_escalation,
        notify_on_phone_submission=settings.notify_on_phone_submission,
    )


@router.get("/settings/slack", response_model=SlackSettingsOut)
async def get_slack_settings(
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prop = get_owned_property(db, property_id, current_user)
    settings = _slack_settings(db, prop.id)
    db.commit()
    return _slack_out(settings)


@router.put("/settings/slack", response_model=SlackSettingsOut)
async def update_slack_settings(
    payload: SlackSettingsIn,
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update Slack settings. Omitting `webhook_url` keeps the stored one."""
    prop = get_owned_property(db, property_id, current_user)
    settings = _slack_settings(db, prop.id)
    settings.enabled = payload.enabled
    if payload.webhook_url is not None:
        settings.webhook_url = str(payload.webhook_url)
    settings.channel_name = payload.channel_name
    settings.notify_on_new_conversation = payload.notify_on_new_conversation
    settings.notify_on_escalation = payload.notify_on_escalation
    settings.notify_on_phone_submission = payload.notify_on_phone_submission
    db.commit()
    db.refresh(settings)
    return _slack_out(settings)


@router.get("/log", response_model=NotificationLogPage)
async def notification_log(
    property_id: UUID = Query(...),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    channel: Optional[NotificationChannelEnum] = Query(None),
    status: Optional[NotificationStatusEnum] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Delivery attempts, newest first."""
    prop = get_owned_property(db, property_id, current_user)
    query = db.query(NotificationLogEntry).filter(NotificationLogEntry.property_id == prop.id)
    if channel is not None:
        query = query.filter(NotificationLogEntry.channel == channel)
    if status is not None:
        query = query.filter(NotificationLogEntry.status == status)

    total = query.count()
    items = (
        query.order_by(NotificationLogEntry.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return NotificationLogPage(
        items=[NotificationLogOut.model_validate(i) for i in items],
        total=total,
        page=page,
        page_size=page_size,
    )
