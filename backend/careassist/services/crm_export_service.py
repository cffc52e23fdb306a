"""
Lead Export
===========

Pushes visitors into Salesforce as Leads.

Related files:
- careassist/services/crm_token_service.py: refresh-on-401 around every call
- careassist/services/trigger_service.py: automatic exports
- careassist/routers/salesforce.py: manual exports

Design:
- Two scopes: one property (credential resolved once, a missing connection is
  an error for the whole call) or all properties (credential resolved per
  visitor's own property, a missing connection is an error for that item only)
- Items are independent: one failure never aborts the rest of the batch
- Per-property field mapping {crm_field: visitor_field}; required Lead fields
  get deterministic fallbacks instead of failing the item
- Success writes an ExportRecord plus an in-app `salesforce_export` log entry;
  a CRM failure writes one `export_failed` log entry instead
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from careassist.models import (
    Conversation,
    ExportRecord,
    ExportTypeEnum,
    NotificationChannelEnum,
    NotificationStatusEnum,
    Property,
    SalesforceSettings,
    Visitor,
)
from careassist.services.crm_token_service import CRMNotConnectedError, call_with_refresh
from careassist.services.lead_extraction_service import LEAD_FIELDS
from careassist.services.notification_service import record_notification
from careassist.services.salesforce_client import CRMRequestError, SalesforceClient

logger = logging.getLogger(__name__)

COMPANY_FALLBACK = "[Not Provided]"
LAST_NAME_FALLBACK = "Unknown"
LEAD_SOURCE = "Website Chat"
EXPORTABLE_VISITOR_FIELDS = LEAD_FIELDS

DEFAULT_FIELD_MAPPINGS = {
    "LastName": "name",
    "Email": "email",
    "Phone": "phone",
}


@dataclass
class ExportBatchResult:
    exported: int = 0
    total: int = 0
    errors: List[str] = field(default_factory=list)
    lead_ids: Dict[str, str] = field(default_factory=dict)


def build_lead_payload(
    visitor: Visitor,
    field_mappings: Optional[Dict[str, str]],
    property_name: Optional[str],
) -> Dict[str, str]:
    """Map visitor attributes to Lead fields and fill required fields."""
    lead: Dict[str, str] = {}
    for crm_field, visitor_field in (field_mappings or {}).items():
        if visitor_field not in EXPORTABLE_VISITOR_FIELDS:
            continue
        value = getattr(visitor, visitor_field, None)
        if value is not None and value != "":
            lead[crm_field] = str(value)

    if not lead.get("LastName"):
        email_local = visitor.email.split("@")[0] if visitor.email else None
        lead["LastName"] = visitor.name or email_local or LAST_NAME_FALLBACK
    if not lead.get("Company"):
        lead["Company"] = COMPANY_FALLBACK

    lead["LeadSource"] = f"{LEAD_SOURCE} - {property_name}" if property_name else LEAD_SOURCE
    return lead


def effective_mappings(crm: SalesforceSettings) -> Dict[str, str]:
    """Configured mapping, or the defaults when the tenant never saved one."""
    if crm.field_mappings is None:
        return dict(DEFAULT_FIELD_MAPPINGS)
    return crm.field_mappings


def _settings_for(db: Session, property_id: UUID) -> Optional[SalesforceSettings]:
    return db.query(SalesforceSettings).filter(SalesforceSettings.property_id == property_id).first()


def require_connected_settings(db: Session, property_id: UUID) -> SalesforceSettings:
    crm = _settings_for(db, property_id)
    if crm is None or not crm.is_connected:
        raise CRMNotConnectedError("Salesforce not connected. Please connect your account first.")
    return crm


class LeadExportService:
    """
    Exports visitors as Salesforce Leads.

    Usage:
        service = LeadExportService(SalesforceClient())
        result = service.export_visitors(db, [visitor_id], property_id=prop.id)
        db.commit()
    """

    def __init__(self, client: SalesforceClient):
        self.client = client

    def export_visitors(
        self,
        db: Session,
        visitor_ids: Iterable[UUID],
        *,
        export_type: ExportTypeEnum = ExportTypeEnum.manual,
        property_id: Optional[UUID] = None,
        conversation_id: Optional[UUID] = None,
        within_properties: Optional[Iterable[UUID]] = None,
    ) -> ExportBatchResult:
        """Export each visitor independently.

        Args:
            property_id: Single-property scope; None exports across properties.
            conversation_id: Conversation to attach the ExportRecord to;
                defaults to the visitor's latest conversation.
            within_properties: Restricts the all-properties scope (e.g. to the
                caller's own properties); other visitors count as not found.

        Raises:
            CRMNotConnectedError: Single-property scope without a connection.
        """
        ids = list(dict.fromkeys(visitor_ids))
        result = ExportBatchResult(total=len(ids))

        single: Optional[SalesforceSettings] = None
        if property_id is not None:
            single = require_connected_settings(db, property_id)

        query = db.query(Visitor).filter(Visitor.id.in_(ids))
        if property_id is not None:
            query = query.filter(Visitor.property_id == property_id)
        if within_properties is not None:
            query = query.filter(Visitor.property_id.in_(list(within_properties)))
        visitors = {v.id: v for v in query.all()}

        settings_cache: Dict[UUID, Optional[SalesforceSettings]] = {}
        property_names: Dict[UUID, Optional[str]] = {}

        for visitor_id in ids:
            visitor = visitors.get(visitor_id)
            if visitor is None:
                result.errors.append(f"Visitor {visitor_id} not found")
                continue

            label = visitor.name or visitor.email or str(visitor.id)

            if single is not None:
                crm = single
            else:
                if visitor.property_id not in settings_cache:
                    settings_cache[visitor.property_id] = _settings_for(db, visitor.property_id)
                crm = settings_cache[visitor.property_id]
                if crm is None or not crm.is_connected:
                    result.errors.append(f"No Salesforce connection for {label}")
                    continue

            if visitor.property_id not in property_names:
                prop = db.get(Property, visitor.property_id)
                property_names[visitor.property_id] = prop.name if prop else None

            lead = build_lead_payload(visitor, effective_mappings(crm), property_names[visitor.property_id])
            try:
                lead_id = call_with_refresh(
                    db, crm, self.client,
                    lambda instance_url, token: self.client.create_lead(instance_url, token, lead),
                )
            except Exception as e:
                result.errors.append(f"Failed to export {label}")
                self._record_failure(db, visitor, conversation_id, e)
                continue

            self._record_success(db, visitor, conversation_id, lead_id, export_type)
            result.exported += 1
            result.lead_ids[str(visitor.id)] = lead_id

        logger.info(
            "[CRM_EXPORT] Exported %d/%d leads (%s)",
            result.exported, result.total, export_type.value,
        )
        return result

    def _target_conversation(self, db: Session, visitor: Visitor, conversation_id: Optional[UUID]) -> Optional[Conversation]:
        if conversation_id is not None:
            conversation = db.get(Conversation, conversation_id)
            if conversation is not None and conversation.visitor_id == visitor.id:
                return conversation
        return (
            db.query(Conversation)
            .filter(Conversation.visitor_id == visitor.id)
            .order_by(Conversation.created_at.desc())
            .first()
        )

    def _record_success(
        self,
        db: Session,
        visitor: Visitor,
        conversation_id: Optional[UUID],
        lead_id: str,
        export_type: ExportTypeEnum,
    ) -> None:
        conversation = self._target_conversation(db, visitor, conversation_id)
        if conversation is not None:
            db.add(ExportRecord(
                conversation_id=conversation.id,
                salesforce_lead_id=lead_id,
                export_type=export_type,
            ))
        record_notification(
            db,
            property_id=visitor.property_id,
            conversation_id=conversation.id if conversation else None,
            notification_type="salesforce_export",
            channel=NotificationChannelEnum.in_app,
            recipient="system",
            status=NotificationStatusEnum.sent,
        )
        logger.info("[CRM_EXPORT] Visitor %s exported as lead %s", visitor.id, lead_id)

    def _record_failure(self, db: Session, visitor: Visitor, conversation_id: Optional[UUID], error: Exception) -> None:
        if isinstance(error, CRMRequestError) and error.body:
            detail = error.body
        else:
            detail = str(error)
        logger.error("[CRM_EXPORT] Export of visitor %s failed: %s", visitor.id, detail[:200])
        conversation = self._target_conversation(db, visitor, conversation_id)
        record_notification(
            db,
            property_id=visitor.property_id,
            conversation_id=conversation.id if conversation else None,
            notification_type="export_failed",
            channel=NotificationChannelEnum.in_app,
            recipient="system",
            status=NotificationStatusEnum.failed,
            error_message=detail[:500],
        )


def describe_lead_fields(db: Session, property_id: UUID, client: SalesforceClient) -> List[Dict[str, Any]]:
    """Createable Lead fields for the mapping editor.

    Raises:
        CRMNotConnectedError: The property has no usable connection.
    """
    crm = require_connected_settings(db, property_id)
    return call_with_refresh(db, crm, client, client.describe_lead)
