"""Salesforce integration endpoints.

WHAT:
    OAuth start/callback, trigger rules and field mapping, manual export,
    Lead describe, disconnect and the legacy-token encryption migration.

WHY:
    Tenants connect their own Salesforce org per property. CRM problems are
    reported as status (connection_status, last_error, failed export log
    entries) rather than as errors in the chat path.

REFERENCES:
    - careassist/services/crm_oauth_service.py
    - careassist/services/crm_export_service.py
    - https://help.salesforce.com/s/articleView?id=sf.remoteaccess_oauth_web_server_flow.htm
"""

import logging
from typing import List, Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from careassist.database import get_db
from careassist.deps import get_current_user, get_owned_property, get_settings
from careassist.models import Property, SalesforceSettings, User
from careassist.schemas import (
    ExportOut,
    ExportRequest,
    LeadFieldOut,
    MigrationOut,
    OAuthStartOut,
    SalesforceSettingsOut,
    SalesforceSettingsUpdate,
)
from careassist.services.crm_export_service import LeadExportService, describe_lead_fields, effective_mappings
from careassist.services.crm_oauth_service import (
    OAuthStateError,
    complete_authorization,
    get_or_create_settings,
    start_authorization,
)
from careassist.services.crm_token_service import CRMNotConnectedError, clear_tokens, encrypt_legacy_tokens
from careassist.services.salesforce_client import CRMError, SalesforceClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/salesforce", tags=["Salesforce"])


def get_salesforce_client() -> SalesforceClient:
    return SalesforceClient()


def _frontend_redirect(**params) -> RedirectResponse:
    return RedirectResponse(url=f"{get_settings().FRONTEND_URL.rstrip('/')}/settings?{urlencode(params)}")


def _settings_out(crm: SalesforceSettings) -> SalesforceSettingsOut:
    return SalesforceSettingsOut(
        property_id=crm.property_id,
        enabled=crm.enabled,
        connection_status=crm.connection_status,
        instance_url=crm.instance_url,
        connected_at=crm.connected_at,
        token_expires_at=crm.token_expires_at,
        last_error=crm.last_error,
        auto_export_on_escalation=crm.auto_export_on_escalation,
        auto_export_on_conversation_end=crm.auto_export_on_conversation_end,
        auto_export_on_insurance_detected=crm.auto_export_on_insurance_detected,
        auto_export_on_phone_detected=crm.auto_export_on_phone_detected,
        field_mappings=effective_mappings(crm),
    )


# =============================================================================
# OAUTH
# =============================================================================

@router.get("/oauth/start", response_model=OAuthStartOut)
async def oauth_start(
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: SalesforceClient = Depends(get_salesforce_client),
):
    """
    Build the Salesforce consent URL for a property.

    WHAT:
        Persists the PKCE verifier and CSRF nonce, returns the authorize URL.
    WHY:
        The dashboard opens the URL itself (popup or redirect).
    """
    if not client.settings.SALESFORCE_CLIENT_ID or not client.settings.SALESFORCE_CLIENT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Salesforce OAuth not configured. Missing CLIENT_ID or CLIENT_SECRET.",
        )

    prop = get_owned_property(db, property_id, current_user)
    start = start_authorization(db, prop.id, client)
    db.commit()
    return OAuthStartOut(authorization_url=start.authorization_url)


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    client: SalesforceClient = Depends(get_salesforce_client),
):
    """
    Handle the redirect back from Salesforce.

    Always ends in a redirect to the dashboard settings page, with
    `salesforce=connected` or `salesforce=error&reason=...`.
    """
    if error:
        logger.error("[CRM_OAUTH] Provider returned error: %s", error)
        return _frontend_redirect(salesforce="error", reason=error)
    if not code:
        return _frontend_redirect(salesforce="error", reason="missing_code")

    try:
        crm = complete_authorization(db, code, state, client)
    except OAuthStateError as e:
        # Persist the consumed/cleared pending record
        db.commit()
        logger.warning("[CRM_OAUTH] Callback rejected: %s", e.reason)
        return _frontend_redirect(salesforce="error", reason=e.reason)

    db.commit()
    return _frontend_redirect(salesforce="connected", property_id=str(crm.property_id))


# =============================================================================
# SETTINGS
# =============================================================================

@router.get("/settings", response_model=SalesforceSettingsOut)
async def get_salesforce_settings(
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prop = get_owned_property(db, property_id, current_user)
    crm = get_or_create_settings(db, prop.id)
    db.commit()
    return _settings_out(crm)


@router.put("/settings", response_model=SalesforceSettingsOut)
async def update_salesforce_settings(
    payload: SalesforceSettingsUpdate,
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update trigger rules, field mapping and the enabled flag."""
    prop = get_owned_property(db, property_id, current_user)
    crm = get_or_create_settings(db, prop.id)
    for name, value in payload.model_dump(exclude_unset=True).items():
        setattr(crm, name, value)
    db.commit()
    db.refresh(crm)
    logger.info("[CRM_EXPORT] Settings updated for property %s by %s", prop.id, current_user.email)
    return _settings_out(crm)


@router.post("/disconnect", response_model=SalesforceSettingsOut)
async def disconnect(
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    prop = get_owned_property(db, property_id, current_user)
    crm = get_or_create_settings(db, prop.id)
    clear_tokens(db, crm)
    db.commit()
    db.refresh(crm)
    return _settings_out(crm)


# =============================================================================
# EXPORT
# =============================================================================

@router.post("/export", response_model=ExportOut)
async def export_leads(
    payload: ExportRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: SalesforceClient = Depends(get_salesforce_client),
):
    """
    Manual export of selected visitors.

    `property_id="all"` resolves the Salesforce connection per visitor's own
    property, limited to properties the caller owns.
    """
    service = LeadExportService(client)
    try:
        if payload.property_id == "all":
            owned = [row[0] for row in db.query(Property.id).filter(Property.owner_id == current_user.id).all()]
            result = service.export_visitors(db, payload.visitor_ids, within_properties=owned)
        else:
            prop = get_owned_property(db, payload.property_id, current_user)
            result = service.export_visitors(db, payload.visitor_ids, property_id=prop.id)
    except CRMNotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    db.commit()
    return ExportOut(exported=result.exported, total=result.total, errors=result.errors)


@router.get("/lead-fields", response_model=List[LeadFieldOut])
async def lead_fields(
    property_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    client: SalesforceClient = Depends(get_salesforce_client),
):
    prop = get_owned_property(db, property_id, current_user)
    try:
        fields = describe_lead_fields(db, prop.id, client)
    except CRMNotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except CRMError as e:
        logger.error("[CRM_EXPORT] Lead describe failed for %s: %s", prop.id, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Salesforce describe failed")
    db.commit()
    return fields


@router.post("/encrypt-migrate", response_model=MigrationOut)
async def encrypt_migrate(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Encrypt legacy plaintext tokens on the caller's properties."""
    owned = [row[0] for row in db.query(Property.id).filter(Property.owner_id == current_user.id).all()]
    result = encrypt_legacy_tokens(db, property_ids=owned)
    return MigrationOut(migrated=result.migrated, skipped=result.skipped, errors=result.errors)
