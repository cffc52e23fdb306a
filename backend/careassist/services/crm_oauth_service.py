"""Salesforce OAuth 2.0 (authorization code + PKCE), scoped per property.

WHAT:
    - `start_authorization`: create the PKCE pair and CSRF nonce, persist them
      as the property's single pending record, build the authorize URL.
    - `complete_authorization`: validate the callback state, consume the
      pending record, exchange the code and store encrypted tokens.

WHY:
    The pending record is cleared before the token exchange, whatever the
    exchange does, so a replayed callback can never redeem it twice. The last
    redeemed nonce is kept in `consumed_oauth_csrf` so a replay is reported as
    such instead of as an unknown state.

REFERENCES:
    - careassist/routers/salesforce.py (start/callback endpoints)
    - careassist/services/crm_token_service.py (store_tokens)
    - RFC 7636 (PKCE)
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple
from urllib.parse import urlencode
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from careassist.models import SalesforceSettings, utcnow
from careassist.services.crm_token_service import store_tokens
from careassist.services.salesforce_client import CRMError, SalesforceClient

logger = logging.getLogger(__name__)

PENDING_STATE_TTL = timedelta(minutes=10)


class OAuthStateError(Exception):
    """Base class for rejected callbacks. `reason` is a short machine code."""

    reason = "oauth_error"


class OAuthStateInvalid(OAuthStateError):
    reason = "invalid_state"


class OAuthCsrfMismatch(OAuthStateError):
    reason = "csrf_mismatch"


class OAuthStateExpired(OAuthStateError):
    reason = "state_expired"


class OAuthStateReplayed(OAuthStateError):
    reason = "state_replayed"


class OAuthVerifierMissing(OAuthStateError):
    reason = "verifier_missing"


class OAuthExchangeError(OAuthStateError):
    reason = "token_exchange_failed"


def generate_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 chars)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def parse_state(state: Optional[str]) -> Tuple[UUID, str]:
    """Split `<property_id>:<csrf>`.

    Raises:
        OAuthStateInvalid: Missing separator, empty nonce or non-UUID property id.
    """
    if not state or ":" not in state:
        raise OAuthStateInvalid("Malformed OAuth state")
    property_part, csrf = state.split(":", 1)
    if not csrf:
        raise OAuthStateInvalid("Malformed OAuth state")
    try:
        return UUID(property_part), csrf
    except ValueError as e:
        raise OAuthStateInvalid("Malformed OAuth state") from e


def get_or_create_settings(db: Session, property_id: UUID) -> SalesforceSettings:
    crm = db.query(SalesforceSettings).filter(SalesforceSettings.property_id == property_id).first()
    if crm is None:
        crm = SalesforceSettings(property_id=property_id)
        db.add(crm)
        db.flush()
    return crm


@dataclass
class AuthorizationStart:
    authorization_url: str
    state: str


def start_authorization(db: Session, property_id: UUID, client: SalesforceClient) -> AuthorizationStart:
    """Persist a fresh pending record (replacing any earlier one). Flushes."""
    settings = client.settings
    verifier = generate_code_verifier()
    csrf = str(uuid.uuid4())

    crm = get_or_create_settings(db, property_id)
    crm.pending_code_verifier = verifier
    crm.pending_oauth_csrf = csrf
    crm.pending_oauth_expires_at = utcnow() + PENDING_STATE_TTL
    db.flush()

    state = f"{property_id}:{csrf}"
    params = {
        "response_type": "code",
        "client_id": settings.SALESFORCE_CLIENT_ID or "",
        "redirect_uri": settings.salesforce_redirect_uri,
        "scope": settings.SALESFORCE_OAUTH_SCOPE,
        "state": state,
        "code_challenge": code_challenge_for(verifier),
        "code_challenge_method": "S256",
    }
    logger.info("[CRM_OAUTH] Authorization started for property %s", property_id)
    return AuthorizationStart(authorization_url=f"{client.authorize_url}?{urlencode(params)}", state=state)


def _clear_pending(crm: SalesforceSettings) -> None:
    crm.pending_oauth_csrf = None
    crm.pending_code_verifier = None
    crm.pending_oauth_expires_at = None


def complete_authorization(
    db: Session,
    code: str,
    state: Optional[str],
    client: SalesforceClient,
) -> SalesforceSettings:
    """Redeem the callback.

    The pending record is consumed with a conditional UPDATE and committed
    before the token exchange, so of two callbacks carrying the same state
    only one reaches Salesforce, and a failing exchange cannot roll the
    record back into place. The caller commits the rest (tokens, last_error).

    Raises:
        OAuthStateError: One of its subclasses; the pending record is
            cleared in every case that found one.
    """
    property_id, csrf = parse_state(state)

    crm = (
        db.query(SalesforceSettings)
        .filter(SalesforceSettings.property_id == property_id)
        .populate_existing()
        .first()
    )
    if crm is None:
        raise OAuthStateInvalid("Unknown OAuth state")

    if not crm.pending_oauth_csrf:
        _raise_not_pending(crm, csrf)

    if not secrets.compare_digest(crm.pending_oauth_csrf, csrf):
        _clear_pending(crm)
        db.commit()
        logger.warning("[CRM_OAUTH] CSRF mismatch for property %s", property_id)
        raise OAuthCsrfMismatch("OAuth state does not match")

    expires_at = crm.pending_oauth_expires_at
    verifier = crm.pending_code_verifier

    # Single use from here on, whatever the exchange does
    consumed = db.execute(
        update(SalesforceSettings)
        .where(
            SalesforceSettings.id == crm.id,
            SalesforceSettings.pending_oauth_csrf == csrf,
        )
        .values(
            pending_oauth_csrf=None,
            pending_code_verifier=None,
            pending_oauth_expires_at=None,
            consumed_oauth_csrf=csrf,
        )
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        db.rollback()
        db.refresh(crm)
        _raise_not_pending(crm, csrf)
    db.commit()

    if expires_at is None or expires_at < utcnow():
        logger.warning("[CRM_OAUTH] Expired state for property %s", property_id)
        raise OAuthStateExpired("OAuth state expired")
    if not verifier:
        raise OAuthVerifierMissing("PKCE verifier missing")

    try:
        grant = client.exchange_authorization_code(code, verifier, client.settings.salesforce_redirect_uri)
    except CRMError as e:
        crm.last_error = str(e)[:500]
        db.flush()
        logger.error("[CRM_OAUTH] Token exchange failed for property %s: %s", property_id, e)
        raise OAuthExchangeError("Token exchange failed") from e

    if not grant.instance_url:
        raise OAuthExchangeError("Token response missing instance_url")

    store_tokens(db, crm, grant)
    crm.enabled = True
    db.flush()
    logger.info("[CRM_OAUTH] Property %s connected to %s", property_id, crm.instance_url)
    return crm


def _raise_not_pending(crm: SalesforceSettings, csrf: str) -> None:
    if crm.consumed_oauth_csrf and secrets.compare_digest(crm.consumed_oauth_csrf, csrf):
        logger.warning("[CRM_OAUTH] Replayed callback for property %s", crm.property_id)
        raise OAuthStateReplayed("OAuth state was already used")
    raise OAuthStateInvalid("No pending authorization for this property")
