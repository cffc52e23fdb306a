"""CRM token service: encrypted persistence and refresh-on-401.

WHAT:
    - Store/clear encrypted Salesforce tokens on `SalesforceSettings`.
    - Run a CRM call with the stored access token; on 401 refresh once and
      retry exactly once.
    - Re-encrypt legacy plaintext tokens in place.

WHY:
    Two workers can hit a 401 on the same property at the same time. Each
    refresh is serialized per credential inside the process, and across
    processes `token_version` acts as an optimistic lock: the refresher
    re-reads the row, and if the version moved since its failed call another
    worker already rotated the token, so it retries with that token instead
    of refreshing again. The write itself is conditional on the version.

REFERENCES:
    - careassist/security.py (encrypt_secret / decrypt_secret)
    - careassist/services/salesforce_client.py (CRMAuthError on 401)
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional, TypeVar
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from careassist.models import CRMConnectionStatusEnum, SalesforceSettings, utcnow
from careassist.security import TokenCipher, decrypt_secret, encrypt_secret
from careassist.services.salesforce_client import CRMAuthError, CRMError, SalesforceClient, TokenGrant

logger = logging.getLogger(__name__)

T = TypeVar("T")

_refresh_locks: Dict[UUID, threading.Lock] = defaultdict(threading.Lock)
_refresh_locks_guard = threading.Lock()


class CRMNotConnectedError(CRMError):
    """No usable credential for the property (never connected, disconnected, or refresh failed)."""


def _refresh_lock(settings_id: UUID) -> threading.Lock:
    with _refresh_locks_guard:
        return _refresh_locks[settings_id]


def _label(crm: SalesforceSettings) -> str:
    return f"salesforce:{crm.property_id}"


def store_tokens(db: Session, crm: SalesforceSettings, grant: TokenGrant) -> SalesforceSettings:
    """Encrypt and persist a fresh grant (OAuth callback). Flushes."""
    label = _label(crm)
    crm.access_token_enc = encrypt_secret(grant.access_token, context=f"{label}:access")
    if grant.refresh_token:
        crm.refresh_token_enc = encrypt_secret(grant.refresh_token, context=f"{label}:refresh")
    if grant.instance_url:
        crm.instance_url = grant.instance_url
    crm.token_expires_at = utcnow() + timedelta(seconds=grant.expires_in)
    crm.token_version = (crm.token_version or 0) + 1
    crm.connection_status = CRMConnectionStatusEnum.connected
    crm.connected_at = utcnow()
    crm.last_error = None
    db.flush()
    logger.info("[CRM_TOKEN] Stored tokens for property %s (version=%d)", crm.property_id, crm.token_version)
    return crm


def clear_tokens(db: Session, crm: SalesforceSettings) -> None:
    """Disconnect: drop tokens and disable exports. Flushes."""
    crm.access_token_enc = None
    crm.refresh_token_enc = None
    crm.instance_url = None
    crm.token_expires_at = None
    crm.token_version = (crm.token_version or 0) + 1
    crm.connection_status = CRMConnectionStatusEnum.disconnected
    crm.enabled = False
    db.flush()
    logger.info("[CRM_TOKEN] Cleared tokens for property %s", crm.property_id)


def get_access_token(crm: SalesforceSettings) -> str:
    if not crm.is_connected:
        raise CRMNotConnectedError(f"No Salesforce connection for property {crm.property_id}")
    return decrypt_secret(crm.access_token_enc, context=f"{_label(crm)}:access")


def mark_disconnected(db: Session, crm: SalesforceSettings, reason: str) -> None:
    """Surface a dead credential as "disconnected" to the tenant. Commits."""
    crm.connection_status = CRMConnectionStatusEnum.disconnected
    crm.last_error = reason[:500]
    db.commit()
    logger.warning("[CRM_TOKEN] Property %s marked disconnected: %s", crm.property_id, reason)


def refresh_access_token(
    db: Session,
    crm: SalesforceSettings,
    client: SalesforceClient,
    *,
    seen_version: int,
) -> str:
    """Return a usable access token after a 401 seen at `seen_version`.

    Commits the rotated token so other workers see it.

    Raises:
        CRMNotConnectedError: No refresh token, or the refresh grant failed.
    """
    with _refresh_lock(crm.id):
        db.refresh(crm)
        if crm.token_version != seen_version and crm.is_connected:
            logger.info("[CRM_TOKEN] Token for %s already rotated (v%d -> v%d), reusing",
                        crm.property_id, seen_version, crm.token_version)
            return get_access_token(crm)

        if not crm.refresh_token_enc:
            mark_disconnected(db, crm, "No refresh token stored")
            raise CRMNotConnectedError("Salesforce session expired and no refresh token is stored")

        refresh_token = decrypt_secret(crm.refresh_token_enc, context=f"{_label(crm)}:refresh")
        try:
            grant = client.refresh_access_token(refresh_token)
        except CRMError as e:
            mark_disconnected(db, crm, f"Token refresh failed: {e}")
            raise CRMNotConnectedError("Salesforce token refresh failed") from e

        values = {
            "access_token_enc": encrypt_secret(grant.access_token, context=f"{_label(crm)}:access"),
            "token_expires_at": utcnow() + timedelta(seconds=grant.expires_in),
            "token_version": seen_version + 1,
            "updated_at": utcnow(),
        }
        if grant.refresh_token:
            values["refresh_token_enc"] = encrypt_secret(grant.refresh_token, context=f"{_label(crm)}:refresh")
        if grant.instance_url:
            values["instance_url"] = grant.instance_url

        result = db.execute(
            update(SalesforceSettings)
            .where(SalesforceSettings.id == crm.id, SalesforceSettings.token_version == seen_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(crm)

        if result.rowcount == 0:
            # Another process rotated between our read and write; theirs wins
            logger.info("[CRM_TOKEN] Lost refresh race for %s, using current token", crm.property_id)
        else:
            logger.info("[CRM_TOKEN] Refreshed token for %s (version=%d)", crm.property_id, crm.token_version)
        return get_access_token(crm)


def call_with_refresh(
    db: Session,
    crm: SalesforceSettings,
    client: SalesforceClient,
    operation: Callable[[str, str], T],
) -> T:
    """Run `operation(instance_url, access_token)`; on 401 refresh and retry once.

    Raises:
        CRMNotConnectedError: Not connected, or the refresh failed.
        CRMAuthError: The retried call was rejected again.
        CRMRequestError: Any other CRM failure.
    """
    version = crm.token_version
    token = get_access_token(crm)
    try:
        return operation(crm.instance_url, token)
    except CRMAuthError:
        logger.info("[CRM_TOKEN] 401 for property %s, refreshing", crm.property_id)

    token = refresh_access_token(db, crm, client, seen_version=version)
    return operation(crm.instance_url, token)


@dataclass
class MigrationResult:
    migrated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def encrypt_legacy_tokens(
    db: Session,
    cipher: Optional[TokenCipher] = None,
    property_ids: Optional[Iterable[UUID]] = None,
) -> MigrationResult:
    """Encrypt any plaintext tokens left from before encryption. Commits per row."""
    result = MigrationResult()
    query = db.query(SalesforceSettings)
    if property_ids is not None:
        query = query.filter(SalesforceSettings.property_id.in_(list(property_ids)))
    for crm in query.all():
        label = _label(crm)
        changed = False
        try:
            for column in ("access_token_enc", "refresh_token_enc"):
                value = getattr(crm, column)
                if value and not TokenCipher.is_encrypted(value):
                    encrypted = (
                        cipher.encrypt(value, context=f"{label}:{column.split('_')[0]}")
                        if cipher else encrypt_secret(value, context=f"{label}:{column.split('_')[0]}")
                    )
                    setattr(crm, column, encrypted)
                    changed = True
            if changed:
                db.commit()
                result.migrated += 1
            else:
                result.skipped += 1
        except Exception as e:
            db.rollback()
            logger.exception("[CRM_TOKEN] Failed to migrate settings %s", crm.id)
            result.errors.append(f"Row {crm.id}: {e}")

    logger.info("[CRM_TOKEN] Migration complete: %d encrypted, %d skipped, %d errors",
                result.migrated, result.skipped, len(result.errors))
    return result
