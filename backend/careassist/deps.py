"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Property, User
from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Redis / arq
    REDIS_URL: str = "redis://localhost:6379/0"
    # Request-side kick: give up fast, then leave Redis alone for a while
    ARQ_KICK_TIMEOUT_SECONDS: float = 1.0
    ARQ_KICK_BACKOFF_SECONDS: float = 30.0

    # Lead extraction (OpenAI tool calling)
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    LEAD_EXTRACTION_MODEL: str = "gpt-4o-mini"
    LEAD_EXTRACTION_TIMEOUT_SECONDS: float = 20.0
    # Run extraction after every Nth visitor message
    LEAD_EXTRACTION_EVERY_N_MESSAGES: int = 1

    # Salesforce
    SALESFORCE_CLIENT_ID: str | None = None
    SALESFORCE_CLIENT_SECRET: str | None = None
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"
    SALESFORCE_API_VERSION: str = "v59.0"
    SALESFORCE_OAUTH_SCOPE: str = "api refresh_token openid"
    CRM_HTTP_TIMEOUT_SECONDS: float = 15.0

    # Token encryption: dedicated secret, never shared with other credentials
    CRM_TOKEN_ENCRYPTION_SECRET: str | None = None
    CRM_TOKEN_ENCRYPTION_SALT: str = "salesforce-token-encryption-salt"

    # Notifications
    RESEND_API_KEY: str | None = None
    NOTIFICATION_FROM_EMAIL: str = "Care Assist <notifications@careassist.app>"
    NOTIFICATION_HTTP_TIMEOUT_SECONDS: float = 10.0

    # Conversation lifecycle
    STALE_CONVERSATION_SECONDS: int = 45

    # Outbox
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BATCH_SIZE: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def salesforce_redirect_uri(self) -> str:
        return f"{self.BACKEND_URL.rstrip('/')}/salesforce/oauth/callback"


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user(
    db: Session = Depends(get_db),
    authorization: Optional[str] = Header(default=None),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the dashboard user from a bearer header or the `access_token` cookie.

    Either value may carry a "Bearer " prefix. The JWT subject is the user email.
    """
    raw = authorization or access_token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    token = raw[len("Bearer "):] if raw.startswith("Bearer ") else raw

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = db.query(User).filter(User.email == subject).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_owned_property(db: Session, property_id: UUID, user: User) -> Property:
    """Load a property the user owns, or raise 404 (no existence leak)."""
    prop = db.query(Property).filter(Property.id == property_id, Property.owner_id == user.id).first()
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")
    return prop


def get_outbox_notifier():
    """Async callable that nudges the worker about committed outbox jobs."""
    from .workers.arq_enqueue import kick_outbox_jobs

    return kick_outbox_jobs
