"""Pytest configuration for careassist tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Consistent database isolation (in-memory SQLite per test), auth tokens,
     and a fake Salesforce backend so no test talks to the network
REFERENCES:
    - careassist/main.py: FastAPI application
    - careassist/database.py: Database configuration
    - careassist/deps.py: Dependency injection
    - careassist/services/salesforce_client.py: CRM client under test
"""

import os
import sys
from pathlib import Path
from typing import Generator, List
from uuid import UUID

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (careassist.database and careassist.security validate at import time)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("CRM_TOKEN_ENCRYPTION_SECRET", "test-crm-token-secret")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("OPENAI_API_KEY", "test-api-key")
os.environ.setdefault("FRONTEND_URL", "http://localhost:3000")

from careassist.deps import Settings  # noqa: E402
from careassist.models import (  # noqa: E402
    Base,
    Conversation,
    ConversationStatusEnum,
    Property,
    SalesforceSettings,
    User,
    Visitor,
    utcnow,
)
from careassist.services.salesforce_client import SalesforceClient, TokenGrant  # noqa: E402

INSTANCE_URL = "https://acme.my.salesforce.com"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every connection of the test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Fake Salesforce
# ============================================================================

class FakeSalesforce:
    """Programmable Salesforce backend for `httpx.MockTransport`.

    Queue responses with `token_responses` / `lead_responses` as
    (status_code, json_or_text) tuples; defaults are successful.
    """

    instance_url = INSTANCE_URL

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_responses: list = []
        self.lead_responses: list = []
        self.describe_fields = [
            {"name": "LastName", "label": "Last Name", "type": "string", "createable": True, "nillable": False},
            {"name": "Phone", "label": "Phone", "type": "phone", "createable": True, "nillable": True},
            {"name": "Id", "label": "Lead ID", "type": "id", "createable": False, "nillable": False},
        ]
        self._token_counter = 0
        self._lead_counter = 0

    # -- request log helpers --------------------------------------------

    def calls(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    @property
    def token_calls(self) -> List[httpx.Request]:
        return self.calls("/services/oauth2/token")

    @property
    def lead_calls(self) -> List[httpx.Request]:
        return [r for r in self.calls("/sobjects/Lead") if r.method == "POST"]

    # -- transport ------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/services/oauth2/token"):
            if self.token_responses:
                return self._respond(*self.token_responses.pop(0))
            self._token_counter += 1
            return httpx.Response(200, json={
                "access_token": f"access-{self._token_counter}",
                "refresh_token": f"refresh-{self._token_counter}",
                "instance_url": INSTANCE_URL,
                "expires_in": 7200,
            })

        if path.endswith("/sobjects/Lead/describe"):
            return httpx.Response(200, json={"fields": self.describe_fields})

        if path.endswith("/sobjects/Lead") and request.method == "POST":
            if self.lead_responses:
                return self._respond(*self.lead_responses.pop(0))
            self._lead_counter += 1
            return httpx.Response(201, json={"id": f"00Q{self._lead_counter:012d}", "success": True, "errors": []})

        return httpx.Response(404, text="not found")

    @staticmethod
    def _respond(status_code: int, body) -> httpx.Response:
        if isinstance(body, str):
            return httpx.Response(status_code, text=body)
        return httpx.Response(status_code, json=body)

    def client(self) -> SalesforceClient:
        settings = Settings(
            SALESFORCE_CLIENT_ID="test-client-id",
            SALESFORCE_CLIENT_SECRET="test-client-secret",
            BACKEND_URL="http://testserver",
            FRONTEND_URL="http://localhost:3000",
        )
        return SalesforceClient(settings=settings, http_client=httpx.Client(transport=httpx.MockTransport(self.handler)))


@pytest.fixture
def fake_salesforce() -> FakeSalesforce:
    return FakeSalesforce()


@pytest.fixture
def salesforce_client(fake_salesforce) -> SalesforceClient:
    return fake_salesforce.client()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def kicked_jobs() -> List[UUID]:
    """Outbox job ids the routers nudged the worker about."""
    return []


@pytest.fixture
def app(test_db_session, salesforce_client, kicked_jobs):
    from careassist.database import get_db
    from careassist.deps import get_outbox_notifier
    from careassist.main import create_app
    from careassist.routers.salesforce import get_salesforce_client

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    async def record_kick(job_ids):
        kicked_jobs.extend(job_ids)
        return [str(j) for j in job_ids]

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_outbox_notifier] = lambda: record_kick
    test_app.dependency_overrides[get_salesforce_client] = lambda: salesforce_client
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_user(test_db_session) -> User:
    user = User(email="owner@example.com", name="Olivia Owner")
    test_db_session.add(user)
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


@pytest.fixture
def other_user(test_db_session) -> User:
    user = User(email="someone-else@example.com", name="Sam Else")
    test_db_session.add(user)
    test_db_session.commit()
    test_db_session.refresh(user)
    return user


@pytest.fixture
def test_property(test_db_session, test_user) -> Property:
    prop = Property(name="Serenity Recovery", domain="serenity.example", owner_id=test_user.id)
    test_db_session.add(prop)
    test_db_session.commit()
    test_db_session.refresh(prop)
    return prop


@pytest.fixture
def other_property(test_db_session, other_user) -> Property:
    prop = Property(name="Harbor House", domain="harbor.example", owner_id=other_user.id)
    test_db_session.add(prop)
    test_db_session.commit()
    test_db_session.refresh(prop)
    return prop


@pytest.fixture
def auth_headers(test_user):
    from careassist.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(test_user.email)}"}


def make_conversation(
    db: Session,
    prop: Property,
    session_id: str = "sess-1",
    *,
    status: ConversationStatusEnum = ConversationStatusEnum.pending,
    ai_enabled: bool = True,
    **visitor_fields,
) -> Conversation:
    """Visitor + conversation, committed."""
    visitor = Visitor(property_id=prop.id, session_id=session_id, **visitor_fields)
    db.add(visitor)
    db.flush()
    now = utcnow()
    conversation = Conversation(
        property_id=prop.id,
        visitor_id=visitor.id,
        status=status,
        ai_enabled=ai_enabled,
        last_sequence_number=0,
        created_at=now,
        updated_at=now,
    )
    db.add(conversation)
    db.commit()
    db.refresh(conversation)
    return conversation


def connect_salesforce(db: Session, prop: Property, **rules) -> SalesforceSettings:
    """Connected credential (tokens encrypted) with the given trigger rules, committed."""
    from careassist.services.crm_token_service import store_tokens

    crm = SalesforceSettings(property_id=prop.id, enabled=True, **rules)
    db.add(crm)
    db.flush()
    store_tokens(db, crm, TokenGrant(
        access_token="stored-access",
        refresh_token="stored-refresh",
        instance_url=INSTANCE_URL,
        expires_in=7200,
    ))
    db.commit()
    db.refresh(crm)
    return crm


@pytest.fixture
def conversation(test_db_session, test_property) -> Conversation:
    return make_conversation(test_db_session, test_property)


@pytest.fixture
def conversation_factory(test_db_session, test_property):
    """`conversation_factory(session_id=..., prop=..., **visitor_fields)`."""
    def factory(session_id: str = "sess-1", prop: Property = None, **kwargs) -> Conversation:
        return make_conversation(test_db_session, prop or test_property, session_id, **kwargs)
    return factory


@pytest.fixture
def salesforce_connector(test_db_session, test_property):
    """`salesforce_connector(prop=None, **rules)` -> connected SalesforceSettings."""
    def connector(prop: Property = None, **rules) -> SalesforceSettings:
        return connect_salesforce(test_db_session, prop or test_property, **rules)
    return connector


# ============================================================================
# Two-Session Fixtures
# ============================================================================

class SharedDatabase:
    """File-backed SQLite handing out independent sessions.

    Each `session()` has its own connection and identity map, so one
    request can hold a loaded row while another commits a change to it.
    """

    def __init__(self, engine):
        self.engine = engine
        self._factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        self._opened: List[Session] = []

    def session(self) -> Session:
        session = self._factory()
        self._opened.append(session)
        return session

    def seed_property(self) -> UUID:
        db = self.session()
        owner = User(email="owner@example.com", name="Olivia Owner")
        db.add(owner)
        db.flush()
        prop = Property(name="Serenity Recovery", domain="serenity.example", owner_id=owner.id)
        db.add(prop)
        db.commit()
        prop_id = prop.id
        db.close()
        return prop_id

    def seed_conversation(self, property_id: UUID, session_id: str = "sess-1", **kwargs) -> UUID:
        db = self.session()
        conversation_id = make_conversation(db, db.get(Property, property_id), session_id, **kwargs).id
        db.close()
        return conversation_id

    def seed_salesforce(self, property_id: UUID, **rules) -> UUID:
        db = self.session()
        crm_id = connect_salesforce(db, db.get(Property, property_id), **rules).id
        db.close()
        return crm_id

    def close(self) -> None:
        for session in self._opened:
            session.close()
        self.engine.dispose()


@pytest.fixture
def shared_db(tmp_path) -> Generator[SharedDatabase, None, None]:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'shared.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    database = SharedDatabase(engine)
    yield database
    database.close()
