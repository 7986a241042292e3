"""Shared fixtures for the API tests."""
import json
import os
import time

import pytest
from fastapi.testclient import TestClient
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Keep the application's own engine off disk
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from orchestrator.agent.classifier import ClassifierRegistry
from orchestrator.agent.dependencies import (
    get_classifier_registry,
    get_dispatcher,
    get_event_bus,
    get_rate_limiter,
)
from orchestrator.agent.dispatcher import ActionDispatcher, SqlJobQueue
from orchestrator.agent.events import EventBus
from orchestrator.agent.rate_limit import build_rate_limiter
from orchestrator.agent.signatures import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_webhook_signature
from orchestrator.config import Settings, get_settings
from orchestrator.database import Base, get_db
from orchestrator.main import app


# Create a test database
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override database dependency for tests."""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db

TEST_SETTINGS = Settings(
    twilio_auth_token="test-twilio-token",
    email_webhook_secret="test-email-secret",
    automation_webhook_secret="test-automation-secret",
    intake_webhook_secret="test-intake-secret",
    llm_timeout_seconds=5.0,
)


def decision_json(
    intent: str = "INQUIRY",
    confidence: float = 0.9,
    priority: int = 3,
    actions: list[dict] | None = None,
    requires_approval: bool = False,
) -> str:
    """LLM response text for a decision."""
    return json.dumps({
        "intent": intent,
        "confidence": confidence,
        "reasoning": "Test decision",
        "requiresApproval": requires_approval,
        "priority": priority,
        "actions": actions if actions is not None else [
            {"type": "CREATE_TASK", "priority": priority, "requiresConfirmation": False, "params": {}},
        ],
        "warnings": [],
        "alternatives": [],
    })


def signed_post(client, url: str, payload, secret: str, timestamp: int | None = None):
    """POST a JSON body with webhook signature headers."""
    body = json.dumps(payload)
    sent_at = timestamp if timestamp is not None else int(time.time())
    return client.post(
        url,
        content=body,
        headers={
            "Content-Type": "application/json",
            SIGNATURE_HEADER: compute_webhook_signature(secret, sent_at, body),
            TIMESTAMP_HEADER: str(sent_at),
        },
    )


class FakeLLM:
    """Chat model factory whose responses tests can set before the first request."""

    def __init__(self):
        self.responses = [decision_json()]
        self.calls = 0
        self.fail = False

    def respond(self, **kwargs) -> None:
        self.responses = [decision_json(**kwargs)]

    def factory(self, config):
        self.calls += 1
        if self.fail:
            raise RuntimeError("provider unavailable")
        return FakeListChatModel(responses=list(self.responses))


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture(scope="function")
def client(settings, fake_llm, bus):
    """Create test client with fresh database and pipeline components for each test."""
    Base.metadata.create_all(bind=engine)
    registry = ClassifierRegistry(model_factory=fake_llm.factory)
    rate_limiter = build_rate_limiter(settings)
    dispatcher = ActionDispatcher(SqlJobQueue(TestingSessionLocal))

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_classifier_registry] = lambda: registry
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_event_bus] = lambda: bus
    yield TestClient(app)

    for dependency in (get_settings, get_classifier_registry, get_rate_limiter, get_dispatcher, get_event_bus):
        app.dependency_overrides.pop(dependency, None)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session on the test database, for inspecting rows the API wrote."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def org(client):
    """Create a test organization with bootstrap admin."""
    response = client.post(
        "/v1/orgs",
        json={"name": "Acme", "plan": "STARTER", "admin_email": "admin@acme.com", "admin_phone": "+1 (555) 123-4567"},
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def admin_headers(org):
    """Get headers for the organization's admin user."""
    return {
        "X-Org-ID": org["org_id"],
        "X-User-ID": org["admin"]["user_id"],
        "X-API-Key": org["api_key"],
    }


@pytest.fixture
def member(client, org, admin_headers):
    """Create a member user for the organization."""
    response = client.post(
        "/v1/users",
        json={
            "org_id": org["org_id"],
            "email": "member@acme.com",
            "role": "member",
            "phone": "+15559876543",
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def member_headers(org, member):
    """Get headers for the member user."""
    return {
        "X-Org-ID": org["org_id"],
        "X-User-ID": member["user_id"],
        "X-API-Key": org["api_key"],
    }


@pytest.fixture
def other_org(client):
    """A second organization for isolation tests."""
    response = client.post("/v1/orgs", json={"name": "Globex", "admin_email": "admin@globex.com"})
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def other_admin_headers(other_org):
    return {
        "X-Org-ID": other_org["org_id"],
        "X-User-ID": other_org["admin"]["user_id"],
        "X-API-Key": other_org["api_key"],
    }