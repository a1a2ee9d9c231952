from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, create_db_engine, get_db
from app.crm.contacts.models import CRMContact
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_db_engine("sqlite+pysqlite:///:memory:")
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers() -> dict[str, str]:
    settings = get_settings()
    token = jwt.encode(
        {"sub": "whatsapp-extension", "company_id": "tenant-a", "roles": ["crm.integration"]},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


def test_capture_creates_then_reuses_contact(client: TestClient) -> None:
    first = client.post(
        "/api/crm/contacts/capture",
        json={"phone": "+55 21 98888-1234", "name": "Bianca", "source": "whatsapp", "estimated_value_cents": 15_000},
        headers=_headers(),
    )
    assert first.status_code == 201
    body = first.json()
    assert body["contact_action"] == "created"
    assert body["message_key"] == "capture.deal_created"
    assert body["deal"]["title"] == "Negotiation with Bianca (whatsapp)"
    assert body["deal"]["probability"] == 25
    assert body["deal"]["contact_id"] == body["contact"]["id"]

    second = client.post(
        "/api/crm/contacts/capture",
        json={"phone": "21988881234", "name": "Bianca M."},
        headers=_headers(),
    )
    assert second.status_code == 200
    assert second.json()["contact_action"] == "found"
    assert second.json()["contact"]["id"] == body["contact"]["id"]
    assert second.json()["deal"]["id"] != body["deal"]["id"]

    deals = client.get(f"/api/crm/contacts/{body['contact']['id']}/deals", headers=_headers())
    assert len(deals.json()) == 2


def test_capture_failure_leaves_nothing_behind(client: TestClient, db_session: Session) -> None:
    response = client.post(
        "/api/crm/contacts/capture",
        json={"email": "new@example.com", "name": "Caio", "deal_probability": 120},
        headers=_headers(),
    )

    assert response.status_code == 422
    assert response.json()["message_key"] == "deal.probability_out_of_range"
    assert db_session.scalar(select(func.count()).select_from(CRMContact)) == 0


def test_capture_requires_name(client: TestClient) -> None:
    missing = client.post("/api/crm/contacts/capture", json={"phone": "21988881234"}, headers=_headers())
    assert missing.status_code == 422
    assert missing.json()["message_key"] == "common.invalid_request"

    blank = client.post("/api/crm/contacts/capture", json={"phone": "21988881234", "name": " "}, headers=_headers())
    assert blank.status_code == 422
    assert blank.json()["message_key"] == "capture.name_required"
