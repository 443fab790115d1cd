from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from orthoflow import events
from orthoflow.core.config import get_settings
from orthoflow.core.database import Base, get_db
from orthoflow.main import app
from orthoflow.middleware.correlation_id import resolve_correlation_id
from orthoflow.middleware.rate_limit import reset_rate_limiter
from orthoflow.platform.security.context import AuthContext
from orthoflow.workflow.api import get_workflow_auth_context


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_context(request: Request) -> AuthContext:
        return AuthContext(
            user_id="user-1",
            roles=["admin"],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_workflow_auth_context] = override_auth_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_order(client: TestClient) -> dict:
    response = client.post("/entities/lab_order", json={"payload": {"vendorId": "vendor-3"}})
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/entities/lead/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/entities/lead/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "x" * 500})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "x" * 500


def test_transition_record_and_event_carry_correlation_id(client: TestClient) -> None:
    order = _create_order(client)

    response = client.post(
        f"/entities/lab_order/{order['id']}/transitions",
        json={"action": "submit"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200
    assert response.json()["transition"]["correlation_id"] == "corr-event-1"

    committed = [item for item in events.published_events if item.get("event_type") == "workflow.transition.committed"]
    assert committed
    assert committed[-1].get("correlation_id") == "corr-event-1"


def test_resolve_correlation_id_rejects_unsafe_values() -> None:
    assert resolve_correlation_id("  corr-42  ") == "corr-42"
    assert resolve_correlation_id("req:2026.10.18_1") == "req:2026.10.18_1"
    assert resolve_correlation_id("bad id\nwith newline") != "bad id\nwith newline"
    assert resolve_correlation_id(None)
