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
from orthoflow.middleware.rate_limit import reset_rate_limiter
from orthoflow.platform.security.context import AuthContext
from orthoflow.workflow.api import _STATUS_BY_ERROR, get_workflow_auth_context
from orthoflow.workflow.errors import ForbiddenTransitionError, PreconditionFailedError, TerminalStateError


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def actor_roles() -> list[str]:
    return ["admin"]


@pytest.fixture()
def client(db_session: Session, actor_roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_context(request: Request) -> AuthContext:
        return AuthContext(
            user_id="user-1",
            roles=list(actor_roles),
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_workflow_auth_context] = override_auth_context
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create(client: TestClient, entity_type: str, payload: dict | None = None) -> dict:
    response = client.post(f"/entities/{entity_type}", json={"payload": payload or {}})
    assert response.status_code == 201
    return response.json()


def _act_as(actor_roles: list[str], *roles: str) -> None:
    actor_roles[:] = list(roles)


def test_create_and_read_entity(client: TestClient) -> None:
    created = _create(client, "lead", {"name": "Noah Kim"})

    assert created["status"] == "NEW"
    assert created["entity_type"] == "lead"
    assert created["row_version"] == 1

    fetched = client.get(f"/entities/lead/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["payload"] == {"name": "Noah Kim"}


def test_transition_returns_entity_and_record(client: TestClient, actor_roles: list[str]) -> None:
    lead = _create(client, "lead")
    _act_as(actor_roles, "front_desk")

    response = client.post(
        f"/entities/lead/{lead['id']}/transitions",
        json={"action": "contact", "reason": "called back"},
        headers={"X-Correlation-Id": "corr-lead-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["replayed"] is False
    assert body["entity"]["status"] == "CONTACTED"
    assert body["transition"]["from_status"] == "NEW"
    assert body["transition"]["to_status"] == "CONTACTED"
    assert body["transition"]["reason"] == "called back"
    assert body["transition"]["correlation_id"] == "corr-lead-1"

    history = client.get(f"/entities/lead/{lead['id']}/transitions")
    assert history.status_code == 200
    assert [row["action"] for row in history.json()] == ["contact"]


def test_terminal_state_maps_to_conflict_envelope(client: TestClient, actor_roles: list[str]) -> None:
    lead = _create(client, "lead")
    _act_as(actor_roles, "front_desk")
    lost = client.post(
        f"/entities/lead/{lead['id']}/transitions",
        json={"action": "mark_lost", "fieldUpdates": {"lostReason": "moved away"}},
    )
    assert lost.status_code == 200

    response = client.post(
        f"/entities/lead/{lead['id']}/transitions",
        json={"action": "contact"},
        headers={"X-Correlation-Id": "corr-terminal"},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "TERMINAL_STATE"
    assert "LOST" in body["message"]
    assert body["details"]["status"] == "LOST"
    assert body["correlation_id"] == "corr-terminal"
    assert client.get(f"/entities/lead/{lead['id']}").json()["status"] == "LOST"


def test_missing_fields_map_to_unprocessable(client: TestClient, actor_roles: list[str]) -> None:
    payment = _create(client, "payment", {"amount": 80, "refundAmount": 20})
    _act_as(actor_roles, "billing_manager")

    response = client.post(f"/entities/payment/{payment['id']}/transitions", json={"action": "refund"})

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "PRECONDITION_FAILED"
    assert body["details"]["missing_fields"] == ["refundReason"]


def test_forbidden_role(client: TestClient, actor_roles: list[str]) -> None:
    payment = _create(client, "payment", {"amount": 80})
    _act_as(actor_roles, "front_desk")

    response = client.post(f"/entities/payment/{payment['id']}/transitions", json={"action": "process"})

    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_unknown_action_and_entity(client: TestClient) -> None:
    order = _create(client, "lab_order")

    no_rule = client.post(f"/entities/lab_order/{order['id']}/transitions", json={"action": "ship"})
    assert no_rule.status_code == 409
    assert no_rule.json()["code"] == "NO_SUCH_TRANSITION"

    missing = client.post(f"/entities/lab_order/{uuid.uuid4()}/transitions", json={"action": "submit"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"

    unknown_type = client.get("/entities/invoice")
    assert unknown_type.status_code == 404


def test_idempotency_header_replays(client: TestClient, actor_roles: list[str]) -> None:
    lead = _create(client, "lead")
    _act_as(actor_roles, "front_desk")
    url = f"/entities/lead/{lead['id']}/transitions"

    first = client.post(url, json={"action": "contact"}, headers={"Idempotency-Key": "idem-api-1"})
    second = client.post(url, json={"action": "contact"}, headers={"Idempotency-Key": "idem-api-1"})
    mismatch = client.post(
        url,
        json={"action": "contact", "reason": "different"},
        headers={"Idempotency-Key": "idem-api-1"},
    )

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["transition"]["id"] == first.json()["transition"]["id"]
    assert mismatch.status_code == 409
    assert mismatch.json()["code"] == "IDEMPOTENCY_CONFLICT"
    assert len(client.get(f"/entities/lead/{lead['id']}/transitions").json()) == 1


def test_patch_entity_with_stale_version(client: TestClient) -> None:
    lead = _create(client, "lead", {"name": "Mia"})
    url = f"/entities/lead/{lead['id']}"

    updated = client.patch(url, json={"row_version": 1, "payload": {"phone": "555-0199"}})
    stale = client.patch(url, json={"row_version": 1, "payload": {"phone": "555-0100"}})

    assert updated.status_code == 200
    assert updated.json()["payload"] == {"name": "Mia", "phone": "555-0199"}
    assert stale.status_code == 409
    assert stale.json()["code"] == "CONCURRENT_MODIFICATION"


def test_available_actions(client: TestClient, actor_roles: list[str]) -> None:
    order = _create(client, "lab_order")
    _act_as(actor_roles, "clinical_staff")

    response = client.get(f"/entities/lab_order/{order['id']}/actions")

    assert response.status_code == 200
    actions = {item["action"]: item for item in response.json()}
    assert set(actions) == {"cancel", "submit"}
    assert actions["submit"]["missing_fields"] == ["vendorId"]


def test_list_entities_by_status(client: TestClient, actor_roles: list[str]) -> None:
    first = _create(client, "lead")
    _create(client, "lead")
    _act_as(actor_roles, "front_desk")
    client.post(f"/entities/lead/{first['id']}/transitions", json={"action": "contact"})

    response = client.get("/entities/lead", params={"status": "CONTACTED"})

    assert response.status_code == 200
    assert [item["id"] for item in response.json()] == [first["id"]]


def test_workflow_definitions(client: TestClient) -> None:
    listing = client.get("/workflows")
    assert listing.status_code == 200
    assert {item["entity_type"] for item in listing.json()} == {
        "lead",
        "payment",
        "refund",
        "lab_order",
        "treatment_plan",
    }

    payment = client.get("/workflows/payment")
    assert payment.status_code == 200
    body = payment.json()
    assert body["initial_status"] == "PENDING"
    assert body["terminal_statuses"] == ["CANCELLED", "REFUNDED"]
    refund = next(rule for rule in body["rules"] if rule["action"] == "refund")
    assert refund["from_status"] == "*"
    assert refund["preconditions"] == ["refund_within_payment_amount"]

    missing = client.get("/workflows/invoice")
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "payment" in body["workflows"]


def test_cancelled_payment_refund_is_terminal_for_any_caller(client: TestClient, actor_roles: list[str]) -> None:
    payment = _create(client, "payment", {"amount": 60})
    _act_as(actor_roles, "billing")
    cancelled = client.post(
        f"/entities/payment/{payment['id']}/transitions",
        json={"action": "cancel", "fieldUpdates": {"cancelReason": "duplicate"}},
    )
    assert cancelled.status_code == 200

    _act_as(actor_roles, "front_desk")
    response = client.post(f"/entities/payment/{payment['id']}/transitions", json={"action": "refund"})

    assert response.status_code == 409
    assert response.json()["code"] == "TERMINAL_STATE"


def test_error_status_mapping() -> None:
    assert _STATUS_BY_ERROR[PreconditionFailedError] == 422
    assert _STATUS_BY_ERROR[TerminalStateError] == 409
    assert _STATUS_BY_ERROR[ForbiddenTransitionError] == 403
