from __future__ import annotations

import json
import logging
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.business.subscription.catalog import plan_catalog
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    plan_catalog.invalidate()
    yield
    get_settings.cache_clear()
    plan_catalog.invalidate()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["admin"], permissions=["ALL"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_plan(client: TestClient) -> str:
    response = client.post(
        "/subscriptions/plans",
        json={
            "name": "Log Plan",
            "prices": {"USD": "15.00"},
            "max_gyms": 1,
            "max_clients_per_gym": 10,
            "max_users_per_gym": 2,
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/subscriptions/organizations/org-missing", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/subscriptions/organizations/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "organization_id", None) == "org-missing"
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_conflicts_log_at_warning(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    plan_id = _create_plan(client)
    onboard = client.post("/subscriptions/organizations/org-1/onboard", json={"plan_id": plan_id})
    assert onboard.status_code == 201

    response = client.post(
        "/subscriptions/organizations/org-1/renew",
        json={"expected_version": 9},
        headers={"X-Correlation-Id": "conflict-1"},
    )
    assert response.status_code == 409

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert any(
        record.levelno == logging.WARNING
        and getattr(record, "status_code", None) == 409
        and getattr(record, "correlation_id", None) == "conflict-1"
        for record in records
    )


def test_transition_logs_carry_subscription_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    plan_id = _create_plan(client)

    response = client.post(
        "/subscriptions/organizations/org-log/onboard",
        json={"plan_id": plan_id},
        headers={"X-Correlation-Id": "transition-1"},
    )
    assert response.status_code == 201

    transition_records = [
        record for record in caplog.records if record.getMessage() == "subscription.transition_committed"
    ]
    assert transition_records
    record = transition_records[-1]
    assert getattr(record, "organization_id", None) == "org-log"
    assert getattr(record, "plan_id", None) == plan_id
    assert getattr(record, "correlation_id", None) == "transition-1"

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["correlation_id"] == "transition-1"
    assert payload["fields"]["organization_id"] == "org-log"
    assert payload["fields"]["operation_type"] == "activation"
