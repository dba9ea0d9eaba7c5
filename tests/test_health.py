from unittest.mock import MagicMock

from fastapi import status
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from db.database import get_db
from main import app


def test_liveness_probe(client):
    response = client.get("/api/health/live")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "alive"}


def test_readiness_probe_success(client):
    response = client.get("/api/health/ready")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ready", "storage": "local"}


def get_mock_db_that_fails():
    mock_session = MagicMock(spec=Session)
    mock_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
    yield mock_session


def test_readiness_probe_database_failure(client):
    app.dependency_overrides[get_db] = get_mock_db_that_fails

    response = client.get("/api/health/ready")

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["detail"]["status"] == "database_error"


def test_readiness_probe_without_storage(client):
    original = app.state.storage
    app.state.storage = None
    try:
        response = client.get("/api/health/ready")
    finally:
        app.state.storage = original

    assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
    assert response.json()["detail"]["status"] == "storage_error"
