"""Health endpoint tests."""

from fastapi.testclient import TestClient

from zapdesk.api.factory import create_app

client = TestClient(create_app())


def test_health_returns_200():
    response = client.get("/health")
    assert response.status_code == 200


def test_health_returns_ok_status():
    response = client.get("/health")
    assert response.json() == {"status": "ok"}
