"""
Tests for the FastAPI application.

Exercises the error envelope, CORS and public endpoints through the ASGI app
without touching the database.
"""

from collections.abc import Iterator
from unittest.mock import AsyncMock

import pytest
from conftest import create_auth_context
from fastapi.testclient import TestClient

from grattia.api.dependencies import get_auth_context
from grattia.db.session import get_read_db, get_write_db
from grattia.main import app


async def _mock_db():
    yield AsyncMock()


@pytest.fixture
def client() -> Iterator[TestClient]:
    app.dependency_overrides[get_write_db] = _mock_db
    app.dependency_overrides[get_read_db] = _mock_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestErrorEnvelope:
    def test_missing_auth_uses_error_key(self, client: TestClient):
        response = client.get("/v1/points/history")

        assert response.status_code == 401
        assert response.json() == {"error": "Authorization header required"}

    def test_validation_error_lists_details(self, client: TestClient):
        app.dependency_overrides[get_auth_context] = lambda: create_auth_context()
        response = client.post(
            "/v1/points/give",
            json={"recipient_id": "not-a-uuid", "points": 0},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "Invalid request"
        assert isinstance(body["details"], list)
        assert body["details"]

    def test_unknown_route_is_404(self, client: TestClient):
        response = client.get("/v1/does-not-exist")

        assert response.status_code == 404
        assert "error" in response.json()

    def test_scheduler_endpoint_rejects_wrong_secret(self, client: TestClient):
        response = client.post(
            "/v1/jobs/monthly-points-allocation",
            headers={"X-Scheduler-Secret": "wrong"},
        )

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid scheduler secret"}


class TestPublicEndpoints:
    def test_root(self, client: TestClient):
        body = client.get("/").json()

        assert body["status"] == "running"
        assert body["service"] == "Grattia API"

    def test_metrics(self, client: TestClient):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "grattia_http_requests_total" in response.text

    def test_cors_preflight(self, client: TestClient):
        response = client.options(
            "/v1/points/give",
            headers={
                "Origin": "https://app.grattia.example",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers
