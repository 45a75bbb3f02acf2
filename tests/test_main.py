"""Tests for the FastAPI application shell.

Tests cover:
- Health check endpoint (/health)
- Storage error handlers mapped to HTTP status codes
- Lifespan without DATABASE_URL (routes answer 503)
"""

import uuid
from unittest.mock import MagicMock

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from recipestream import main
from recipestream.exceptions import (
    InvalidStateTransitionError,
    PermanentError,
    QuotaExceeded,
    TransientError,
)
from recipestream.main import app
from recipestream.models import JobState
from recipestream.services.ingest import IngestCoordinator
from tests.support.app_state import installed_services


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


class TestHealthEndpoint:
    def test_health_returns_200(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["status"] == "healthy"
        assert body["service"] == "recipe-stream-core"
        assert isinstance(body["database_configured"], bool)


class TestErrorHandlers:
    @pytest.mark.parametrize(
        ("error", "expected_status", "detail"),
        [
            (PermanentError("AccessDenied", backend="minio-eu"), 502, "Storage backend rejected the request"),
            (QuotaExceeded("bucket full", backend="minio-eu"), 507, "Storage quota exceeded"),
            (TransientError("SlowDown", backend="minio-eu"), 503, "Storage temporarily unavailable"),
        ],
    )
    def test_storage_errors(self, error, expected_status, detail):
        coordinator = MagicMock(spec=IngestCoordinator)
        coordinator.status.side_effect = error

        with installed_services(coordinator=coordinator) as client:
            response = client.get(f"/api/v1/videos/{uuid.uuid4()}")

        assert response.status_code == expected_status
        assert response.json() == {"detail": detail}

    def test_storage_error_details_are_not_leaked(self):
        coordinator = MagicMock(spec=IngestCoordinator)
        coordinator.status.side_effect = PermanentError("InvalidAccessKeyId AKIASECRET", backend="minio-eu")

        with installed_services(coordinator=coordinator) as client:
            response = client.get(f"/api/v1/videos/{uuid.uuid4()}")

        assert "AKIASECRET" not in response.text

    def test_invalid_transition_is_conflict(self):
        coordinator = MagicMock(spec=IngestCoordinator)
        coordinator.status.side_effect = InvalidStateTransitionError(
            "Invalid transition: succeeded -> queued",
            from_status=JobState.SUCCEEDED,
            to_status=JobState.QUEUED,
        )

        with installed_services(coordinator=coordinator) as client:
            response = client.get(f"/api/v1/videos/{uuid.uuid4()}")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert "succeeded -> queued" in response.json()["detail"]


class TestLifespan:
    def test_starts_without_database(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(main, "async_session_factory", None)

        with TestClient(app) as client:
            assert not hasattr(app.state, "coordinator")
            response = client.get(f"/api/v1/videos/{uuid.uuid4()}")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
