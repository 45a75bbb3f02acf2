"""Tests for transcode job cancellation route."""

import uuid
from unittest.mock import MagicMock

import pytest
from fastapi import status

from recipestream.exceptions import Conflict, NotFound
from recipestream.models import JobState
from recipestream.services.ingest import IngestCoordinator
from tests.support.app_state import installed_services


@pytest.fixture
def coordinator() -> MagicMock:
    return MagicMock(spec=IngestCoordinator)


@pytest.fixture
def client(coordinator):
    with installed_services(coordinator=coordinator) as test_client:
        yield test_client


class TestCancelJob:
    def test_cancel_queued_job(self, client, coordinator):
        job_id = uuid.uuid4()
        coordinator.cancel.return_value = JobState.FAILED

        response = client.post(f"/api/v1/jobs/{job_id}/cancel")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"job_id": str(job_id), "state": "failed"}
        coordinator.cancel.assert_awaited_once_with(job_id)

    def test_cancel_running_job_reports_running(self, client, coordinator):
        coordinator.cancel.return_value = JobState.RUNNING

        response = client.post(f"/api/v1/jobs/{uuid.uuid4()}/cancel")

        assert response.json()["state"] == "running"

    def test_unknown_job_returns_404(self, client, coordinator):
        coordinator.cancel.side_effect = NotFound("no such job")

        response = client.post(f"/api/v1/jobs/{uuid.uuid4()}/cancel")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"detail": "Not Found"}

    def test_concurrent_change_returns_409(self, client, coordinator):
        coordinator.cancel.side_effect = Conflict("job changed concurrently; retry the cancellation")

        response = client.post(f"/api/v1/jobs/{uuid.uuid4()}/cancel")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["job_id"] is None
