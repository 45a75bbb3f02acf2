"""Tests for recipe video upload, status and playback routes.

Services are MagicMocks spec'd on the real classes; the coordinator's
behaviour itself is covered in tests/test_services/test_ingest.py.
"""

import json
import uuid
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi import status

from recipestream.clients.authorization import AuthorizationClient, AuthorizationDecision
from recipestream.exceptions import Conflict, Denied, NotFound, QuotaExceeded
from recipestream.models import JobState, VideoState
from recipestream.services.encoder import Rung
from recipestream.services.ingest import (
    IngestCoordinator,
    PlaybackAccess,
    RenditionAccess,
    SubmitResult,
    VideoStatus,
)
from recipestream.services.signed_url import AccessDescriptor
from tests.support.app_state import installed_services

VIDEO_ID = uuid.UUID("6f1c2a8e-0000-4000-8000-000000000001")
JOB_ID = uuid.UUID("6f1c2a8e-0000-4000-8000-000000000002")


@pytest.fixture
def coordinator() -> MagicMock:
    return MagicMock(spec=IngestCoordinator)


@pytest.fixture
def authorization() -> MagicMock:
    client = MagicMock(spec=AuthorizationClient)
    client.decide.return_value = AuthorizationDecision(principal="user-1", allowed=True)
    return client


@pytest.fixture
def client(coordinator, authorization):
    with installed_services(coordinator=coordinator, authorization=authorization) as test_client:
        yield test_client


def _descriptor(key: str, expires_at: int, kind: str = "segment") -> AccessDescriptor:
    return AccessDescriptor(
        url=f"https://media.recipes.test/media/{key}?sig=abc",
        key=key,
        backend="primary",
        kind=kind,
        principal="user-1",
        issued_at=expires_at - 600,
        expires_at=expires_at,
        cache_control="public, max-age=300" if kind == "manifest" else "public, max-age=86400, immutable",
    )


class TestUploadVideo:
    def test_upload_returns_202(self, client, coordinator):
        seen = {}

        async def submit(master):
            seen["master"] = master
            seen["spooled"] = Path(master.path).read_bytes()
            return SubmitResult(VIDEO_ID, JOB_ID, VideoState.PENDING, "masters/recipe_pasta/0/abc.mp4")

        coordinator.submit.side_effect = submit

        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": "recipe_pasta", "ordinal": "0"},
            files={"file": ("pasta.mp4", b"fake master bytes", "video/mp4")},
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert response.json() == {
            "video_id": str(VIDEO_ID),
            "job_id": str(JOB_ID),
            "state": "pending",
            "master_key": "masters/recipe_pasta/0/abc.mp4",
        }
        master = seen["master"]
        assert (master.recipe_id, master.ordinal, master.filename) == ("recipe_pasta", 0, "pasta.mp4")
        assert master.content_type == "video/mp4"
        assert len(master.ladder) == 4
        assert seen["spooled"] == b"fake master bytes"
        assert not Path(master.path).exists()

    def test_upload_with_custom_ladder(self, client, coordinator):
        coordinator.submit.return_value = SubmitResult(VIDEO_ID, JOB_ID, VideoState.PENDING, "masters/k.mp4")
        ladder = [{"width": 640, "height": 360, "bitrate_kbps": 800}]

        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": "recipe_pasta", "ordinal": "1", "ladder": json.dumps(ladder)},
            files={"file": ("pasta.mp4", b"x", "video/mp4")},
        )

        assert response.status_code == status.HTTP_202_ACCEPTED
        assert coordinator.submit.call_args.args[0].ladder == [Rung(640, 360, 800)]

    @pytest.mark.parametrize(
        "ladder",
        ["not json", json.dumps([{"width": 640}]), json.dumps([{"width": 640, "height": -1, "bitrate_kbps": 1}])],
    )
    def test_invalid_ladder_returns_422(self, client, coordinator, ladder):
        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": "recipe_pasta", "ordinal": "0", "ladder": ladder},
            files={"file": ("pasta.mp4", b"x", "video/mp4")},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        coordinator.submit.assert_not_called()

    @pytest.mark.parametrize("recipe_id", ["pasta/../x", "caf\u00e9", "recipe pasta", "recipe?id=1"])
    def test_unsafe_recipe_id_returns_422(self, client, coordinator, recipe_id):
        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": recipe_id, "ordinal": "0"},
            files={"file": ("pasta.mp4", b"x", "video/mp4")},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        coordinator.submit.assert_not_called()

    def test_missing_file_returns_422(self, client):
        response = client.post("/api/v1/videos", data={"recipe_id": "recipe_pasta", "ordinal": "0"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_negative_ordinal_returns_422(self, client):
        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": "recipe_pasta", "ordinal": "-1"},
            files={"file": ("pasta.mp4", b"x", "video/mp4")},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_active_job_returns_409(self, client, coordinator):
        coordinator.submit.side_effect = Conflict("already active", recipe_video_id=VIDEO_ID, job_id=JOB_ID)

        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": "recipe_pasta", "ordinal": "0"},
            files={"file": ("pasta.mp4", b"x", "video/mp4")},
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["job_id"] == str(JOB_ID)
        assert response.json()["recipe_video_id"] == str(VIDEO_ID)

    def test_storage_quota_returns_507(self, client, coordinator):
        coordinator.submit.side_effect = QuotaExceeded("bucket full", backend="primary")

        response = client.post(
            "/api/v1/videos",
            data={"recipe_id": "recipe_pasta", "ordinal": "0"},
            files={"file": ("pasta.mp4", b"x", "video/mp4")},
        )

        assert response.status_code == status.HTTP_507_INSUFFICIENT_STORAGE


class TestVideoStatus:
    def test_ready_video(self, client, coordinator):
        coordinator.status.return_value = VideoStatus(
            video_id=VIDEO_ID,
            recipe_id="recipe_pasta",
            ordinal=0,
            state=VideoState.READY,
            manifest_key="videos/v/renditions/j/a1/master.m3u8",
            job_id=JOB_ID,
            job_state=JobState.SUCCEEDED,
            attempt_count=1,
        )

        response = client.get(f"/api/v1/videos/{VIDEO_ID}")

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["state"] == "ready"
        assert body["manifest_key"] == "videos/v/renditions/j/a1/master.m3u8"
        assert body["job_state"] == "succeeded"

    def test_unknown_video_returns_404(self, client, coordinator):
        coordinator.status.side_effect = NotFound("no such video")

        response = client.get(f"/api/v1/videos/{VIDEO_ID}")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"detail": "Not Found"}

    def test_invalid_uuid_returns_422(self, client):
        assert client.get("/api/v1/videos/not-a-uuid").status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestPlayback:
    def _access(self) -> PlaybackAccess:
        return PlaybackAccess(
            video_id=VIDEO_ID,
            master=_descriptor("videos/v/master.m3u8", 1_800_000_600, kind="manifest"),
            renditions=[
                RenditionAccess(
                    label="720p",
                    bitrate_kbps=2800,
                    width=1280,
                    height=720,
                    manifest=_descriptor("videos/v/720p/index.m3u8", 1_800_000_600, kind="manifest"),
                    segments=[_descriptor("videos/v/720p/seg_00000.ts", 1_800_001_800)],
                    segment_offset=0,
                    total_segments=3,
                    next_offset=1,
                )
            ],
        )

    def test_authorized_playback(self, client, coordinator, authorization):
        coordinator.playback_access.return_value = self._access()

        response = client.post(
            f"/api/v1/videos/{VIDEO_ID}/playback",
            json={"segment_offset": 0},
            headers={"X-Principal-Id": "user-1"},
        )

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["expires_at"] == 1_800_000_600
        assert body["master"]["kind"] == "manifest"
        assert body["renditions"][0]["next_offset"] == 1
        assert body["renditions"][0]["segments"][0]["cache_control"] == "public, max-age=86400, immutable"
        authorization.decide.assert_awaited_once_with("user-1", f"videos/{VIDEO_ID}")
        call = coordinator.playback_access.call_args
        assert call.args[:2] == (VIDEO_ID, "user-1")
        assert call.kwargs["client_ip"] is None

    def test_segment_offset_and_ip_binding(self, client, coordinator):
        coordinator.playback_access.return_value = self._access()

        client.post(
            f"/api/v1/videos/{VIDEO_ID}/playback?bind_ip=true",
            json={"segment_offset": 3},
            headers={"X-Principal-Id": "user-1"},
        )

        call = coordinator.playback_access.call_args
        assert call.kwargs["segment_offset"] == 3
        assert call.kwargs["client_ip"] == "testclient"

    def test_denied_and_unknown_are_indistinguishable(self, client, coordinator):
        coordinator.playback_access.side_effect = Denied("refused", principal="user-1")
        denied = client.post(f"/api/v1/videos/{VIDEO_ID}/playback", headers={"X-Principal-Id": "user-1"})

        coordinator.playback_access.side_effect = NotFound("no such video")
        missing = client.post(f"/api/v1/videos/{VIDEO_ID}/playback", headers={"X-Principal-Id": "user-1"})

        assert denied.status_code == missing.status_code == status.HTTP_404_NOT_FOUND
        assert denied.json() == missing.json() == {"detail": "Not Found"}

    def test_missing_principal_returns_422(self, client, coordinator):
        response = client.post(f"/api/v1/videos/{VIDEO_ID}/playback")

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        coordinator.playback_access.assert_not_called()

    def test_negative_offset_returns_422(self, client):
        response = client.post(
            f"/api/v1/videos/{VIDEO_ID}/playback",
            json={"segment_offset": -1},
            headers={"X-Principal-Id": "user-1"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestServicesNotConfigured:
    def test_routes_return_503_without_services(self):
        with installed_services() as client:
            response = client.get(f"/api/v1/videos/{VIDEO_ID}")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
