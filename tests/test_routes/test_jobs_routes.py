"""Tests for /api/v1/jobs routes.

Tests cover:
- Submit validation (422) and creation (201) - P0
- Read, list and cancel - P0
- Retry and extend status checks (404 / 409) - P1
"""

import time
from typing import Any

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from adstudio.exceptions import RemoteOperationError
from adstudio.main import app
from adstudio.models import OperationKind
from adstudio.services.orchestrator import ProductionOrchestrator

PNG = "iVBORw0KGgo="


def job_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "name": "Aurora Headphones",
        "description": "Wireless noise-cancelling headphones",
        "images": [{"mime_type": "image/png", "data": PNG}],
        "aspect_ratio": "16:9",
    }
    payload.update(overrides)
    return payload


def wait_for_status(client: TestClient, job_id: str, expected: str) -> dict[str, Any]:
    for _ in range(200):
        body = client.get(f"/api/v1/jobs/{job_id}").json()
        if body["status"] == expected:
            return body
        time.sleep(0.01)
    raise AssertionError(f"job {job_id} never reached {expected}")


@pytest.fixture
def client(capability, settings):
    """TestClient whose orchestrator polls on a real 10s timer (idle during tests)."""
    app.state.orchestrator = ProductionOrchestrator(capability, settings=settings)
    with TestClient(app) as test_client:
        yield test_client
    del app.state.orchestrator


class TestSubmit:
    def test_submit_returns_201_with_view(self, client: TestClient) -> None:
        """[P0] Valid job is accepted and queued.

        GIVEN: A payload with a product image
        WHEN: POST /api/v1/jobs
        THEN: 201 with an id, a known status and the display label
        """
        response = client.post("/api/v1/jobs", json=job_payload())

        assert response.status_code == status.HTTP_201_CREATED
        body = response.json()
        assert body["id"]
        assert body["name"] == "Aurora Headphones"
        assert body["status"] in {"pending", "initiating", "polling"}
        assert body["label"]

    def test_submit_without_image_returns_422(self, client: TestClient) -> None:
        """[P0] A product image is mandatory."""
        response = client.post("/api/v1/jobs", json=job_payload(images=[]))

        assert response.status_code == 422

    def test_submit_with_bad_aspect_ratio_returns_422(self, client: TestClient) -> None:
        response = client.post("/api/v1/jobs", json=job_payload(aspect_ratio="4:3"))

        assert response.status_code == 422


class TestReadAndCancel:
    def test_get_list_and_delete(self, client: TestClient) -> None:
        """[P0] Job is readable, listed, then gone after DELETE."""
        job_id = client.post("/api/v1/jobs", json=job_payload()).json()["id"]
        body = wait_for_status(client, job_id, "polling")

        assert body["plan_ready"] is True
        assert "video" in body["operations"]
        assert [job["id"] for job in client.get("/api/v1/jobs").json()] == [job_id]

        assert client.delete(f"/api/v1/jobs/{job_id}").status_code == status.HTTP_204_NO_CONTENT
        assert client.get(f"/api/v1/jobs/{job_id}").status_code == status.HTTP_404_NOT_FOUND
        assert client.get("/api/v1/jobs").json() == []

    def test_unknown_job_returns_404(self, client: TestClient) -> None:
        assert client.get("/api/v1/jobs/nope").status_code == status.HTTP_404_NOT_FOUND
        assert client.delete("/api/v1/jobs/nope").status_code == status.HTTP_404_NOT_FOUND
        assert client.post("/api/v1/jobs/nope/retry").status_code == status.HTTP_404_NOT_FOUND


class TestRetryAndExtend:
    def test_retry_of_active_job_returns_409(self, client: TestClient) -> None:
        """[P1] Only failed jobs can be retried."""
        job_id = client.post("/api/v1/jobs", json=job_payload()).json()["id"]
        wait_for_status(client, job_id, "polling")

        response = client.post(f"/api/v1/jobs/{job_id}/retry")

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_retry_failed_job_requeues_it(self, client: TestClient, capability) -> None:
        """[P1] Failed → Pending through the API."""
        capability.start_errors[OperationKind.VIDEO] = [
            RemoteOperationError("Requested entity was not found.", status_code=404)
        ]
        job_id = client.post("/api/v1/jobs", json=job_payload()).json()["id"]
        failed = wait_for_status(client, job_id, "failed")
        assert "Invalid API Key" in failed["error"]

        response = client.post(f"/api/v1/jobs/{job_id}/retry")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] in {"pending", "initiating", "polling"}
        wait_for_status(client, job_id, "polling")

    def test_extend_incomplete_job_returns_409(self, client: TestClient) -> None:
        job_id = client.post("/api/v1/jobs", json=job_payload()).json()["id"]

        response = client.post(f"/api/v1/jobs/{job_id}/extend", json={"prompt": "Zoom out"})

        assert response.status_code == status.HTTP_409_CONFLICT
