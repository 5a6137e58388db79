"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from image_dispatcher.app import create_app
from image_dispatcher.config import settings
from image_dispatcher.models import BuildRequest


class RecordingQueue:
    """Queue stand-in that records ids instead of running them."""

    def __init__(self):
        self.enqueued = []
        self.started = False

    async def startup(self):
        self.started = True

    async def shutdown(self):
        self.started = False

    async def enqueue(self, dispatch_id):
        self.enqueued.append(dispatch_id)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def client(dispatcher, queue):
    app = create_app(dispatcher=dispatcher, queue=queue)
    with TestClient(app) as test_client:
        yield test_client


def _payload(**overrides):
    payload = {"repository": "octo/app", "branch": "main", "tags": ["latest"], "platforms": ["linux/amd64"]}
    payload.update(overrides)
    return payload


class TestDispatchRoutes:
    def test_health(self, client, queue):
        assert client.get("/api/health").json() == {"status": "ok"}
        assert queue.started is True

    def test_create_enqueues(self, client, queue):
        response = client.post("/api/dispatches", json=_payload())

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"
        assert body["tags"] == ["latest"]
        assert body["triggered_by"] == "api"
        assert queue.enqueued == [body["id"]]

    def test_create_rejects_invalid_request(self, client, queue):
        response = client.post("/api/dispatches", json=_payload(repository="no-slash"))

        assert response.status_code == 422
        assert queue.enqueued == []

    def test_list_and_get(self, client, dispatcher):
        result = dispatcher.submit(_request_model())

        listing = client.get("/api/dispatches").json()
        detail = client.get(f"/api/dispatches/{result.dispatch_id}").json()

        assert [item["id"] for item in listing] == [result.dispatch_id]
        assert detail["status"] == "success"
        assert detail["image_reference"] == "ghcr.io/octo/app:latest"

    def test_get_unknown(self, client):
        assert client.get("/api/dispatches/404").status_code == 404

    def test_log(self, client, dispatcher):
        result = dispatcher.submit(_request_model())

        response = client.get(f"/api/dispatches/{result.dispatch_id}/log")

        assert response.status_code == 200
        assert "Published ghcr.io/octo/app:latest" in response.text

    def test_log_missing(self, client):
        created = client.post("/api/dispatches", json=_payload()).json()

        assert client.get(f"/api/dispatches/{created['id']}/log").status_code == 404

    def test_cancel_queued(self, client):
        created = client.post("/api/dispatches", json=_payload()).json()

        response = client.post(f"/api/dispatches/{created['id']}/cancel")

        assert response.status_code == 200
        assert response.json()["failure_kind"] == "cancelled"

    def test_cancel_finished_conflicts(self, client, dispatcher):
        result = dispatcher.submit(_request_model())

        assert client.post(f"/api/dispatches/{result.dispatch_id}/cancel").status_code == 409


class TestPackageRoutes:
    def test_public_image(self, client, fake_registry):
        fake_registry.public.add("octo/app")

        response = client.post("/api/packages/public", json={"image_reference": "ghcr.io/octo/app:latest"})

        assert response.status_code == 200
        assert response.json()["public"] is True

    def test_private_image(self, client, fake_github):
        fake_github.packages[("users", "octo", "app")] = {"visibility": "private", "owner": {"type": "User"}}

        response = client.post("/api/packages/public", json={"image_reference": "ghcr.io/octo/app:latest"})

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["visibility"] == "private"
        assert detail["settings_url"].endswith("/users/octo/packages/container/app/settings")

    def test_malformed_reference(self, client):
        response = client.post("/api/packages/public", json={"image_reference": "app"})

        assert response.status_code == 422


class TestApiToken:
    def test_token_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_token", "s3cret")

        assert client.get("/api/dispatches").status_code == 401
        assert client.get("/api/dispatches", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/api/dispatches", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def _request_model():
    return BuildRequest(**_payload())
