"""Pytest configuration and fixtures."""

import base64
import hashlib
import json
import os
import re
import tempfile

import httpx
import pytest

# Point settings at a throwaway data dir before importing app modules
os.environ["IMAGE_DISPATCHER_DATA_DIR"] = tempfile.mkdtemp(prefix="image-dispatcher-tests-")
os.environ["IMAGE_DISPATCHER_GITHUB_TOKEN"] = "test-token"
os.environ.pop("IMAGE_DISPATCHER_API_TOKEN", None)
os.environ.pop("IMAGE_DISPATCHER_DATABASE_URL", None)

from sqlmodel import SQLModel  # noqa: E402

from image_dispatcher import build_service  # noqa: E402
from image_dispatcher.build_service import Dispatcher  # noqa: E402
from image_dispatcher.config import settings  # noqa: E402
from image_dispatcher.database import engine  # noqa: E402
from image_dispatcher.github_api import GitHubClient, build_client  # noqa: E402
from image_dispatcher.registry import RegistryClient  # noqa: E402

RUN_ID = 101
RUN_URL = "https://github.com/octo/app/actions/runs/101"
DIGEST = "sha256:" + "a" * 64


class FakeClock:
    """Monotonic clock advanced only by ``sleep``."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += max(seconds, 1.0)

    def monotonic(self):
        return self.now


class FakeGitHub:
    """In-memory stand-in for the GitHub Actions and Packages endpoints."""

    def __init__(self):
        self.dispatches = []
        self.dispatch_error = None  # (status, message)
        self.empty_listings = 0
        self.never_list_runs = False
        self.statuses = ["in_progress", "completed"]
        self.conclusion = "success"
        self.jobs = [
            {
                "id": 1,
                "name": "build",
                "conclusion": "success",
                "steps": [
                    {"name": "Checkout repository", "conclusion": "success"},
                    {"name": "Log in to the Container registry", "conclusion": "success"},
                    {"name": "Build and push Docker image", "conclusion": "success"},
                ],
            }
        ]
        self.job_logs = {1: "#12 pushing layers\n#12 DONE 3.1s\n"}
        self.cancelled = []
        self.packages = {}
        self.requests = []
        self.run_title = None
        self.unreachable = False
        self.poll_timeout = False

    def fail_step(self, step_name, log_text):
        job = self.jobs[0]
        job["conclusion"] = "failure"
        for step in job["steps"]:
            if step["name"] == step_name:
                step["conclusion"] = "failure"
                break
        self.job_logs[job["id"]] = log_text
        self.conclusion = "failure"

    def _run(self, status):
        dispatch_id = self.dispatches[-1]["inputs"]["dispatch_id"] if self.dispatches else ""
        run = {
            "id": RUN_ID,
            "name": "Publish image",
            "display_title": self.run_title if self.run_title is not None else f"Publish image {dispatch_id}",
            "status": status,
            "html_url": RUN_URL,
            "created_at": "2026-10-18T10:00:00Z",
        }
        if status == "completed":
            run["conclusion"] = self.conclusion
        return run

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        method = request.method

        if request.url.host == "logs.example":
            job_id = int(path.rsplit("/", 1)[-1])
            return httpx.Response(200, text=self.job_logs.get(job_id, ""))

        if method == "POST" and re.fullmatch(r"/repos/[^/]+/[^/]+/actions/workflows/[^/]+/dispatches", path):
            self.dispatches.append(json.loads(request.content))
            if self.dispatch_error:
                status, message = self.dispatch_error
                return httpx.Response(status, json={"message": message})
            return httpx.Response(204)

        if method == "GET" and re.fullmatch(r"/repos/[^/]+/[^/]+/actions/workflows/[^/]+/runs", path):
            if self.never_list_runs or not self.dispatches:
                return httpx.Response(200, json={"total_count": 0, "workflow_runs": []})
            if self.empty_listings:
                self.empty_listings -= 1
                return httpx.Response(200, json={"total_count": 0, "workflow_runs": []})
            return httpx.Response(200, json={"total_count": 1, "workflow_runs": [self._run("queued")]})

        match = re.fullmatch(r"/repos/[^/]+/[^/]+/actions/runs/(\d+)(/\w+)?", path)
        if match:
            suffix = match.group(2)
            if method == "POST" and suffix == "/cancel":
                self.cancelled.append(int(match.group(1)))
                return httpx.Response(202, json={})
            if method == "GET" and suffix == "/jobs":
                return httpx.Response(200, json={"total_count": len(self.jobs), "jobs": self.jobs})
            if method == "GET" and suffix is None:
                if self.poll_timeout:
                    raise httpx.ReadTimeout("timed out", request=request)
                status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
                return httpx.Response(200, json=self._run(status))

        match = re.fullmatch(r"/repos/[^/]+/[^/]+/actions/jobs/(\d+)/logs", path)
        if match:
            return httpx.Response(302, headers={"Location": f"https://logs.example/job/{match.group(1)}"})

        match = re.fullmatch(r"/(users|orgs)/([^/]+)/packages/container/([^/]+)", path)
        if match:
            kind, owner, name = match.groups()
            package = self.packages.get((kind, owner, name))
            if package is None:
                return httpx.Response(404, json={"message": "Package not found."})
            return httpx.Response(200, json=package)

        return httpx.Response(404, json={"message": "Not Found"})


class FakeRegistry:
    """Token endpoint plus manifests and config blobs for a GHCR-like registry."""

    def __init__(self):
        self.manifests = {}
        self.configs = {}
        self.public = set()
        self.reject_credentials = False
        self.unreachable = False

    def add_index(self, repository, tag, platforms, digest=DIGEST):
        self.manifests[(repository, tag)] = {
            "media_type": "application/vnd.oci.image.index.v1+json",
            "platforms": platforms,
            "digest": digest,
        }

    def add_single(self, repository, tag, platform="linux/amd64", digest=DIGEST):
        config_digest = "sha256:" + hashlib.sha256(f"{repository}:{tag}".encode()).hexdigest()
        os_name, arch, *variant = platform.split("/")
        config = {"os": os_name, "architecture": arch, "rootfs": {"type": "layers"}}
        if variant:
            config["variant"] = variant[0]
        self.configs[(repository, config_digest)] = config
        self.manifests[(repository, tag)] = {
            "media_type": "application/vnd.oci.image.manifest.v1+json",
            "platforms": [],
            "config_digest": config_digest,
            "digest": digest,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if path == "/token":
            auth = request.headers.get("Authorization")
            if auth and auth.startswith("Basic "):
                if self.reject_credentials:
                    return httpx.Response(401, text="unauthorized")
                user, _, password = base64.b64decode(auth[6:]).decode().partition(":")
                return httpx.Response(200, json={"token": f"auth:{password}"})
            return httpx.Response(200, json={"token": "anonymous"})

        match = re.fullmatch(r"/v2/(.+)/(manifests|blobs)/([^/]+)", path)
        if not match:
            return httpx.Response(404)
        repository, kind, reference = match.groups()
        bearer = request.headers.get("Authorization", "")
        if bearer == "Bearer anonymous" and repository not in self.public:
            return httpx.Response(401, json={"errors": [{"code": "UNAUTHORIZED"}]})
        if kind == "blobs":
            config = self.configs.get((repository, reference))
            if config is None:
                return httpx.Response(404, json={"errors": [{"code": "BLOB_UNKNOWN"}]})
            return httpx.Response(200, json=config)
        manifest = self.manifests.get((repository, reference))
        if manifest is None:
            return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
        body = {"schemaVersion": 2, "mediaType": manifest["media_type"]}
        if manifest.get("config_digest"):
            body["config"] = {
                "mediaType": "application/vnd.oci.image.config.v1+json",
                "digest": manifest["config_digest"],
            }
        if manifest["platforms"]:
            entries = []
            for platform in manifest["platforms"]:
                os_name, arch, *variant = platform.split("/")
                entry = {"os": os_name, "architecture": arch}
                if variant:
                    entry["variant"] = variant[0]
                entries.append({"digest": "sha256:" + "b" * 64, "platform": entry})
            entries.append({"digest": "sha256:" + "c" * 64, "platform": {"os": "unknown", "architecture": "unknown"}})
            body["manifests"] = entries
        return httpx.Response(
            200,
            json=body,
            headers={"Docker-Content-Digest": manifest["digest"], "Content-Type": manifest["media_type"]},
        )


@pytest.fixture(autouse=True)
def clean_db():
    """Recreate all tables for every test."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def fake_registry():
    registry = FakeRegistry()
    registry.add_index("octo/app", "latest", ["linux/amd64"])
    return registry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote_branches(monkeypatch):
    """Branches visible to ``git ls-remote``; maps branch -> sha."""
    branches = {"main": "0123456789abcdef0123456789abcdef01234567"}

    def fake_get_remote_sha(repo_url, token, branch):
        return branches.get(branch)

    monkeypatch.setattr(build_service, "get_remote_sha", fake_get_remote_sha)
    return branches


@pytest.fixture
def dispatcher(fake_github, fake_registry, clock, remote_branches):
    github = GitHubClient(build_client(settings, transport=httpx.MockTransport(fake_github.handler)))
    registry = RegistryClient(settings, transport=httpx.MockTransport(fake_registry.handler))
    instance = Dispatcher(github, registry, sleep=clock.sleep, clock=clock.monotonic)
    yield instance
    instance.close()
