"""Thin GitHub REST client for workflow dispatch, run tracking and packages."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"


class GitHubAPIError(RuntimeError):
    """Error raised when the GitHub API answers with an error status.

    ``status_code`` is 0 when no response arrived at all.
    """

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"GitHub API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


def build_client(
    settings: Settings | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Create an :class:`httpx.Client` preconfigured for the GitHub API."""
    settings = settings or default_settings
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": API_VERSION,
        "User-Agent": "image-dispatcher",
    }
    if settings.token:
        headers["Authorization"] = f"Bearer {settings.token}"
    return httpx.Client(
        base_url=settings.github_api_url,
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        follow_redirects=True,
        headers=headers,
        transport=transport,
    )


def _iso(dt: datetime) -> str:
    aware = dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class GitHubClient:
    """GitHub Actions and Packages operations used by the dispatcher."""

    def __init__(self, client: httpx.Client | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings
        self.client = client or build_client(self.settings)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        logger.debug("GitHub %s %s", method, path)
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            logger.error("GitHub %s %s failed: %s", method, path, exc)
            raise GitHubAPIError(0, f"{type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            message = payload.get("message", response.text) if isinstance(payload, dict) else response.text
            logger.error("GitHub %s %s failed with %s: %s", method, path, response.status_code, message)
            raise GitHubAPIError(response.status_code, message)
        return response

    def dispatch_workflow(
        self,
        repository: str,
        workflow: str,
        ref: str,
        inputs: dict[str, str],
    ) -> None:
        """Trigger a ``workflow_dispatch`` event on ``ref``."""
        self._request(
            "POST",
            f"/repos/{repository}/actions/workflows/{quote(workflow, safe='')}/dispatches",
            json={"ref": ref, "inputs": inputs},
        )
        logger.info("Dispatched workflow %s on %s@%s", workflow, repository, ref)

    def list_workflow_runs(
        self,
        repository: str,
        workflow: str,
        branch: str,
        created_after: datetime,
    ) -> list[dict[str, Any]]:
        """Return ``workflow_dispatch`` runs on ``branch`` created after a timestamp."""
        response = self._request(
            "GET",
            f"/repos/{repository}/actions/workflows/{quote(workflow, safe='')}/runs",
            params={
                "event": "workflow_dispatch",
                "branch": branch,
                "created": f">={_iso(created_after)}",
                "per_page": 50,
            },
        )
        return list(response.json().get("workflow_runs", []))

    def get_run(self, repository: str, run_id: int) -> dict[str, Any]:
        return self._request("GET", f"/repos/{repository}/actions/runs/{run_id}").json()

    def cancel_run(self, repository: str, run_id: int) -> None:
        self._request("POST", f"/repos/{repository}/actions/runs/{run_id}/cancel")
        logger.info("Requested cancellation of run %s on %s", run_id, repository)

    def list_jobs(self, repository: str, run_id: int) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"/repos/{repository}/actions/runs/{run_id}/jobs",
            params={"per_page": 100},
        )
        return list(response.json().get("jobs", []))

    def get_job_logs(self, repository: str, job_id: int) -> str:
        """Return the plain-text log of one job (the API redirects to a download URL)."""
        return self._request("GET", f"/repos/{repository}/actions/jobs/{job_id}/logs").text

    def get_container_package(self, owner: str, name: str) -> dict[str, Any]:
        """Return container package metadata for a user- or org-owned package.

        :raises GitHubAPIError: With status 404 when neither owner kind has it.
        """
        package = quote(name, safe="")
        try:
            return self._request("GET", f"/users/{owner}/packages/container/{package}").json()
        except GitHubAPIError as exc:
            if exc.status_code != 404:
                raise
        return self._request("GET", f"/orgs/{owner}/packages/container/{package}").json()

    def package_settings_url(self, owner: str, name: str, owner_type: str = "User") -> str:
        """Web URL of the package settings page where visibility is changed."""
        base = self.settings.github_web_url.rstrip("/")
        package = quote(name, safe="")
        if owner_type == "Organization":
            return f"{base}/orgs/{owner}/packages/container/{package}/settings"
        return f"{base}/users/{owner}/packages/container/{package}/settings"
