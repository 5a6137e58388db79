"""Facilities for dispatching, tracking, and recording remote image builds."""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import suppress
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from sqlmodel import Session, select

from .config import Settings, settings as default_settings
from .database import engine
from .errors import (
    ERRORS_BY_KIND,
    CheckoutError,
    DispatchError,
    PackageVisibilityError,
    RegistryAuthError,
    RegistryPushError,
    RunCancelledError,
    RunTimeoutError,
)
from .git_utils import GitError, append_log, get_remote_sha, repository_url
from .github_api import GitHubAPIError, GitHubClient
from .image_ref import ImageReference
from .models import BuildRequest, BuildResult, Dispatch, DispatchStatus, FailureKind
from .registry import RegistryClient, RegistryError
from .time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

AUTH_MARKERS = (
    "unauthorized",
    "authentication required",
    "denied: permission_denied",
    "denied: installation not allowed",
    "403 forbidden",
)
PUSH_MARKERS = (
    "failed to push",
    "error writing layer blob",
    "failed commit on ref",
    "unexpected status from put request",
    "insufficient_scope",
)
BUILD_MARKERS = (
    "failed to solve",
    "did not complete successfully",
    "failed to compute cache key",
    "dockerfile parse error",
)
# ls-remote and the Actions API do not share a clock
DISPATCH_CLOCK_SKEW = timedelta(seconds=30)
# correlation ids are uuid4 hex strings
CORRELATION_ID_PATTERN = re.compile(r"\b[0-9a-f]{32}\b")


def image_references(settings: Settings, request: BuildRequest) -> list[ImageReference]:
    """Return one registry reference per requested tag, primary tag first."""
    return [
        ImageReference.build(settings.registry_host, request.owner, request.image_name, tag)
        for tag in request.tags
    ]


def missing_platforms(requested: set[str], available: list[str]) -> list[str]:
    """Return requested platforms the registry does not list.

    ``linux/arm64`` is satisfied by ``linux/arm64/v8``.
    """
    return sorted(
        platform
        for platform in requested
        if not any(name == platform or name.startswith(f"{platform}/") for name in available)
    )


def classify_step(step_name: str, log_text: str) -> FailureKind:
    """Map a failed workflow step and its log onto a :class:`FailureKind`."""
    name = step_name.lower()
    log = log_text.lower()
    if "checkout" in name:
        return FailureKind.checkout
    if "login" in name or "log in" in name or "log into" in name:
        return FailureKind.registry_auth
    pushing = "push" in name or "publish" in name
    push_in_log = any(marker in log for marker in PUSH_MARKERS)
    if any(marker in log for marker in AUTH_MARKERS) and (pushing or push_in_log):
        return FailureKind.registry_auth
    if push_in_log:
        return FailureKind.registry_push
    return FailureKind.build


def classify_failure(jobs: list[dict[str, Any]], job_logs: dict[int, str]) -> tuple[FailureKind, str]:
    """Find the first failed step of a run and classify it.

    :param jobs: Job payloads from the GitHub API, including ``steps``.
    :param job_logs: Plain-text logs keyed by job id.
    :returns: Failure kind plus a human readable message.
    """
    for job in jobs:
        if job.get("conclusion") != "failure":
            continue
        log_text = job_logs.get(job.get("id"), "")
        for step in job.get("steps") or []:
            if step.get("conclusion") != "failure":
                continue
            step_name = step.get("name") or ""
            kind = classify_step(step_name, log_text)
            return kind, f"Step '{step_name}' of job '{job.get('name')}' failed"
        return classify_step("", log_text), f"Job '{job.get('name')}' failed"
    return FailureKind.build, "Workflow run failed"


def _run_title(run: dict[str, Any]) -> str:
    return f"{run.get('display_title') or ''} {run.get('name') or ''}"


def pick_run(
    runs: list[dict[str, Any]],
    correlation_id: str,
    claimed: set[int],
) -> dict[str, Any] | None:
    """Choose the workflow run started by a dispatch.

    Runs whose title carries the correlation id win; otherwise the oldest run
    neither attributed to another dispatch nor titled with another
    dispatch's id is used.
    """
    for run in runs:
        if correlation_id in _run_title(run):
            return run
    unclaimed = [
        run
        for run in runs
        if run.get("id") not in claimed and not CORRELATION_ID_PATTERN.search(_run_title(run))
    ]
    if not unclaimed:
        return None
    return min(unclaimed, key=lambda run: (run.get("created_at") or "", run.get("id") or 0))


def create_dispatch(
    session: Session,
    request: BuildRequest,
    triggered_by: str = "cli",
    settings: Settings | None = None,
) -> Dispatch:
    """Persist a queued :class:`Dispatch` for ``request``.

    :raises ValueError: If the request cannot form valid image references.
    """
    settings = settings or default_settings
    platforms = request.platforms or settings.platform_list
    image_references(settings, request)
    dispatch = Dispatch(
        repository=request.repository,
        branch=request.branch,
        image_name=request.image_name,
        tags=",".join(request.tags),
        platforms=",".join(platforms),
        dockerfile=request.dockerfile,
        context=request.context,
        correlation_id=uuid.uuid4().hex,
        triggered_by=triggered_by,
    )
    session.add(dispatch)
    session.commit()
    session.refresh(dispatch)
    logger.info(
        "Created dispatch %s for %s@%s (triggered_by=%s)",
        dispatch.id,
        request.repository,
        request.branch,
        triggered_by,
    )
    return dispatch


def build_result(dispatch: Dispatch, settings: Settings | None = None) -> BuildResult:
    """Convert a dispatch row into the :class:`BuildResult` reported to callers."""
    settings = settings or default_settings
    success = dispatch.status == DispatchStatus.success
    refs: list[str] = []
    if success:
        refs = [str(ref) for ref in image_references(settings, dispatch.to_request())]
    return BuildResult(
        dispatch_id=dispatch.id,
        success=success,
        image_reference=refs[0] if refs else None,
        image_references=refs,
        digest=dispatch.digest,
        failure_kind=dispatch.failure_kind,
        error=dispatch.error_message,
        run_id=dispatch.run_id,
        run_url=dispatch.run_url,
        log_path=dispatch.log_path,
    )


def claimed_runs(session: Session, dispatch: Dispatch) -> set[int]:
    """Return run ids already attributed to other dispatches of the same repository."""
    statement = select(Dispatch.run_id).where(
        (Dispatch.repository == dispatch.repository)
        & (Dispatch.id != dispatch.id)
        & (Dispatch.run_id != None)  # noqa: E711
    )
    return set(session.exec(statement).all())


def recent_dispatches(session: Session, limit: int = 20) -> list[Dispatch]:
    """Return dispatches ordered by creation time newest-first."""
    statement = select(Dispatch).order_by(Dispatch.created_at.desc(), Dispatch.id.desc()).limit(limit)
    return list(session.exec(statement).all())


class Dispatcher:
    """Triggers a remote build, waits for it and verifies the published image."""

    def __init__(
        self,
        github: GitHubClient | None = None,
        registry: RegistryClient | None = None,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or default_settings
        self.github = github or GitHubClient(settings=self.settings)
        self.registry = registry or RegistryClient(self.settings)
        self.sleep = sleep
        self.clock = clock

    def close(self) -> None:
        self.github.close()
        self.registry.close()

    def submit(self, request: BuildRequest, triggered_by: str = "cli") -> BuildResult:
        """Run one build request to completion and report its result."""
        with Session(engine) as session:
            dispatch = create_dispatch(session, request, triggered_by=triggered_by, settings=self.settings)
        return self.process(dispatch.id)

    def process(self, dispatch_id: int) -> BuildResult:
        """Execute every step of a queued dispatch and record the outcome.

        :param dispatch_id: Primary key of the :class:`Dispatch` row.
        :raises ValueError: If the dispatch does not exist.
        """
        with Session(engine) as session:
            dispatch = session.get(Dispatch, dispatch_id)
            if not dispatch:
                raise ValueError("Dispatch not found")
            if dispatch.status != DispatchStatus.queued:
                logger.warning("Dispatch %s is %s, not processing", dispatch_id, dispatch.status)
                return build_result(dispatch, self.settings)

            log_path = self.settings.log_dir / f"dispatch_{dispatch.id}.log"
            dispatch.log_path = str(log_path)
            dispatch.status = DispatchStatus.running
            dispatch.started_at = utcnow()
            session.add(dispatch)
            session.commit()

            request = dispatch.to_request()
            try:
                logger.info("Starting dispatch %s for %s@%s", dispatch.id, request.repository, request.branch)
                dispatch.sha = self._resolve_source(request, log_path)
                session.add(dispatch)
                session.commit()

                run = self._trigger_and_find_run(session, dispatch, request, log_path)
                run = self._wait_for_completion(request, run)
                jobs, job_logs = self._collect_logs(request, run, log_path)
                self._check_conclusion(run, jobs, job_logs)

                refs = image_references(self.settings, request)
                if self.settings.verify_registry:
                    dispatch.digest = self._verify_registry(request, refs, log_path)
                dispatch.image_reference = str(refs[0])
                dispatch.status = DispatchStatus.success
                append_log(log_path, f"Published {', '.join(str(ref) for ref in refs)}")
            except DispatchError as exc:
                logger.error("Dispatch %s failed (%s): %s", dispatch_id, exc.kind.value, exc)
                append_log(log_path, f"\nDispatch failed ({exc.kind.value}): {exc}")
                dispatch.status = DispatchStatus.failed
                dispatch.failure_kind = exc.kind
                dispatch.error_message = str(exc)
                dispatch.run_url = dispatch.run_url or exc.run_url
            except Exception as exc:
                logger.exception("Dispatch %s crashed: %s", dispatch_id, exc)
                append_log(log_path, f"\nDispatch crashed: {exc}")
                dispatch.status = DispatchStatus.failed
                dispatch.failure_kind = FailureKind.dispatch
                dispatch.error_message = str(exc)
                raise
            finally:
                dispatch.finished_at = utcnow()
                if dispatch.started_at and dispatch.finished_at:
                    elapsed = as_utc(dispatch.finished_at) - as_utc(dispatch.started_at)
                    dispatch.duration_seconds = elapsed.total_seconds()
                logger.info("Completed dispatch %s (status=%s)", dispatch_id, dispatch.status)
                session.add(dispatch)
                session.commit()
                session.refresh(dispatch)
            return build_result(dispatch, self.settings)

    def _resolve_source(self, request: BuildRequest, log_path: Path) -> str:
        """Return the branch head SHA or raise :class:`CheckoutError`."""
        url = repository_url(request.repository, self.settings)
        append_log(log_path, f"$ git ls-remote --heads {url} refs/heads/{request.branch}")
        try:
            sha = get_remote_sha(url, self.settings.token, request.branch)
        except GitError as exc:
            raise CheckoutError(f"Repository {request.repository} is not reachable: {exc}") from exc
        if not sha:
            raise CheckoutError(f"Branch {request.branch} not found in {request.repository}")
        append_log(log_path, f"{request.branch} is at {sha}")
        return sha

    def _translate_api_error(self, exc: GitHubAPIError, action: str) -> DispatchError:
        if exc.status_code == 0:
            return DispatchError(f"Could not {action}: GitHub is unreachable ({exc.message})")
        if exc.status_code in (401, 403):
            return RegistryAuthError(f"GitHub rejected the token while trying to {action}: {exc.message}")
        if exc.status_code == 422 and "ref" in exc.message.lower():
            return CheckoutError(f"Could not {action}: {exc.message}")
        if exc.status_code == 404:
            return DispatchError(f"Could not {action}: {exc.message} (is {self.settings.workflow_file} present?)")
        return DispatchError(f"Could not {action}: {exc}")

    def _trigger_and_find_run(
        self,
        session: Session,
        dispatch: Dispatch,
        request: BuildRequest,
        log_path: Path,
    ) -> dict[str, Any]:
        """Fire the workflow and locate the run it created."""
        inputs = {
            "image_name": request.image_name,
            "tags": ",".join(request.tags),
            "platforms": ",".join(request.platforms),
            "dockerfile": request.dockerfile,
            "context": request.context,
            "dispatch_id": dispatch.correlation_id,
        }
        dispatched_at = utcnow() - DISPATCH_CLOCK_SKEW
        try:
            self.github.dispatch_workflow(request.repository, self.settings.workflow_file, request.branch, inputs)
        except GitHubAPIError as exc:
            raise self._translate_api_error(exc, "trigger the workflow") from exc
        append_log(log_path, f"Triggered {self.settings.workflow_file} with inputs {inputs}")

        deadline = self.clock() + self.settings.run_discovery_timeout_seconds
        while True:
            try:
                runs = self.github.list_workflow_runs(
                    request.repository,
                    self.settings.workflow_file,
                    request.branch,
                    dispatched_at,
                )
            except GitHubAPIError as exc:
                raise self._translate_api_error(exc, "list workflow runs") from exc
            # other dispatches may have claimed a run since the last poll
            run = pick_run(runs, dispatch.correlation_id, claimed_runs(session, dispatch))
            if run:
                dispatch.run_id = run["id"]
                dispatch.run_url = run.get("html_url")
                session.add(dispatch)
                session.commit()
                append_log(log_path, f"Following run {dispatch.run_id} {dispatch.run_url or ''}")
                return run
            if self.clock() >= deadline:
                raise DispatchError(
                    f"No run of {self.settings.workflow_file} appeared within "
                    f"{self.settings.run_discovery_timeout_seconds:.0f}s"
                )
            self.sleep(self.settings.poll_interval_seconds)

    def _wait_for_completion(self, request: BuildRequest, run: dict[str, Any]) -> dict[str, Any]:
        """Poll the run until GitHub reports it completed."""
        deadline = self.clock() + self.settings.run_timeout_seconds
        while run.get("status") != "completed":
            if self.clock() >= deadline:
                try:
                    self.github.cancel_run(request.repository, run["id"])
                except GitHubAPIError:
                    logger.warning("Failed to cancel timed out run %s", run["id"], exc_info=True)
                raise RunTimeoutError(
                    f"Run {run['id']} did not finish within {self.settings.run_timeout_seconds:.0f}s",
                    run_url=run.get("html_url"),
                )
            self.sleep(self.settings.poll_interval_seconds)
            try:
                run = self.github.get_run(request.repository, run["id"])
            except GitHubAPIError as exc:
                raise self._translate_api_error(exc, "poll the workflow run") from exc
            logger.debug("Run %s status=%s", run.get("id"), run.get("status"))
        return run

    def _collect_logs(
        self,
        request: BuildRequest,
        run: dict[str, Any],
        log_path: Path,
    ) -> tuple[list[dict[str, Any]], dict[int, str]]:
        """Download job metadata and logs and append them to the dispatch log."""
        try:
            jobs = self.github.list_jobs(request.repository, run["id"])
        except GitHubAPIError as exc:
            logger.warning("Could not list jobs of run %s: %s", run["id"], exc)
            return [], {}
        job_logs: dict[int, str] = {}
        for job in jobs:
            append_log(log_path, f"\n===== job {job.get('name')} ({job.get('conclusion')}) =====")
            try:
                text = self.github.get_job_logs(request.repository, job["id"])
            except GitHubAPIError as exc:
                logger.warning("Could not download logs of job %s: %s", job.get("id"), exc)
                append_log(log_path, f"(logs unavailable: {exc})")
                continue
            job_logs[job["id"]] = text
            append_log(log_path, text)
        return jobs, job_logs

    def _check_conclusion(
        self,
        run: dict[str, Any],
        jobs: list[dict[str, Any]],
        job_logs: dict[int, str],
    ) -> None:
        conclusion = run.get("conclusion")
        run_url = run.get("html_url")
        if conclusion == "success":
            return
        if conclusion == "cancelled":
            raise RunCancelledError(f"Run {run['id']} was cancelled", run_url=run_url)
        if conclusion == "timed_out":
            raise RunTimeoutError(f"Run {run['id']} timed out on the build agent", run_url=run_url)
        kind, message = classify_failure(jobs, job_logs)
        raise ERRORS_BY_KIND[kind](message, run_url=run_url)

    def _verify_registry(
        self,
        request: BuildRequest,
        refs: list[ImageReference],
        log_path: Path,
    ) -> str | None:
        """Check every tag landed in the registry with the requested platforms.

        :returns: Digest of the primary tag.
        """
        requested = set(request.platforms)
        digest = None
        for ref in refs:
            try:
                manifest = self.registry.get_manifest(ref)
            except RegistryError as exc:
                if exc.is_auth_error:
                    raise RegistryAuthError(f"Registry rejected credentials while verifying {ref}") from exc
                raise RegistryPushError(f"Could not verify {ref}: {exc}") from exc
            if manifest is None:
                raise RegistryPushError(f"{ref} was not found in the registry after the run succeeded")
            if not manifest.is_index and len(requested) > 1:
                raise RegistryPushError(
                    f"{ref} is a single-platform image but {len(requested)} platforms were requested"
                )
            # a single manifest without a readable config carries no platform
            if manifest.is_index or manifest.platforms:
                missing = missing_platforms(requested, manifest.platforms)
                if missing:
                    built = ", ".join(manifest.platforms) or "no platforms"
                    raise RegistryPushError(
                        f"{ref} is missing platforms: {', '.join(missing)} (registry has {built})"
                    )
            append_log(log_path, f"Verified {ref} ({manifest.digest or 'no digest'})")
            digest = digest or manifest.digest
        return digest

    def make_public(self, image_reference: str | ImageReference) -> None:
        """Ensure an image can be pulled anonymously.

        :raises PackageVisibilityError: When the package must be made public by hand.
        """
        ref = image_reference
        if isinstance(ref, str):
            ref = ImageReference.parse(ref)
        try:
            if self.registry.is_publicly_pullable(ref):
                logger.info("%s is already public", ref)
                return
        except RegistryError as exc:
            raise RegistryPushError(f"Could not probe {ref}: {exc}") from exc

        try:
            package = self.github.get_container_package(ref.owner, ref.name)
        except GitHubAPIError as exc:
            if exc.status_code == 404:
                raise PackageVisibilityError(
                    f"Package {ref.repository} was not found",
                    visibility=None,
                    settings_url=self.github.package_settings_url(ref.owner, ref.name),
                ) from exc
            raise self._translate_api_error(exc, "read package metadata") from exc

        visibility = package.get("visibility")
        owner_type = (package.get("owner") or {}).get("type", "User")
        settings_url = self.github.package_settings_url(ref.owner, ref.name, owner_type)
        if visibility == "public":
            raise RegistryPushError(f"{ref.repository} is public but tag {ref.tag} cannot be pulled")
        raise PackageVisibilityError(
            f"Package {ref.repository} is {visibility or 'not public'}; "
            f"change its visibility to public at {settings_url}",
            visibility=visibility,
            settings_url=settings_url,
        )

    def cancel(self, dispatch_id: int) -> Dispatch:
        """Stop an in-flight dispatch.

        Queued dispatches are marked cancelled directly; running ones have their
        remote run cancelled and finish through the normal polling path.

        :raises ValueError: If the dispatch is missing or already finished.
        """
        with Session(engine) as session:
            dispatch = session.get(Dispatch, dispatch_id)
            if not dispatch:
                raise ValueError("Dispatch not found")
            if dispatch.status == DispatchStatus.queued:
                dispatch.status = DispatchStatus.failed
                dispatch.failure_kind = FailureKind.cancelled
                dispatch.error_message = "Cancelled before it started"
                dispatch.finished_at = utcnow()
                session.add(dispatch)
                session.commit()
                session.refresh(dispatch)
                return dispatch
            if dispatch.status != DispatchStatus.running:
                raise ValueError("Dispatch already finished")
            if dispatch.run_id is None:
                raise ValueError("Dispatch has no remote run yet")
            try:
                self.github.cancel_run(dispatch.repository, dispatch.run_id)
            except GitHubAPIError as exc:
                raise self._translate_api_error(exc, "cancel the run") from exc
            return dispatch


class DispatchExecutor:
    """Runs dispatches on a thread pool so polling never blocks the event loop."""

    def __init__(self, dispatcher: Dispatcher | None = None) -> None:
        workers = max(1, default_settings.dispatch_workers)
        logger.debug("Initializing DispatchExecutor with %s workers", workers)
        self.dispatcher = dispatcher or Dispatcher()
        self.pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch")

    async def run_dispatch(self, dispatch_id: int) -> BuildResult:
        loop = asyncio.get_running_loop()
        logger.info("Handing dispatch %s to executor", dispatch_id)
        return await loop.run_in_executor(self.pool, self.dispatcher.process, dispatch_id)

    async def shutdown(self) -> None:
        """Tear down the executor without waiting for running jobs."""
        logger.debug("Shutting down DispatchExecutor")
        self.pool.shutdown(wait=False)
        self.dispatcher.close()


class DispatchQueue:
    """Simple asyncio queue consuming dispatches sequentially."""

    def __init__(self, executor: DispatchExecutor | None = None) -> None:
        self.executor = executor or DispatchExecutor()
        self.queue: asyncio.Queue[int] = asyncio.Queue()
        self.worker_task: asyncio.Task[None] | None = None

    async def startup(self) -> None:
        """Spin up the background worker task once."""
        if self.worker_task:
            return
        logger.debug("Starting dispatch queue worker")
        self.worker_task = asyncio.create_task(self._worker())

    async def shutdown(self) -> None:
        """Cancel the worker and close the executor."""
        if self.worker_task:
            self.worker_task.cancel()
            with suppress(asyncio.CancelledError):
                await self.worker_task
            self.worker_task = None
        await self.executor.shutdown()

    async def enqueue(self, dispatch_id: int) -> None:
        logger.debug("Enqueuing dispatch %s", dispatch_id)
        await self.queue.put(dispatch_id)

    async def _worker(self) -> None:
        """Continuously pull dispatch ids from the queue and execute them."""
        while True:
            dispatch_id = await self.queue.get()
            try:
                await self.executor.run_dispatch(dispatch_id)
            except Exception:
                logger.exception("Dispatch %s raised in the worker", dispatch_id)
            finally:
                self.queue.task_done()


async def enqueue_dispatch(
    request: BuildRequest,
    session: Session,
    queue: DispatchQueue,
    triggered_by: str = "api",
) -> Dispatch:
    """Create a :class:`Dispatch` row and enqueue it for processing.

    :param request: Validated build request.
    :param session: Database session used to persist the dispatch.
    :param queue: Queue instance to receive the job.
    :param triggered_by: Label describing how the dispatch was triggered.
    :returns: The persisted :class:`Dispatch` instance.
    """
    dispatch = create_dispatch(session, request, triggered_by=triggered_by)
    await queue.enqueue(dispatch.id)
    return dispatch
