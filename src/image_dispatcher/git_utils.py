"""Utils to check source repositories with git"""


from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from .config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Error raised when an underlying git command fails."""


def _git_env() -> dict[str, str]:
    """Return an environment that never prompts for credentials."""
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


def repository_url(repository: str, settings: Settings | None = None) -> str:
    """Return the HTTPS clone URL for an ``owner/name`` repository."""
    settings = settings or default_settings
    return f"{settings.github_web_url.rstrip('/')}/{repository}.git"


def inject_token(url: str, token: str | None) -> str:
    """Inject a personal access token into an HTTPS git URL.

    :param url: Original repository URL.
    :param token: Optional token to insert before the host name.
    :returns: URL with credentials embedded when possible.
    """
    if not token or not url.startswith("http"):
        return url
    parts = urlsplit(url)
    if parts.username:
        return url
    netloc = f"x-access-token:{token}@{parts.hostname}"
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _ls_remote(
    args: list[str],
    repo_url: str,
    token: str | None,
    patterns: list[str] | None = None,
) -> str:
    """Run ``git ls-remote`` and return stdout.

    :raises GitError: When git exits with an error or times out.
    """
    cmd = ["git", "ls-remote", *args, inject_token(repo_url, token), *(patterns or [])]
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
            env=_git_env(),
            timeout=default_settings.git_default_timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise GitError(f"git ls-remote timed out after {exc.timeout}s") from exc
    if proc.returncode != 0:
        logger.error("git ls-remote failed for %s", repo_url)
        message = proc.stderr.strip() or "git ls-remote failed"
        if token:
            message = message.replace(token, "***")
        raise GitError(message)
    return proc.stdout


def list_remote_refs(repo_url: str, token: str | None, ref_type: str = "branch") -> list[str]:
    """List branches or tags from a remote repository.

    :param repo_url: Repository URI.
    :param token: Optional HTTP token to inject.
    :param ref_type: ``\"branch\"`` or ``\"tag\"`` to filter refs.
    :returns: Sorted unique list of ref names.
    :raises GitError: On ``git ls-remote`` failure.
    """
    flag = "--heads" if ref_type == "branch" else "--tags"
    output = _ls_remote([flag], repo_url, token)
    refs = []
    for line in output.splitlines():
        if "\t" not in line:
            continue
        _, ref = line.split("\t", 1)
        if ref.endswith("^{}"):
            ref = ref[:-3]
        if ref.startswith("refs/heads/"):
            refs.append(ref.replace("refs/heads/", "", 1))
        elif ref.startswith("refs/tags/"):
            refs.append(ref.replace("refs/tags/", "", 1))
        else:
            refs.append(ref)
    return sorted(set(refs))


def get_remote_sha(repo_url: str, token: str | None, branch: str) -> str | None:
    """Return the head SHA of a remote branch without cloning the repository.

    :param repo_url: Repository URL.
    :param token: Optional HTTP token.
    :param branch: Branch name, with or without the ``refs/heads/`` prefix.
    :returns: SHA string or ``None`` if the branch does not exist.
    :raises GitError: When the repository cannot be reached.
    """
    refspec = branch if branch.startswith("refs/") else f"refs/heads/{branch}"
    output = _ls_remote(["--heads"], repo_url, token, patterns=[refspec])
    for line in output.splitlines():
        parts = line.strip().split()
        if len(parts) == 2 and parts[1] == refspec:
            return parts[0]
    return None


def append_log(log_path: Path, text: str) -> None:
    """Append a block of text to a dispatch log file."""
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as log:
        log.write(text)
        if not text.endswith("\n"):
            log.write("\n")
