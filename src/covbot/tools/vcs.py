"""Git plumbing for job workspaces.

Each job clones into its own directory under the workspace root, works on a
fresh branch, and the directory is discarded afterwards.  Helpers here only
shell out to ``git``; they never interpret what the changes mean.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

from ..errors import GitError
from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)

BRANCH_PREFIX = "coverage"
COMMIT_EMAIL = "coverage-bot@users.noreply.github.com"
COMMIT_NAME = "Coverage Bot"


def authenticated_url(url: str, token: str | None) -> str:
    """Embed ``token`` into an https GitHub URL; other URLs are returned as-is."""

    if not token:
        return url
    parts = urlsplit(url)
    if parts.scheme != "https" or "@" in parts.netloc:
        return url
    netloc = f"x-access-token:{quote(token, safe='')}@{parts.netloc}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def _redact(text: str, secret: str | None) -> str:
    if not secret:
        return text
    return text.replace(secret, "***").replace(quote(secret, safe=""), "***")


def _run(
    args: Sequence[str],
    *,
    cwd: Path | None,
    check: bool = True,
    timeout: float | None = None,
    secret: str | None = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    shown = _redact(" ".join(args), secret)
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        raise GitError(f"git {shown} timed out after {timeout}s") from error
    except OSError as error:
        raise GitError(f"git {shown} could not be started: {error}") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {shown} failed: {_redact(message, secret)}")
    return result


def _split_lines(payload: str) -> List[str]:
    return [line.strip() for line in payload.splitlines() if line.strip()]


class GitRepository:
    """Lightweight wrapper around ``git`` commands for one checkout."""

    def __init__(self, root: Path | str, *, timeout: float | None = None) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def clone(
        cls,
        url: str,
        target: Path | str,
        *,
        branch: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
    ) -> "GitRepository":
        """Shallow-clone ``url`` into ``target`` and return the checkout."""

        destination = Path(target)
        destination.parent.mkdir(parents=True, exist_ok=True)
        args: List[str] = ["clone", "--depth", "1"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([authenticated_url(url, token), str(destination)])
        LOGGER.info("Cloning %s (branch %s) into %s", url, branch or "default", destination)
        _run(args, cwd=None, timeout=timeout, secret=token)
        return cls(destination, timeout=timeout)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(args, cwd=self.root, check=check, timeout=self.timeout)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the checkout root."""

        return self._run_git(list(args), check=check)

    def _ensure_identity(self) -> None:
        for key, value in (("user.email", COMMIT_EMAIL), ("user.name", COMMIT_NAME)):
            configured = self._run_git(["config", "--get", key], check=False)
            if configured.returncode != 0 or not configured.stdout.strip():
                self._run_git(["config", key, value])

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def create_branch(self, name: str) -> None:
        self._run_git(["checkout", "-b", name])

    # ------------------------------------------------------------- changes
    def changed_files(self) -> List[str]:
        """Modified, staged and untracked paths, deduplicated and sorted."""

        modified = self._run_git(["diff", "--name-only", "HEAD"]).stdout
        staged = self._run_git(["diff", "--name-only", "--cached"]).stdout
        untracked = self._run_git(["ls-files", "--others", "--exclude-standard"]).stdout
        paths = set(_split_lines(modified)) | set(_split_lines(staged)) | set(_split_lines(untracked))
        return sorted(paths)

    def restore(self, path: str) -> bool:
        """Revert ``path`` to ``HEAD``; returns ``False`` when git cannot."""

        result = self._run_git(
            ["restore", "--source", "HEAD", "--staged", "--worktree", "--", path],
            check=False,
        )
        if result.returncode != 0:
            LOGGER.debug("git restore %s failed: %s", path, result.stderr.strip())
            return False
        return True

    def delete(self, path: str) -> bool:
        """Remove ``path`` from the index and the working tree."""

        self._run_git(["rm", "--cached", "--force", "--quiet", "--", path], check=False)
        target = self.root / path
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink(missing_ok=True)
        except OSError as error:
            LOGGER.warning("Failed to delete %s: %s", target, error)
            return False
        return True

    # -------------------------------------------------------------- commits
    def commit_paths(self, message: str, paths: Sequence[str]) -> str:
        """Stage exactly ``paths`` and commit them; returns the new commit SHA."""

        if not paths:
            raise GitError("Nothing to commit: no paths supplied")
        self._ensure_identity()
        self._run_git(["add", "--", *paths])
        commit = self._run_git(["commit", "-m", message], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or "unknown git error"
            raise GitError(f"git commit failed: {output}")
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def push(self, branch: str, *, remote: str = "origin") -> None:
        self._run_git(["push", "-u", remote, branch])


def generate_branch_name(seed: str, *, now: datetime | None = None) -> str:
    """Return ``coverage/<slug>-<timestamp>`` for ``seed``."""

    moment = now or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y%m%d%H%M%S")
    return f"{BRANCH_PREFIX}/{slugify(seed, fallback='files')}-{stamp}"


def workspace_for(root: Path, job_id: str) -> Path:
    """Job-scoped checkout directory; unique because job ids are."""

    return Path(root) / f"job-{slugify(job_id, max_length=64)}"


def cleanup(path: Path | str) -> None:
    """Remove a workspace directory; a missing directory is fine."""

    target = Path(path)
    if not target.exists():
        return
    shutil.rmtree(target, ignore_errors=True)
    if target.exists():
        LOGGER.warning("Workspace %s could not be fully removed", target)


__all__ = [
    "GitRepository",
    "authenticated_url",
    "cleanup",
    "generate_branch_name",
    "workspace_for",
]
