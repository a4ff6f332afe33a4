"""Per-task git working tree: clone, branch, commit count, push."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "sipag"
_BRANCH_SLUG_CHARS = 50
_GIT_TIMEOUT_SECONDS = 300


class WorkspaceError(RuntimeError):
    """Git operation on the task workspace failed."""


def branch_name(task_id: str, title: str) -> str:
    """``sipag/<task-id>-<slugified title>``, title part at most 50 chars."""

    safe_id = re.sub(r"[^A-Za-z0-9._-]+", "-", task_id).strip("-") or "task"
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:_BRANCH_SLUG_CHARS].rstrip("-")
    if not slug:
        return f"{BRANCH_PREFIX}/{safe_id}"
    return f"{BRANCH_PREFIX}/{safe_id}-{slug}"


class GitWorkspace:
    """Isolated clone for one task."""

    def __init__(self, path: Path, *, timeout_seconds: int = _GIT_TIMEOUT_SECONDS) -> None:
        self.path = path
        self.timeout_seconds = timeout_seconds

    def prepare(self, *, clone_url: str, base_branch: str, branch: str) -> None:
        """Fresh clone of ``base_branch`` with ``branch`` checked out on top."""

        if self.path.exists():
            shutil.rmtree(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._git(
            "clone",
            "--branch",
            base_branch,
            "--single-branch",
            clone_url,
            str(self.path),
            cwd=self.path.parent,
        )
        self._git("checkout", "-b", branch)
        logger.info("Workspace ready at %s on %s", self.path, branch)

    def commit_count(self, base_branch: str) -> int:
        output = self._git("rev-list", "--count", f"origin/{base_branch}..HEAD")
        try:
            return int(output.strip())
        except ValueError as error:
            raise WorkspaceError(f"Unexpected rev-list output: {output!r}") from error

    def push(self, branch: str) -> None:
        self._git("push", "--set-upstream", "origin", branch)

    def remove(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        command = ["git", *args]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=cwd or self.path,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise WorkspaceError("git executable not found") from error
        except subprocess.TimeoutExpired as error:
            raise WorkspaceError(
                f"git {args[0]} timed out after {self.timeout_seconds}s",
            ) from error
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout).strip()
            raise WorkspaceError(f"git {args[0]} failed ({completed.returncode}): {detail}")
        return completed.stdout
