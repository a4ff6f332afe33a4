"""Filesystem-queue adapter: task state is the directory a JSON file lives in.

Layout under the queue root::

    pending/<id>.json   ready
    claimed/<id>.json   claimed by a worker
    done/<id>.json      completed, with artifact_ref

A claim is a single ``os.rename`` from ``pending/`` to ``claimed/``, atomic on
one filesystem, so of two racing claimers exactly one finds the source file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any
from uuid import uuid4

from sipag.orchestrator.models import Task, TaskState
from sipag.orchestrator.sources.base import (
    SourceError,
    TaskNotFoundError,
    TaskNotReadyError,
    transition_allowed,
)
from sipag.storage import utc_now, write_json_atomic

logger = logging.getLogger(__name__)

_STATE_DIRS: dict[TaskState, str] = {
    TaskState.READY: "pending",
    TaskState.CLAIMED: "claimed",
    TaskState.DONE: "done",
}
_TITLE_PROMPT_CHARS = 60


class FileQueueSource:
    """Ad-hoc task queue shared by projects and filtered by project slug."""

    def __init__(self, root: Path, *, slug: str) -> None:
        self.root = root
        self.slug = slug

    def close(self) -> None:
        """Plain files hold no open resources."""

    def enqueue(self, prompt: str, *, task_id: str | None = None) -> str:
        """Add a ready task for this project and return its id."""

        if not prompt.strip():
            raise ValueError("Ad-hoc task prompt must not be empty.")
        new_id = task_id or uuid4().hex[:12]
        if self._locate(new_id) is not None:
            raise SourceError(f"Ad-hoc task {new_id} already exists")
        write_json_atomic(
            self._path(TaskState.READY, new_id),
            {
                "id": new_id,
                "slug": self.slug,
                "prompt": prompt,
                "created_at": utc_now().isoformat(),
                "attempts": 0,
            },
        )
        return new_id

    def list_ready_tasks(self) -> list[str]:
        return self._list_in(TaskState.READY)

    def list_claimed_tasks(self) -> list[str]:
        return self._list_in(TaskState.CLAIMED)

    def claim_task(self, task_id: str) -> None:
        source = self._path(TaskState.READY, task_id)
        target = self._path(TaskState.CLAIMED, task_id)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            payload = _read(source)
        except FileNotFoundError as error:
            raise TaskNotReadyError(f"Ad-hoc task {task_id} not found in ready state") from error
        if payload.get("slug") != self.slug:
            raise TaskNotReadyError(f"Ad-hoc task {task_id} not found in ready state")
        # link() refuses an existing target where rename() would overwrite a
        # claimed copy left behind by an interrupted fail_task.
        try:
            os.link(source, target)
        except FileNotFoundError as error:
            raise TaskNotReadyError(f"Ad-hoc task {task_id} not found in ready state") from error
        except FileExistsError as error:
            raise TaskNotReadyError(f"Ad-hoc task {task_id} is already claimed") from error
        source.unlink(missing_ok=True)

    def get_task(self, task_id: str) -> Task:
        located = self._locate(task_id)
        if located is None:
            raise TaskNotFoundError(f"Ad-hoc task {task_id} not found")
        state, path = located
        payload = _read(path)
        prompt = str(payload.get("prompt") or "")
        return Task(
            id=task_id,
            title=f"adhoc: {prompt[:_TITLE_PROMPT_CHARS]}",
            body=prompt,
            backend_ref=str(path),
            state=state,
            error=payload.get("last_error"),
        )

    def complete_task(self, task_id: str, artifact_ref: str) -> None:
        state, path = self._require(task_id)
        if not transition_allowed(task_id=task_id, current=state, target=TaskState.DONE):
            return
        payload = _read(path)
        payload["completed_at"] = utc_now().isoformat()
        payload["artifact_ref"] = artifact_ref
        write_json_atomic(self._path(TaskState.DONE, task_id), payload)
        path.unlink(missing_ok=True)

    def fail_task(self, task_id: str, error: str) -> None:
        state, path = self._require(task_id)
        if state == TaskState.DONE:
            logger.warning("Ignoring failure for completed ad-hoc task %s: %s", task_id, error)
            return
        if not transition_allowed(task_id=task_id, current=state, target=TaskState.READY):
            return
        payload = _read(path)
        payload["last_error"] = error
        payload["failed_at"] = utc_now().isoformat()
        payload["attempts"] = int(payload.get("attempts") or 0) + 1
        write_json_atomic(self._path(TaskState.READY, task_id), payload)
        path.unlink(missing_ok=True)
        logger.warning("Ad-hoc task %s failed: %s", task_id, error)

    def comment(self, task_id: str, message: str) -> None:
        # No annotation channel on plain files.
        logger.debug("Ad-hoc task %s: %s", task_id, message)

    def _list_in(self, state: TaskState) -> list[str]:
        directory = self.root / _STATE_DIRS[state]
        if not directory.is_dir():
            return []
        task_ids: list[str] = []
        for path in sorted(directory.glob("*.json"), key=_created_order):
            try:
                payload = _read(path)
            except (OSError, json.JSONDecodeError):
                # Claimed concurrently or half-written by an external producer.
                continue
            if payload.get("slug") != self.slug:
                continue
            task_ids.append(str(payload.get("id") or path.stem))
        return task_ids

    def _path(self, state: TaskState, task_id: str) -> Path:
        return self.root / _STATE_DIRS[state] / f"{task_id}.json"

    def _locate(self, task_id: str) -> tuple[TaskState, Path] | None:
        # Claimed first: during a fail/complete crash window the claimed copy
        # is still authoritative.
        for state in (TaskState.CLAIMED, TaskState.READY, TaskState.DONE):
            path = self._path(state, task_id)
            if path.is_file():
                return state, path
        return None

    def _require(self, task_id: str) -> tuple[TaskState, Path]:
        located = self._locate(task_id)
        if located is None:
            raise TaskNotFoundError(f"Ad-hoc task {task_id} not found")
        return located


def _read(path: Path) -> dict[str, Any]:
    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise SourceError(f"Expected JSON object in {path}")
    return payload


def _created_order(path: Path) -> tuple[float, str]:
    try:
        return path.stat().st_mtime, path.name
    except FileNotFoundError:
        return 0.0, path.name
