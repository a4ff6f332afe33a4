"""Process tracker: owned worker handles and their liveness.

Liveness comes from the owned handle (``is_alive`` / ``exitcode``), never
from probing the OS process table by pid, so a recycled pid cannot make a
dead worker look alive.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from sipag.orchestrator.models import WorkerHandleView
from sipag.storage import write_json_atomic

logger = logging.getLogger(__name__)


class SupervisedProcess(Protocol):
    """Owned child handle; ``multiprocessing.Process`` satisfies it."""

    @property
    def pid(self) -> int | None: ...

    @property
    def exitcode(self) -> int | None: ...

    def start(self) -> None: ...

    def is_alive(self) -> bool: ...

    def terminate(self) -> None: ...

    def join(self, timeout: float | None = None) -> None: ...


class DuplicateWorkerError(RuntimeError):
    """A live worker already exists for the task."""


@dataclass(slots=True, frozen=True)
class ReapedWorker:
    project_id: str
    task_id: str
    exit_code: int | None


@dataclass(slots=True)
class _TrackedWorker:
    project_id: str
    task_id: str
    handle: SupervisedProcess


def _holds_slot(handle: SupervisedProcess) -> bool:
    # Registered but not yet started also holds its slot.
    return handle.is_alive() or handle.exitcode is None


class ProcessTracker:
    """Maps ``(project, task)`` to a supervised worker handle."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._workers: dict[tuple[str, str], _TrackedWorker] = {}

    def register(self, project_id: str, task_id: str, handle: SupervisedProcess) -> None:
        key = (project_id, task_id)
        with self._lock:
            existing = self._workers.get(key)
            if existing is not None and _holds_slot(existing.handle):
                raise DuplicateWorkerError(
                    f"Worker for task {task_id} in project {project_id} is still alive",
                )
            self._workers[key] = _TrackedWorker(
                project_id=project_id,
                task_id=task_id,
                handle=handle,
            )

    def discard(self, project_id: str, task_id: str) -> None:
        """Forget a handle whose ``start`` failed."""

        with self._lock:
            self._workers.pop((project_id, task_id), None)

    def reap(self) -> list[ReapedWorker]:
        reaped: list[ReapedWorker] = []
        with self._lock:
            for key, worker in list(self._workers.items()):
                if _holds_slot(worker.handle):
                    continue
                worker.handle.join(0)
                del self._workers[key]
                reaped.append(
                    ReapedWorker(
                        project_id=worker.project_id,
                        task_id=worker.task_id,
                        exit_code=worker.handle.exitcode,
                    ),
                )
        return reaped

    def active_count(self, project_id: str) -> int:
        with self._lock:
            return sum(
                1
                for worker in self._workers.values()
                if worker.project_id == project_id and _holds_slot(worker.handle)
            )

    def total_active(self) -> int:
        with self._lock:
            return sum(1 for worker in self._workers.values() if _holds_slot(worker.handle))

    def is_tracked(self, project_id: str, task_id: str) -> bool:
        with self._lock:
            return (project_id, task_id) in self._workers

    def live_task_ids(self, project_id: str) -> set[str]:
        with self._lock:
            return {
                worker.task_id
                for worker in self._workers.values()
                if worker.project_id == project_id and _holds_slot(worker.handle)
            }

    def snapshot(self, project_id: str) -> list[WorkerHandleView]:
        with self._lock:
            return [
                WorkerHandleView(
                    task_id=worker.task_id,
                    project_id=worker.project_id,
                    process_id=worker.handle.pid,
                    alive=worker.handle.is_alive(),
                )
                for worker in self._workers.values()
                if worker.project_id == project_id
            ]

    def terminate_all(self, *, timeout_seconds: float = 5.0) -> int:
        """Terminate every live worker and clear the table; returns how many were live."""

        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
        live = [worker for worker in workers if worker.handle.is_alive()]
        for worker in live:
            logger.info("Terminating worker for %s/%s", worker.project_id, worker.task_id)
            worker.handle.terminate()
        for worker in live:
            worker.handle.join(timeout_seconds)
            if worker.handle.is_alive():
                logger.warning(
                    "Worker for %s/%s did not exit within %.1fs",
                    worker.project_id,
                    worker.task_id,
                    timeout_seconds,
                )
        return len(live)


def write_snapshot(path: Path, views: list[WorkerHandleView]) -> None:
    """Publish a project's worker listing for status tooling."""

    write_json_atomic(
        path,
        [
            {
                "task_id": view.task_id,
                "project_id": view.project_id,
                "process_id": view.process_id,
                "alive": view.alive,
            }
            for view in views
        ],
    )


def read_snapshot(path: Path) -> list[WorkerHandleView]:
    if not path.is_file():
        return []
    try:
        rows = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("Unreadable worker snapshot %s: %s", path, error)
        return []
    return [
        WorkerHandleView(
            task_id=str(row["task_id"]),
            project_id=str(row["project_id"]),
            process_id=row.get("process_id"),
            alive=bool(row.get("alive")),
        )
        for row in rows
        if isinstance(row, dict) and "task_id" in row and "project_id" in row
    ]
