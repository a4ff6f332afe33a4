"""Domain models for task dispatch and worker execution."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sipag.storage import from_iso


class TaskState(str, Enum):
    """Abstract lifecycle every backend maps its own storage onto."""

    READY = "ready"
    CLAIMED = "claimed"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


# Ordering used by the transition guard: a task never moves back to an
# earlier rank except through an explicit requeue from CLAIMED.
STATE_RANK: dict[TaskState, int] = {
    TaskState.READY: 0,
    TaskState.FAILED: 0,
    TaskState.CLAIMED: 1,
    TaskState.RUNNING: 1,
    TaskState.DONE: 2,
}


class RunStatus(str, Enum):
    """Phase of one worker execution as seen by an external observer."""

    CLAIMED = "claimed"
    RUNNING = "running"
    PUSHING = "pushing"
    PUSHED = "pushed"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RunStatus.DONE, RunStatus.FAILED}


class FailureClass(str, Enum):
    """Normalized failure classes attached to failed runs."""

    CLAIM = "claim"
    ADAPTER = "adapter"
    INFRASTRUCTURE = "infrastructure"
    AGENT = "agent"
    TIMEOUT = "timeout"
    NO_CHANGES = "no_changes"
    PUBLISH = "publish"


class BackendType(str, Enum):
    """Supported task stores."""

    GITHUB = "github"
    ADHOC = "adhoc"
    TAO = "tao"


@dataclass(slots=True)
class Task:
    """Unit of work as returned by a backend adapter."""

    id: str
    title: str
    body: str
    backend_ref: str
    state: TaskState
    error: str | None = None


@dataclass(slots=True)
class RunRecord:
    """Mutable status record for one task's current or most recent execution."""

    task_id: str
    title: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    branch_name: str | None = None
    artifact_ref: str | None = None
    error: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["started_at"] = self.started_at.isoformat()
        payload["finished_at"] = (
            self.finished_at.isoformat() if self.finished_at is not None else None
        )
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> RunRecord:
        finished_raw = payload.get("finished_at")
        return cls(
            task_id=str(payload["task_id"]),
            title=str(payload.get("title") or ""),
            status=RunStatus(payload["status"]),
            started_at=from_iso(str(payload["started_at"])),
            finished_at=from_iso(str(finished_raw)) if finished_raw else None,
            branch_name=payload.get("branch_name"),
            artifact_ref=payload.get("artifact_ref"),
            error=payload.get("error"),
        )


@dataclass(slots=True, frozen=True)
class WorkerHandleView:
    """Read-only liveness row for observability tooling."""

    task_id: str
    project_id: str
    process_id: int | None
    alive: bool


@dataclass(slots=True, frozen=True)
class OrphanedClaim:
    """Task claimed in its backend with no live worker behind it."""

    project_id: str
    task_id: str
    last_status: RunStatus | None
    last_error: str | None
