"""Backend contract shared by every task store.

Each adapter binds one project at construction and exposes the same six
operations. Adapters must uphold two rules the type system cannot express:

- ``claim_task`` is exclusive: of two racing callers at most one succeeds,
  the other gets ``TaskNotReadyError`` and never a half-applied state.
- ``complete_task`` and ``fail_task`` are idempotent: re-applying them after a
  crash mid-reconcile leaves the store exactly as a single call would.

``comment`` is best effort. Implementations log and swallow their own errors
so a progress notice can never fail the caller.
"""

from __future__ import annotations

from typing import Protocol

from sipag.orchestrator.models import STATE_RANK, Task, TaskState


class SourceError(RuntimeError):
    """Backend operation failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class TaskNotFoundError(SourceError):
    """Task id unknown to the backend."""


class TaskNotReadyError(SourceError):
    """Claim attempted on a task that is not currently ready."""


class TaskStateError(SourceError):
    """Transition refused because it would move the task backward."""


class TaskSource(Protocol):
    """Protocol implemented by backend adapters."""

    def list_ready_tasks(self) -> list[str]:
        """Return ids of tasks currently ready for this project."""

    def claim_task(self, task_id: str) -> None:
        """Transition ready -> claimed or raise ``TaskNotReadyError``."""

    def get_task(self, task_id: str) -> Task:
        """Return title, body and backend reference for one task."""

    def complete_task(self, task_id: str, artifact_ref: str) -> None:
        """Transition to done and record the artifact reference."""

    def fail_task(self, task_id: str, error: str) -> None:
        """Requeue the task with the error recorded for operators."""

    def comment(self, task_id: str, message: str) -> None:
        """Post a best-effort progress notice."""

    def list_claimed_tasks(self) -> list[str]:
        """Return ids of tasks the backend considers claimed."""

    def close(self) -> None:
        """Release connections held by the adapter."""


def transition_allowed(*, task_id: str, current: TaskState, target: TaskState) -> bool:
    """Ordering guard consulted before every state-changing call.

    Returns True when the transition should be applied and False when it is
    a no-op (already there, or a requeue of a task that is already done).
    Raises when the move is invalid: claiming a task that is not ready, or
    completing one that was never claimed. The only backward move allowed is
    the requeue path ``claimed -> ready``.
    """

    if current == target:
        return False
    if target == TaskState.CLAIMED:
        if current != TaskState.READY:
            raise TaskNotReadyError(
                f"Task {task_id} not found in ready state (state={current.value})",
            )
        return True
    if target == TaskState.DONE:
        if current == TaskState.READY:
            raise TaskStateError(f"Task {task_id} cannot complete without being claimed")
        return STATE_RANK[target] > STATE_RANK[current]
    if target == TaskState.READY:
        return current in {TaskState.CLAIMED, TaskState.RUNNING}
    raise TaskStateError(
        f"Unsupported transition for task {task_id}: {current.value} -> {target.value}",
    )
