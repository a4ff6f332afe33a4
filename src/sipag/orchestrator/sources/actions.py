"""External-action adapter over a shared SQLite store of suspended actions.

The store belongs to another tool; this adapter only flips the ``status``
column and writes the ``response`` column it uses to reply. Status values:

- ``waiting_for_reply`` ready for dispatch
- ``paused``            claimed by a worker
- ``completed``         done, ``response`` holds the artifact notice

Every state change is one conditional ``UPDATE`` keyed by ``tracking_id``, so
a racing claim loses on ``rowcount`` instead of observing a partial write.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import Column, DateTime, Text
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, col, select

from sipag.orchestrator.models import Task, TaskState
from sipag.orchestrator.sources.base import (
    SourceError,
    TaskNotFoundError,
    TaskNotReadyError,
    transition_allowed,
)
from sipag.storage import build_sqlite_engine, utc_now

logger = logging.getLogger(__name__)

STATUS_WAITING = "waiting_for_reply"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"

_STATUS_TO_STATE: dict[str, TaskState] = {
    STATUS_WAITING: TaskState.READY,
    STATUS_PAUSED: TaskState.CLAIMED,
    STATUS_COMPLETED: TaskState.DONE,
}
_TITLE_PROMPT_CHARS = 60


class SuspendedAction(SQLModel, table=True):
    __tablename__ = "tao_suspended_actions"  # type: ignore[bad-override]

    tracking_id: str = Field(primary_key=True)
    action_name: str = Field(default="", index=True)
    prompt_text: str = Field(default="", sa_column=Column(Text, nullable=False, default=""))
    stdin_data: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default=STATUS_WAITING, index=True)
    archived: int = Field(default=0)
    response: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class ActionStoreSource:
    """Suspended-action store filtered by an optional action name."""

    def __init__(self, db_path: Path, *, action_filter: str = "") -> None:
        if not db_path.is_file():
            raise SourceError(f"Action store database not found: {db_path}")
        self.db_path = db_path
        self.action_filter = action_filter
        self.engine = build_sqlite_engine(db_path=db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def list_ready_tasks(self) -> list[str]:
        return self._list_with_status(STATUS_WAITING)

    def list_claimed_tasks(self) -> list[str]:
        return self._list_with_status(STATUS_PAUSED)

    def claim_task(self, task_id: str) -> None:
        with self._session() as session:
            result = session.exec(
                sa_update(SuspendedAction)
                .where(
                    col(SuspendedAction.tracking_id) == task_id,
                    col(SuspendedAction.status) == STATUS_WAITING,
                    col(SuspendedAction.archived) == 0,
                )
                .values(status=STATUS_PAUSED, updated_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotReadyError(f"Action {task_id} not found in ready state")
            session.commit()

    def get_task(self, task_id: str) -> Task:
        row = self._get_row(task_id)
        body = row.prompt_text
        if row.stdin_data:
            body = f"{body}\n\nContext:\n{row.stdin_data}"
        state = _STATUS_TO_STATE.get(row.status, TaskState.CLAIMED)
        return Task(
            id=task_id,
            title=f"{row.action_name}: {row.prompt_text[:_TITLE_PROMPT_CHARS]}",
            body=body,
            backend_ref=f"tao://{task_id}",
            state=state,
            error=row.response if state == TaskState.READY else None,
        )

    def complete_task(self, task_id: str, artifact_ref: str) -> None:
        current = self._state_of(task_id)
        if not transition_allowed(task_id=task_id, current=current, target=TaskState.DONE):
            return
        response = f"PR opened: {artifact_ref}" if artifact_ref else "Completed."
        self._update_status(
            task_id=task_id,
            from_status=STATUS_PAUSED,
            to_status=STATUS_COMPLETED,
            response=response,
        )

    def fail_task(self, task_id: str, error: str) -> None:
        current = self._state_of(task_id)
        if current == TaskState.DONE:
            logger.warning("Ignoring failure for completed action %s: %s", task_id, error)
            return
        if not transition_allowed(task_id=task_id, current=current, target=TaskState.READY):
            return
        self._update_status(
            task_id=task_id,
            from_status=STATUS_PAUSED,
            to_status=STATUS_WAITING,
            response=error,
        )
        logger.warning("Action %s failed: %s", task_id, error)

    def comment(self, task_id: str, message: str) -> None:
        # The store has no comment channel; only the final response is kept.
        logger.debug("Action %s: %s", task_id, message)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            # Locked, missing or drifted tables in the shared store.
            raise SourceError(
                f"Action store {self.db_path} query failed: {error}",
                transient=True,
            ) from error

    def _list_with_status(self, status: str) -> list[str]:
        with self._session() as session:
            statement = (
                select(SuspendedAction.tracking_id)
                .where(
                    SuspendedAction.status == status,
                    SuspendedAction.archived == 0,
                )
                .order_by(col(SuspendedAction.tracking_id).asc())
            )
            if self.action_filter:
                statement = statement.where(SuspendedAction.action_name == self.action_filter)
            return list(session.exec(statement).all())

    def _get_row(self, task_id: str) -> SuspendedAction:
        with self._session() as session:
            row = session.exec(
                select(SuspendedAction).where(SuspendedAction.tracking_id == task_id),
            ).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Action {task_id} not found")
        return row

    def _state_of(self, task_id: str) -> TaskState:
        row = self._get_row(task_id)
        try:
            return _STATUS_TO_STATE[row.status]
        except KeyError as error:
            raise SourceError(f"Action {task_id} has unknown status {row.status!r}") from error

    def _update_status(
        self,
        *,
        task_id: str,
        from_status: str,
        to_status: str,
        response: str,
    ) -> None:
        with self._session() as session:
            result = session.exec(
                sa_update(SuspendedAction)
                .where(
                    col(SuspendedAction.tracking_id) == task_id,
                    col(SuspendedAction.status) == from_status,
                )
                .values(status=to_status, response=response, updated_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                raise SourceError(
                    f"Action {task_id} changed state concurrently; expected {from_status}",
                    transient=True,
                )
            session.commit()


def create_action_store(db_path: Path) -> None:
    """Create the suspended-action table; used by tests and local demos."""

    engine = build_sqlite_engine(db_path=db_path)
    try:
        table = SuspendedAction.__table__  # type: ignore[attr-defined]
        SQLModel.metadata.create_all(engine, tables=[table])
    finally:
        engine.dispose()
