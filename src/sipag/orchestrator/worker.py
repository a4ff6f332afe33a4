"""Single-task worker: claim, clone, run the agent, publish, reconcile."""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from sipag.config import Settings
from sipag.orchestrator.agent import (
    AgentRunError,
    AgentRunner,
    AgentRunRequest,
    build_prompt,
    read_tail,
)
from sipag.orchestrator.failure_classifier import classify_agent_failure
from sipag.orchestrator.hooks import HookEvent, HookRunner
from sipag.orchestrator.models import BackendType, FailureClass, RunRecord, RunStatus, Task
from sipag.orchestrator.publisher import (
    ChangeRequest,
    ChangeRequestPublisher,
    PublishError,
    build_publisher,
    change_request_body,
)
from sipag.orchestrator.registry import ProjectConfig
from sipag.orchestrator.run_records import RunRecordStore
from sipag.orchestrator.sources import SourceError, TaskSource, build_source
from sipag.orchestrator.workspace import GitWorkspace, WorkspaceError, branch_name
from sipag.storage import utc_now

logger = logging.getLogger(__name__)

TAIL_LINES = 20
NO_COMMITS_ERROR = "Agent exited successfully but produced no commits"
WORKING_NOTICE = "sipag is working on this..."
SHUTDOWN_ERROR = "Worker stopped by shutdown before the agent finished"


@dataclass(slots=True)
class WorkerOutcome:
    """What one ``run`` or ``finalize`` call ended with."""

    task_id: str
    status: RunStatus | None
    artifact_ref: str | None = None
    error: str | None = None
    failure_class: FailureClass | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.DONE


@dataclass(slots=True, frozen=True)
class WorkerOptions:
    """Per-project values resolved against the global defaults."""

    agent_command: str
    timeout_seconds: int
    finalize_delay_seconds: float
    prompt_prefix: str = ""


class TaskWorker:
    """Drives one task through the lifecycle and never raises out of ``run``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        project: ProjectConfig,
        source: TaskSource,
        publisher: ChangeRequestPublisher,
        records: RunRecordStore,
        workspace_root: Path,
        options: WorkerOptions,
        agent_runner: AgentRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
        hooks: HookRunner | None = None,
    ) -> None:
        self.project = project
        self.source = source
        self.publisher = publisher
        self.records = records
        self.workspace_root = workspace_root
        self.options = options
        self.agent_runner = agent_runner or AgentRunner()
        self._sleep = sleep
        self.hooks = hooks

    def run(self, task_id: str) -> WorkerOutcome:
        try:
            self.source.claim_task(task_id)
        except SourceError as error:
            logger.warning("Claim of task %s failed: %s", task_id, error)
            return WorkerOutcome(
                task_id=task_id,
                status=None,
                error=str(error),
                failure_class=FailureClass.CLAIM,
            )

        record = RunRecord(
            task_id=task_id,
            title="",
            status=RunStatus.CLAIMED,
            started_at=utc_now(),
        )
        try:
            return self._run_claimed(task_id, record)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error while running task %s", task_id)
            return self._fail(
                record,
                FailureClass.INFRASTRUCTURE,
                f"Unexpected worker error: {error}",
            )

    def finalize(self, task_id: str, *, task: Task | None = None) -> WorkerOutcome:
        """Open the change request for a pushed branch, reusing one that already exists."""

        record = self.records.read(task_id)
        if record is None or record.status != RunStatus.PUSHED or not record.branch_name:
            status = record.status.value if record is not None else "missing"
            return WorkerOutcome(
                task_id=task_id,
                status=record.status if record is not None else None,
                error=f"Task {task_id} has no pushed branch awaiting finalize (status={status})",
            )
        try:
            task = task or self.source.get_task(task_id)
            artifact_ref = self.publisher.find(record.branch_name)
            if artifact_ref is None:
                artifact_ref = self.publisher.create(self._change_request(task, record.branch_name))
        except PublishError as error:
            return self._fail(
                record,
                FailureClass.PUBLISH,
                f"Change request creation failed after retry: {error}",
            )
        except SourceError as error:
            return self._fail(record, FailureClass.ADAPTER, f"Task lookup failed: {error}")
        return self._complete(record, artifact_ref, workspace=self._workspace(task_id))

    def _run_claimed(self, task_id: str, record: RunRecord) -> WorkerOutcome:
        try:
            task = self.source.get_task(task_id)
        except SourceError as error:
            return self._fail(record, FailureClass.ADAPTER, f"Task lookup failed: {error}")
        record.title = task.title
        self.records.write(record, fresh=True)
        self._fire(HookEvent.WORKER_STARTED, record)

        branch = branch_name(task_id, task.title)
        workspace = self._workspace(task_id)
        try:
            workspace.prepare(
                clone_url=self.project.resolved_clone_url,
                base_branch=self.project.base_branch,
                branch=branch,
            )
        except WorkspaceError as error:
            return self._fail(
                record,
                FailureClass.INFRASTRUCTURE,
                f"Workspace setup failed: {error}",
            )
        record.branch_name = branch
        record.status = RunStatus.RUNNING
        self.records.write(record)
        self._comment(task_id, WORKING_NOTICE)

        failure = self._run_agent(task, workspace)
        if failure is not None:
            failure_class, error_message = failure
            return self._fail(record, failure_class, error_message)

        try:
            commits = workspace.commit_count(self.project.base_branch)
        except WorkspaceError as error:
            return self._fail(record, FailureClass.INFRASTRUCTURE, f"Validation failed: {error}")
        if commits == 0:
            return self._fail(record, FailureClass.NO_CHANGES, NO_COMMITS_ERROR)
        logger.info("Task %s produced %d commit(s) on %s", task_id, commits, branch)

        record.status = RunStatus.PUSHING
        self.records.write(record)
        try:
            workspace.push(branch)
        except WorkspaceError as error:
            return self._fail(record, FailureClass.PUBLISH, f"Push failed: {error}")

        try:
            artifact_ref = self.publisher.create(self._change_request(task, branch))
        except PublishError as error:
            if not error.transient:
                return self._fail(
                    record,
                    FailureClass.PUBLISH,
                    f"Change request creation failed: {error}",
                )
            record.status = RunStatus.PUSHED
            record.error = f"Change request deferred: {error}"
            self.records.write(record)
            logger.warning(
                "Change request for task %s deferred %.1fs: %s",
                task_id,
                self.options.finalize_delay_seconds,
                error,
            )
            self._sleep(self.options.finalize_delay_seconds)
            return self.finalize(task_id, task=task)
        return self._complete(record, artifact_ref, workspace=workspace)

    def _run_agent(
        self,
        task: Task,
        workspace: GitWorkspace,
    ) -> tuple[FailureClass, str] | None:
        run_dir = workspace.path.parent
        request = AgentRunRequest(
            workspace=workspace.path,
            prompt=build_prompt(task, prefix=self.options.prompt_prefix),
            command_template=self.options.agent_command,
            timeout_seconds=self.options.timeout_seconds,
            log_path=run_dir / "agent.log",
            prompt_path=run_dir / "prompt.txt",
            env={
                "SIPAG_PROJECT": self.project.slug,
                "SIPAG_TASK_ID": task.id,
                "SIPAG_TASK_REF": task.backend_ref,
            },
        )
        try:
            result = self.agent_runner.run(request)
        except AgentRunError as error:
            return FailureClass.AGENT, str(error)
        if result.cancelled:
            return FailureClass.INFRASTRUCTURE, SHUTDOWN_ERROR
        if not result.timed_out and result.exit_code == 0:
            logger.info("Agent finished task %s in %.1fs", task.id, result.duration_seconds)
            return None

        tail = read_tail(result.log_path, lines=TAIL_LINES)
        classification = classify_agent_failure(
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            output=tail,
        )
        if result.timed_out:
            message = f"Agent timed out after {self.options.timeout_seconds}s"
        else:
            message = f"Agent exited with code {result.exit_code}"
        message = f"{message} ({classification.reason_code})"
        if tail:
            message = f"{message}\n\nLast {TAIL_LINES} lines of output:\n{tail}"
        return classification.failure_class, message

    def _complete(
        self,
        record: RunRecord,
        artifact_ref: str,
        *,
        workspace: GitWorkspace,
    ) -> WorkerOutcome:
        try:
            self.source.complete_task(record.task_id, artifact_ref)
        except SourceError as error:
            record.artifact_ref = artifact_ref
            return self._fail(record, FailureClass.ADAPTER, f"complete_task failed: {error}")
        record.status = RunStatus.DONE
        record.artifact_ref = artifact_ref
        record.error = None
        record.finished_at = utc_now()
        self.records.write(record)
        workspace.remove()
        logger.info("Task %s done: %s", record.task_id, artifact_ref)
        self._fire(HookEvent.WORKER_COMPLETED, record, SIPAG_PR_URL=artifact_ref)
        return WorkerOutcome(
            task_id=record.task_id,
            status=RunStatus.DONE,
            artifact_ref=artifact_ref,
        )

    def _fail(self, record: RunRecord, failure_class: FailureClass, error: str) -> WorkerOutcome:
        logger.warning("Task %s failed (%s): %s", record.task_id, failure_class.value, error)
        try:
            self.source.fail_task(record.task_id, error)
        except SourceError as reconcile_error:
            logger.error("fail_task for %s failed: %s", record.task_id, reconcile_error)
        except Exception:  # noqa: BLE001
            logger.exception("fail_task for %s raised unexpectedly", record.task_id)
        record.status = RunStatus.FAILED
        record.error = error
        record.finished_at = utc_now()
        self.records.write(record)
        self._fire(
            HookEvent.WORKER_FAILED,
            record,
            SIPAG_FAILURE_CLASS=failure_class.value,
            SIPAG_ERROR=error.splitlines()[0] if error else "",
        )
        # Workspace is kept for inspection.
        return WorkerOutcome(
            task_id=record.task_id,
            status=RunStatus.FAILED,
            error=error,
            failure_class=failure_class,
        )

    def _fire(self, event: HookEvent, record: RunRecord, **extra: str) -> None:
        if self.hooks is None:
            return
        self.hooks.fire(
            event,
            {
                "SIPAG_PROJECT": self.project.slug,
                "SIPAG_REPO": self.project.repo or self.project.resolved_clone_url,
                "SIPAG_ISSUE": record.task_id,
                "SIPAG_ISSUE_TITLE": record.title,
                "SIPAG_TASK_ID": record.task_id,
                **extra,
            },
        )

    def _comment(self, task_id: str, message: str) -> None:
        try:
            self.source.comment(task_id, message)
        except SourceError as error:
            logger.debug("Comment on %s failed: %s", task_id, error)

    def _change_request(self, task: Task, branch: str) -> ChangeRequest:
        return ChangeRequest(
            title=task.title or f"sipag task {task.id}",
            body=change_request_body(
                backend_ref=task.backend_ref,
                task_id=task.id,
                is_issue=self.project.backend_type == BackendType.GITHUB,
            ),
            head=branch,
            base=self.project.base_branch,
        )

    def _workspace(self, task_id: str) -> GitWorkspace:
        safe_id = re.sub(r"[^A-Za-z0-9._-]", "_", task_id)
        return GitWorkspace(self.workspace_root / safe_id / "repo")


def resolve_worker_options(project: ProjectConfig, settings: Settings) -> WorkerOptions:
    return WorkerOptions(
        agent_command=project.agent_command or settings.worker.agent_command,
        timeout_seconds=project.timeout_seconds or settings.worker.timeout_seconds,
        finalize_delay_seconds=settings.worker.finalize_delay_seconds,
        prompt_prefix=project.prompt_prefix,
    )


@contextmanager
def open_task_worker(
    project: ProjectConfig,
    settings: Settings,
    *,
    agent_runner: AgentRunner | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[TaskWorker]:
    """Worker wired to the project's adapter and publisher, closed on exit."""

    source = build_source(project, settings)
    try:
        publisher = build_publisher(project, settings)
        try:
            yield TaskWorker(
                project=project,
                source=source,
                publisher=publisher,
                records=RunRecordStore(settings.run_records_dir(project.slug)),
                workspace_root=settings.workspaces_dir(project.slug),
                options=resolve_worker_options(project, settings),
                agent_runner=agent_runner,
                sleep=sleep,
                hooks=HookRunner(settings.hooks_dir),
            )
        finally:
            publisher.close()
    finally:
        source.close()
