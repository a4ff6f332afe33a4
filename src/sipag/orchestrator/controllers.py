"""Controllers for sipag CLI commands."""

from __future__ import annotations

import os
import signal
from dataclasses import dataclass
from pathlib import Path

from sipag.config import Settings, configure_logging
from sipag.orchestrator.models import BackendType, RunRecord
from sipag.orchestrator.reconciliation import build_orphan_report, render_orphan_lines
from sipag.orchestrator.registry import ProjectConfig, ProjectRegistry
from sipag.orchestrator.run_records import RunRecordStore
from sipag.orchestrator.scheduler import (
    MultiprocessingLauncher,
    Scheduler,
    pid_alive,
    read_pid,
)
from sipag.orchestrator.sources import (
    FileQueueSource,
    build_source,
    queue_root_for,
)
from sipag.orchestrator.tracker import read_snapshot
from sipag.orchestrator.worker import WorkerOutcome, open_task_worker


@dataclass(slots=True)
class RunCommand:
    """CLI input for the scheduler loop."""

    once: bool


@dataclass(slots=True)
class StatusCommand:
    slug: str | None


@dataclass(slots=True)
class ReconcileCommand:
    slug: str | None


@dataclass(slots=True)
class PruneCommand:
    max_age_days: int | None


@dataclass(slots=True)
class ProjectAddCommand:
    """CLI input for project registration."""

    slug: str
    backend_type: str
    repo: str
    clone_url: str
    base_branch: str
    concurrency: int
    timeout_seconds: int | None
    label_ready: str
    label_wip: str
    label_done: str
    queue_root: Path | None
    store_path: Path | None
    action_filter: str
    prompt_prefix: str
    agent_command: str
    close_on_complete: bool


@dataclass(slots=True)
class ProjectCommand:
    slug: str


@dataclass(slots=True)
class QueueAddCommand:
    slug: str
    prompt: str
    task_id: str | None


@dataclass(slots=True)
class TaskCommand:
    slug: str
    task_id: str


class SipagCliController:
    """Coordinates scheduler, registry, queue and inspection CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings()
        configure_logging(settings.log_level)
        scheduler = Scheduler(settings=settings, launcher=MultiprocessingLauncher())
        summary = scheduler.run_forever(max_cycles=1 if command.once else None)
        return [
            "Scheduler summary: "
            f"cycles={summary.cycles} spawned={summary.spawned} "
            f"reaped={summary.reaped} terminated={summary.terminated}",
        ]

    def stop(self) -> list[str]:
        settings = _settings()
        pid = read_pid(settings.pid_file)
        if pid is None or not pid_alive(pid):
            return ["sipag is not running."]
        os.kill(pid, signal.SIGTERM)
        return [f"Sent SIGTERM to sipag (pid {pid})."]

    def status(self, command: StatusCommand) -> list[str]:
        settings = _settings()
        registry = ProjectRegistry(settings.projects_dir)
        projects = _selected_projects(registry, command.slug)
        pid = read_pid(settings.pid_file)
        running = pid is not None and pid_alive(pid)
        scheduler_state = f"running (pid {pid})" if running else "stopped"
        lines = [f"Scheduler: {scheduler_state}"]
        if not projects:
            lines.append("No projects registered.")
        for project in projects:
            snapshot = read_snapshot(settings.worker_snapshot_path(project.slug))
            live_count = sum(1 for view in snapshot if view.alive) if running else 0
            lines.append(
                f"Project {project.slug} backend={project.backend_type.value} "
                f"ceiling={project.concurrency_ceiling} live_workers={live_count}",
            )
            records = RunRecordStore(settings.run_records_dir(project.slug)).list_records()
            if not records:
                lines.append("  no runs recorded")
            lines.extend(f"  {_render_record(record)}" for record in records)
        return lines

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = _settings()
        registry = ProjectRegistry(settings.projects_dir)
        projects = _selected_projects(registry, command.slug)
        report = build_orphan_report(
            projects=projects,
            source_factory=lambda project: build_source(project, settings),
            live_task_ids=lambda slug: _live_task_ids(settings, slug),
            records_for=lambda slug: RunRecordStore(settings.run_records_dir(slug)),
        )
        return render_orphan_lines(report)

    def prune(self, command: PruneCommand) -> list[str]:
        settings = _settings()
        max_age_days = (
            command.max_age_days
            if command.max_age_days is not None
            else settings.worker.state_max_age_days
        )
        lines: list[str] = []
        for slug in ProjectRegistry(settings.projects_dir).list_slugs():
            removed = RunRecordStore(settings.run_records_dir(slug)).prune(
                max_age_days=max_age_days,
            )
            lines.append(f"Project {slug}: pruned {len(removed)} run record(s)")
        if not lines:
            lines.append("No projects registered.")
        return lines

    def project_add(self, command: ProjectAddCommand) -> list[str]:
        settings = _settings()
        config = ProjectConfig(
            slug=command.slug,
            backend_type=BackendType(command.backend_type),
            concurrency_ceiling=command.concurrency,
            repo=command.repo,
            clone_url=command.clone_url,
            base_branch=command.base_branch,
            timeout_seconds=command.timeout_seconds,
            label_ready=command.label_ready,
            label_wip=command.label_wip,
            label_done=command.label_done,
            queue_root=command.queue_root,
            store_path=command.store_path,
            action_filter=command.action_filter,
            prompt_prefix=command.prompt_prefix,
            agent_command=command.agent_command,
            close_on_complete=command.close_on_complete,
        )
        stored = ProjectRegistry(settings.projects_dir).add(config)
        return [
            f"Project registered: slug={stored.slug} backend={stored.backend_type.value} "
            f"ceiling={stored.concurrency_ceiling}",
        ]

    def project_remove(self, command: ProjectCommand) -> list[str]:
        settings = _settings()
        ProjectRegistry(settings.projects_dir).remove(
            command.slug,
            live_task_ids=sorted(_live_task_ids(settings, command.slug)),
        )
        return [f"Project removed: {command.slug}"]

    def project_list(self) -> list[str]:
        settings = _settings()
        projects = ProjectRegistry(settings.projects_dir).load_all()
        if not projects:
            return ["No projects registered."]
        return [
            f"{project.slug} backend={project.backend_type.value} "
            f"ceiling={project.concurrency_ceiling} repo={project.repo or project.clone_url}"
            for project in projects
        ]

    def project_show(self, command: ProjectCommand) -> list[str]:
        settings = _settings()
        project = ProjectRegistry(settings.projects_dir).get(command.slug)
        return [
            f"{key}: {'-' if value is None or value == '' else value}"
            for key, value in project.to_payload().items()
        ]

    def queue_add(self, command: QueueAddCommand) -> list[str]:
        settings = _settings()
        project = ProjectRegistry(settings.projects_dir).get(command.slug)
        if project.backend_type != BackendType.ADHOC:
            raise ValueError(
                f"Project {project.slug} uses the {project.backend_type.value} backend; "
                "only adhoc projects have a local queue.",
            )
        queue = FileQueueSource(queue_root_for(project, settings), slug=project.slug)
        task_id = queue.enqueue(command.prompt, task_id=command.task_id)
        return [f"Task queued: project={project.slug} task_id={task_id}"]

    def task_run(self, command: TaskCommand) -> list[str]:
        settings = _settings()
        configure_logging(settings.log_level)
        project = ProjectRegistry(settings.projects_dir).get(command.slug)
        with open_task_worker(project, settings) as worker:
            outcome = worker.run(command.task_id)
        return _outcome_lines(outcome)

    def task_finalize(self, command: TaskCommand) -> list[str]:
        settings = _settings()
        configure_logging(settings.log_level)
        project = ProjectRegistry(settings.projects_dir).get(command.slug)
        with open_task_worker(project, settings) as worker:
            outcome = worker.finalize(command.task_id)
        return _outcome_lines(outcome)


def _settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _selected_projects(registry: ProjectRegistry, slug: str | None) -> list[ProjectConfig]:
    if slug is None:
        return registry.load_all()
    return [registry.get(slug)]


def _live_task_ids(settings: Settings, slug: str) -> set[str]:
    pid = read_pid(settings.pid_file)
    if pid is None or not pid_alive(pid):
        return set()
    return {
        view.task_id
        for view in read_snapshot(settings.worker_snapshot_path(slug))
        if view.alive
    }


def _render_record(record: RunRecord) -> str:
    parts = [
        record.task_id,
        record.status.value,
        f"started={record.started_at.isoformat(timespec='seconds')}",
    ]
    if record.finished_at is not None:
        parts.append(f"finished={record.finished_at.isoformat(timespec='seconds')}")
    if record.branch_name:
        parts.append(f"branch={record.branch_name}")
    if record.artifact_ref:
        parts.append(f"artifact={record.artifact_ref}")
    if record.title:
        parts.append(f"title={record.title!r}")
    if record.error:
        parts.append(f"error={record.error.splitlines()[0]}")
    return " ".join(parts)


def _outcome_lines(outcome: WorkerOutcome) -> list[str]:
    status = outcome.status.value if outcome.status is not None else "not-started"
    lines = [f"Task {outcome.task_id}: status={status}"]
    if outcome.artifact_ref:
        lines.append(f"Artifact: {outcome.artifact_ref}")
    if outcome.failure_class is not None:
        lines.append(f"Failure class: {outcome.failure_class.value}")
    if outcome.error:
        lines.append(f"Error: {outcome.error}")
    return lines
