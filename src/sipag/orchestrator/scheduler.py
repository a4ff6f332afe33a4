"""Polling scheduler: admission control and dispatch across projects.

Each cycle reaps finished workers, computes free slots under the project and
global ceilings, lists ready tasks and spawns one worker process per task.
Configuration is an immutable snapshot taken at the cycle boundary; changes
on disk apply from the next cycle.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from sipag.config import Settings, configure_logging
from sipag.orchestrator.agent import AgentRunner
from sipag.orchestrator.reconciliation import (
    OrphanReport,
    build_orphan_report,
    log_orphan_report,
)
from sipag.orchestrator.registry import ProjectConfig, ProjectRegistry, RegistryError
from sipag.orchestrator.run_records import RunRecordStore
from sipag.orchestrator.sources import SourceError, TaskSource, build_source
from sipag.orchestrator.tracker import (
    DuplicateWorkerError,
    ProcessTracker,
    SupervisedProcess,
    write_snapshot,
)
from sipag.orchestrator.worker import open_task_worker

logger = logging.getLogger(__name__)


class SchedulerAlreadyRunningError(RuntimeError):
    """Another control process owns the pid file."""


@dataclass(slots=True, frozen=True)
class CycleConfig:
    """Everything one cycle reads, frozen at the cycle boundary."""

    projects: tuple[ProjectConfig, ...]
    global_ceiling: int
    poll_interval_seconds: float


@dataclass(slots=True)
class CycleSummary:
    reaped: int = 0
    spawned: list[str] = field(default_factory=list)
    failed_projects: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate counters for CLI reporting."""

    cycles: int = 0
    spawned: int = 0
    reaped: int = 0
    terminated: int = 0


@dataclass(slots=True, frozen=True)
class WorkerJob:
    """Picklable input of one worker process."""

    project: ProjectConfig
    task_id: str
    settings: Settings


class WorkerLauncher(Protocol):
    def create(self, job: WorkerJob) -> SupervisedProcess:
        """Build an unstarted worker process for the job."""


class MultiprocessingLauncher:
    """Spawn-context child processes running ``run_worker_process``."""

    def __init__(self) -> None:
        self._context = multiprocessing.get_context("spawn")

    def create(self, job: WorkerJob) -> SupervisedProcess:
        return self._context.Process(
            target=run_worker_process,
            args=(job,),
            name=f"sipag-worker:{job.project.slug}/{job.task_id}",
        )


def run_worker_process(job: WorkerJob) -> None:
    """Entry point of a worker child process."""

    configure_logging(job.settings.log_level)
    stop = threading.Event()

    def _handler(signum: int, _: object | None) -> None:
        logger.warning("Worker for task %s received %s", job.task_id, signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)
    try:
        with open_task_worker(
            job.project,
            job.settings,
            agent_runner=AgentRunner(shutdown_requested=stop.is_set),
            sleep=stop.wait,
        ) as worker:
            outcome = worker.run(job.task_id)
    except SourceError as error:
        logger.error("Worker for task %s could not open its backend: %s", job.task_id, error)
        raise SystemExit(2) from error
    raise SystemExit(0 if outcome.succeeded else 1)


def load_cycle_config(settings: Settings) -> CycleConfig:
    """Re-read environment and project configs for the next cycle."""

    fresh = Settings.from_env(home=settings.home)
    fresh.validate()
    return CycleConfig(
        projects=tuple(ProjectRegistry(fresh.projects_dir).load_all()),
        global_ceiling=fresh.scheduler.global_ceiling,
        poll_interval_seconds=fresh.scheduler.poll_interval_seconds,
    )


class Scheduler:
    """Control loop owning the process tracker."""

    def __init__(
        self,
        *,
        settings: Settings,
        launcher: WorkerLauncher,
        config_loader: Callable[[], CycleConfig] | None = None,
        source_factory: Callable[[ProjectConfig], TaskSource] | None = None,
        tracker: ProcessTracker | None = None,
    ) -> None:
        self.settings = settings
        self.launcher = launcher
        self.config_loader = config_loader or (lambda: load_cycle_config(settings))
        self.source_factory = source_factory or (lambda project: build_source(project, settings))
        self.tracker = tracker or ProcessTracker()
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_cycle(self, config: CycleConfig) -> CycleSummary:
        summary = CycleSummary()
        try:
            reaped = self.tracker.reap()
        except (OSError, ValueError) as error:
            logger.error("Reap failed, continuing with stale counts: %s", error)
            reaped = []
        for worker in reaped:
            logger.info(
                "Reaped worker %s/%s (exit code %s)",
                worker.project_id,
                worker.task_id,
                worker.exit_code,
            )
        summary.reaped = len(reaped)

        global_live = self.tracker.total_active()
        for project in config.projects:
            if self._stop_requested:
                break
            project_slots = project.concurrency_ceiling - self.tracker.active_count(project.slug)
            global_slots = config.global_ceiling - global_live
            slots = min(project_slots, global_slots)
            if slots <= 0:
                logger.debug(
                    "Project %s has no free slots (project=%d global=%d)",
                    project.slug,
                    project_slots,
                    global_slots,
                )
                continue

            try:
                ready = self._list_ready(project)
            except (SourceError, OSError) as error:
                logger.error("Skipping project %s this cycle: %s", project.slug, error)
                summary.failed_projects.append(project.slug)
                continue
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected adapter error, skipping project %s", project.slug)
                summary.failed_projects.append(project.slug)
                continue

            for task_id in ready:
                if slots <= 0:
                    break
                if self.tracker.is_tracked(project.slug, task_id):
                    logger.debug("Task %s/%s already has a worker", project.slug, task_id)
                    continue
                try:
                    self._spawn(project, task_id)
                except (DuplicateWorkerError, OSError) as error:
                    logger.error(
                        "Could not spawn worker for %s/%s: %s",
                        project.slug,
                        task_id,
                        error,
                    )
                    continue
                slots -= 1
                global_live += 1
                summary.spawned.append(f"{project.slug}/{task_id}")

        self._publish(config)
        return summary

    def run_forever(self, *, max_cycles: int | None = None) -> SchedulerRunSummary:
        """Loop until a stop signal; with ``max_cycles`` wait for spawned workers instead."""

        aggregate = SchedulerRunSummary()
        with self._pid_file(), self._signal_handlers():
            config = self._load_config(previous=None)
            log_orphan_report(self.orphan_report(config))
            try:
                while not self._stop_requested:
                    cycle = self.run_cycle(config)
                    aggregate.cycles += 1
                    aggregate.spawned += len(cycle.spawned)
                    aggregate.reaped += cycle.reaped
                    if max_cycles is not None and aggregate.cycles >= max_cycles:
                        aggregate.reaped += self._drain()
                        break
                    self._sleep_with_stop(config.poll_interval_seconds)
                    config = self._load_config(previous=config)
            finally:
                aggregate.terminated = self.shutdown()
                self._publish(config)
        return aggregate

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.info("Stop requested (%s)", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def shutdown(self) -> int:
        """Terminate live workers and clear their handles."""

        terminated = self.tracker.terminate_all(
            timeout_seconds=self.settings.scheduler.shutdown_grace_seconds,
        )
        if terminated:
            logger.info("Terminated %d worker(s) on shutdown", terminated)
        return terminated

    def orphan_report(self, config: CycleConfig) -> OrphanReport:
        return build_orphan_report(
            projects=config.projects,
            source_factory=self.source_factory,
            live_task_ids=self.tracker.live_task_ids,
            records_for=lambda slug: RunRecordStore(self.settings.run_records_dir(slug)),
        )

    def _list_ready(self, project: ProjectConfig) -> list[str]:
        source = self.source_factory(project)
        try:
            return source.list_ready_tasks()
        finally:
            source.close()

    def _spawn(self, project: ProjectConfig, task_id: str) -> None:
        handle = self.launcher.create(
            WorkerJob(project=project, task_id=task_id, settings=self.settings),
        )
        self.tracker.register(project.slug, task_id, handle)
        try:
            handle.start()
        except OSError:
            self.tracker.discard(project.slug, task_id)
            raise
        logger.info("Spawned worker for %s/%s (pid %s)", project.slug, task_id, handle.pid)

    def _drain(self) -> int:
        reaped = 0
        while self.tracker.total_active() > 0 and not self._stop_requested:
            self._sleep_with_stop(0.5)
            reaped += len(self.tracker.reap())
        return reaped + len(self.tracker.reap())

    def _publish(self, config: CycleConfig) -> None:
        for project in config.projects:
            try:
                write_snapshot(
                    self.settings.worker_snapshot_path(project.slug),
                    self.tracker.snapshot(project.slug),
                )
            except OSError as error:
                logger.warning("Could not publish worker snapshot for %s: %s", project.slug, error)

    def _load_config(self, *, previous: CycleConfig | None) -> CycleConfig:
        try:
            return self.config_loader()
        except (RegistryError, ValueError, OSError) as error:
            logger.error("Config reload failed, keeping previous snapshot: %s", error)
            if previous is not None:
                return previous
            return CycleConfig(
                projects=(),
                global_ceiling=self.settings.scheduler.global_ceiling,
                poll_interval_seconds=self.settings.scheduler.poll_interval_seconds,
            )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    @contextmanager
    def _pid_file(self) -> Iterator[None]:
        path = self.settings.pid_file
        existing = read_pid(path)
        if existing is not None and existing != os.getpid() and pid_alive(existing):
            raise SchedulerAlreadyRunningError(
                f"sipag is already running (pid {existing}, pid file {path})",
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{os.getpid()}\n", "utf-8")
        try:
            yield
        finally:
            if read_pid(path) == os.getpid():
                path.unlink(missing_ok=True)


def read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text("utf-8").strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    """Single-instance guard for the control process only; workers use owned handles."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
