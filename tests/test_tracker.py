from __future__ import annotations

import multiprocessing
import time
from pathlib import Path

import allure
import pytest

from sipag.orchestrator.models import WorkerHandleView
from sipag.orchestrator.tracker import (
    DuplicateWorkerError,
    ProcessTracker,
    read_snapshot,
    write_snapshot,
)

pytestmark = [
    allure.epic("Scheduler"),
    allure.feature("Process Tracker"),
]


class FakeProcess:
    def __init__(self, pid: int = 1000) -> None:
        self.pid: int | None = pid
        self.exitcode: int | None = None
        self.started = False
        self.terminated = False

    def start(self) -> None:
        self.started = True

    def is_alive(self) -> bool:
        return self.started and self.exitcode is None

    def terminate(self) -> None:
        self.terminated = True
        self.exitcode = -15

    def join(self, timeout: float | None = None) -> None:
        return None

    def finish(self, code: int = 0) -> None:
        self.exitcode = code


def test_counts_are_per_project() -> None:
    tracker = ProcessTracker()
    for project_id, task_id in (("alpha", "1"), ("alpha", "2"), ("beta", "1")):
        handle = FakeProcess()
        handle.start()
        tracker.register(project_id, task_id, handle)

    assert tracker.active_count("alpha") == 2
    assert tracker.active_count("beta") == 1
    assert tracker.total_active() == 3
    assert tracker.live_task_ids("alpha") == {"1", "2"}


def test_same_task_id_in_two_projects_does_not_collide() -> None:
    tracker = ProcessTracker()
    tracker.register("alpha", "7", FakeProcess())
    tracker.register("beta", "7", FakeProcess())

    assert tracker.is_tracked("alpha", "7")
    assert tracker.is_tracked("beta", "7")
    assert tracker.total_active() == 2


def test_registering_a_live_task_twice_is_refused() -> None:
    tracker = ProcessTracker()
    handle = FakeProcess()
    handle.start()
    tracker.register("alpha", "1", handle)

    with pytest.raises(DuplicateWorkerError):
        tracker.register("alpha", "1", FakeProcess())


def test_reap_frees_the_slot_of_exited_workers() -> None:
    tracker = ProcessTracker()
    done = FakeProcess(pid=1)
    running = FakeProcess(pid=2)
    for task_id, handle in (("1", done), ("2", running)):
        handle.start()
        tracker.register("alpha", task_id, handle)
    done.finish(1)

    reaped = tracker.reap()

    assert [(worker.task_id, worker.exit_code) for worker in reaped] == [("1", 1)]
    assert tracker.active_count("alpha") == 1
    assert not tracker.is_tracked("alpha", "1")


def test_unstarted_handle_holds_its_slot() -> None:
    tracker = ProcessTracker()
    tracker.register("alpha", "1", FakeProcess())

    assert tracker.reap() == []
    assert tracker.active_count("alpha") == 1


def test_terminate_all_stops_live_workers_and_clears() -> None:
    tracker = ProcessTracker()
    live = FakeProcess()
    live.start()
    exited = FakeProcess()
    exited.start()
    exited.finish()
    tracker.register("alpha", "1", live)
    tracker.register("alpha", "2", exited)

    assert tracker.terminate_all(timeout_seconds=0.1) == 1
    assert live.terminated
    assert not exited.terminated
    assert tracker.total_active() == 0


def test_real_child_process_is_reaped_after_exit() -> None:
    context = multiprocessing.get_context("spawn")
    handle = context.Process(target=time.sleep, args=(0.1,))
    tracker = ProcessTracker()
    tracker.register("alpha", "1", handle)
    handle.start()

    assert tracker.active_count("alpha") == 1
    handle.join(30)
    reaped = tracker.reap()

    assert [(worker.task_id, worker.exit_code) for worker in reaped] == [("1", 0)]
    assert tracker.active_count("alpha") == 0


def test_snapshot_round_trips_through_file(tmp_path: Path) -> None:
    tracker = ProcessTracker()
    handle = FakeProcess(pid=4321)
    handle.start()
    tracker.register("alpha", "9", handle)
    path = tmp_path / "workers.json"

    write_snapshot(path, tracker.snapshot("alpha"))

    assert read_snapshot(path) == [
        WorkerHandleView(task_id="9", project_id="alpha", process_id=4321, alive=True),
    ]
    assert read_snapshot(tmp_path / "missing.json") == []
