from __future__ import annotations

import json
import threading
from pathlib import Path

import allure
import pytest

from sipag.orchestrator.models import TaskState
from sipag.orchestrator.sources import (
    FileQueueSource,
    SourceError,
    TaskNotFoundError,
    TaskNotReadyError,
    TaskStateError,
)

pytestmark = [
    allure.epic("Backends"),
    allure.feature("Filesystem Queue"),
]


def test_enqueue_lists_only_tasks_of_own_project(tmp_path: Path) -> None:
    alpha = FileQueueSource(tmp_path, slug="alpha")
    beta = FileQueueSource(tmp_path, slug="beta")

    alpha_id = alpha.enqueue("Fix the README", task_id="a1")
    beta.enqueue("Bump version", task_id="b1")

    assert alpha_id == "a1"
    assert alpha.list_ready_tasks() == ["a1"]
    assert beta.list_ready_tasks() == ["b1"]
    assert (tmp_path / "pending" / "a1.json").is_file()


def test_enqueue_rejects_duplicate_id(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("first", task_id="t1")

    with pytest.raises(SourceError, match="already exists"):
        queue.enqueue("second", task_id="t1")


def test_claim_moves_task_to_claimed(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("Do the thing", task_id="t1")

    queue.claim_task("t1")

    assert queue.list_ready_tasks() == []
    assert queue.list_claimed_tasks() == ["t1"]
    task = queue.get_task("t1")
    assert task.state == TaskState.CLAIMED
    assert task.body == "Do the thing"
    assert task.title == "adhoc: Do the thing"


def test_claim_race_has_exactly_one_winner(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("Race me", task_id="42")
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _claim() -> None:
        contender = FileQueueSource(tmp_path, slug="alpha")
        barrier.wait()
        try:
            contender.claim_task("42")
        except TaskNotReadyError as error:
            result = str(error)
        else:
            result = "won"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_claim) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("won") == 1
    losers = [outcome for outcome in outcomes if outcome != "won"]
    assert len(losers) == 1
    assert "not found in ready state" in losers[0]
    assert queue.list_claimed_tasks() == ["42"]


def test_claim_of_other_projects_task_is_refused(tmp_path: Path) -> None:
    FileQueueSource(tmp_path, slug="beta").enqueue("not yours", task_id="t1")

    with pytest.raises(TaskNotReadyError):
        FileQueueSource(tmp_path, slug="alpha").claim_task("t1")


def test_fail_requeues_with_error_and_is_idempotent(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("Flaky", task_id="t1")
    queue.claim_task("t1")

    queue.fail_task("t1", "Agent exited with code 1")
    queue.fail_task("t1", "Agent exited with code 1")

    assert queue.list_ready_tasks() == ["t1"]
    assert queue.list_claimed_tasks() == []
    task = queue.get_task("t1")
    assert task.state == TaskState.READY
    assert task.error == "Agent exited with code 1"
    payload = json.loads((tmp_path / "pending" / "t1.json").read_text("utf-8"))
    assert payload["attempts"] == 1


def test_claim_never_overwrites_a_leftover_claimed_copy(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("Half requeued", task_id="t1")
    queue.claim_task("t1")
    claimed = tmp_path / "claimed" / "t1.json"
    original = claimed.read_text("utf-8")
    # Interrupted fail_task: the pending copy was written, the claimed one kept.
    (tmp_path / "pending" / "t1.json").write_text(original, "utf-8")

    with pytest.raises(TaskNotReadyError, match="already claimed"):
        queue.claim_task("t1")

    assert claimed.read_text("utf-8") == original
    assert (tmp_path / "pending" / "t1.json").is_file()


def test_complete_is_idempotent_and_ignores_later_failure(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("Ship it", task_id="t1")
    queue.claim_task("t1")

    queue.complete_task("t1", "https://example.com/pr/1")
    queue.complete_task("t1", "https://example.com/pr/1")
    queue.fail_task("t1", "late failure")

    assert queue.get_task("t1").state == TaskState.DONE
    payload = json.loads((tmp_path / "done" / "t1.json").read_text("utf-8"))
    assert payload["artifact_ref"] == "https://example.com/pr/1"
    assert not (tmp_path / "pending" / "t1.json").exists()
    assert not (tmp_path / "claimed" / "t1.json").exists()


def test_complete_without_claim_is_refused(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")
    queue.enqueue("Skip the claim", task_id="t1")

    with pytest.raises(TaskStateError, match="without being claimed"):
        queue.complete_task("t1", "ref")


def test_unknown_task_is_not_found(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path, slug="alpha")

    with pytest.raises(TaskNotFoundError):
        queue.get_task("missing")
    with pytest.raises(TaskNotFoundError):
        queue.fail_task("missing", "error")
