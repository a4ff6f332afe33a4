from __future__ import annotations

from pathlib import Path

import allure

from sipag.orchestrator.models import BackendType, RunRecord, RunStatus
from sipag.orchestrator.reconciliation import build_orphan_report, render_orphan_lines
from sipag.orchestrator.registry import ProjectConfig
from sipag.orchestrator.run_records import RunRecordStore
from sipag.orchestrator.sources import ActionStoreSource, FileQueueSource, SourceError
from sipag.storage import utc_now

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Orphaned Claims"),
]


class UnreachableSource:
    def list_claimed_tasks(self) -> list[str]:
        raise SourceError("connection refused", transient=True)

    def close(self) -> None:
        return None


def test_claimed_tasks_without_live_worker_are_reported(tmp_path: Path) -> None:
    queue = FileQueueSource(tmp_path / "queue", slug="app")
    for task_id in ("1", "2", "3"):
        queue.enqueue(f"task {task_id}", task_id=task_id)
        queue.claim_task(task_id)
    records = RunRecordStore(tmp_path / "records")
    records.write(
        RunRecord(
            task_id="2",
            title="task 2",
            status=RunStatus.RUNNING,
            started_at=utc_now(),
            error="agent still going\nsecond line",
        ),
    )
    projects = [
        ProjectConfig(slug="app", backend_type=BackendType.ADHOC, clone_url="x"),
        ProjectConfig(slug="down", backend_type=BackendType.GITHUB, repo="acme/down"),
    ]

    report = build_orphan_report(
        projects=projects,
        source_factory=lambda project: queue if project.slug == "app" else UnreachableSource(),
        live_task_ids=lambda slug: {"1"},
        records_for=lambda slug: records,
    )

    assert [(orphan.task_id, orphan.last_status) for orphan in report.orphans] == [
        ("2", RunStatus.RUNNING),
        ("3", None),
    ]
    assert render_orphan_lines(report) == [
        "ORPHAN app/2 last_status=running last_error=agent still going",
        "ORPHAN app/3 last_status=-",
        "Could not inspect project down: connection refused",
    ]


def test_report_without_orphans_says_so(tmp_path: Path) -> None:
    report = build_orphan_report(
        projects=[],
        source_factory=lambda project: FileQueueSource(tmp_path, slug=project.slug),
        live_task_ids=lambda slug: set(),
        records_for=lambda slug: RunRecordStore(tmp_path),
    )

    assert render_orphan_lines(report) == ["No orphaned claims."]


def test_unreadable_action_store_is_reported_not_raised(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.db"
    db_path.touch()
    project = ProjectConfig(slug="tao", backend_type=BackendType.TAO, store_path=db_path)

    report = build_orphan_report(
        projects=[project],
        source_factory=lambda _: ActionStoreSource(db_path),
        live_task_ids=lambda slug: set(),
        records_for=lambda slug: RunRecordStore(tmp_path / "records"),
    )

    assert report.orphans == []
    assert "query failed" in report.errors["tao"]
