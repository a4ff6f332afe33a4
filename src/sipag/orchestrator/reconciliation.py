"""Orphaned-claim report: tasks claimed in a backend with no live worker.

The report is read-only. Resuming or requeueing an orphan is left to the
operator, since its worker may still be running outside this process.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from sipag.orchestrator.models import OrphanedClaim
from sipag.orchestrator.registry import ProjectConfig
from sipag.orchestrator.run_records import RunRecordStore
from sipag.orchestrator.sources import SourceError, TaskSource

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrphanReport:
    orphans: list[OrphanedClaim] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def build_orphan_report(
    *,
    projects: Iterable[ProjectConfig],
    source_factory: Callable[[ProjectConfig], TaskSource],
    live_task_ids: Callable[[str], set[str]],
    records_for: Callable[[str], RunRecordStore],
) -> OrphanReport:
    report = OrphanReport()
    for project in projects:
        try:
            source = source_factory(project)
            try:
                claimed = source.list_claimed_tasks()
            finally:
                source.close()
        except SourceError as error:
            report.errors[project.slug] = str(error)
            continue
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error inspecting project %s", project.slug)
            report.errors[project.slug] = f"unexpected error: {error}"
            continue

        live = live_task_ids(project.slug)
        records = records_for(project.slug)
        for task_id in claimed:
            if task_id in live:
                continue
            record = records.read(task_id)
            report.orphans.append(
                OrphanedClaim(
                    project_id=project.slug,
                    task_id=task_id,
                    last_status=record.status if record is not None else None,
                    last_error=record.error if record is not None else None,
                ),
            )
    return report


def render_orphan_lines(report: OrphanReport) -> list[str]:
    lines: list[str] = []
    if not report.orphans:
        lines.append("No orphaned claims.")
    for orphan in report.orphans:
        status = orphan.last_status.value if orphan.last_status is not None else "-"
        line = f"ORPHAN {orphan.project_id}/{orphan.task_id} last_status={status}"
        if orphan.last_error:
            line = f"{line} last_error={orphan.last_error.splitlines()[0]}"
        lines.append(line)
    lines.extend(
        f"Could not inspect project {slug}: {error}"
        for slug, error in sorted(report.errors.items())
    )
    return lines


def log_orphan_report(report: OrphanReport) -> None:
    for orphan in report.orphans:
        logger.warning(
            "Orphaned claim %s/%s (last status %s); resolve it manually",
            orphan.project_id,
            orphan.task_id,
            orphan.last_status.value if orphan.last_status is not None else "unknown",
        )
    for slug, error in sorted(report.errors.items()):
        logger.warning("Could not inspect project %s for orphaned claims: %s", slug, error)
    if not report.orphans:
        logger.info("No orphaned claims")
