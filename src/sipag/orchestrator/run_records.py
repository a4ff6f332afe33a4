"""Run records: one JSON file per task, overwritten in place by its worker."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from pathlib import Path

from sipag.orchestrator.models import RunRecord
from sipag.storage import utc_now, write_json_atomic

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class RunRecordStore:
    """Run records of one project, keyed by task id."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, task_id: str) -> Path:
        return self.directory / f"{_UNSAFE_NAME_CHARS.sub('_', task_id)}.json"

    def write(self, record: RunRecord, *, fresh: bool = False) -> RunRecord:
        """Replace the task's record, keeping ``started_at`` of the run in progress.

        ``fresh`` marks the first write of a new run, which never inherits a
        start time left behind by a crashed worker. Terminal statuses get
        ``finished_at`` stamped when the caller left it empty.
        """

        existing = None if fresh else self.read(record.task_id)
        if existing is not None and not existing.status.is_terminal:
            record.started_at = existing.started_at
        if record.status.is_terminal and record.finished_at is None:
            record.finished_at = utc_now()
        write_json_atomic(self.path_for(record.task_id), record.to_payload())
        return record

    def read(self, task_id: str) -> RunRecord | None:
        path = self.path_for(task_id)
        if not path.is_file():
            return None
        return self._load(path)

    def list_records(self) -> list[RunRecord]:
        if not self.directory.is_dir():
            return []
        records = [
            record
            for path in sorted(self.directory.glob("*.json"))
            if (record := self._load(path)) is not None
        ]
        return sorted(records, key=lambda record: record.started_at)

    def prune(self, *, max_age_days: int, now: datetime | None = None) -> list[str]:
        """Delete terminal records finished more than ``max_age_days`` ago."""

        cutoff = (now or utc_now()) - timedelta(days=max_age_days)
        removed: list[str] = []
        for record in self.list_records():
            if not record.status.is_terminal:
                continue
            finished = record.finished_at or record.started_at
            if finished >= cutoff:
                continue
            self.path_for(record.task_id).unlink(missing_ok=True)
            removed.append(record.task_id)
        if removed:
            logger.info("Pruned %d run records from %s", len(removed), self.directory)
        return removed

    def _load(self, path: Path) -> RunRecord | None:
        try:
            return RunRecord.from_payload(json.loads(path.read_text("utf-8")))
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as error:
            logger.warning("Skipping unreadable run record %s: %s", path, error)
            return None
