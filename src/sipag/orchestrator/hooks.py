"""Lifecycle hooks: operator executables fired at worker milestones.

An executable named after the event in ``<SIPAG_HOME>/hooks/`` is started in
the background with the event data in its environment. Hooks are never
awaited, their output is discarded and a missing or non-executable file is
skipped. A hook can never fail or delay the worker that fired it.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    WORKER_STARTED = "on-worker-started"
    WORKER_COMPLETED = "on-worker-completed"
    WORKER_FAILED = "on-worker-failed"

    @property
    def event_name(self) -> str:
        """Dotted name exported as ``SIPAG_EVENT``, e.g. ``worker.started``."""

        return self.value.removeprefix("on-").replace("-", ".", 1)


@dataclass(slots=True, frozen=True)
class HookRunner:
    hooks_dir: Path

    def fire(self, event: HookEvent, env: dict[str, str]) -> subprocess.Popen[bytes] | None:
        """Start the hook for ``event`` if one is installed; returns the unawaited process."""

        path = self.hooks_dir / event.value
        if not path.is_file() or not os.access(path, os.X_OK):
            return None
        try:
            process = subprocess.Popen(  # noqa: S603
                [str(path)],
                cwd=self.hooks_dir,
                env={**os.environ, **env, "SIPAG_EVENT": event.event_name},
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as error:
            logger.warning("Hook %s could not start: %s", path, error)
            return None
        logger.debug("Fired hook %s (pid %s)", event.value, process.pid)
        return process
