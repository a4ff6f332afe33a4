from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from sipag.orchestrator.hooks import HookEvent, HookRunner

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Lifecycle Hooks"),
    pytest.mark.skipif(sys.platform == "win32", reason="hooks are POSIX executables"),
]

_RECORDING_HOOK = """#!/bin/sh
printf '%s %s %s\\n' "$SIPAG_EVENT" "$SIPAG_REPO" "$SIPAG_ISSUE" >> fired.log
"""


def test_event_names_are_dotted() -> None:
    assert HookEvent.WORKER_STARTED.event_name == "worker.started"
    assert HookEvent.WORKER_COMPLETED.event_name == "worker.completed"
    assert HookEvent.WORKER_FAILED.event_name == "worker.failed"


def test_installed_hook_receives_event_environment(tmp_path: Path, install_hook) -> None:
    install_hook(tmp_path, HookEvent.WORKER_STARTED.value, _RECORDING_HOOK)

    process = HookRunner(tmp_path).fire(
        HookEvent.WORKER_STARTED,
        {"SIPAG_REPO": "acme/widgets", "SIPAG_ISSUE": "42"},
    )

    assert process is not None
    assert process.wait(timeout=10) == 0
    assert (tmp_path / "fired.log").read_text("utf-8") == "worker.started acme/widgets 42\n"


def test_missing_or_non_executable_hook_is_skipped(tmp_path: Path, install_hook) -> None:
    path = install_hook(tmp_path, HookEvent.WORKER_FAILED.value, _RECORDING_HOOK)
    path.chmod(0o644)
    runner = HookRunner(tmp_path)

    assert runner.fire(HookEvent.WORKER_FAILED, {}) is None
    assert runner.fire(HookEvent.WORKER_COMPLETED, {}) is None
    assert HookRunner(tmp_path / "absent").fire(HookEvent.WORKER_STARTED, {}) is None


def test_failing_hook_does_not_raise(tmp_path: Path, install_hook) -> None:
    install_hook(tmp_path, HookEvent.WORKER_COMPLETED.value, "#!/bin/sh\nexit 3\n")

    process = HookRunner(tmp_path).fire(HookEvent.WORKER_COMPLETED, {})

    assert process is not None
    assert process.wait(timeout=10) == 3


def test_broken_interpreter_is_logged_not_raised(tmp_path: Path, install_hook) -> None:
    install_hook(tmp_path, HookEvent.WORKER_STARTED.value, "#!/no/such/interpreter\n")

    assert HookRunner(tmp_path).fire(HookEvent.WORKER_STARTED, {}) is None
