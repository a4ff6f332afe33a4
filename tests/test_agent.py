from __future__ import annotations

import os
import sys
import time
from pathlib import Path

import allure
import pytest

from sipag.orchestrator.agent import (
    TIMEOUT_EXIT_CODE,
    AgentRunError,
    AgentRunner,
    AgentRunRequest,
    build_prompt,
    build_run_args,
    read_tail,
)
from sipag.orchestrator.models import Task, TaskState

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Agent Invocation"),
]


def test_build_run_args_quotes_prompt_as_one_argument() -> None:
    argv = build_run_args(
        command_template="claude --print -p {prompt}",
        prompt="fix 'the' bug\nplease",
        prompt_file=Path("prompt.txt"),
    )

    assert argv == ["claude", "--print", "-p", "fix 'the' bug\nplease"]


def test_build_run_args_supports_prompt_file() -> None:
    argv = build_run_args(
        command_template="agent --file {prompt_file} --inline {prompt}",
        prompt="hi",
        prompt_file=Path("run dir/prompt.txt"),
    )

    assert argv == ["agent", "--file", "run dir/prompt.txt", "--inline", "hi"]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("", "empty"),
        ("claude --print", "must include {prompt}"),
        ("claude {model} {prompt}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(AgentRunError, match=message) as excinfo:
        build_run_args(command_template=template, prompt="x", prompt_file=Path("p"))

    assert excinfo.value.transient is False


def test_build_prompt_has_prefix_task_and_instructions() -> None:
    task = Task(
        id="12",
        title="Add dark mode",
        body="Users want it.",
        backend_ref="https://github.com/acme/app/issues/12",
        state=TaskState.CLAIMED,
    )

    prompt = build_prompt(task, prefix="You work on acme/app.")

    assert prompt.startswith("You work on acme/app.\n\n")
    assert "Task https://github.com/acme/app/issues/12: Add dark mode" in prompt
    assert "Users want it." in prompt
    assert prompt.rstrip().endswith(
        "Implement what the issue asks for. When done, make sure all changes are committed.",
    )


def _request(tmp_path: Path, command: str, timeout_seconds: int = 30) -> AgentRunRequest:
    return AgentRunRequest(
        workspace=tmp_path,
        prompt="hello",
        command_template=command,
        timeout_seconds=timeout_seconds,
        log_path=tmp_path / "run" / "agent.log",
        prompt_path=tmp_path / "run" / "prompt.txt",
        env={"SIPAG_TASK_ID": "7"},
    )


def test_runner_captures_output_and_env(tmp_path: Path) -> None:
    script = "import os, sys; print(sys.argv[1], os.environ['SIPAG_TASK_ID'])"
    command = f"{sys.executable} -c \"{script}\" {{prompt}}"

    result = AgentRunner().run(_request(tmp_path, command))

    assert result.exit_code == 0
    assert result.timed_out is False
    assert read_tail(result.log_path) == "hello 7"
    assert (tmp_path / "run" / "prompt.txt").read_text("utf-8") == "hello"


def test_runner_kills_agent_at_deadline(tmp_path: Path) -> None:
    command = f"{sys.executable} -c \"import time; time.sleep(30)\" {{prompt}}"

    result = AgentRunner().run(_request(tmp_path, command, timeout_seconds=1))

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.duration_seconds < 10


def _gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    # Killed but not yet reaped by init.
    return stat.is_file() and stat.read_text("utf-8").rsplit(")", 1)[1].split()[0] == "Z"


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
def test_deadline_kills_processes_spawned_by_the_agent(tmp_path: Path) -> None:
    script = (
        "import subprocess, sys, time; "
        "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
        "open('child.pid', 'w').write(str(child.pid)); "
        "time.sleep(60)"
    )
    command = f"{sys.executable} -c \"{script}\" {{prompt}}"

    result = AgentRunner().run(_request(tmp_path, command, timeout_seconds=3))

    assert result.timed_out is True
    child_pid = int((tmp_path / "child.pid").read_text("utf-8"))
    deadline = time.monotonic() + 5
    while not _gone(child_pid) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert _gone(child_pid)


def test_missing_agent_binary_is_permanent(tmp_path: Path) -> None:
    with pytest.raises(AgentRunError, match="not found") as excinfo:
        AgentRunner().run(_request(tmp_path, "sipag-no-such-agent {prompt}"))

    assert excinfo.value.transient is False


def test_read_tail_keeps_last_lines(tmp_path: Path) -> None:
    log = tmp_path / "agent.log"
    log.write_text("".join(f"line {number}\n" for number in range(30)), "utf-8")

    assert read_tail(log, lines=2) == "line 28\nline 29"
    assert read_tail(tmp_path / "missing.log") == ""
