"""Subprocess runner for the external coding agent."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from sipag.orchestrator.models import Task

TIMEOUT_EXIT_CODE = 124

_AGENT_INSTRUCTIONS = (
    "Instructions:\n"
    "- Work in the current directory, which is a fresh clone on a dedicated branch.\n"
    "- Commit your changes with clear messages. Do not push; the caller pushes.\n"
    "- Implement what the issue asks for. "
    "When done, make sure all changes are committed."
)


class AgentRunError(RuntimeError):
    """Agent could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs for one agent invocation."""

    workspace: Path
    prompt: str
    command_template: str
    timeout_seconds: int
    log_path: Path
    prompt_path: Path
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class AgentRunResult:
    """Exit status of one agent invocation."""

    exit_code: int
    timed_out: bool
    log_path: Path
    duration_seconds: float
    cancelled: bool = False


class AgentRunner:
    """Run the agent command in the workspace under a worker-owned deadline."""

    def __init__(
        self,
        *,
        poll_interval_seconds: float = 0.1,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> None:
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_requested = shutdown_requested

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.prompt_path.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_path.write_text(request.prompt, "utf-8")
        request.log_path.parent.mkdir(parents=True, exist_ok=True)

        run_args = build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=request.prompt_path,
        )
        env = os.environ.copy()
        env.update(request.env)

        try:
            with request.log_path.open("w", encoding="utf-8") as log_handle:
                return self._run_with_deadline(
                    run_args=run_args,
                    cwd=request.workspace,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    log_handle=log_handle,
                    log_path=request.log_path,
                )
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error

    def _run_with_deadline(  # noqa: PLR0913
        self,
        *,
        run_args: list[str],
        cwd: Path,
        env: dict[str, str],
        timeout_seconds: int,
        log_handle,
        log_path: Path,
    ) -> AgentRunResult:
        process = subprocess.Popen(  # noqa: S603
            run_args,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
        started = time.monotonic()
        while True:
            returncode = process.poll()
            elapsed = time.monotonic() - started
            if returncode is not None:
                return AgentRunResult(
                    exit_code=returncode,
                    timed_out=False,
                    log_path=log_path,
                    duration_seconds=elapsed,
                )
            cancelled = self.shutdown_requested is not None and self.shutdown_requested()
            if elapsed >= timeout_seconds or cancelled:
                _terminate_process(process)
                return AgentRunResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=not cancelled,
                    log_path=log_path,
                    duration_seconds=elapsed,
                    cancelled=cancelled,
                )
            time.sleep(self.poll_interval_seconds)


def build_prompt(task: Task, *, prefix: str = "") -> str:
    """Title, body and fixed operating instructions handed to the agent."""

    parts: list[str] = []
    if prefix.strip():
        parts.append(prefix.strip())
    parts.append(f"Task {task.backend_ref}: {task.title}")
    if task.body.strip():
        parts.append(task.body.strip())
    parts.append(_AGENT_INSTRUCTIONS)
    return "\n\n".join(parts) + "\n"


def build_run_args(*, command_template: str, prompt: str, prompt_file: Path) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise AgentRunError("Agent command template must include {prompt}.", transient=False)
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("Agent command template rendered empty command.", transient=False)
    return argv


def read_tail(path: Path, *, lines: int = 20) -> str:
    """Last ``lines`` lines of a log, empty when the log does not exist."""

    if not path.exists():
        return ""
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return "".join(deque(handle, maxlen=lines)).rstrip()


def _terminate_process(process: subprocess.Popen[str]) -> None:
    """Stop the agent and everything it spawned; the agent leads its own group."""

    _signal_group(process, signal.SIGTERM)
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        _signal_group(process, signal.SIGKILL)
        process.wait(timeout=2)
    else:
        # Children that ignored SIGTERM outlive their leader.
        _signal_group(process, signal.SIGKILL)


def _signal_group(process: subprocess.Popen[str], signum: signal.Signals) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        return
    except OSError:
        process.send_signal(signum)
