"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from sipag.config import Settings, WorkerSettings

ECHO_AGENT_COMMAND = f"{sys.executable} -m sipag.orchestrator.echo_agent --prompt {{prompt}}"

_GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "sipag tests",
    "GIT_AUTHOR_EMAIL": "tests@sipag.invalid",
    "GIT_COMMITTER_NAME": "sipag tests",
    "GIT_COMMITTER_EMAIL": "tests@sipag.invalid",
}


def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)  # noqa: S603


@pytest.fixture()
def sipag_home(tmp_path: Path, monkeypatch) -> Path:
    """Isolated SIPAG_HOME with env overrides cleared."""

    home = tmp_path / "home"
    monkeypatch.setenv("SIPAG_HOME", str(home))
    for name in (
        "SIPAG_MAX_WORKERS",
        "SIPAG_POLL_INTERVAL",
        "SIPAG_LOG_LEVEL",
        "SIPAG_AGENT_COMMAND",
        "SIPAG_TIMEOUT",
        "SIPAG_FINALIZE_DELAY_SECONDS",
        "SIPAG_STATE_MAX_AGE_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture()
def settings(sipag_home: Path) -> Settings:
    base = Settings.from_env(home=sipag_home)
    return replace(
        base,
        worker=WorkerSettings(
            agent_command=ECHO_AGENT_COMMAND,
            timeout_seconds=60,
            finalize_delay_seconds=0,
            state_max_age_days=7,
        ),
    )


@pytest.fixture()
def git_identity(monkeypatch) -> None:
    for name, value in _GIT_IDENTITY.items():
        monkeypatch.setenv(name, value)


@pytest.fixture()
def origin_repo(tmp_path: Path, git_identity) -> Path:
    """Bare repository with one commit on ``main``, usable as a clone URL."""

    seed = tmp_path / "seed"
    seed.mkdir()
    _git("init", "-b", "main", cwd=seed)
    (seed / "README.md").write_text("seed\n", "utf-8")
    _git("add", "README.md", cwd=seed)
    _git("commit", "-m", "Initial commit", cwd=seed)
    origin = tmp_path / "origin.git"
    _git("clone", "--bare", str(seed), str(origin), cwd=tmp_path)
    return origin



@pytest.fixture()
def install_hook():
    """Write an executable lifecycle hook; returns its path."""

    def _install(hooks_dir: Path, name: str, script: str) -> Path:
        hooks_dir.mkdir(parents=True, exist_ok=True)
        path = hooks_dir / name
        path.write_text(script, "utf-8")
        path.chmod(0o755)
        return path

    return _install
