"""Runtime configuration for the dispatcher and its workers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND = "claude --print --dangerously-skip-permissions -p {prompt}"
LOG_FORMAT = "%(asctime)s [%(levelname)-5s] %(processName)s %(name)s: %(message)s"
_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(slots=True, frozen=True)
class SchedulerSettings:
    """Control-loop settings shared by all projects."""

    global_ceiling: int = 8
    poll_interval_seconds: float = 60.0
    shutdown_grace_seconds: float = 5.0


@dataclass(slots=True, frozen=True)
class WorkerSettings:
    """Defaults applied to every worker unless the project overrides them."""

    agent_command: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: int = 600
    finalize_delay_seconds: float = 30.0
    state_max_age_days: int = 7


@dataclass(slots=True, frozen=True)
class GitHubSettings:
    """Credentials and endpoint for label-state issues and pull requests."""

    token: str = ""
    api_url: str = "https://api.github.com"
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True, frozen=True)
class Settings:
    """Application settings grouped by concern."""

    home: Path = Path.home() / ".sipag"
    log_level: str = "info"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)

    @classmethod
    def from_env(cls, home: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a single host."""

        return cls(
            home=home or Path(os.getenv("SIPAG_HOME", str(Path.home() / ".sipag"))),
            log_level=os.getenv("SIPAG_LOG_LEVEL", "info").strip().lower(),
            scheduler=SchedulerSettings(
                global_ceiling=int(os.getenv("SIPAG_MAX_WORKERS", "8")),
                poll_interval_seconds=float(os.getenv("SIPAG_POLL_INTERVAL", "60")),
                shutdown_grace_seconds=float(os.getenv("SIPAG_SHUTDOWN_GRACE_SECONDS", "5")),
            ),
            worker=WorkerSettings(
                agent_command=os.getenv("SIPAG_AGENT_COMMAND", DEFAULT_AGENT_COMMAND),
                timeout_seconds=int(os.getenv("SIPAG_TIMEOUT", "600")),
                finalize_delay_seconds=float(os.getenv("SIPAG_FINALIZE_DELAY_SECONDS", "30")),
                state_max_age_days=int(os.getenv("SIPAG_STATE_MAX_AGE_DAYS", "7")),
            ),
            github=GitHubSettings(
                token=os.getenv("GITHUB_TOKEN", os.getenv("GH_TOKEN", "")),
                api_url=os.getenv("SIPAG_GITHUB_API_URL", "https://api.github.com").rstrip("/"),
                timeout_seconds=float(os.getenv("SIPAG_HTTP_TIMEOUT_SECONDS", "30")),
                max_retries=int(os.getenv("SIPAG_HTTP_MAX_RETRIES", "3")),
            ),
        )

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    @property
    def pid_file(self) -> Path:
        return self.home / "sipag.pid"

    @property
    def hooks_dir(self) -> Path:
        return self.home / "hooks"

    def project_dir(self, slug: str) -> Path:
        return self.projects_dir / slug

    def run_records_dir(self, slug: str) -> Path:
        return self.project_dir(slug) / "workers"

    def worker_snapshot_path(self, slug: str) -> Path:
        return self.project_dir(slug) / "workers.json"

    def workspaces_dir(self, slug: str) -> Path:
        return self.project_dir(slug) / "workspaces"

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot work with."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"SIPAG_LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {self.log_level!r}.",
            )
        if self.scheduler.global_ceiling < 0:
            raise ValueError("SIPAG_MAX_WORKERS must be >= 0.")
        if self.scheduler.poll_interval_seconds < 0:
            raise ValueError("SIPAG_POLL_INTERVAL must be >= 0.")
        if self.worker.timeout_seconds <= 0:
            raise ValueError("SIPAG_TIMEOUT must be > 0.")
        if "{prompt}" not in self.worker.agent_command:
            raise ValueError("SIPAG_AGENT_COMMAND must include {prompt}.")
        if self.worker.finalize_delay_seconds < 0:
            raise ValueError("SIPAG_FINALIZE_DELAY_SECONDS must be >= 0.")
        if self.worker.state_max_age_days < 0:
            raise ValueError("SIPAG_STATE_MAX_AGE_DAYS must be >= 0.")


def configure_logging(level: str) -> None:
    """Install the root handler once per process."""

    logging.basicConfig(
        level=_LOG_LEVELS.get(level.strip().lower(), logging.INFO),
        format=LOG_FORMAT,
        force=True,
    )
