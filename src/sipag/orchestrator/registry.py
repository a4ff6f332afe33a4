"""Project registry: one JSON config per project under the sipag home."""

from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from sipag.orchestrator.models import BackendType
from sipag.storage import from_iso, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]*$")
CONFIG_FILE_NAME = "config.json"


class RegistryError(RuntimeError):
    """Administrative error in project registration or configuration."""


@dataclass(slots=True, frozen=True)
class ProjectConfig:
    """Static per-project settings, immutable for the length of one cycle."""

    slug: str
    backend_type: BackendType
    concurrency_ceiling: int = 2
    repo: str = ""
    clone_url: str = ""
    base_branch: str = "main"
    timeout_seconds: int | None = None
    label_ready: str = "ready"
    label_wip: str = "in-progress"
    label_done: str = "needs-review"
    queue_root: Path | None = None
    store_path: Path | None = None
    action_filter: str = ""
    prompt_prefix: str = ""
    agent_command: str = ""
    close_on_complete: bool = False
    registered_at: datetime | None = None

    @property
    def resolved_clone_url(self) -> str:
        if self.clone_url:
            return self.clone_url
        return f"https://github.com/{self.repo}.git"

    def validate(self) -> None:
        if not SLUG_PATTERN.match(self.slug):
            raise RegistryError(
                f"Invalid project slug {self.slug!r}: use letters, digits, '.', '_' or '-'.",
            )
        if self.concurrency_ceiling < 0:
            raise RegistryError(f"Project {self.slug}: concurrency_ceiling must be >= 0.")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise RegistryError(f"Project {self.slug}: timeout_seconds must be > 0.")
        if self.repo and "/" not in self.repo:
            raise RegistryError(f"Project {self.slug}: repo must be owner/name, got {self.repo!r}.")
        if not self.repo and not self.clone_url:
            raise RegistryError(f"Project {self.slug}: either repo or clone_url is required.")
        if self.backend_type == BackendType.GITHUB and not self.repo:
            raise RegistryError(f"Project {self.slug}: github backend requires repo.")
        if self.backend_type == BackendType.TAO and self.store_path is None:
            raise RegistryError(f"Project {self.slug}: tao backend requires store_path.")
        if len({self.label_ready, self.label_wip, self.label_done}) != 3:
            raise RegistryError(f"Project {self.slug}: ready/wip/done labels must differ.")
        if self.agent_command and "{prompt}" not in self.agent_command:
            raise RegistryError(f"Project {self.slug}: agent_command must include {{prompt}}.")

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["backend_type"] = self.backend_type.value
        payload["queue_root"] = str(self.queue_root) if self.queue_root else None
        payload["store_path"] = str(self.store_path) if self.store_path else None
        payload["registered_at"] = (
            self.registered_at.isoformat() if self.registered_at is not None else None
        )
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProjectConfig:
        try:
            backend_type = BackendType(str(payload["backend_type"]))
            registered_raw = payload.get("registered_at")
            return cls(
                slug=str(payload["slug"]),
                backend_type=backend_type,
                concurrency_ceiling=int(payload.get("concurrency_ceiling", 2)),
                repo=str(payload.get("repo") or ""),
                clone_url=str(payload.get("clone_url") or ""),
                base_branch=str(payload.get("base_branch") or "main"),
                timeout_seconds=_optional_int(payload.get("timeout_seconds")),
                label_ready=str(payload.get("label_ready") or "ready"),
                label_wip=str(payload.get("label_wip") or "in-progress"),
                label_done=str(payload.get("label_done") or "needs-review"),
                queue_root=_optional_path(payload.get("queue_root")),
                store_path=_optional_path(payload.get("store_path")),
                action_filter=str(payload.get("action_filter") or ""),
                prompt_prefix=str(payload.get("prompt_prefix") or ""),
                agent_command=str(payload.get("agent_command") or ""),
                close_on_complete=bool(payload.get("close_on_complete", False)),
                registered_at=from_iso(str(registered_raw)) if registered_raw else None,
            )
        except (KeyError, TypeError, ValueError) as error:
            raise RegistryError(f"Malformed project config: {error}") from error


class ProjectRegistry:
    """Reads and writes ``<projects_dir>/<slug>/config.json``."""

    def __init__(self, projects_dir: Path) -> None:
        self.projects_dir = projects_dir

    def add(self, config: ProjectConfig) -> ProjectConfig:
        config.validate()
        path = self._config_path(config.slug)
        if path.exists():
            raise RegistryError(f"Project {config.slug} is already registered.")
        stored = replace(config, registered_at=config.registered_at or utc_now())
        write_json_atomic(path, stored.to_payload())
        logger.info("Registered project %s (%s)", stored.slug, stored.backend_type.value)
        return stored

    def remove(self, slug: str, *, live_task_ids: list[str] | None = None) -> None:
        """Unregister a project; refused while any of its workers is alive."""

        directory = self.projects_dir / slug
        if not self._config_path(slug).is_file():
            raise RegistryError(f"Project {slug} is not registered.")
        if live_task_ids:
            raise RegistryError(
                f"Project {slug} still has live workers: {', '.join(sorted(live_task_ids))}.",
            )
        shutil.rmtree(directory)
        logger.info("Removed project %s", slug)

    def get(self, slug: str) -> ProjectConfig:
        path = self._config_path(slug)
        if not path.is_file():
            raise RegistryError(f"Project {slug} is not registered.")
        return self._load(path)

    def list_slugs(self) -> list[str]:
        if not self.projects_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.projects_dir.iterdir()
            if (entry / CONFIG_FILE_NAME).is_file()
        )

    def load_all(self) -> list[ProjectConfig]:
        """Load every valid project in registration order.

        A malformed config is logged and left out; it never hides the others.
        """

        projects: list[ProjectConfig] = []
        for slug in self.list_slugs():
            try:
                projects.append(self._load(self._config_path(slug)))
            except RegistryError as error:
                logger.error("Skipping project %s: %s", slug, error)
        return sorted(projects, key=_registration_order)

    def _load(self, path: Path) -> ProjectConfig:
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise RegistryError(f"Cannot read {path}: {error}") from error
        if not isinstance(payload, dict):
            raise RegistryError(f"Expected JSON object in {path}")
        config = ProjectConfig.from_payload(payload)
        if config.slug != path.parent.name:
            raise RegistryError(
                f"Slug {config.slug!r} does not match directory {path.parent.name!r}",
            )
        config.validate()
        return config

    def _config_path(self, slug: str) -> Path:
        return self.projects_dir / slug / CONFIG_FILE_NAME


def _optional_path(value: object) -> Path | None:
    if not value:
        return None
    return Path(str(value)).expanduser()


def _registration_order(config: ProjectConfig) -> tuple[str, str]:
    registered = config.registered_at.isoformat() if config.registered_at else ""
    return registered, config.slug


def _optional_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    return int(str(value))
