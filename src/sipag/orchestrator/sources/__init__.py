"""Backend adapters and the factory that picks one per project."""

from __future__ import annotations

from pathlib import Path

import httpx

from sipag.config import Settings
from sipag.orchestrator.models import BackendType
from sipag.orchestrator.registry import ProjectConfig
from sipag.orchestrator.sources.actions import ActionStoreSource
from sipag.orchestrator.sources.base import (
    SourceError,
    TaskNotFoundError,
    TaskNotReadyError,
    TaskSource,
    TaskStateError,
)
from sipag.orchestrator.sources.filequeue import FileQueueSource
from sipag.orchestrator.sources.labels import GitHubClient, GitHubLabelSource, LabelScheme

__all__ = [
    "ActionStoreSource",
    "FileQueueSource",
    "GitHubLabelSource",
    "SourceError",
    "TaskNotFoundError",
    "TaskNotReadyError",
    "TaskSource",
    "TaskStateError",
    "build_source",
    "queue_root_for",
]


def queue_root_for(project: ProjectConfig, settings: Settings) -> Path:
    return project.queue_root or settings.home / "queue"


def build_source(
    project: ProjectConfig,
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> TaskSource:
    """Adapter bound to one project; the caller closes it."""

    if project.backend_type == BackendType.GITHUB:
        return GitHubLabelSource(
            GitHubClient(settings.github, transport=transport),
            repo=project.repo,
            labels=LabelScheme(
                ready=project.label_ready,
                wip=project.label_wip,
                done=project.label_done,
            ),
            close_on_complete=project.close_on_complete,
        )
    if project.backend_type == BackendType.ADHOC:
        return FileQueueSource(queue_root_for(project, settings), slug=project.slug)
    if project.backend_type == BackendType.TAO:
        if project.store_path is None:
            raise SourceError(f"Project {project.slug}: tao backend requires store_path")
        return ActionStoreSource(project.store_path, action_filter=project.action_filter)
    raise SourceError(f"Unsupported backend type: {project.backend_type}")
