"""Change-request publishing for pushed task branches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from sipag.config import Settings
from sipag.orchestrator.registry import ProjectConfig
from sipag.orchestrator.sources.base import SourceError
from sipag.orchestrator.sources.labels import GitHubClient

logger = logging.getLogger(__name__)


class PublishError(RuntimeError):
    """Change request could not be opened, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True, frozen=True)
class ChangeRequest:
    title: str
    body: str
    head: str
    base: str


class ChangeRequestPublisher(Protocol):
    """Opens and looks up change requests for a branch."""

    def find(self, head: str) -> str | None:
        """Return the locator of an existing change request for ``head``."""

    def create(self, request: ChangeRequest) -> str:
        """Open a change request and return its locator."""

    def close(self) -> None:
        """Release connections."""


class GitHubPullRequestPublisher:
    """Pull requests through the GitHub REST API."""

    def __init__(self, client: GitHubClient, *, repo: str) -> None:
        self.client = client
        self.repo = repo

    def find(self, head: str) -> str | None:
        owner = self.repo.split("/", 1)[0]
        try:
            pulls = self.client.request(
                "GET",
                f"/repos/{self.repo}/pulls",
                params={"head": f"{owner}:{head}", "state": "all"},
            )
        except SourceError as error:
            raise PublishError(
                f"Pull request lookup failed: {error}",
                transient=error.transient,
            ) from error
        for pull in pulls or []:
            url = pull.get("html_url")
            if url:
                return str(url)
        return None

    def create(self, request: ChangeRequest) -> str:
        try:
            created = self.client.request(
                "POST",
                f"/repos/{self.repo}/pulls",
                json={
                    "title": request.title,
                    "body": request.body,
                    "head": request.head,
                    "base": request.base,
                },
            )
        except SourceError as error:
            # 422 also covers "a pull request already exists" from an earlier attempt.
            existing = self.find(request.head) if "HTTP 422" in str(error) else None
            if existing is not None:
                return existing
            raise PublishError(
                f"Pull request creation failed: {error}",
                transient=error.transient,
            ) from error
        url = (created or {}).get("html_url")
        if not url:
            raise PublishError("Pull request response carried no html_url", transient=True)
        logger.info("Opened pull request %s", url)
        return str(url)

    def close(self) -> None:
        self.client.close()


class BranchPublisher:
    """For repositories without a review API: the pushed branch is the artifact."""

    def __init__(self, *, clone_url: str) -> None:
        self.clone_url = clone_url

    def find(self, head: str) -> str | None:
        return None

    def create(self, request: ChangeRequest) -> str:
        return f"{self.clone_url}#{request.head}"

    def close(self) -> None:
        """Nothing to release."""


def change_request_body(*, backend_ref: str, task_id: str, is_issue: bool) -> str:
    lines = [f"Automated change for {backend_ref}."]
    if is_issue:
        lines.append(f"\nCloses #{task_id}")
    return "\n".join(lines)


def build_publisher(
    project: ProjectConfig,
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ChangeRequestPublisher:
    """Pull requests when the project names a GitHub repo, bare branches otherwise."""

    if project.repo:
        return GitHubPullRequestPublisher(
            GitHubClient(settings.github, transport=transport),
            repo=project.repo,
        )
    return BranchPublisher(clone_url=project.resolved_clone_url)
