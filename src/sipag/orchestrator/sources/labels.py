"""Label-state adapter: task state is a mutually exclusive label on an issue.

State mapping for one issue:

- ``label_ready`` on an open issue  -> ready
- ``label_wip``                      -> claimed
- ``label_done`` or a closed issue   -> done

Known limitation: a claim is two REST calls (add the wip label, then remove
the ready label) and GitHub offers no compare-and-set on labels. A second
poller in another deployment can observe the issue between the two calls and
claim it as well. The ordering guard narrows the window by re-reading labels
first; it does not close it, and nothing here pretends otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from sipag.config import GitHubSettings
from sipag.orchestrator.models import Task, TaskState
from sipag.orchestrator.sources.base import (
    SourceError,
    TaskNotFoundError,
    transition_allowed,
)

logger = logging.getLogger(__name__)

FAILURE_COMMENT_PREFIX = "sipag failed:"

_LIST_PAGE_SIZE = 100
_TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


@dataclass(slots=True, frozen=True)
class LabelScheme:
    """Label names that encode the three states."""

    ready: str = "ready"
    wip: str = "in-progress"
    done: str = "needs-review"


class GitHubClient:
    """Small REST wrapper with retry transport and typed errors."""

    def __init__(
        self,
        settings: GitHubSettings,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "sipag",
        }
        if settings.token:
            headers["Authorization"] = f"Bearer {settings.token}"
        self._client = httpx.Client(
            base_url=settings.api_url,
            timeout=httpx.Timeout(settings.timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=settings.max_retries),
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        try:
            response = self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as error:
            raise SourceError(f"GitHub {method} {path} timed out", transient=True) from error
        except httpx.HTTPError as error:
            raise SourceError(f"GitHub {method} {path} failed: {error}", transient=True) from error
        if response.status_code == 404:
            if allow_not_found:
                return None
            raise TaskNotFoundError(f"GitHub {method} {path}: not found")
        if not response.is_success:
            raise SourceError(
                f"GitHub {method} {path}: HTTP {response.status_code} {response.text[:200]}",
                transient=response.status_code in _TRANSIENT_STATUS_CODES,
            )
        if not response.content:
            return None
        return response.json()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> GitHubClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class GitHubLabelSource:
    """Issues of one repository driven through ready/wip/done labels."""

    def __init__(
        self,
        client: GitHubClient,
        *,
        repo: str,
        labels: LabelScheme | None = None,
        close_on_complete: bool = False,
    ) -> None:
        if "/" not in repo:
            raise SourceError(f"GitHub repo must be owner/name, got {repo!r}")
        self.client = client
        self.repo = repo
        self.labels = labels or LabelScheme()
        self.close_on_complete = close_on_complete

    def close(self) -> None:
        self.client.close()

    def list_ready_tasks(self) -> list[str]:
        return self._list_with_label(self.labels.ready)

    def list_claimed_tasks(self) -> list[str]:
        return self._list_with_label(self.labels.wip)

    def claim_task(self, task_id: str) -> None:
        issue = self._issue(task_id)
        if not transition_allowed(
            task_id=task_id,
            current=self._state_of(issue),
            target=TaskState.CLAIMED,
        ):
            return
        self._add_label(task_id, self.labels.wip)
        self._remove_label(task_id, self.labels.ready)

    def get_task(self, task_id: str) -> Task:
        issue = self._issue(task_id)
        state = self._state_of(issue)
        return Task(
            id=task_id,
            title=str(issue.get("title") or ""),
            body=str(issue.get("body") or ""),
            backend_ref=str(issue.get("html_url") or f"{self.repo}#{task_id}"),
            state=state,
            error=self._last_failure(task_id) if state == TaskState.READY else None,
        )

    def complete_task(self, task_id: str, artifact_ref: str) -> None:
        issue = self._issue(task_id)
        current = self._state_of(issue)
        if current == TaskState.DONE:
            # A retry after a crash between label calls finishes the cleanup
            # without posting the artifact comment twice.
            if self.labels.wip in _label_names(issue):
                self._remove_label(task_id, self.labels.wip)
        elif transition_allowed(task_id=task_id, current=current, target=TaskState.DONE):
            self._add_label(task_id, self.labels.done)
            self._remove_label(task_id, self.labels.wip)
            if artifact_ref:
                self.comment(task_id, f"PR opened: {artifact_ref}")
        else:
            return
        if self.close_on_complete and issue.get("state") != "closed":
            self.client.request(
                "PATCH",
                self._issue_path(task_id),
                json={"state": "closed"},
            )

    def fail_task(self, task_id: str, error: str) -> None:
        issue = self._issue(task_id)
        current = self._state_of(issue)
        if current == TaskState.DONE:
            logger.warning("Ignoring failure for completed issue %s#%s", self.repo, task_id)
            return
        if not transition_allowed(task_id=task_id, current=current, target=TaskState.READY):
            return
        self._add_label(task_id, self.labels.ready)
        self._remove_label(task_id, self.labels.wip)
        if error:
            self.comment(task_id, f"{FAILURE_COMMENT_PREFIX} {error}")

    def comment(self, task_id: str, message: str) -> None:
        try:
            self.client.request(
                "POST",
                f"{self._issue_path(task_id)}/comments",
                json={"body": message},
            )
        except SourceError as error:
            logger.warning("Comment on %s#%s failed: %s", self.repo, task_id, error)

    def _list_with_label(self, label: str) -> list[str]:
        task_ids: list[str] = []
        page = 1
        while True:
            items = self.client.request(
                "GET",
                f"/repos/{self.repo}/issues",
                params={
                    "state": "open",
                    "labels": label,
                    "per_page": _LIST_PAGE_SIZE,
                    "page": page,
                    "sort": "created",
                    "direction": "asc",
                },
            )
            if not items:
                return task_ids
            task_ids.extend(
                str(item["number"]) for item in items if "pull_request" not in item
            )
            if len(items) < _LIST_PAGE_SIZE:
                return task_ids
            page += 1

    def _issue(self, task_id: str) -> dict[str, Any]:
        issue = self.client.request("GET", self._issue_path(task_id))
        if not isinstance(issue, dict):
            raise SourceError(f"Unexpected issue payload for {self.repo}#{task_id}")
        return issue

    def _state_of(self, issue: dict[str, Any]) -> TaskState:
        names = _label_names(issue)
        if self.labels.done in names or issue.get("state") == "closed":
            return TaskState.DONE
        if self.labels.wip in names:
            return TaskState.CLAIMED
        if self.labels.ready in names:
            return TaskState.READY
        # Open issue carrying none of the pipeline labels is not ours to touch.
        raise SourceError(f"Issue {self.repo}#{issue.get('number')} carries no pipeline label")

    def _last_failure(self, task_id: str) -> str | None:
        comments = self.client.request(
            "GET",
            f"{self._issue_path(task_id)}/comments",
            params={"per_page": _LIST_PAGE_SIZE},
        )
        for item in reversed(comments or []):
            body = str(item.get("body") or "")
            if body.startswith(FAILURE_COMMENT_PREFIX):
                return body.removeprefix(FAILURE_COMMENT_PREFIX).strip()
        return None

    def _add_label(self, task_id: str, label: str) -> None:
        self.client.request(
            "POST",
            f"{self._issue_path(task_id)}/labels",
            json={"labels": [label]},
        )

    def _remove_label(self, task_id: str, label: str) -> None:
        # Already absent counts as removed.
        self.client.request(
            "DELETE",
            f"{self._issue_path(task_id)}/labels/{quote(label, safe='')}",
            allow_not_found=True,
        )

    def _issue_path(self, task_id: str) -> str:
        return f"/repos/{self.repo}/issues/{task_id}"


def _label_names(issue: dict[str, Any]) -> set[str]:
    return {str(label.get("name")) for label in issue.get("labels") or []}
