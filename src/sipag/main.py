"""CLI entrypoint for sipag."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from sipag import __version__
from sipag.orchestrator.controllers import (
    ProjectAddCommand,
    ProjectCommand,
    PruneCommand,
    QueueAddCommand,
    ReconcileCommand,
    RunCommand,
    SipagCliController,
    StatusCommand,
    TaskCommand,
)
from sipag.orchestrator.models import BackendType
from sipag.orchestrator.registry import RegistryError
from sipag.orchestrator.scheduler import SchedulerAlreadyRunningError
from sipag.orchestrator.sources import SourceError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SipagCliController()

_OPERATOR_ERRORS = (RegistryError, SourceError, SchedulerAlreadyRunningError, ValueError)


@click.group()
@click.version_option(version=__version__, prog_name="sipag")
def sipag() -> None:
    """Dispatch coding-agent workers for tasks from registered projects."""


@sipag.command("run")
@click.option(
    "--once",
    is_flag=True,
    default=False,
    help="Run a single dispatch cycle and wait for the spawned workers.",
)
def run(once: bool) -> None:
    """Start the polling scheduler. Stops on SIGINT or SIGTERM."""

    _emit(lambda: CONTROLLER.run(RunCommand(once=once)))


@sipag.command("stop")
def stop() -> None:
    """Ask a running scheduler to shut down."""

    _emit(CONTROLLER.stop)


@sipag.command("status")
@click.option("--project", "slug", default=None, help="Limit output to one project slug.")
def status(slug: str | None) -> None:
    """Show scheduler state, live workers and run records per project."""

    _emit(lambda: CONTROLLER.status(StatusCommand(slug=slug)))


@sipag.command("reconcile")
@click.option("--project", "slug", default=None, help="Limit the report to one project slug.")
def reconcile(slug: str | None) -> None:
    """List tasks claimed in a backend that have no live worker.

    The report is read-only; resolve each orphan by hand.
    """

    _emit(lambda: CONTROLLER.reconcile(ReconcileCommand(slug=slug)))


@sipag.command("prune")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=0),
    default=None,
    help="Delete finished run records older than this. Defaults to SIPAG_STATE_MAX_AGE_DAYS.",
)
def prune(max_age_days: int | None) -> None:
    """Delete old finished run records."""

    _emit(lambda: CONTROLLER.prune(PruneCommand(max_age_days=max_age_days)))


@sipag.group()
def project() -> None:
    """Project registry commands."""


@project.command("add")
@click.argument("slug")
@click.option(
    "--backend",
    "backend_type",
    type=click.Choice([item.value for item in BackendType]),
    default=BackendType.GITHUB.value,
    show_default=True,
    help="Task store the project polls.",
)
@click.option("--repo", default="", help="GitHub repository as owner/name.")
@click.option(
    "--clone-url",
    default="",
    help="Git URL to clone. Defaults to the GitHub URL of --repo.",
)
@click.option("--base-branch", default="main", show_default=True, help="Branch to work from.")
@click.option(
    "--concurrency",
    type=click.IntRange(min=0),
    default=2,
    show_default=True,
    help="Per-project worker ceiling.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Agent timeout in seconds. Defaults to SIPAG_TIMEOUT.",
)
@click.option("--label-ready", default="ready", show_default=True)
@click.option("--label-wip", default="in-progress", show_default=True)
@click.option("--label-done", default="needs-review", show_default=True)
@click.option(
    "--queue-root",
    type=click.Path(path_type=Path),
    default=None,
    help="Ad-hoc queue directory. Defaults to SIPAG_HOME/queue.",
)
@click.option(
    "--store-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite file of the suspended-action store (tao backend).",
)
@click.option("--action-filter", default="", help="Only dispatch actions of this domain.")
@click.option("--prompt-prefix", default="", help="Text prepended to every agent prompt.")
@click.option(
    "--agent-command",
    default="",
    help="Agent run template with {prompt} and optional {prompt_file}.",
)
@click.option(
    "--close-on-complete",
    is_flag=True,
    default=False,
    help="Close the GitHub issue when its pull request is opened.",
)
def project_add(  # noqa: PLR0913
    slug: str,
    backend_type: str,
    repo: str,
    clone_url: str,
    base_branch: str,
    concurrency: int,
    timeout_seconds: int | None,
    label_ready: str,
    label_wip: str,
    label_done: str,
    queue_root: Path | None,
    store_path: Path | None,
    action_filter: str,
    prompt_prefix: str,
    agent_command: str,
    close_on_complete: bool,
) -> None:
    """Register a project, or replace its config."""

    _emit(
        lambda: CONTROLLER.project_add(
            ProjectAddCommand(
                slug=slug,
                backend_type=backend_type,
                repo=repo,
                clone_url=clone_url,
                base_branch=base_branch,
                concurrency=concurrency,
                timeout_seconds=timeout_seconds,
                label_ready=label_ready,
                label_wip=label_wip,
                label_done=label_done,
                queue_root=queue_root,
                store_path=store_path,
                action_filter=action_filter,
                prompt_prefix=prompt_prefix,
                agent_command=agent_command,
                close_on_complete=close_on_complete,
            ),
        ),
    )


@project.command("remove")
@click.argument("slug")
def project_remove(slug: str) -> None:
    """Unregister a project. Refused while it has live workers."""

    _emit(lambda: CONTROLLER.project_remove(ProjectCommand(slug=slug)))


@project.command("list")
def project_list() -> None:
    """List registered projects in dispatch order."""

    _emit(CONTROLLER.project_list)


@project.command("show")
@click.argument("slug")
def project_show(slug: str) -> None:
    """Print one project config."""

    _emit(lambda: CONTROLLER.project_show(ProjectCommand(slug=slug)))


@sipag.group()
def queue() -> None:
    """Ad-hoc queue commands."""


@queue.command("add")
@click.argument("slug")
@click.argument("prompt")
@click.option("--task-id", default=None, help="Explicit task id. Random when omitted.")
def queue_add(slug: str, prompt: str, task_id: str | None) -> None:
    """Queue an ad-hoc task for an adhoc project."""

    _emit(
        lambda: CONTROLLER.queue_add(QueueAddCommand(slug=slug, prompt=prompt, task_id=task_id)),
    )


@sipag.group()
def task() -> None:
    """Single-task commands, run in the foreground."""


@task.command("run")
@click.argument("slug")
@click.argument("task_id")
def task_run(slug: str, task_id: str) -> None:
    """Run the worker lifecycle for one task without the scheduler."""

    _emit(lambda: CONTROLLER.task_run(TaskCommand(slug=slug, task_id=task_id)))


@task.command("finalize")
@click.argument("slug")
@click.argument("task_id")
def task_finalize(slug: str, task_id: str) -> None:
    """Open the pull request for a pushed task whose finalize step did not finish."""

    _emit(lambda: CONTROLLER.task_finalize(TaskCommand(slug=slug, task_id=task_id)))


def _emit(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except _OPERATOR_ERRORS as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    sipag()
