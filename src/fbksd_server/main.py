"""CLI entrypoint for fbksd-server."""

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from fbksd_server import __version__
from fbksd_server.coordinator.controllers import (
    CommitCommand,
    CoordinatorCliController,
    GcCommand,
    MailerCommand,
    QueueInspectCommand,
    QueueStatsCommand,
    QueueTasksCommand,
    SceneAddCommand,
    SceneListCommand,
    TechniqueListCommand,
    TechniqueRegisterCommand,
    TechniqueShowCommand,
    WorkerCommand,
    WorkspaceListCommand,
    WorkspaceMutateCommand,
    WorkspaceStatusCommand,
)
from fbksd_server.coordinator.errors import CoordinatorError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CoordinatorCliController()

TECHNIQUE_TYPES = ["denoiser", "sampler"]
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="fbksd-server")
def fbksd_server() -> None:
    """fbksd benchmark coordination server."""

    logging.basicConfig(
        level=os.getenv("FBKSD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@fbksd_server.command("commit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--technique", required=True, help="Technique short name.")
@click.option("--commit-sha", required=True, help="Commit hash that triggered the build.")
@click.option("--artifact-ref", required=True, help="Container image or artifact reference.")
@click.option(
    "--type",
    "technique_type",
    type=click.Choice(TECHNIQUE_TYPES, case_sensitive=False),
    default="denoiser",
    show_default=True,
    help="Technique type, used on first registration only.",
)
@click.option("--full-name", default="", help="Display name, used on first registration only.")
@click.option("--owner-email", default=None, help="Where notifications for this technique go.")
def commit(  # noqa: PLR0913
    db_path: Path | None,
    technique: str,
    commit_sha: str,
    artifact_ref: str,
    technique_type: str,
    full_name: str,
    owner_email: str | None,
) -> None:
    """Accept a commit: register the technique if new and queue its build."""

    _emit(
        CONTROLLER.commit,
        CommitCommand(
            db_path=db_path,
            technique=technique,
            commit_sha=commit_sha,
            artifact_ref=artifact_ref,
            technique_type=technique_type.lower(),
            full_name=full_name,
            owner_email=owner_email,
        ),
    )


@fbksd_server.group()
def technique() -> None:
    """Technique registry commands."""


@technique.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--short-name", required=True, help="Unique technique short name.")
@click.option(
    "--type",
    "technique_type",
    type=click.Choice(TECHNIQUE_TYPES, case_sensitive=False),
    default="denoiser",
    show_default=True,
    help="Technique type.",
)
@click.option("--full-name", default="", help="Display name.")
@click.option("--citation", default="", help="Paper citation.")
@click.option("--comment", default="", help="Free-form comment.")
@click.option("--owner-email", default=None, help="Notification address.")
def technique_register(  # noqa: PLR0913
    db_path: Path | None,
    short_name: str,
    technique_type: str,
    full_name: str,
    citation: str,
    comment: str,
    owner_email: str | None,
) -> None:
    """Register a technique explicitly."""

    _emit(
        CONTROLLER.register_technique,
        TechniqueRegisterCommand(
            db_path=db_path,
            short_name=short_name,
            technique_type=technique_type.lower(),
            full_name=full_name,
            citation=citation,
            comment=comment,
            owner_email=owner_email,
        ),
    )


@technique.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--short-name", required=True, help="Technique short name.")
def technique_show(db_path: Path | None, short_name: str) -> None:
    """Show a technique and its workspaces."""

    _emit(CONTROLLER.show_technique, TechniqueShowCommand(db_path=db_path, short_name=short_name))


@technique.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--type",
    "technique_type",
    type=click.Choice(TECHNIQUE_TYPES, case_sensitive=False),
    default=None,
    help="Optional type filter.",
)
def technique_list(db_path: Path | None, technique_type: str | None) -> None:
    """List registered techniques."""

    _emit(
        CONTROLLER.list_techniques,
        TechniqueListCommand(db_path=db_path, technique_type=technique_type),
    )


@fbksd_server.group()
def scene() -> None:
    """Scene corpus commands."""


@scene.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", default=None, help="Unique scene name.")
@click.option("--renderer", default=None, help="Renderer the scene targets.")
@click.option("--path", "scene_path", default=None, help="Scene file path.")
@click.option("--reference-image", default="", help="Reference image path.")
@click.option("--citation", default="", help="Scene attribution.")
@click.option(
    "--from-json",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON list of scenes to add as one corpus version.",
)
def scene_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str | None,
    renderer: str | None,
    scene_path: str | None,
    reference_image: str,
    citation: str,
    from_json: Path | None,
) -> None:
    """Add scenes to the corpus, bumping its version once."""

    _emit(
        CONTROLLER.add_scenes,
        SceneAddCommand(
            db_path=db_path,
            name=name,
            renderer=renderer,
            path=scene_path,
            reference_image=reference_image,
            citation=citation,
            from_json=from_json,
        ),
    )


@scene.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--version",
    "corpus_version",
    type=click.IntRange(min=0),
    default=None,
    help="Show the corpus as of this version (default: current).",
)
def scene_list(db_path: Path | None, corpus_version: int | None) -> None:
    """List corpus scenes."""

    _emit(CONTROLLER.list_scenes, SceneListCommand(db_path=db_path, version=corpus_version))


@fbksd_server.group()
def workspace() -> None:
    """Workspace commands."""


@workspace.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "workspace_id", type=int, required=True, help="Workspace id.")
def workspace_status(db_path: Path | None, workspace_id: int) -> None:
    """Show workspace state, link and scene progress."""

    _emit(
        CONTROLLER.workspace_status,
        WorkspaceStatusCommand(db_path=db_path, workspace_id=workspace_id),
    )


@workspace.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--technique", default=None, help="List all workspaces of this technique.")
@click.option(
    "--type",
    "technique_type",
    type=click.Choice(TECHNIQUE_TYPES, case_sensitive=False),
    default=None,
    help="Type filter for the published listing.",
)
def workspace_list(
    db_path: Path | None,
    technique: str | None,
    technique_type: str | None,
) -> None:
    """List published workspaces, or every workspace of one technique."""

    _emit(
        CONTROLLER.list_workspaces,
        WorkspaceListCommand(
            db_path=db_path,
            technique=technique,
            technique_type=technique_type,
        ),
    )


@workspace.command("publish")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "workspace_id", type=int, required=True, help="Workspace id.")
def workspace_publish(db_path: Path | None, workspace_id: int) -> None:
    """Request publication of a workspace."""

    _emit(
        CONTROLLER.publish_workspace,
        WorkspaceMutateCommand(db_path=db_path, workspace_id=workspace_id),
    )


@workspace.command("delete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "workspace_id", type=int, required=True, help="Workspace id.")
def workspace_delete(db_path: Path | None, workspace_id: int) -> None:
    """Prune an unpublished workspace."""

    _emit(
        CONTROLLER.delete_workspace,
        WorkspaceMutateCommand(db_path=db_path, workspace_id=workspace_id),
    )


@fbksd_server.group()
def queue() -> None:
    """Task queue inspection commands."""


@queue.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--queue",
    "queue_name",
    type=click.Choice(["priority", "normal", "notification"], case_sensitive=False),
    default=None,
    help="Optional queue filter.",
)
@click.option(
    "--status",
    type=click.Choice(
        ["queued", "leased", "completed", "dead_lettered", "discarded"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def queue_tasks(
    db_path: Path | None,
    queue_name: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List tasks in queue order."""

    _emit(
        CONTROLLER.list_tasks,
        QueueTasksCommand(
            db_path=db_path,
            queue=queue_name.lower() if queue_name else None,
            status=status.lower() if status else None,
            limit=limit,
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def queue_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit(CONTROLLER.inspect_task, QueueInspectCommand(db_path=db_path, task_id=task_id))


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_stats(db_path: Path | None) -> None:
    """Show task counts per queue and status."""

    _emit(CONTROLLER.queue_stats, QueueStatsCommand(db_path=db_path))


@fbksd_server.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one lease-execute-report cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--forever",
    is_flag=True,
    default=False,
    help="Keep polling when the queues are empty (loop mode).",
)
def worker(db_path: Path | None, once: bool, max_tasks: int | None, forever: bool) -> None:
    """Run a build/benchmark worker."""

    _emit(
        CONTROLLER.run_worker,
        WorkerCommand(
            db_path=db_path,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=None if forever else 1,
        ),
    )


@fbksd_server.command("mailer")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--forever",
    is_flag=True,
    default=False,
    help="Keep polling when the notification queue is empty.",
)
def mailer(db_path: Path | None, forever: bool) -> None:
    """Deliver queued notifications."""

    _emit(
        CONTROLLER.run_mailer,
        MailerCommand(db_path=db_path, max_idle_polls=None if forever else 1),
    )


@fbksd_server.command("gc")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def gc(db_path: Path | None) -> None:
    """Reclaim expired leases, settle dead-lettered work and trim stale workspaces."""

    _emit(CONTROLLER.gc, GcCommand(db_path=db_path))


@fbksd_server.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=8000, show_default=True)
def serve(db_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API."""

    import uvicorn

    from fbksd_server.api import create_app_from_settings
    from fbksd_server.config import Settings

    settings = Settings.from_env(db_path=db_path)
    uvicorn.run(create_app_from_settings(settings), host=host, port=port)


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (CoordinatorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    fbksd_server()
