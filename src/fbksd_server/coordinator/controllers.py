"""Controllers for coordinator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from fbksd_server.config import Settings
from fbksd_server.coordinator.backend import CommandBackend
from fbksd_server.coordinator.errors import InvalidScene
from fbksd_server.coordinator.mailer import NotificationDispatcher, build_mailer
from fbksd_server.coordinator.models import (
    CommitEvent,
    QueueName,
    SceneDescriptor,
    TaskStatus,
    TechniqueMetadata,
    TechniqueType,
)
from fbksd_server.coordinator.publisher import FilesystemResultStore
from fbksd_server.coordinator.services import Coordinator
from fbksd_server.coordinator.worker import BenchmarkWorker


@dataclass(slots=True)
class CommitCommand:
    """CLI input for a commit trigger."""

    db_path: Path | None
    technique: str
    commit_sha: str
    artifact_ref: str
    technique_type: str = TechniqueType.DENOISER.value
    full_name: str = ""
    citation: str = ""
    comment: str = ""
    owner_email: str | None = None


@dataclass(slots=True)
class TechniqueRegisterCommand:
    """CLI input for explicit technique registration."""

    db_path: Path | None
    short_name: str
    technique_type: str = TechniqueType.DENOISER.value
    full_name: str = ""
    citation: str = ""
    comment: str = ""
    owner_email: str | None = None


@dataclass(slots=True)
class TechniqueShowCommand:
    db_path: Path | None
    short_name: str


@dataclass(slots=True)
class TechniqueListCommand:
    db_path: Path | None
    technique_type: str | None = None


@dataclass(slots=True)
class SceneAddCommand:
    """CLI input for adding one scene or a JSON batch of scenes."""

    db_path: Path | None
    name: str | None = None
    renderer: str | None = None
    path: str | None = None
    reference_image: str = ""
    citation: str = ""
    from_json: Path | None = None


@dataclass(slots=True)
class SceneListCommand:
    db_path: Path | None
    version: int | None = None


@dataclass(slots=True)
class WorkspaceStatusCommand:
    db_path: Path | None
    workspace_id: int


@dataclass(slots=True)
class WorkspaceListCommand:
    """CLI input for workspace listing; published workspaces when no technique is given."""

    db_path: Path | None
    technique: str | None = None
    technique_type: str | None = None


@dataclass(slots=True)
class WorkspaceMutateCommand:
    """CLI input for publish/delete operations."""

    db_path: Path | None
    workspace_id: int


@dataclass(slots=True)
class QueueTasksCommand:
    db_path: Path | None
    queue: str | None = None
    status: str | None = None
    limit: int = 50


@dataclass(slots=True)
class QueueInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class MailerCommand:
    """CLI input for notification delivery."""

    db_path: Path | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class GcCommand:
    db_path: Path | None


class CoordinatorCliController:
    """Coordinates commit, corpus, workspace, queue and worker CLI operations."""

    def commit(self, command: CommitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            task = coordinator.handle_commit(
                CommitEvent(
                    technique_short_name=command.technique,
                    commit_sha=command.commit_sha,
                    artifact_ref=command.artifact_ref,
                    metadata=TechniqueMetadata(
                        technique_type=TechniqueType(command.technique_type),
                        full_name=command.full_name,
                        citation=command.citation,
                        comment=command.comment,
                        owner_email=command.owner_email,
                    ),
                ),
            )
        return [
            f"Commit accepted: task_id={task.task_id} queue={task.queue.value} "
            f"technique_id={task.technique_id}",
        ]

    def register_technique(self, command: TechniqueRegisterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            technique = coordinator.registry.register(
                command.short_name,
                TechniqueMetadata(
                    technique_type=TechniqueType(command.technique_type),
                    full_name=command.full_name,
                    citation=command.citation,
                    comment=command.comment,
                    owner_email=command.owner_email,
                ),
            )
        return [
            f"Technique registered: id={technique.technique_id} "
            f"short_name={technique.short_name} type={technique.technique_type.value}",
        ]

    def show_technique(self, command: TechniqueShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            technique = coordinator.registry.lookup(command.short_name)
            workspaces = coordinator.workspaces.list_for_technique(technique.technique_id)

        lines = [
            f"Technique: {technique.short_name} (id={technique.technique_id})",
            f"Type: {technique.technique_type.value}",
            f"Full name: {technique.full_name}",
            f"Citation: {technique.citation or '-'}",
            f"Comment: {technique.comment or '-'}",
            f"Owner: {technique.owner_email or '-'}",
            f"Workspaces created: {technique.workspace_count}",
        ]
        for workspace in workspaces:
            lines.append(
                f"  {workspace.workspace_id} {workspace.status.value} "
                f"commit={workspace.commit_sha} scenes@v{workspace.scene_set_version}",
            )
        return lines

    def list_techniques(self, command: TechniqueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        technique_type = _parse_type(command.technique_type)
        with _coordinator(settings) as coordinator:
            techniques = coordinator.registry.list_techniques(technique_type=technique_type)

        lines = [f"Techniques: {len(techniques)}"]
        for technique in techniques:
            lines.append(
                f"  {technique.short_name} type={technique.technique_type.value} "
                f"workspaces={technique.workspace_count} owner={technique.owner_email or '-'}",
            )
        return lines

    def add_scenes(self, command: SceneAddCommand) -> list[str]:
        descriptors = _scene_descriptors(command)
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            version = coordinator.add_scenes(descriptors)
        names = ", ".join(descriptor.name for descriptor in descriptors)
        return [f"Corpus version {version}: added {names}"]

    def list_scenes(self, command: SceneListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            if command.version is None:
                snapshot = coordinator.corpus.snapshot()
                version, scenes = snapshot.version, snapshot.scenes
            else:
                version = command.version
                scenes = coordinator.corpus.scenes_at(version)

        lines = [f"Corpus version {version}: {len(scenes)} scene(s)"]
        for scene in scenes:
            lines.append(
                f"  {scene.name} renderer={scene.renderer} path={scene.path} v{scene.version}",
            )
        return lines

    def workspace_status(self, command: WorkspaceStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            status = coordinator.get_status(command.workspace_id)
        progress = status.progress
        return [
            f"Workspace: {status.workspace_id} ({status.uuid})",
            f"State: {status.state.value}",
            f"Link: {status.link or '-'}",
            f"Publish pending: {'yes' if status.publish_pending else 'no'}",
            f"Scenes: {progress.succeeded}/{progress.required} succeeded, "
            f"{progress.failed} failed, {progress.pending} pending",
        ]

    def list_workspaces(self, command: WorkspaceListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            if command.technique is None:
                pairs = coordinator.list_published(_parse_type(command.technique_type))
                lines = [f"Published techniques: {len(pairs)}"]
                for technique, workspace in pairs:
                    published = (
                        workspace.publication_time.isoformat()
                        if workspace.publication_time is not None
                        else "-"
                    )
                    lines.append(
                        f"  {technique.short_name} workspace={workspace.workspace_id} "
                        f"commit={workspace.commit_sha} published_at={published}",
                    )
                return lines

            technique = coordinator.registry.lookup(command.technique)
            workspaces = coordinator.workspaces.list_for_technique(technique.technique_id)

        lines = [f"Workspaces of {technique.short_name}: {len(workspaces)}"]
        for workspace in workspaces:
            lines.append(
                f"  {workspace.workspace_id} {workspace.status.value} "
                f"commit={workspace.commit_sha} created={workspace.creation_time.isoformat()}",
            )
        return lines

    def publish_workspace(self, command: WorkspaceMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            outcome = coordinator.request_publish(command.workspace_id)
        return [f"Publish requested: workspace={command.workspace_id} outcome={outcome.value}"]

    def delete_workspace(self, command: WorkspaceMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            deleted = coordinator.delete_workspace(command.workspace_id)
        if not deleted:
            return [f"Workspace {command.workspace_id} was already pruned"]
        return [f"Workspace deleted: {command.workspace_id}"]

    def list_tasks(self, command: QueueTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        queue = QueueName(command.queue) if command.queue else None
        status = TaskStatus(command.status) if command.status else None
        with _coordinator(settings) as coordinator:
            tasks = coordinator.task_queue.list_tasks(
                queue=queue,
                status=status,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} {task.queue.value}#{task.position} kind={task.kind.value} "
                f"status={task.status.value} retries={task.retries}/{task.max_retries} "
                f"workspace={task.workspace_id if task.workspace_id is not None else '-'}",
            )
        return lines

    def inspect_task(self, command: QueueInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            details = coordinator.task_queue.get_task_details(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Kind: {task.kind.value}",
            f"Queue: {task.queue.value} (position {task.position})",
            f"Status: {task.status.value}",
            f"Retries: {task.retries}/{task.max_retries}",
            f"Worker: {task.worker_id or '-'}",
            f"Lease deadline: {task.lease_deadline.isoformat() if task.lease_deadline else '-'}",
            f"Error: {task.last_error or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def queue_stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            stats = coordinator.task_queue.stats()

        lines = ["Queue stats:"]
        for queue in QueueName:
            counts = " ".join(
                f"{status.value}={stats.count(queue, status)}" for status in TaskStatus
            )
            lines.append(f"  {queue.value}: {counts}")
        lines.append(f"Dead-lettered total: {stats.dead_lettered}")
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            worker = BenchmarkWorker(
                coordinator=coordinator,
                backend=CommandBackend(),
                result_store=FilesystemResultStore(settings.data_root),
                settings=settings.worker,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"lost_leases={summary.lost_leases} idle_polls={summary.idle_polls}",
        ]

    def run_mailer(self, command: MailerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            dispatcher = NotificationDispatcher(
                task_queue=coordinator.task_queue,
                mailer=build_mailer(settings.mailer),
                worker_id=f"mailer-{settings.worker.worker_id}",
                poll_interval_seconds=settings.mailer.poll_interval_seconds,
            )
            summary = dispatcher.run_loop(max_idle_polls=command.max_idle_polls)
        return [
            "Mailer summary: "
            f"sent={summary.sent} retried={summary.retried} "
            f"dead_lettered={summary.dead_lettered} idle_polls={summary.idle_polls}",
        ]

    def gc(self, command: GcCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _coordinator(settings) as coordinator:
            summary = coordinator.collect_garbage()
        return [
            "GC completed: "
            f"reclaimed_leases={summary.reclaimed_leases} "
            f"dead_lettered={summary.dead_lettered} "
            f"trimmed_workspaces={len(summary.trimmed_workspaces)}",
        ]


def _parse_type(value: str | None) -> TechniqueType | None:
    if value is None:
        return None
    return TechniqueType(value.strip().lower())


def _scene_descriptors(command: SceneAddCommand) -> list[SceneDescriptor]:
    if command.from_json is not None:
        try:
            raw = json.loads(command.from_json.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise InvalidScene(f"Scene file is not valid JSON: {error}") from error
        if not isinstance(raw, list):
            raise InvalidScene("Scene file must contain a JSON list of scene objects.")
        try:
            return [
                SceneDescriptor(
                    name=str(item["name"]),
                    renderer=str(item["renderer"]),
                    path=str(item["path"]),
                    reference_image=str(item.get("reference_image", "")),
                    citation=str(item.get("citation", "")),
                )
                for item in raw
            ]
        except (KeyError, TypeError, AttributeError) as error:
            raise InvalidScene(f"Malformed scene entry: {error}") from error

    if not command.name or not command.renderer or not command.path:
        raise InvalidScene("Scene name, renderer and path are required.")
    return [
        SceneDescriptor(
            name=command.name,
            renderer=command.renderer,
            path=command.path,
            reference_image=command.reference_image,
            citation=command.citation,
        ),
    ]


@contextmanager
def _coordinator(settings: Settings) -> Iterator[Coordinator]:
    settings.validate()
    coordinator = Coordinator.from_settings(settings)
    coordinator.init_schema()
    try:
        yield coordinator
    finally:
        coordinator.close()
