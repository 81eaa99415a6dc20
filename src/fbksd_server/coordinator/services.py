"""Coordinator: turns commits and worker reports into workspace transitions and tasks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy.engine import Engine

from fbksd_server.config import Settings, WorkspaceSettings
from fbksd_server.coordinator.corpus import SceneCorpus
from fbksd_server.coordinator.errors import (
    Conflict,
    InvalidTechnique,
    InvalidTransition,
    NotFound,
    WorkspaceLimitExceeded,
)
from fbksd_server.coordinator.models import (
    PRUNABLE_STATUSES,
    BenchmarkPayload,
    BuildPayload,
    CommitEvent,
    NotifyPayload,
    PublishCopyPayload,
    PublishOutcome,
    ReRunPayload,
    SceneDescriptor,
    SceneResultStatus,
    TaskKind,
    TaskOutcome,
    TaskStatus,
    TaskView,
    TechniqueType,
    TechniqueView,
    WorkerReport,
    WorkspaceStatus,
    WorkspaceStatusView,
    WorkspaceView,
)
from fbksd_server.coordinator.publisher import FilesystemResultStore, ResultStore
from fbksd_server.coordinator.registry import TechniqueRegistry
from fbksd_server.coordinator.task_queue import TaskQueue
from fbksd_server.coordinator.workspaces import WorkspaceStore
from fbksd_server.storage.alembic_runner import upgrade_head
from fbksd_server.storage.common import build_sqlite_engine, utc_now

logger = logging.getLogger(__name__)

_MAX_STALE_SKIPS = 100


@dataclass(slots=True)
class GcSummary:
    """Result of one maintenance pass."""

    reclaimed_leases: int = 0
    dead_lettered: int = 0
    trimmed_workspaces: list[int] = field(default_factory=list)


class Coordinator:
    """Single entry point for commits, leases, reports and publish requests."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: TechniqueRegistry,
        corpus: SceneCorpus,
        task_queue: TaskQueue,
        workspaces: WorkspaceStore,
        result_store: ResultStore,
        workspace_settings: WorkspaceSettings | None = None,
        results_base_url: str = "http://localhost:8000/results",
        admin_email: str = "admin@localhost",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.corpus = corpus
        self.task_queue = task_queue
        self.workspaces = workspaces
        self.result_store = result_store
        self.workspace_settings = workspace_settings or WorkspaceSettings()
        self.results_base_url = results_base_url.rstrip("/")
        self.admin_email = admin_email
        self.clock = clock
        self._engine: Engine | None = None
        self._db_path: Path | None = None
        # Covers dead letters from lease expiry, which any lease call can trigger.
        self.task_queue.add_dead_letter_listener(self._release_dead_lettered)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> Coordinator:
        """Wire every component against the configured SQLite database."""

        engine = build_sqlite_engine(
            db_path=settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        coordinator = cls(
            registry=TechniqueRegistry(engine),
            corpus=SceneCorpus(engine),
            task_queue=TaskQueue(
                engine,
                lease_timeout_seconds=settings.queue.lease_timeout_seconds,
                max_retries=settings.queue.max_retries,
                admin_email=settings.mailer.admin_email,
                clock=clock,
            ),
            workspaces=WorkspaceStore(engine),
            result_store=FilesystemResultStore(settings.data_root),
            workspace_settings=settings.workspace,
            results_base_url=settings.results_base_url,
            admin_email=settings.mailer.admin_email,
            clock=clock,
        )
        coordinator._engine = engine
        coordinator._db_path = settings.db_path
        return coordinator

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        if self._db_path is None:
            raise RuntimeError("Coordinator was not built from settings; no database path known.")
        upgrade_head(self._db_path)

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()

    def handle_commit(self, event: CommitEvent) -> TaskView:
        """Register the technique if new and schedule a build of the commit."""

        if not event.commit_sha.strip():
            raise InvalidTechnique("Commit hash is required.")
        if not event.artifact_ref.strip():
            raise InvalidTechnique("Artifact reference is required.")
        technique = self._register_or_lookup(event)

        limit = self.workspace_settings.max_workspaces_per_technique
        live = self.workspaces.count_live(technique.technique_id)
        unbuilt = self.task_queue.count_open(TaskKind.BUILD, technique_id=technique.technique_id)
        if live + unbuilt >= limit:
            logger.warning(
                "Rejected commit %s for %s: %s live workspaces (limit %s)",
                event.commit_sha,
                technique.short_name,
                live + unbuilt,
                limit,
            )
            raise WorkspaceLimitExceeded(technique.short_name, limit)

        task = self.task_queue.enqueue(
            BuildPayload(
                technique_id=technique.technique_id,
                commit_sha=event.commit_sha,
                artifact_ref=event.artifact_ref,
            ),
        )
        logger.info(
            "Accepted commit %s for %s; build task %s queued",
            event.commit_sha,
            technique.short_name,
            task.task_id,
        )
        return task

    def _register_or_lookup(self, event: CommitEvent) -> TechniqueView:
        try:
            return self.registry.lookup(event.technique_short_name)
        except NotFound:
            pass
        try:
            return self.registry.register(event.technique_short_name, event.metadata)
        except Conflict:
            # Lost a registration race to a concurrent commit of the same technique.
            return self.registry.lookup(event.technique_short_name)

    def lease(self, worker_id: str, timeout_seconds: int | None = None) -> TaskView | None:
        """Lease the next build/benchmark task, creating the workspace of a fresh build."""

        for _ in range(_MAX_STALE_SKIPS):
            task = self.task_queue.lease(worker_id, timeout_seconds)
            if task is None:
                return None
            if self._is_obsolete(task):
                logger.info(
                    "Skipping %s task %s: workspace %s is no longer active",
                    task.kind.value,
                    task.task_id,
                    task.workspace_id,
                )
                self.task_queue.ack(task.task_id, worker_id)
                continue
            payload = task.payload
            if isinstance(payload, BuildPayload) and payload.workspace_id is None:
                workspace = self.workspaces.create(
                    payload.technique_id,
                    payload.commit_sha,
                    payload.artifact_ref,
                    self.corpus.current_version(),
                )
                task = self.task_queue.update_payload(
                    task.task_id,
                    replace(payload, workspace_id=workspace.workspace_id),
                    worker_id=worker_id,
                )
            return task
        return None

    def _is_obsolete(self, task: TaskView) -> bool:
        if task.workspace_id is None:
            return False
        workspace = self.workspaces.get(task.workspace_id)
        if workspace.status is WorkspaceStatus.SUPERSEDED:
            return True
        if task.kind is TaskKind.PUBLISH_COPY:
            return workspace.status is not WorkspaceStatus.FINISHED or not workspace.publishing
        return False

    def heartbeat(self, task_id: str, worker_id: str) -> TaskView:
        return self.task_queue.heartbeat(task_id, worker_id)

    def fail(self, task_id: str, worker_id: str, reason: str) -> TaskView:
        """Transport-level failure: retry the task or dead-letter it.

        A dead-lettered task settles its workspace through the queue's
        dead-letter listener.
        """

        task = self.task_queue.fail(task_id, reason, worker_id)
        if task.status is not TaskStatus.DEAD_LETTERED:
            logger.warning(
                "Task %s (%s) failed on %s and was requeued: %s",
                task_id,
                task.kind.value,
                worker_id,
                reason,
            )
        return task

    def report(self, task_id: str, worker_id: str, report: WorkerReport) -> TaskView:
        """Apply a worker's outcome for a leased task, then acknowledge the task."""

        task = self.task_queue.ensure_leased(task_id, worker_id)
        if task.kind is TaskKind.NOTIFY:
            raise ValueError("Notification tasks are acknowledged by the dispatcher.")

        if task.workspace_id is not None:
            workspace = self.workspaces.get(task.workspace_id)
            if workspace.status is WorkspaceStatus.SUPERSEDED:
                logger.info(
                    "Ignoring %s report for pruned workspace %s",
                    task.kind.value,
                    workspace.workspace_id,
                )
                return self.task_queue.ack(task_id, worker_id)

        payload = task.payload
        if isinstance(payload, BuildPayload):
            self._on_build_reported(payload, report)
        elif isinstance(payload, BenchmarkPayload):
            self._on_scenes_reported(payload.workspace_id, payload.scenes, report)
        elif isinstance(payload, ReRunPayload):
            self._on_scenes_reported(payload.workspace_id, payload.missing_scenes, report)
        elif isinstance(payload, PublishCopyPayload):
            self._on_publish_copy_reported(payload, report)
        else:
            raise ValueError(f"Unsupported task kind: {task.kind.value}")
        return self.task_queue.ack(task_id, worker_id)

    def _on_build_reported(self, payload: BuildPayload, report: WorkerReport) -> None:
        if payload.workspace_id is None:
            raise ValueError("Build task has no workspace assigned.")
        workspace_id = payload.workspace_id

        if report.outcome is TaskOutcome.FAILURE:
            workspace = self._transition_or_log(
                workspace_id,
                WorkspaceStatus.FAILED,
                expected=WorkspaceStatus.BUILDING,
                build_log_ref=report.log_ref,
            )
            technique = self.registry.get(workspace.technique_id)
            self._notify(
                technique,
                subject=f"[fbksd] Build failed for {technique.short_name}",
                body=(
                    f"The build of commit {payload.commit_sha} failed.\n\n"
                    f"Build log: {report.log_ref or 'not available'}\n"
                    f"{report.error_summary or ''}\n"
                ),
            )
            return

        snapshot = self.corpus.snapshot()
        self._transition_or_log(
            workspace_id,
            WorkspaceStatus.BUILT,
            expected=WorkspaceStatus.BUILDING,
            scene_set_version=snapshot.version,
            build_log_ref=report.log_ref,
        )
        self.workspaces.add_required_scenes(workspace_id, snapshot.scene_names)
        self._transition_or_log(
            workspace_id,
            WorkspaceStatus.BENCHMARKING,
            expected=WorkspaceStatus.BUILT,
        )
        for scene in snapshot.scene_names:
            self.task_queue.enqueue(BenchmarkPayload(workspace_id=workspace_id, scenes=(scene,)))
        logger.info(
            "Workspace %s built; %s benchmark task(s) queued at corpus version %s",
            workspace_id,
            len(snapshot.scene_names),
            snapshot.version,
        )
        self._finish_if_complete(workspace_id)

    def _on_scenes_reported(
        self,
        workspace_id: int,
        scenes: Sequence[str],
        report: WorkerReport,
    ) -> None:
        workspace = self.workspaces.get(workspace_id)
        if workspace.status is not WorkspaceStatus.BENCHMARKING:
            logger.warning(
                "Ignoring scene report for workspace %s in status %s",
                workspace_id,
                workspace.status.value,
            )
            return

        if report.outcome is TaskOutcome.SUCCESS:
            for scene in scenes:
                self.workspaces.record_scene_result(
                    workspace_id,
                    scene,
                    SceneResultStatus.SUCCEEDED,
                    result_ref=report.result_ref,
                )
            self._finish_if_complete(workspace_id)
            return

        completed = set(report.scenes)
        failed = [scene for scene in scenes if scene not in completed]
        for scene in scenes:
            if scene in completed:
                self.workspaces.record_scene_result(
                    workspace_id,
                    scene,
                    SceneResultStatus.SUCCEEDED,
                    result_ref=report.result_ref,
                )
            else:
                self.workspaces.record_scene_result(
                    workspace_id,
                    scene,
                    SceneResultStatus.FAILED,
                    error_summary=report.error_summary,
                )
        try:
            self.workspaces.transition(
                workspace_id,
                WorkspaceStatus.FAILED,
                expected=WorkspaceStatus.BENCHMARKING,
                now=self.clock(),
                publish_pending=False,
            )
        except InvalidTransition:
            logger.info("Workspace %s already left benchmarking; not failing twice", workspace_id)
            return
        technique = self.registry.get(workspace.technique_id)
        self._notify(
            technique,
            subject=f"[fbksd] Benchmark failed for {technique.short_name}",
            body=(
                f"Benchmarking commit {workspace.commit_sha} failed on "
                f"{', '.join(failed or scenes)}.\n\n"
                f"Log: {report.log_ref or 'not available'}\n"
                f"{report.error_summary or ''}\n"
            ),
        )

    def _finish_if_complete(self, workspace_id: int) -> None:
        progress = self.workspaces.scene_progress(workspace_id)
        if not progress.complete:
            return
        try:
            workspace = self.workspaces.transition(
                workspace_id,
                WorkspaceStatus.FINISHED,
                expected=WorkspaceStatus.BENCHMARKING,
                now=self.clock(),
            )
        except InvalidTransition:
            # A concurrent report finished it first.
            return
        technique = self.registry.get(workspace.technique_id)
        if workspace.publish_pending:
            outcome = self._publish_finished(workspace, technique)
            logger.info("Retried pending publish of workspace %s: %s", workspace_id, outcome.value)
            return
        self._notify(
            technique,
            subject=f"[fbksd] Results ready for {technique.short_name}",
            body=(
                f"Benchmarking of commit {workspace.commit_sha} finished.\n\n"
                f"Private results: {self._private_link(workspace)}\n"
            ),
        )

    def _on_publish_copy_reported(self, payload: PublishCopyPayload, report: WorkerReport) -> None:
        workspace = self.workspaces.get(payload.workspace_id)
        technique = self.registry.get(workspace.technique_id)
        if report.outcome is TaskOutcome.FAILURE:
            self._abandon_publish(workspace, technique, report.error_summary)
            return
        self._complete_publish(workspace, technique)

    def _abandon_publish(
        self,
        workspace: WorkspaceView,
        technique: TechniqueView,
        reason: str | None,
    ) -> None:
        self.workspaces.set_publish_flags(
            workspace.workspace_id,
            publish_pending=False,
            publishing=False,
            rerun_cycles=0,
        )
        self._notify(
            technique,
            subject=f"[fbksd] Publishing failed for {technique.short_name}",
            body=(
                f"Copying results of commit {workspace.commit_sha} to the public "
                f"area failed.\n\n{reason or ''}\n"
            ),
        )
        # Siblings that asked to publish while this copy held the technique.
        for sibling in self.workspaces.list_for_technique(
            technique.technique_id,
            statuses=(WorkspaceStatus.FINISHED,),
        ):
            if sibling.publish_pending and sibling.workspace_id != workspace.workspace_id:
                outcome = self._publish_finished(sibling, technique)
                logger.info(
                    "Retried pending publish of workspace %s: %s",
                    sibling.workspace_id,
                    outcome.value,
                )

    def _complete_publish(self, workspace: WorkspaceView, technique: TechniqueView) -> None:
        try:
            previous_id = self.workspaces.publish(workspace.workspace_id, now=self.clock())
        except InvalidTransition:
            logger.exception("Publish of workspace %s rejected", workspace.workspace_id)
            self.workspaces.set_publish_flags(
                workspace.workspace_id,
                publish_pending=False,
                publishing=False,
            )
            raise

        if previous_id is not None:
            previous = self.workspaces.get(previous_id)
            self.task_queue.discard_for_workspace(previous_id)
            self.result_store.remove(previous)
        for sibling in self.workspaces.list_for_technique(
            technique.technique_id,
            statuses=PRUNABLE_STATUSES,
        ):
            self._prune(sibling)
        logger.info(
            "Workspace %s is now the published result of %s",
            workspace.workspace_id,
            technique.short_name,
        )
        self._notify(
            technique,
            subject=f"[fbksd] {technique.short_name} published",
            body=(
                f"Results of commit {workspace.commit_sha} are public at "
                f"{self._public_link(technique)}\n"
            ),
        )

    def request_publish(self, workspace_id: int) -> PublishOutcome:
        """Publish a finished workspace, re-running scenes added since it was benchmarked."""

        workspace = self.workspaces.get(workspace_id)
        status = workspace.status
        if status is WorkspaceStatus.PUBLISHED:
            return PublishOutcome.ALREADY_PUBLISHED
        if status in {WorkspaceStatus.FAILED, WorkspaceStatus.SUPERSEDED}:
            error = InvalidTransition(workspace_id, status.value, WorkspaceStatus.PUBLISHED.value)
            logger.error("Publish request rejected: %s", error)
            raise error
        if status is WorkspaceStatus.FINISHED:
            return self._publish_finished(workspace, self.registry.get(workspace.technique_id))

        self.workspaces.set_publish_flags(workspace_id, publish_pending=True)
        refreshed = self.workspaces.get(workspace_id)
        if refreshed.status is WorkspaceStatus.FINISHED:
            # Benchmarking finished between the read and the flag write.
            return self._publish_finished(refreshed, self.registry.get(refreshed.technique_id))
        logger.info(
            "Publish of workspace %s deferred until it finishes (%s)",
            workspace_id,
            refreshed.status.value,
        )
        return PublishOutcome.PENDING

    def _publish_finished(
        self,
        workspace: WorkspaceView,
        technique: TechniqueView,
    ) -> PublishOutcome:
        if workspace.publishing:
            return PublishOutcome.IN_PROGRESS

        snapshot = self.corpus.snapshot()
        if snapshot.version > workspace.scene_set_version:
            required = set(self.workspaces.required_scenes(workspace.workspace_id))
            stale = tuple(name for name in snapshot.scene_names if name not in required)
            if stale:
                return self._schedule_rerun(workspace, technique, stale, snapshot.version)

        if not self.workspaces.try_begin_publishing(workspace.workspace_id):
            current = self.workspaces.get(workspace.workspace_id)
            if current.status is WorkspaceStatus.PUBLISHED:
                return PublishOutcome.ALREADY_PUBLISHED
            if current.publishing or current.status is not WorkspaceStatus.FINISHED:
                return PublishOutcome.IN_PROGRESS
            return self._wait_for_sibling_publish(current, technique)
        self.task_queue.enqueue(PublishCopyPayload(workspace_id=workspace.workspace_id))
        logger.info(
            "Publish of workspace %s scheduled at corpus version %s",
            workspace.workspace_id,
            snapshot.version,
        )
        return PublishOutcome.PUBLISH_SCHEDULED

    def _wait_for_sibling_publish(
        self,
        workspace: WorkspaceView,
        technique: TechniqueView,
    ) -> PublishOutcome:
        """Park a publish request behind the copy another workspace of the technique holds.

        The request is retried if that copy fails; if it succeeds this
        workspace is pruned along with the other siblings.
        """

        self.workspaces.set_publish_flags(workspace.workspace_id, publish_pending=True)
        if not self._technique_publishing(technique.technique_id):
            # The sibling's copy settled between the two writes.
            return self._publish_finished(self.workspaces.get(workspace.workspace_id), technique)
        logger.info(
            "Publish of workspace %s deferred: another workspace of %s is being published",
            workspace.workspace_id,
            technique.short_name,
        )
        return PublishOutcome.PENDING

    def _technique_publishing(self, technique_id: int) -> bool:
        siblings = self.workspaces.list_for_technique(technique_id)
        return any(sibling.publishing for sibling in siblings)

    def _schedule_rerun(
        self,
        workspace: WorkspaceView,
        technique: TechniqueView,
        stale: tuple[str, ...],
        version: int,
    ) -> PublishOutcome:
        limit = self.workspace_settings.max_rerun_cycles
        if workspace.rerun_cycles >= limit:
            self.workspaces.set_publish_flags(
                workspace.workspace_id,
                publish_pending=False,
                rerun_cycles=0,
            )
            logger.warning(
                "Workspace %s hit the re-run limit (%s); publish abandoned",
                workspace.workspace_id,
                limit,
            )
            self._notify(
                technique,
                subject=f"[fbksd] Publishing {technique.short_name} needs attention",
                body=(
                    f"The scene corpus kept growing while commit {workspace.commit_sha} was "
                    f"waiting to be published ({limit} automatic re-runs). "
                    "Request publication again to retry.\n"
                ),
            )
            return PublishOutcome.RERUN_LIMIT_EXCEEDED

        try:
            self.workspaces.transition(
                workspace.workspace_id,
                WorkspaceStatus.BENCHMARKING,
                expected=WorkspaceStatus.FINISHED,
                now=self.clock(),
                scene_set_version=version,
                publish_pending=True,
                rerun_cycles=workspace.rerun_cycles + 1,
            )
        except InvalidTransition:
            # Another request already moved it; report what that request achieved.
            return self.request_publish(workspace.workspace_id)
        self.workspaces.add_required_scenes(workspace.workspace_id, stale)
        self.task_queue.enqueue(
            ReRunPayload(workspace_id=workspace.workspace_id, missing_scenes=stale),
        )
        logger.info(
            "Workspace %s is behind corpus version %s; re-running %s",
            workspace.workspace_id,
            version,
            ", ".join(stale),
        )
        return PublishOutcome.RERUN_SCHEDULED

    def add_scene(self, descriptor: SceneDescriptor) -> int:
        return self.corpus.add_scene(descriptor)

    def add_scenes(self, descriptors: Sequence[SceneDescriptor]) -> int:
        return self.corpus.add_scenes(descriptors)

    def get_status(self, workspace_id: int) -> WorkspaceStatusView:
        workspace = self.workspaces.get(workspace_id)
        if workspace.status is WorkspaceStatus.PUBLISHED:
            link: str | None = self._public_link(self.registry.get(workspace.technique_id))
        elif workspace.status is WorkspaceStatus.SUPERSEDED:
            link = None
        else:
            link = self._private_link(workspace)
        return WorkspaceStatusView(
            workspace_id=workspace.workspace_id,
            uuid=workspace.uuid,
            state=workspace.status,
            link=link,
            publish_pending=workspace.publish_pending,
            progress=self.workspaces.scene_progress(workspace_id),
        )

    def list_published(
        self,
        technique_type: TechniqueType | None = None,
    ) -> list[tuple[TechniqueView, WorkspaceView]]:
        return [
            (self.registry.get(workspace.technique_id), workspace)
            for workspace in self.workspaces.list_published(technique_type=technique_type)
        ]

    def delete_workspace(self, workspace_id: int) -> bool:
        """Prune an unpublished workspace and drop its stored results."""

        workspace = self.workspaces.get(workspace_id)
        if workspace.status is WorkspaceStatus.PUBLISHED:
            error = InvalidTransition(
                workspace_id,
                workspace.status.value,
                WorkspaceStatus.SUPERSEDED.value,
            )
            logger.error("Refusing to delete published workspace: %s", error)
            raise error
        return self._prune(workspace)

    def trim_unpublished(self, now: datetime | None = None) -> list[int]:
        """Prune finished workspaces left unpublished past the retention window."""

        cutoff = (now or self.clock()) - timedelta(
            days=self.workspace_settings.unpublished_days_limit,
        )
        trimmed: list[int] = []
        for workspace in self.workspaces.list_unpublished_older_than(cutoff):
            if self._prune(workspace):
                trimmed.append(workspace.workspace_id)
        if trimmed:
            logger.info("Trimmed %s unpublished workspace(s): %s", len(trimmed), trimmed)
        return trimmed

    def collect_garbage(self, now: datetime | None = None) -> GcSummary:
        """Reclaim expired leases and trim old workspaces.

        Tasks dead-lettered by the reclaim settle their workspace through the
        dead-letter listener, like every other dead letter.
        """

        dead_before = self.task_queue.stats().dead_lettered
        summary = GcSummary(reclaimed_leases=self.task_queue.reclaim_expired())
        summary.dead_lettered = self.task_queue.stats().dead_lettered - dead_before
        summary.trimmed_workspaces = self.trim_unpublished(now)
        return summary

    def _release_dead_lettered(self, task: TaskView) -> int | None:
        """Settle the workspace a dead-lettered task belonged to; returns its id if changed."""

        if task.workspace_id is None:
            return None
        workspace = self.workspaces.get(task.workspace_id)
        if task.kind is TaskKind.PUBLISH_COPY:
            if not workspace.publishing:
                return None
            self._abandon_publish(
                workspace,
                self.registry.get(workspace.technique_id),
                task.last_error,
            )
            return workspace.workspace_id
        if workspace.status not in {WorkspaceStatus.BUILDING, WorkspaceStatus.BENCHMARKING}:
            return None
        try:
            self.workspaces.transition(
                workspace.workspace_id,
                WorkspaceStatus.FAILED,
                expected=workspace.status,
                now=self.clock(),
                publish_pending=False,
            )
        except InvalidTransition:
            return None
        technique = self.registry.get(workspace.technique_id)
        self._notify(
            technique,
            subject=f"[fbksd] {technique.short_name}: workspace failed",
            body=(
                f"A {task.kind.value} task for commit {workspace.commit_sha} could not be "
                f"completed after {task.retries} attempts.\n\n"
                f"Last error: {task.last_error or 'unknown'}\n"
            ),
        )
        return workspace.workspace_id

    def _prune(self, workspace: WorkspaceView) -> bool:
        if not self.workspaces.prune(workspace.workspace_id, now=self.clock()):
            return False
        self.task_queue.discard_for_workspace(workspace.workspace_id)
        self.result_store.remove(workspace)
        return True

    def _transition_or_log(
        self,
        workspace_id: int,
        new_status: WorkspaceStatus,
        *,
        expected: WorkspaceStatus,
        **changes: object,
    ) -> WorkspaceView:
        try:
            return self.workspaces.transition(
                workspace_id,
                new_status,
                expected=expected,
                now=self.clock(),
                **changes,
            )
        except InvalidTransition:
            logger.exception("Unexpected workspace state for %s", workspace_id)
            raise

    def _notify(self, technique: TechniqueView, *, subject: str, body: str) -> TaskView:
        address = technique.owner_email or self.admin_email
        return self.task_queue.enqueue(NotifyPayload(address=address, subject=subject, body=body))

    def _private_link(self, workspace: WorkspaceView) -> str:
        return f"{self.results_base_url}/{workspace.uuid}/"

    def _public_link(self, technique: TechniqueView) -> str:
        return f"{self.results_base_url}/{technique.technique_type.group}/{technique.short_name}/"
