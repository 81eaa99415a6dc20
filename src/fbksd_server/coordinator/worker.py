"""Worker that leases build/benchmark/publish tasks and reports their outcome."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from fbksd_server.config import WorkerSettings
from fbksd_server.coordinator.backend import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
    TaskBackend,
)
from fbksd_server.coordinator.errors import LeaseExpired
from fbksd_server.coordinator.models import (
    BenchmarkPayload,
    BuildPayload,
    PublishCopyPayload,
    ReRunPayload,
    TaskOutcome,
    TaskStatus,
    TaskView,
    WorkerReport,
    WorkspaceView,
)
from fbksd_server.coordinator.publisher import FilesystemResultStore
from fbksd_server.coordinator.services import Coordinator

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2_000


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    lost_leases: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.lost_leases += other.lost_leases
        self.idle_polls += other.idle_polls


class BenchmarkWorker:
    """Consumes priority/normal tasks and executes them via a backend."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        coordinator: Coordinator,
        backend: TaskBackend,
        result_store: FilesystemResultStore,
        settings: WorkerSettings,
        heartbeat_interval_seconds: float | None = None,
        graceful_shutdown_seconds: int = 30,
    ) -> None:
        self.coordinator = coordinator
        self.backend = backend
        self.result_store = result_store
        self.settings = settings
        self.worker_id = settings.worker_id
        self.poll_interval_seconds = settings.poll_interval_seconds
        lease_timeout = coordinator.task_queue.lease_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds or max(1.0, lease_timeout / 3)
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one task from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.coordinator.lease(self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        try:
            with self._heartbeat(task) as lease_lost:
                report = self._execute(task)
        except BackendRunError as error:
            logger.warning(
                "Backend error on %s task %s (transient=%s): %s",
                task.kind.value,
                task.task_id,
                error.transient,
                error,
            )
            try:
                retried = self.coordinator.fail(task.task_id, self.worker_id, str(error))
            except LeaseExpired:
                summary.lost_leases = 1
                return summary
            summary.retried = 1 if retried.status is TaskStatus.QUEUED else 0
            summary.failed = 1 - summary.retried
            return summary

        if lease_lost.is_set():
            logger.warning("Lease on task %s was lost while running; dropping result", task.task_id)
            summary.lost_leases = 1
            return summary
        try:
            self.coordinator.report(task.task_id, self.worker_id, report)
        except LeaseExpired:
            logger.warning("Late report for task %s rejected", task.task_id)
            summary.lost_leases = 1
            return summary

        if report.outcome is TaskOutcome.SUCCESS:
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until the queues are idle, ``max_tasks`` is reached or a signal arrives.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _execute(self, task: TaskView) -> WorkerReport:
        payload = task.payload
        if isinstance(payload, BuildPayload):
            return self._run_build(payload)
        if isinstance(payload, BenchmarkPayload):
            return self._run_scenes(payload.workspace_id, payload.scenes)
        if isinstance(payload, ReRunPayload):
            return self._run_scenes(payload.workspace_id, payload.missing_scenes)
        if isinstance(payload, PublishCopyPayload):
            return self._run_publish_copy(payload)
        raise BackendRunError(f"Worker cannot execute {task.kind.value} tasks.", transient=False)

    def _run_build(self, payload: BuildPayload) -> WorkerReport:
        if payload.workspace_id is None:
            raise BackendRunError("Build task has no workspace assigned.", transient=True)
        workspace = self.coordinator.workspaces.get(payload.workspace_id)
        workspace_dir = self.result_store.ensure_workspace_dir(workspace)
        execution = self.backend.run(
            self._request(
                template=self.settings.build_command,
                workspace=workspace,
                workspace_dir=workspace_dir,
                log_name="build",
            ),
        )
        if execution.succeeded:
            return WorkerReport(outcome=TaskOutcome.SUCCESS, log_ref=str(execution.stdout_path))
        return WorkerReport(
            outcome=TaskOutcome.FAILURE,
            log_ref=str(execution.stdout_path),
            error_summary=_failure_summary(execution),
        )

    def _run_scenes(self, workspace_id: int, scenes: tuple[str, ...]) -> WorkerReport:
        workspace = self.coordinator.workspaces.get(workspace_id)
        workspace_dir = self.result_store.ensure_workspace_dir(workspace)
        last: BackendRunResult | None = None
        completed: list[str] = []
        for scene in scenes:
            last = self.backend.run(
                self._request(
                    template=self.settings.benchmark_command,
                    workspace=workspace,
                    workspace_dir=workspace_dir,
                    log_name=f"benchmark-{scene}",
                    scene=scene,
                ),
            )
            if not last.succeeded:
                return WorkerReport(
                    outcome=TaskOutcome.FAILURE,
                    log_ref=str(last.stdout_path),
                    result_ref=str(workspace_dir),
                    scenes=tuple(completed),
                    error_summary=f"Scene {scene}: {_failure_summary(last)}",
                )
            completed.append(scene)
        return WorkerReport(
            outcome=TaskOutcome.SUCCESS,
            log_ref=str(last.stdout_path) if last is not None else None,
            result_ref=str(workspace_dir),
            scenes=scenes,
        )

    def _run_publish_copy(self, payload: PublishCopyPayload) -> WorkerReport:
        workspace = self.coordinator.workspaces.get(payload.workspace_id)
        technique = self.coordinator.registry.get(workspace.technique_id)
        try:
            target = self.result_store.copy_to_public(workspace, technique)
        except OSError as error:
            logger.exception("Copying workspace %s to the public area failed", workspace.uuid)
            return WorkerReport(outcome=TaskOutcome.FAILURE, error_summary=str(error))
        return WorkerReport(outcome=TaskOutcome.SUCCESS, result_ref=str(target))

    def _request(  # noqa: PLR0913
        self,
        *,
        template: str,
        workspace: WorkspaceView,
        workspace_dir: Path,
        log_name: str,
        scene: str = "",
    ) -> BackendRunRequest:
        return BackendRunRequest(
            command_template=template,
            workspace_dir=workspace_dir,
            log_name=log_name,
            image=workspace.artifact_ref,
            commit=workspace.commit_sha,
            timeout_seconds=self.settings.command_timeout_seconds,
            scene=scene,
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )

    @contextmanager
    def _heartbeat(self, task: TaskView) -> Iterator[threading.Event]:
        stop = threading.Event()
        lease_lost = threading.Event()

        def _beat() -> None:
            while not stop.wait(self.heartbeat_interval_seconds):
                try:
                    self.coordinator.heartbeat(task.task_id, self.worker_id)
                except LeaseExpired:
                    logger.warning("Lost lease on task %s", task.task_id)
                    lease_lost.set()
                    return

        thread = threading.Thread(target=_beat, name=f"heartbeat-{task.task_id}", daemon=True)
        thread.start()
        try:
            yield lease_lost
        finally:
            stop.set()
            thread.join()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s; stopping after the current task", signal.Signals(signum).name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _failure_summary(execution: BackendRunResult) -> str:
    if execution.timed_out:
        head = "timed out"
    else:
        head = f"exit code {execution.exit_code}"
    try:
        stderr = execution.stderr_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        stderr = ""
    tail = stderr[-_STDERR_TAIL_CHARS:].strip()
    return f"{head}\n{tail}" if tail else head
