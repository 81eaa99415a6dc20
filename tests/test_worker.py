from __future__ import annotations

import json

import allure

from fbksd_server.config import Settings, WorkerSettings
from fbksd_server.coordinator.backend import (
    BackendRunError,
    BackendRunRequest,
    BackendRunResult,
)
from fbksd_server.coordinator.models import (
    PublishOutcome,
    QueueName,
    TaskStatus,
    WorkspaceStatus,
)
from fbksd_server.coordinator.publisher import PUBLICATION_MANIFEST, FilesystemResultStore
from fbksd_server.coordinator.services import Coordinator
from fbksd_server.coordinator.worker import BenchmarkWorker

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Benchmark Worker"),
]


class FakeBackend:
    """Writes log files like the command backend and fails on request."""

    def __init__(
        self,
        *,
        failing_logs: frozenset[str] = frozenset(),
        broken: bool = False,
    ) -> None:
        self.failing_logs = failing_logs
        self.broken = broken
        self.requests: list[BackendRunRequest] = []

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        self.requests.append(request)
        if self.broken:
            raise BackendRunError("docker daemon unavailable", transient=True)
        log_dir = request.workspace_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = log_dir / f"{request.log_name}.stdout.log"
        stderr_path = log_dir / f"{request.log_name}.stderr.log"
        failed = request.log_name in self.failing_logs
        stdout_path.write_text(f"running {request.log_name}\n", encoding="utf-8")
        stderr_path.write_text("segfault in denoiser\n" if failed else "", encoding="utf-8")
        if request.scene and not failed:
            (request.workspace_dir / f"{request.scene}.exr").write_text("pixels", encoding="utf-8")
        return BackendRunResult(
            exit_code=1 if failed else 0,
            timed_out=False,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )


def _worker(
    coordinator: Coordinator,
    settings: Settings,
    backend: FakeBackend,
) -> BenchmarkWorker:
    return BenchmarkWorker(
        coordinator=coordinator,
        backend=backend,
        result_store=FilesystemResultStore(settings.data_root),
        settings=WorkerSettings(
            worker_id="worker-test",
            poll_interval_seconds=0.01,
            build_command="build {image}",
            benchmark_command="bench {image} {scene}",
        ),
        heartbeat_interval_seconds=30,
    )


def test_worker_builds_and_benchmarks_a_commit(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell", "sponza")
    build = pipeline.commit()
    backend = FakeBackend()

    summary = _worker(coordinator, settings, backend).run_loop()

    assert (summary.processed, summary.succeeded, summary.failed) == (3, 3, 0)
    assert summary.idle_polls == 1
    assert [request.log_name for request in backend.requests] == [
        "build",
        "benchmark-cornell",
        "benchmark-sponza",
    ]
    assert backend.requests[0].image == "registry.local/box:abc123"
    assert backend.requests[0].command_template == "build {image}"
    assert backend.requests[1].scene == "cornell"

    workspace_id = coordinator.task_queue.get(build.task_id).workspace_id
    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert backend.requests[0].workspace_dir == settings.data_root / "workspaces" / workspace.uuid


def test_failing_scene_reports_failure_with_stderr_tail(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    build = pipeline.commit()
    backend = FakeBackend(failing_logs=frozenset({"benchmark-cornell"}))

    summary = _worker(coordinator, settings, backend).run_loop()

    assert (summary.succeeded, summary.failed) == (1, 1)
    workspace_id = coordinator.task_queue.get(build.task_id).workspace_id
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.FAILED
    notification = coordinator.task_queue.lease_notification("mailer")
    assert notification is not None
    assert "segfault in denoiser" in notification.payload.body


def test_failed_build_fails_the_workspace(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    build = pipeline.commit()
    backend = FakeBackend(failing_logs=frozenset({"build"}))

    summary = _worker(coordinator, settings, backend).run_loop()

    assert (summary.processed, summary.failed) == (1, 1)
    workspace_id = coordinator.task_queue.get(build.task_id).workspace_id
    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FAILED
    assert workspace.build_log_ref is not None
    assert workspace.build_log_ref.endswith("build.stdout.log")


def test_backend_error_requeues_the_task(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    build = pipeline.commit()
    worker = _worker(coordinator, settings, FakeBackend(broken=True))

    summary = worker.run_once()

    assert (summary.processed, summary.retried, summary.failed) == (1, 1, 0)
    task = coordinator.task_queue.get(build.task_id)
    assert task.status is TaskStatus.QUEUED
    assert task.retries == 1
    assert task.last_error == "docker daemon unavailable"


def test_backend_error_dead_letters_after_the_retry_budget(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    build = pipeline.commit()
    worker = _worker(coordinator, settings, FakeBackend(broken=True))

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == coordinator.task_queue.max_retries + 1
    assert summary.failed == 1
    task = coordinator.task_queue.get(build.task_id)
    assert task.status is TaskStatus.DEAD_LETTERED
    assert coordinator.workspaces.get(task.workspace_id).status is WorkspaceStatus.FAILED


def test_publish_copy_populates_the_public_tree(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    build = pipeline.commit()
    worker = _worker(coordinator, settings, FakeBackend())
    worker.run_loop()
    workspace_id = coordinator.task_queue.get(build.task_id).workspace_id

    assert coordinator.request_publish(workspace_id) is PublishOutcome.PUBLISH_SCHEDULED
    summary = worker.run_loop()

    assert summary.succeeded == 1
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.PUBLISHED
    public_dir = settings.data_root / "public" / "denoisers" / "BOX"
    assert (public_dir / "cornell.exr").read_text(encoding="utf-8") == "pixels"
    manifest = json.loads((public_dir / PUBLICATION_MANIFEST).read_text(encoding="utf-8"))
    assert manifest["commit_sha"] == "abc123"
    assert manifest["technique"] == "BOX"


def test_publish_copy_without_results_is_reported_as_failure(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    workspace_id = pipeline.finished_workspace()
    assert coordinator.request_publish(workspace_id) is PublishOutcome.PUBLISH_SCHEDULED

    summary = _worker(coordinator, settings, FakeBackend()).run_once()

    assert summary.failed == 1
    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert workspace.publishing is False


def test_rerun_runs_only_missing_scenes(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    build = pipeline.commit()
    backend = FakeBackend()
    worker = _worker(coordinator, settings, backend)
    worker.run_loop()
    workspace_id = coordinator.task_queue.get(build.task_id).workspace_id
    pipeline.add_scenes("kitchen")

    assert coordinator.request_publish(workspace_id) is PublishOutcome.RERUN_SCHEDULED
    backend.requests.clear()
    worker.run_loop()

    assert [request.scene for request in backend.requests if request.scene] == ["kitchen"]
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.PUBLISHED


def test_stop_request_prevents_new_leases(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    build = pipeline.commit()
    worker = _worker(coordinator, settings, FakeBackend())
    worker.request_stop()

    summary = worker.run_loop()

    assert summary.processed == 0
    assert coordinator.task_queue.get(build.task_id).status is TaskStatus.QUEUED


def test_max_tasks_bounds_the_loop(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell", "sponza")
    pipeline.commit()

    summary = _worker(coordinator, settings, FakeBackend()).run_loop(max_tasks=2)

    assert summary.processed == 2
    assert coordinator.task_queue.stats().count(QueueName.NORMAL, TaskStatus.QUEUED) == 1



def test_rerun_failure_reports_the_scenes_that_completed(
    coordinator: Coordinator,
    settings: Settings,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    build = pipeline.commit()
    _worker(coordinator, settings, FakeBackend()).run_loop()
    workspace_id = coordinator.task_queue.get(build.task_id).workspace_id
    pipeline.add_scenes("kitchen", "sponza")
    assert coordinator.request_publish(workspace_id) is PublishOutcome.RERUN_SCHEDULED

    backend = FakeBackend(failing_logs=frozenset({"benchmark-sponza"}))
    summary = _worker(coordinator, settings, backend).run_loop()

    assert summary.failed == 1
    assert [request.scene for request in backend.requests] == ["kitchen", "sponza"]
    progress = coordinator.workspaces.scene_progress(workspace_id)
    assert (progress.succeeded, progress.failed) == (2, 1)
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.FAILED
