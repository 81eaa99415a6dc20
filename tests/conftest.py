"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from fbksd_server.config import QueueSettings, Settings, WorkspaceSettings
from fbksd_server.coordinator.models import (
    CommitEvent,
    SceneDescriptor,
    TaskOutcome,
    TaskView,
    TechniqueMetadata,
    WorkerReport,
)
from fbksd_server.coordinator.services import Coordinator


class MutableClock:
    """Deterministic clock the queue and coordinator read instead of wall time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, seconds: float = 0, days: float = 0) -> None:
        self.now += timedelta(seconds=seconds, days=days)


class Pipeline:
    """Drives tasks through the coordinator the way a well-behaved worker would."""

    def __init__(self, coordinator: Coordinator, worker_id: str = "worker-1") -> None:
        self.coordinator = coordinator
        self.worker_id = worker_id

    def add_scenes(self, *names: str) -> int:
        return self.coordinator.add_scenes(
            [
                SceneDescriptor(name=name, renderer="pbrt-v3", path=f"scenes/{name}.pbrt")
                for name in names
            ],
        )

    def commit(
        self,
        technique: str = "BOX",
        commit_sha: str = "abc123",
        *,
        owner_email: str | None = None,
    ) -> TaskView:
        return self.coordinator.handle_commit(
            CommitEvent(
                technique_short_name=technique,
                commit_sha=commit_sha,
                artifact_ref=f"registry.local/{technique.lower()}:{commit_sha}",
                metadata=TechniqueMetadata(owner_email=owner_email),
            ),
        )

    def lease(self) -> TaskView:
        task = self.coordinator.lease(self.worker_id)
        assert task is not None
        return task

    def report(self, task: TaskView, outcome: TaskOutcome = TaskOutcome.SUCCESS) -> TaskView:
        return self.coordinator.report(
            task.task_id,
            self.worker_id,
            WorkerReport(
                outcome=outcome,
                log_ref=f"logs/{task.task_id}.log",
                result_ref=f"results/{task.task_id}",
                error_summary=None if outcome is TaskOutcome.SUCCESS else "exit code 1",
            ),
        )

    def drain(self) -> list[TaskView]:
        """Lease and succeed every build/benchmark/publish task until the queues are empty."""

        processed: list[TaskView] = []
        while True:
            task = self.coordinator.lease(self.worker_id)
            if task is None:
                return processed
            self.report(task)
            processed.append(task)

    def finished_workspace(self, technique: str = "BOX", commit_sha: str = "abc123") -> int:
        build = self.commit(technique, commit_sha)
        self.drain()
        workspace_id = self.coordinator.task_queue.get(build.task_id).workspace_id
        assert workspace_id is not None
        return workspace_id


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 10, 19, 12, 0, tzinfo=UTC))


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "fbksd.db",
        data_root=tmp_path / "data",
        results_base_url="https://fbksd.example/results",
        queue=QueueSettings(lease_timeout_seconds=60, max_retries=2),
        workspace=WorkspaceSettings(
            max_workspaces_per_technique=3,
            unpublished_days_limit=7,
            max_rerun_cycles=3,
        ),
    )


@pytest.fixture()
def coordinator(settings: Settings, clock: MutableClock) -> Iterator[Coordinator]:
    instance = Coordinator.from_settings(settings, clock=clock)
    instance.init_schema()
    try:
        yield instance
    finally:
        instance.close()


@pytest.fixture()
def pipeline(coordinator: Coordinator) -> Pipeline:
    return Pipeline(coordinator)
