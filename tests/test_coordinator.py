from __future__ import annotations

import threading

import allure
import pytest

from fbksd_server.coordinator.errors import (
    Conflict,
    InvalidTechnique,
    InvalidTransition,
    LeaseExpired,
    WorkspaceLimitExceeded,
)
from fbksd_server.coordinator.models import (
    BenchmarkPayload,
    CommitEvent,
    PublishCopyPayload,
    PublishOutcome,
    QueueName,
    ReRunPayload,
    SceneResultStatus,
    TaskKind,
    TaskOutcome,
    TaskStatus,
    TechniqueMetadata,
    TechniqueType,
    WorkerReport,
    WorkspaceStatus,
)
from fbksd_server.coordinator.services import Coordinator

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Workspace Lifecycle"),
]


def _notifications(coordinator: Coordinator) -> list:
    return [
        task.payload
        for task in coordinator.task_queue.list_tasks(queue=QueueName.NOTIFICATION, limit=500)
    ]


def _queued(coordinator: Coordinator, kind: TaskKind) -> list:
    return [
        task
        for task in coordinator.task_queue.list_tasks(status=TaskStatus.QUEUED, limit=500)
        if task.kind is kind
    ]


def test_commit_builds_and_benchmarks_every_scene(coordinator: Coordinator, pipeline) -> None:
    assert pipeline.add_scenes("cornell", "sponza") == 1
    coordinator.registry.register("BOX")

    build = pipeline.commit("BOX", "abc123")
    assert build.kind is TaskKind.BUILD
    assert build.queue is QueueName.PRIORITY
    assert build.workspace_id is None

    leased = pipeline.lease()
    assert leased.task_id == build.task_id
    assert leased.workspace_id is not None
    workspace_id = leased.workspace_id
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.BUILDING

    pipeline.report(leased)
    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.BENCHMARKING
    assert workspace.scene_set_version == 1
    assert workspace.build_log_ref == f"logs/{build.task_id}.log"
    benchmarks = _queued(coordinator, TaskKind.BENCHMARK)
    assert sorted(task.payload.scenes for task in benchmarks) == [("cornell",), ("sponza",)]
    assert all(task.queue is QueueName.NORMAL for task in benchmarks)

    pipeline.report(pipeline.lease())
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.BENCHMARKING
    pipeline.report(pipeline.lease())

    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert workspace.finish_time is not None
    assert coordinator.workspaces.scene_progress(workspace_id).complete
    assert any("Results ready" in payload.subject for payload in _notifications(coordinator))


def test_stale_workspace_reruns_new_scenes_before_publishing(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell", "sponza")
    workspace_id = pipeline.finished_workspace()

    assert pipeline.add_scenes("kitchen") == 2
    assert [scene.name for scene in coordinator.corpus.scenes_added_since(1)] == ["kitchen"]

    assert coordinator.request_publish(workspace_id) is PublishOutcome.RERUN_SCHEDULED
    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.BENCHMARKING
    assert workspace.publish_pending
    assert workspace.scene_set_version == 2
    assert workspace.rerun_cycles == 1

    rerun = pipeline.lease()
    assert rerun.kind is TaskKind.RERUN
    assert rerun.payload == ReRunPayload(workspace_id=workspace_id, missing_scenes=("kitchen",))
    pipeline.report(rerun)

    # Finishing retried the publish on its own; the corpus is now current.
    assert coordinator.corpus.scenes_added_since(2) == []
    copy = pipeline.lease()
    assert copy.kind is TaskKind.PUBLISH_COPY
    assert copy.payload == PublishCopyPayload(workspace_id=workspace_id)
    pipeline.report(copy)

    published = coordinator.workspaces.get(workspace_id)
    assert published.status is WorkspaceStatus.PUBLISHED
    assert published.publication_time is not None
    assert not published.publish_pending
    assert not published.publishing
    assert published.rerun_cycles == 0


def test_publishing_supersedes_previous_and_prunes_siblings(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    first = pipeline.finished_workspace(commit_sha="c1")
    assert coordinator.request_publish(first) is PublishOutcome.PUBLISH_SCHEDULED
    pipeline.drain()
    assert coordinator.workspaces.get(first).status is WorkspaceStatus.PUBLISHED

    second = pipeline.finished_workspace(commit_sha="c2")
    third = pipeline.finished_workspace(commit_sha="c3")
    assert coordinator.request_publish(second) is PublishOutcome.PUBLISH_SCHEDULED
    pipeline.drain()

    assert coordinator.workspaces.get(second).status is WorkspaceStatus.PUBLISHED
    assert coordinator.workspaces.get(first).status is WorkspaceStatus.SUPERSEDED
    pruned = coordinator.workspaces.get(third)
    assert pruned.status is WorkspaceStatus.SUPERSEDED
    assert pruned.pruned_at is not None

    technique = coordinator.registry.lookup("BOX")
    published = coordinator.workspaces.list_for_technique(
        technique.technique_id,
        statuses=[WorkspaceStatus.PUBLISHED],
    )
    assert [workspace.workspace_id for workspace in published] == [second]


def test_concurrent_publish_requests_schedule_one_copy(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    workspace_id = pipeline.finished_workspace()

    barrier = threading.Barrier(2)
    outcomes: list[PublishOutcome] = []
    errors: list[Exception] = []

    def _request() -> None:
        barrier.wait()
        try:
            outcomes.append(coordinator.request_publish(workspace_id))
        except Exception as error:  # noqa: BLE001
            errors.append(error)

    threads = [threading.Thread(target=_request) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sorted(outcome.value for outcome in outcomes) == [
        PublishOutcome.IN_PROGRESS.value,
        PublishOutcome.PUBLISH_SCHEDULED.value,
    ]
    assert len(_queued(coordinator, TaskKind.PUBLISH_COPY)) == 1

    pipeline.drain()
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.PUBLISHED
    assert coordinator.request_publish(workspace_id) is PublishOutcome.ALREADY_PUBLISHED
    assert _queued(coordinator, TaskKind.PUBLISH_COPY) == []
    published_notices = [
        payload for payload in _notifications(coordinator) if "published" in payload.subject
    ]
    assert len(published_notices) == 1


def test_duplicate_registration_conflicts_and_leaves_registry_unchanged(
    coordinator: Coordinator,
) -> None:
    original = coordinator.registry.register(
        "BOX",
        TechniqueMetadata(full_name="Box filter", owner_email="box@example.org"),
    )

    with pytest.raises(Conflict):
        coordinator.registry.register(
            "BOX",
            TechniqueMetadata(technique_type=TechniqueType.SAMPLER, full_name="Other"),
        )

    techniques = coordinator.registry.list_techniques()
    assert [technique.short_name for technique in techniques] == ["BOX"]
    assert coordinator.registry.lookup("BOX") == original


def test_commit_registers_unknown_technique_with_metadata(coordinator: Coordinator) -> None:
    coordinator.handle_commit(
        CommitEvent(
            technique_short_name="NLM",
            commit_sha="f00d",
            artifact_ref="img:f00d",
            metadata=TechniqueMetadata(
                technique_type=TechniqueType.SAMPLER,
                full_name="Non-local means",
                owner_email="nlm@example.org",
            ),
        ),
    )

    technique = coordinator.registry.lookup("NLM")
    assert technique.technique_type is TechniqueType.SAMPLER
    assert technique.full_name == "Non-local means"
    assert technique.owner_email == "nlm@example.org"


def test_commit_without_artifact_is_rejected(coordinator: Coordinator) -> None:
    with pytest.raises(InvalidTechnique):
        coordinator.handle_commit(
            CommitEvent(technique_short_name="BOX", commit_sha="abc", artifact_ref=" "),
        )


def test_workspace_limit_counts_queued_builds(coordinator: Coordinator, pipeline) -> None:
    for index in range(3):
        pipeline.commit(commit_sha=f"c{index}")

    with pytest.raises(WorkspaceLimitExceeded):
        pipeline.commit(commit_sha="c3")

    build = pipeline.lease()
    pipeline.report(build, TaskOutcome.FAILURE)
    # A failed workspace is no longer live.
    pipeline.commit(commit_sha="c4")


def test_publish_while_benchmarking_is_deferred_until_finished(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell", "sponza")
    pipeline.commit()
    build = pipeline.lease()
    pipeline.report(build)
    workspace_id = build.workspace_id

    assert coordinator.request_publish(workspace_id) is PublishOutcome.PENDING
    assert coordinator.get_status(workspace_id).publish_pending

    pipeline.report(pipeline.lease())
    pipeline.report(pipeline.lease())

    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert workspace.publishing
    copy = pipeline.lease()
    assert copy.kind is TaskKind.PUBLISH_COPY
    pipeline.report(copy)
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.PUBLISHED


def test_empty_corpus_finishes_right_after_build(coordinator: Coordinator, pipeline) -> None:
    workspace_id = pipeline.finished_workspace()

    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert workspace.scene_set_version == 0


def test_build_failure_fails_workspace_and_notifies_owner(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.commit(owner_email="owner@example.org")
    build = pipeline.lease()
    pipeline.report(build, TaskOutcome.FAILURE)

    workspace = coordinator.workspaces.get(build.workspace_id)
    assert workspace.status is WorkspaceStatus.FAILED
    notices = _notifications(coordinator)
    assert [notice.address for notice in notices] == ["owner@example.org"]
    assert "Build failed" in notices[0].subject
    assert f"logs/{build.task_id}.log" in notices[0].body


def test_benchmark_failure_fails_workspace_once(coordinator: Coordinator, pipeline) -> None:
    pipeline.add_scenes("cornell", "sponza")
    pipeline.commit()
    build = pipeline.lease()
    pipeline.report(build)

    first = pipeline.lease()
    second = pipeline.lease()
    pipeline.report(first, TaskOutcome.FAILURE)
    pipeline.report(second, TaskOutcome.FAILURE)

    assert coordinator.workspaces.get(build.workspace_id).status is WorkspaceStatus.FAILED
    failures = [n for n in _notifications(coordinator) if "Benchmark failed" in n.subject]
    assert len(failures) == 1
    with pytest.raises(InvalidTransition):
        coordinator.request_publish(build.workspace_id)


def test_rerun_cap_abandons_publish_and_notifies(coordinator: Coordinator, pipeline) -> None:
    coordinator.workspace_settings.max_rerun_cycles = 1
    pipeline.add_scenes("cornell")
    workspace_id = pipeline.finished_workspace()

    pipeline.add_scenes("kitchen")
    assert coordinator.request_publish(workspace_id) is PublishOutcome.RERUN_SCHEDULED
    rerun = pipeline.lease()
    pipeline.add_scenes("bathroom")
    pipeline.report(rerun)

    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert not workspace.publish_pending
    assert not workspace.publishing
    assert workspace.rerun_cycles == 0
    assert _queued(coordinator, TaskKind.RERUN) == []
    assert any("needs attention" in n.subject for n in _notifications(coordinator))

    # A fresh request starts a new bounded cycle.
    assert coordinator.request_publish(workspace_id) is PublishOutcome.RERUN_SCHEDULED


def test_report_from_expired_lease_is_rejected(
    coordinator: Coordinator,
    pipeline,
    clock,
) -> None:
    pipeline.commit()
    build = pipeline.lease()
    clock.advance(seconds=61)

    relet = coordinator.lease("worker-2")
    assert relet.task_id == build.task_id
    assert relet.workspace_id == build.workspace_id
    with pytest.raises(LeaseExpired):
        pipeline.report(build)

    coordinator.report(relet.task_id, "worker-2", WorkerReport(outcome=TaskOutcome.SUCCESS))
    assert coordinator.workspaces.get(build.workspace_id).status is WorkspaceStatus.FINISHED


def test_dead_lettered_build_fails_workspace(coordinator: Coordinator, pipeline) -> None:
    pipeline.commit(owner_email="owner@example.org")
    for _ in range(coordinator.task_queue.max_retries + 1):
        build = pipeline.lease()
        result = coordinator.fail(build.task_id, pipeline.worker_id, "registry unreachable")

    assert result.status is TaskStatus.DEAD_LETTERED
    workspace = coordinator.workspaces.get(build.workspace_id)
    assert workspace.status is WorkspaceStatus.FAILED
    addresses = [notice.address for notice in _notifications(coordinator)]
    assert "admin@localhost" in addresses
    assert "owner@example.org" in addresses


def test_pruned_workspace_tasks_are_discarded_and_reports_ignored(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell", "sponza")
    pipeline.commit()
    build = pipeline.lease()
    pipeline.report(build)
    running = pipeline.lease()

    assert coordinator.delete_workspace(build.workspace_id)
    assert _queued(coordinator, TaskKind.BENCHMARK) == []

    acked = pipeline.report(running)
    assert acked.status is TaskStatus.COMPLETED
    assert coordinator.workspaces.get(build.workspace_id).status is WorkspaceStatus.SUPERSEDED
    assert coordinator.lease("worker-1") is None


def test_published_workspace_cannot_be_deleted(coordinator: Coordinator, pipeline) -> None:
    workspace_id = pipeline.finished_workspace()
    coordinator.request_publish(workspace_id)
    pipeline.drain()

    with pytest.raises(InvalidTransition):
        coordinator.delete_workspace(workspace_id)


def test_status_links_follow_workspace_state(coordinator: Coordinator, pipeline) -> None:
    first = pipeline.finished_workspace(commit_sha="c1")
    second = pipeline.finished_workspace(commit_sha="c2")

    private = coordinator.get_status(first)
    uuid = coordinator.workspaces.get(first).uuid
    assert private.link == f"https://fbksd.example/results/{uuid}/"
    assert private.state is WorkspaceStatus.FINISHED

    coordinator.request_publish(first)
    pipeline.drain()
    assert coordinator.get_status(first).link == "https://fbksd.example/results/denoisers/BOX/"
    assert coordinator.get_status(second).link is None


def test_list_published_filters_by_type(coordinator: Coordinator, pipeline) -> None:
    box = pipeline.finished_workspace("BOX", "c1")
    coordinator.handle_commit(
        CommitEvent(
            technique_short_name="MIS",
            commit_sha="c2",
            artifact_ref="img:c2",
            metadata=TechniqueMetadata(technique_type=TechniqueType.SAMPLER),
        ),
    )
    pipeline.drain()
    mis = coordinator.workspaces.list_for_technique(
        coordinator.registry.lookup("MIS").technique_id,
    )[0].workspace_id
    coordinator.request_publish(box)
    coordinator.request_publish(mis)
    pipeline.drain()

    assert [t.short_name for t, _ in coordinator.list_published()] == ["BOX", "MIS"]
    samplers = coordinator.list_published(TechniqueType.SAMPLER)
    assert [(t.short_name, w.workspace_id) for t, w in samplers] == [("MIS", mis)]


def test_gc_trims_old_unpublished_workspaces(coordinator: Coordinator, pipeline, clock) -> None:
    workspace_id = pipeline.finished_workspace()
    clock.advance(days=3)
    recent = pipeline.finished_workspace(commit_sha="c2")

    clock.advance(days=5)
    summary = coordinator.collect_garbage()

    assert summary.trimmed_workspaces == [workspace_id]
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.SUPERSEDED
    assert coordinator.workspaces.get(recent).status is WorkspaceStatus.FINISHED


def _expire_until_dead_lettered(coordinator: Coordinator, pipeline, clock, task_id: str) -> None:
    """Let every attempt's lease lapse; the last expiry is reclaimed by the next lease call."""

    for _ in range(coordinator.task_queue.max_retries):
        clock.advance(seconds=61)
        assert pipeline.lease().task_id == task_id
    clock.advance(seconds=61)


def test_gc_reclaims_expired_leases(coordinator: Coordinator, pipeline, clock) -> None:
    pipeline.add_scenes("cornell")
    pipeline.commit()
    pipeline.report(pipeline.lease())
    bench = pipeline.lease()
    clock.advance(seconds=61)

    summary = coordinator.collect_garbage()

    assert (summary.reclaimed_leases, summary.dead_lettered) == (1, 0)
    assert coordinator.task_queue.get(bench.task_id).status is TaskStatus.QUEUED


def test_gc_settles_workspace_of_a_lease_that_ran_out_of_retries(
    coordinator: Coordinator,
    pipeline,
    clock,
) -> None:
    pipeline.add_scenes("cornell")
    pipeline.commit()
    pipeline.report(pipeline.lease())
    bench = pipeline.lease()
    _expire_until_dead_lettered(coordinator, pipeline, clock, bench.task_id)

    summary = coordinator.collect_garbage()

    assert (summary.reclaimed_leases, summary.dead_lettered) == (1, 1)
    assert coordinator.workspaces.get(bench.workspace_id).status is WorkspaceStatus.FAILED


def test_benchmark_lease_expiring_past_retries_fails_workspace(
    coordinator: Coordinator,
    pipeline,
    clock,
) -> None:
    pipeline.add_scenes("cornell")
    pipeline.commit(owner_email="owner@example.org")
    pipeline.report(pipeline.lease())
    bench = pipeline.lease()
    _expire_until_dead_lettered(coordinator, pipeline, clock, bench.task_id)

    assert coordinator.lease("worker-2") is None

    assert coordinator.task_queue.get(bench.task_id).status is TaskStatus.DEAD_LETTERED
    assert coordinator.workspaces.get(bench.workspace_id).status is WorkspaceStatus.FAILED
    owner_notices = [
        notice.subject
        for notice in _notifications(coordinator)
        if notice.address == "owner@example.org"
    ]
    assert owner_notices == ["[fbksd] BOX: workspace failed"]
    with pytest.raises(InvalidTransition):
        coordinator.request_publish(bench.workspace_id)


def test_publish_copy_lease_expiring_past_retries_releases_publish(
    coordinator: Coordinator,
    pipeline,
    clock,
) -> None:
    workspace_id = pipeline.finished_workspace()
    assert coordinator.request_publish(workspace_id) is PublishOutcome.PUBLISH_SCHEDULED
    copy = pipeline.lease()
    _expire_until_dead_lettered(coordinator, pipeline, clock, copy.task_id)

    assert coordinator.lease("worker-2") is None

    assert coordinator.task_queue.get(copy.task_id).status is TaskStatus.DEAD_LETTERED
    workspace = coordinator.workspaces.get(workspace_id)
    assert workspace.status is WorkspaceStatus.FINISHED
    assert not workspace.publishing
    assert any("Publishing failed" in n.subject for n in _notifications(coordinator))
    assert coordinator.request_publish(workspace_id) is PublishOutcome.PUBLISH_SCHEDULED


def test_dead_lettered_publish_is_settled_once(coordinator: Coordinator, pipeline) -> None:
    workspace_id = pipeline.finished_workspace()
    coordinator.request_publish(workspace_id)
    for _ in range(coordinator.task_queue.max_retries + 1):
        copy = pipeline.lease()
        coordinator.fail(copy.task_id, pipeline.worker_id, "disk full")

    # A second publish is in flight; an upkeep pass must leave it alone.
    assert coordinator.request_publish(workspace_id) is PublishOutcome.PUBLISH_SCHEDULED
    coordinator.collect_garbage()

    assert coordinator.workspaces.get(workspace_id).publishing
    failures = [n for n in _notifications(coordinator) if "Publishing failed" in n.subject]
    assert len(failures) == 1


def test_publish_request_waits_behind_sibling_copy(coordinator: Coordinator, pipeline) -> None:
    pipeline.add_scenes("cornell")
    first = pipeline.finished_workspace(commit_sha="c1")
    second = pipeline.finished_workspace(commit_sha="c2")
    assert coordinator.request_publish(first) is PublishOutcome.PUBLISH_SCHEDULED

    assert coordinator.request_publish(second) is PublishOutcome.PENDING
    assert coordinator.workspaces.get(second).publish_pending

    copy = pipeline.lease()
    assert copy.payload == PublishCopyPayload(workspace_id=first)
    pipeline.report(copy, TaskOutcome.FAILURE)

    assert not coordinator.workspaces.get(first).publishing
    retried = coordinator.workspaces.get(second)
    assert retried.publishing
    assert not retried.publish_pending
    pipeline.drain()
    assert coordinator.workspaces.get(second).status is WorkspaceStatus.PUBLISHED
    assert coordinator.workspaces.get(first).status is WorkspaceStatus.SUPERSEDED


def test_rerun_failure_keeps_scenes_that_completed(coordinator: Coordinator, pipeline) -> None:
    pipeline.add_scenes("cornell")
    workspace_id = pipeline.finished_workspace()
    pipeline.add_scenes("kitchen", "sponza")
    assert coordinator.request_publish(workspace_id) is PublishOutcome.RERUN_SCHEDULED
    rerun = pipeline.lease()
    assert rerun.payload == ReRunPayload(
        workspace_id=workspace_id,
        missing_scenes=("kitchen", "sponza"),
    )

    coordinator.report(
        rerun.task_id,
        pipeline.worker_id,
        WorkerReport(
            outcome=TaskOutcome.FAILURE,
            result_ref="results/rerun",
            scenes=("kitchen",),
            error_summary="Scene sponza: exit code 1",
        ),
    )

    progress = coordinator.workspaces.scene_progress(workspace_id)
    assert (progress.required, progress.succeeded, progress.failed) == (3, 2, 1)
    assert coordinator.workspaces.get(workspace_id).status is WorkspaceStatus.FAILED
    failure = next(n for n in _notifications(coordinator) if "Benchmark failed" in n.subject)
    assert "failed on sponza." in failure.body


def test_benchmark_report_for_unknown_scene_does_not_finish(
    coordinator: Coordinator,
    pipeline,
) -> None:
    pipeline.add_scenes("cornell")
    pipeline.commit()
    build = pipeline.lease()
    pipeline.report(build)
    bench = pipeline.lease()
    assert bench.payload == BenchmarkPayload(workspace_id=build.workspace_id, scenes=("cornell",))

    assert not coordinator.workspaces.record_scene_result(
        build.workspace_id,
        "unknown",
        SceneResultStatus.SUCCEEDED,
    )
    assert coordinator.workspaces.get(build.workspace_id).status is WorkspaceStatus.BENCHMARKING
