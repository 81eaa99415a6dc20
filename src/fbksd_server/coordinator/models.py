"""Domain models for techniques, corpus, workspaces and queued tasks."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TechniqueType(str, Enum):
    """Kind of rendering technique submitted by a user."""

    DENOISER = "denoiser"
    SAMPLER = "sampler"

    @property
    def group(self) -> str:
        return f"{self.value}s"


class WorkspaceStatus(str, Enum):
    """Workspace lifecycle states."""

    BUILDING = "building"
    BUILT = "built"
    BENCHMARKING = "benchmarking"
    FINISHED = "finished"
    PUBLISHED = "published"
    FAILED = "failed"
    SUPERSEDED = "superseded"


LEGAL_TRANSITIONS: dict[WorkspaceStatus, frozenset[WorkspaceStatus]] = {
    WorkspaceStatus.BUILDING: frozenset({WorkspaceStatus.BUILT, WorkspaceStatus.FAILED}),
    WorkspaceStatus.BUILT: frozenset({WorkspaceStatus.BENCHMARKING}),
    WorkspaceStatus.BENCHMARKING: frozenset({WorkspaceStatus.FINISHED, WorkspaceStatus.FAILED}),
    WorkspaceStatus.FINISHED: frozenset(
        {WorkspaceStatus.PUBLISHED, WorkspaceStatus.BENCHMARKING},
    ),
    WorkspaceStatus.PUBLISHED: frozenset({WorkspaceStatus.SUPERSEDED}),
    WorkspaceStatus.FAILED: frozenset(),
    WorkspaceStatus.SUPERSEDED: frozenset(),
}

# Statuses a sibling prune may move into SUPERSEDED.
PRUNABLE_STATUSES = frozenset(
    {
        WorkspaceStatus.BUILDING,
        WorkspaceStatus.BUILT,
        WorkspaceStatus.BENCHMARKING,
        WorkspaceStatus.FINISHED,
        WorkspaceStatus.FAILED,
    },
)
LIVE_STATUSES = frozenset(
    {
        WorkspaceStatus.BUILDING,
        WorkspaceStatus.BUILT,
        WorkspaceStatus.BENCHMARKING,
        WorkspaceStatus.FINISHED,
    },
)


def is_legal_transition(current: WorkspaceStatus, new: WorkspaceStatus) -> bool:
    return new in LEGAL_TRANSITIONS[current]


class SceneResultStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class QueueName(str, Enum):
    """Durable queues; membership is decided by task kind only."""

    PRIORITY = "priority"
    NORMAL = "normal"
    NOTIFICATION = "notification"


class TaskKind(str, Enum):
    BUILD = "build"
    BENCHMARK = "benchmark"
    PUBLISH_COPY = "publish_copy"
    RERUN = "rerun"
    NOTIFY = "notify"


QUEUE_FOR_KIND: dict[TaskKind, QueueName] = {
    TaskKind.BUILD: QueueName.PRIORITY,
    TaskKind.PUBLISH_COPY: QueueName.PRIORITY,
    TaskKind.RERUN: QueueName.PRIORITY,
    TaskKind.BENCHMARK: QueueName.NORMAL,
    TaskKind.NOTIFY: QueueName.NOTIFICATION,
}


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    LEASED = "leased"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    DISCARDED = "discarded"


class TaskOutcome(str, Enum):
    """Outcome a worker reports for a leased task."""

    SUCCESS = "success"
    FAILURE = "failure"


class PublishOutcome(str, Enum):
    """Result of a publish request as seen by the caller."""

    PUBLISH_SCHEDULED = "publish_scheduled"
    RERUN_SCHEDULED = "rerun_scheduled"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    ALREADY_PUBLISHED = "already_published"
    RERUN_LIMIT_EXCEEDED = "rerun_limit_exceeded"


@dataclass(slots=True, frozen=True)
class BuildPayload:
    technique_id: int
    commit_sha: str
    artifact_ref: str
    workspace_id: int | None = None


@dataclass(slots=True, frozen=True)
class BenchmarkPayload:
    workspace_id: int
    scenes: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class PublishCopyPayload:
    workspace_id: int


@dataclass(slots=True, frozen=True)
class ReRunPayload:
    workspace_id: int
    missing_scenes: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class NotifyPayload:
    address: str
    subject: str
    body: str


TaskPayload = BuildPayload | BenchmarkPayload | PublishCopyPayload | ReRunPayload | NotifyPayload

PAYLOAD_TYPES: dict[TaskKind, type] = {
    TaskKind.BUILD: BuildPayload,
    TaskKind.BENCHMARK: BenchmarkPayload,
    TaskKind.PUBLISH_COPY: PublishCopyPayload,
    TaskKind.RERUN: ReRunPayload,
    TaskKind.NOTIFY: NotifyPayload,
}
_KIND_FOR_PAYLOAD: dict[type, TaskKind] = {value: key for key, value in PAYLOAD_TYPES.items()}


def kind_of(payload: TaskPayload) -> TaskKind:
    try:
        return _KIND_FOR_PAYLOAD[type(payload)]
    except KeyError as error:
        raise TypeError(f"Unsupported task payload: {type(payload).__name__}") from error


def encode_payload(payload: TaskPayload) -> str:
    return json.dumps(asdict(payload), ensure_ascii=False, sort_keys=True)


def decode_payload(kind: TaskKind, raw: str) -> TaskPayload:
    data: dict[str, Any] = json.loads(raw)
    for key in ("scenes", "missing_scenes"):
        if key in data:
            data[key] = tuple(data[key])
    return PAYLOAD_TYPES[kind](**data)


@dataclass(slots=True)
class TechniqueMetadata:
    """Display metadata supplied on first registration."""

    technique_type: TechniqueType = TechniqueType.DENOISER
    full_name: str = ""
    citation: str = ""
    comment: str = ""
    owner_email: str | None = None


@dataclass(slots=True)
class TechniqueView:
    technique_id: int
    short_name: str
    technique_type: TechniqueType
    full_name: str
    citation: str
    comment: str
    owner_email: str | None
    workspace_count: int
    created_at: datetime


@dataclass(slots=True, frozen=True)
class SceneDescriptor:
    """One benchmark scene as submitted by an administrator."""

    name: str
    renderer: str
    path: str
    reference_image: str = ""
    citation: str = ""


@dataclass(slots=True)
class SceneView:
    name: str
    renderer: str
    path: str
    reference_image: str
    citation: str
    version: int
    added_at: datetime


@dataclass(slots=True)
class CorpusSnapshot:
    """Consistent view of the corpus: a version and every scene up to it."""

    version: int
    scenes: list[SceneView] = field(default_factory=list)

    @property
    def scene_names(self) -> tuple[str, ...]:
        return tuple(scene.name for scene in self.scenes)


@dataclass(slots=True)
class WorkspaceView:
    workspace_id: int
    uuid: str
    technique_id: int
    commit_sha: str
    artifact_ref: str
    status: WorkspaceStatus
    scene_set_version: int
    publish_pending: bool
    publishing: bool
    rerun_cycles: int
    build_log_ref: str | None
    creation_time: datetime
    finish_time: datetime | None
    publication_time: datetime | None
    pruned_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class SceneProgress:
    """Per-workspace scene completion counters."""

    required: int
    succeeded: int
    failed: int
    pending: int

    @property
    def complete(self) -> bool:
        return self.succeeded == self.required


@dataclass(slots=True)
class WorkspaceStatusView:
    workspace_id: int
    uuid: str
    state: WorkspaceStatus
    link: str | None
    publish_pending: bool
    progress: SceneProgress


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, API and worker logic."""

    task_id: str
    queue: QueueName
    position: int
    kind: TaskKind
    payload: TaskPayload
    technique_id: int | None
    workspace_id: int | None
    status: TaskStatus
    retries: int
    max_retries: int
    worker_id: str | None
    leased_at: datetime | None
    lease_deadline: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class CommitEvent:
    """Commit trigger delivered by the git hosting integration."""

    technique_short_name: str
    commit_sha: str
    artifact_ref: str
    metadata: TechniqueMetadata = field(default_factory=TechniqueMetadata)


@dataclass(slots=True)
class WorkerReport:
    """Outcome a worker delivers for one leased task.

    ``scenes`` lists the scenes of a benchmark or re-run task that completed.
    On failure the task's other scenes are recorded as failed; on success
    every scene of the task counts as completed.
    """

    outcome: TaskOutcome
    log_ref: str | None = None
    result_ref: str | None = None
    scenes: tuple[str, ...] = ()
    error_summary: str | None = None


@dataclass(slots=True)
class QueueStats:
    """Task counts per queue and status."""

    counts: dict[QueueName, dict[TaskStatus, int]] = field(default_factory=dict)

    def count(self, queue: QueueName, status: TaskStatus) -> int:
        return self.counts.get(queue, {}).get(status, 0)

    @property
    def dead_lettered(self) -> int:
        return sum(by_status.get(TaskStatus.DEAD_LETTERED, 0) for by_status in self.counts.values())
