"""Exceptions raised by coordinator components."""

from __future__ import annotations


class CoordinatorError(Exception):
    """Base class for coordinator failures that callers are expected to handle."""


class Conflict(CoordinatorError):
    """A uniqueness rule rejected the operation."""


class WorkspaceLimitExceeded(Conflict):
    """A technique already holds the maximum number of live workspaces."""

    def __init__(self, short_name: str, limit: int) -> None:
        super().__init__(
            f"Technique {short_name!r} already has {limit} live workspaces; "
            "publish or delete one before committing again.",
        )
        self.short_name = short_name
        self.limit = limit


class NotFound(CoordinatorError):
    """Requested entity does not exist."""


class InvalidTransition(CoordinatorError):
    """Workspace status change is not an edge of the lifecycle graph."""

    def __init__(self, workspace_id: int, current: str, requested: str) -> None:
        super().__init__(
            f"Workspace {workspace_id} cannot move from {current!r} to {requested!r}.",
        )
        self.workspace_id = workspace_id
        self.current = current
        self.requested = requested


class InvalidScene(CoordinatorError):
    """Scene descriptor is malformed or duplicates a corpus entry."""


class InvalidTechnique(CoordinatorError):
    """Technique short name or metadata is malformed."""


class LeaseExpired(CoordinatorError):
    """Caller no longer holds the lease on a task."""

    def __init__(self, task_id: str, worker_id: str | None) -> None:
        super().__init__(f"Lease on task {task_id} is not held by worker {worker_id!r}.")
        self.task_id = task_id
        self.worker_id = worker_id
