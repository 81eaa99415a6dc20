"""HTTP API: commit webhook, worker protocol, publish requests and corpus admin."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fbksd_server import __version__
from fbksd_server.config import Settings
from fbksd_server.coordinator.errors import (
    Conflict,
    CoordinatorError,
    InvalidScene,
    InvalidTechnique,
    InvalidTransition,
    LeaseExpired,
    NotFound,
)
from fbksd_server.coordinator.models import (
    CommitEvent,
    SceneDescriptor,
    TaskOutcome,
    TaskView,
    TechniqueMetadata,
    TechniqueType,
    WorkerReport,
)
from fbksd_server.coordinator.services import Coordinator

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[CoordinatorError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    Conflict: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    InvalidScene: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTechnique: status.HTTP_422_UNPROCESSABLE_ENTITY,
    LeaseExpired: status.HTTP_410_GONE,
}


class CommitRequest(BaseModel):
    technique: str
    commit_sha: str
    artifact_ref: str
    technique_type: TechniqueType = TechniqueType.DENOISER
    full_name: str = ""
    citation: str = ""
    comment: str = ""
    owner_email: str | None = None


class LeaseRequest(BaseModel):
    timeout_seconds: int | None = Field(default=None, gt=0)


class HeartbeatRequest(BaseModel):
    worker_id: str


class ReportRequest(BaseModel):
    worker_id: str
    outcome: TaskOutcome
    log_ref: str | None = None
    result_ref: str | None = None
    scenes: list[str] = Field(
        default_factory=list,
        description="Scenes that completed before a failed benchmark or re-run.",
    )
    error_summary: str | None = None


class FailRequest(BaseModel):
    worker_id: str
    reason: str


class SceneRequest(BaseModel):
    name: str
    renderer: str
    path: str
    reference_image: str = ""
    citation: str = ""


class AddScenesRequest(BaseModel):
    scenes: list[SceneRequest] = Field(min_length=1)


class TaskResponse(BaseModel):
    task_id: str
    queue: str
    kind: str
    status: str
    payload: dict[str, Any]
    technique_id: int | None
    workspace_id: int | None
    retries: int
    max_retries: int
    worker_id: str | None
    lease_deadline: datetime | None


class SceneProgressResponse(BaseModel):
    required: int
    succeeded: int
    failed: int
    pending: int


class WorkspaceStatusResponse(BaseModel):
    workspace_id: int
    uuid: str
    state: str
    link: str | None
    publish_pending: bool
    progress: SceneProgressResponse


class PublishResponse(BaseModel):
    workspace_id: int
    outcome: str


class PublishedEntry(BaseModel):
    technique: str
    technique_type: str
    full_name: str
    workspace_id: int
    commit_sha: str
    publication_time: datetime | None


class CorpusResponse(BaseModel):
    version: int
    scenes: list[str]


def create_app(coordinator: Coordinator) -> FastAPI:
    """Build the API around an already initialised coordinator."""

    app = FastAPI(title="fbksd-server", version=__version__)
    app.state.coordinator = coordinator
    _register_routes(app)
    _register_error_handlers(app)
    return app


def create_app_from_settings(settings: Settings) -> FastAPI:
    """Build the API with a coordinator owned by the application lifespan."""

    settings.validate()
    coordinator = Coordinator.from_settings(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        coordinator.init_schema()
        try:
            yield
        finally:
            coordinator.close()

    app = FastAPI(title="fbksd-server", version=__version__, lifespan=lifespan)
    app.state.coordinator = coordinator
    _register_routes(app)
    _register_error_handlers(app)
    return app


def _coordinator(request: Request) -> Coordinator:
    return request.app.state.coordinator


def _register_routes(app: FastAPI) -> None:  # noqa: C901
    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/commit", status_code=status.HTTP_202_ACCEPTED)
    def commit(body: CommitRequest, request: Request) -> TaskResponse:
        task = _coordinator(request).handle_commit(
            CommitEvent(
                technique_short_name=body.technique,
                commit_sha=body.commit_sha,
                artifact_ref=body.artifact_ref,
                metadata=TechniqueMetadata(
                    technique_type=body.technique_type,
                    full_name=body.full_name,
                    citation=body.citation,
                    comment=body.comment,
                    owner_email=body.owner_email,
                ),
            ),
        )
        return _task_response(task)

    @app.post("/workers/{worker_id}/lease", response_model=None)
    def lease(
        worker_id: str,
        request: Request,
        body: LeaseRequest | None = None,
    ) -> TaskResponse | Response:
        timeout = body.timeout_seconds if body is not None else None
        task = _coordinator(request).lease(worker_id, timeout)
        if task is None:
            return Response(status_code=status.HTTP_204_NO_CONTENT)
        return _task_response(task)

    @app.post("/tasks/{task_id}/heartbeat")
    def heartbeat(task_id: str, body: HeartbeatRequest, request: Request) -> TaskResponse:
        return _task_response(_coordinator(request).heartbeat(task_id, body.worker_id))

    @app.post("/tasks/{task_id}/report")
    def report(task_id: str, body: ReportRequest, request: Request) -> TaskResponse:
        task = _coordinator(request).report(
            task_id,
            body.worker_id,
            WorkerReport(
                outcome=body.outcome,
                log_ref=body.log_ref,
                result_ref=body.result_ref,
                scenes=tuple(body.scenes),
                error_summary=body.error_summary,
            ),
        )
        return _task_response(task)

    @app.post("/tasks/{task_id}/fail")
    def fail(task_id: str, body: FailRequest, request: Request) -> TaskResponse:
        return _task_response(_coordinator(request).fail(task_id, body.worker_id, body.reason))

    @app.get("/workspaces/{workspace_id}")
    def workspace_status(workspace_id: int, request: Request) -> WorkspaceStatusResponse:
        view = _coordinator(request).get_status(workspace_id)
        return WorkspaceStatusResponse(
            workspace_id=view.workspace_id,
            uuid=view.uuid,
            state=view.state.value,
            link=view.link,
            publish_pending=view.publish_pending,
            progress=SceneProgressResponse(
                required=view.progress.required,
                succeeded=view.progress.succeeded,
                failed=view.progress.failed,
                pending=view.progress.pending,
            ),
        )

    @app.post("/workspaces/{workspace_id}/publish")
    def publish(workspace_id: int, request: Request) -> PublishResponse:
        outcome = _coordinator(request).request_publish(workspace_id)
        return PublishResponse(workspace_id=workspace_id, outcome=outcome.value)

    @app.delete("/workspaces/{workspace_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_workspace(workspace_id: int, request: Request) -> Response:
        _coordinator(request).delete_workspace(workspace_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/published")
    def published(
        request: Request,
        technique_type: TechniqueType | None = None,
    ) -> list[PublishedEntry]:
        return [
            PublishedEntry(
                technique=technique.short_name,
                technique_type=technique.technique_type.value,
                full_name=technique.full_name,
                workspace_id=workspace.workspace_id,
                commit_sha=workspace.commit_sha,
                publication_time=workspace.publication_time,
            )
            for technique, workspace in _coordinator(request).list_published(technique_type)
        ]

    @app.get("/admin/scenes")
    def corpus(request: Request) -> CorpusResponse:
        snapshot = _coordinator(request).corpus.snapshot()
        return CorpusResponse(version=snapshot.version, scenes=list(snapshot.scene_names))

    @app.post("/admin/scenes", status_code=status.HTTP_201_CREATED)
    def add_scenes(body: AddScenesRequest, request: Request) -> CorpusResponse:
        coordinator = _coordinator(request)
        version = coordinator.add_scenes(
            [
                SceneDescriptor(
                    name=scene.name,
                    renderer=scene.renderer,
                    path=scene.path,
                    reference_image=scene.reference_image,
                    citation=scene.citation,
                )
                for scene in body.scenes
            ],
        )
        names = [scene.name for scene in coordinator.corpus.scenes_at(version)]
        return CorpusResponse(version=version, scenes=names)


def _register_error_handlers(app: FastAPI) -> None:
    async def handle(_: Request, error: Exception) -> JSONResponse:
        code = _status_for(error)
        if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("Unmapped coordinator error: %s", error)
        return JSONResponse(
            status_code=code,
            content={"error": type(error).__name__, "detail": str(error)},
        )

    app.add_exception_handler(CoordinatorError, handle)
    app.add_exception_handler(ValueError, handle)


def _status_for(error: Exception) -> int:
    if isinstance(error, ValueError):
        return status.HTTP_400_BAD_REQUEST
    for error_type in type(error).__mro__:
        code = ERROR_STATUS.get(error_type)
        if code is not None:
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        queue=task.queue.value,
        kind=task.kind.value,
        status=task.status.value,
        payload=asdict(task.payload),
        technique_id=task.technique_id,
        workspace_id=task.workspace_id,
        retries=task.retries,
        max_retries=task.max_retries,
        worker_id=task.worker_id,
        lease_deadline=task.lease_deadline,
    )
