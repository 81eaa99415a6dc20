"""Workspace store: lifecycle state machine and per-scene bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from fbksd_server.coordinator.errors import Conflict, InvalidTransition, NotFound
from fbksd_server.coordinator.models import (
    LIVE_STATUSES,
    PRUNABLE_STATUSES,
    SceneProgress,
    SceneResultStatus,
    TechniqueType,
    WorkspaceStatus,
    WorkspaceView,
    is_legal_transition,
)
from fbksd_server.storage.common import (
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from fbksd_server.storage.sqlmodel_models import Technique, Workspace, WorkspaceScene

logger = logging.getLogger(__name__)

# Columns a caller may change together with a status transition.
TRANSITION_FIELDS = frozenset(
    {
        "scene_set_version",
        "publish_pending",
        "publishing",
        "rerun_cycles",
        "build_log_ref",
    },
)
_MAX_CAS_ATTEMPTS = 20


class WorkspaceStore:
    """Persistence for workspaces; every status change is a compare-and-set."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(
        self,
        technique_id: int,
        commit_sha: str,
        artifact_ref: str,
        scene_version: int,
    ) -> WorkspaceView:
        """Insert a ``building`` workspace and bump the technique's workspace counter."""

        now = utc_now()
        with Session(self.engine) as session:
            technique = session.get(Technique, technique_id)
            if technique is None:
                raise NotFound(f"Technique not found: id={technique_id}")
            row = Workspace(
                uuid=str(uuid4()),
                technique_id=technique_id,
                commit_sha=commit_sha,
                artifact_ref=artifact_ref,
                status=WorkspaceStatus.BUILDING.value,
                scene_set_version=scene_version,
                creation_time=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.exec(
                sa_update(Technique)
                .where(col(Technique.technique_id) == technique_id)
                .values(workspace_count=col(Technique.workspace_count) + 1),
            )
            session.commit()
            session.refresh(row)
            logger.info(
                "Created workspace %s (%s) for technique %s at commit %s",
                row.workspace_id,
                row.uuid,
                technique.short_name,
                commit_sha,
            )
            return _to_workspace_view(row)

    def get(self, workspace_id: int) -> WorkspaceView:
        with Session(self.engine) as session:
            return _to_workspace_view(_get_row(session, workspace_id))

    def get_by_uuid(self, uuid: str) -> WorkspaceView:
        with Session(self.engine) as session:
            row = session.exec(select(Workspace).where(Workspace.uuid == uuid)).one_or_none()
            if row is None:
                raise NotFound(f"Workspace not found: {uuid}")
            return _to_workspace_view(row)

    def list_for_technique(
        self,
        technique_id: int,
        *,
        statuses: Iterable[WorkspaceStatus] | None = None,
    ) -> list[WorkspaceView]:
        with Session(self.engine) as session:
            query = select(Workspace).where(Workspace.technique_id == technique_id)
            if statuses is not None:
                query = query.where(col(Workspace.status).in_([item.value for item in statuses]))
            rows = session.exec(query.order_by(col(Workspace.workspace_id).asc())).all()
            return [_to_workspace_view(row) for row in rows]

    def count_live(self, technique_id: int) -> int:
        return len(self.list_for_technique(technique_id, statuses=LIVE_STATUSES))

    def list_published(
        self,
        *,
        technique_type: TechniqueType | None = None,
    ) -> list[WorkspaceView]:
        with Session(self.engine) as session:
            query = (
                select(Workspace)
                .join(Technique, col(Technique.technique_id) == col(Workspace.technique_id))
                .where(Workspace.status == WorkspaceStatus.PUBLISHED.value)
            )
            if technique_type is not None:
                query = query.where(Technique.technique_type == technique_type.value)
            rows = session.exec(query.order_by(col(Technique.short_name).asc())).all()
            return [_to_workspace_view(row) for row in rows]

    def list_unpublished_older_than(self, cutoff: datetime) -> list[WorkspaceView]:
        """Finished, never-published workspaces whose results are older than ``cutoff``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Workspace)
                .where(
                    Workspace.status == WorkspaceStatus.FINISHED.value,
                    col(Workspace.publish_pending).is_(False),
                    col(Workspace.publishing).is_(False),
                    col(Workspace.finish_time) < to_db_datetime(cutoff),
                )
                .order_by(col(Workspace.finish_time).asc()),
            ).all()
            return [_to_workspace_view(row) for row in rows]

    def transition(
        self,
        workspace_id: int,
        new_status: WorkspaceStatus,
        *,
        expected: WorkspaceStatus | None = None,
        now: datetime | None = None,
        **changes: object,
    ) -> WorkspaceView:
        """Move a workspace along one legal edge of the lifecycle graph.

        ``expected`` pins the source status; without it the current status is
        read and the update is retried if another writer changes it first.
        ``changes`` may set any of ``TRANSITION_FIELDS`` in the same update.
        """

        unknown = set(changes) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unsupported workspace fields: {sorted(unknown)}")
        timestamp = now or utc_now()

        for _ in range(_MAX_CAS_ATTEMPTS):
            with Session(self.engine) as session:
                row = _get_row(session, workspace_id)
                current = WorkspaceStatus(row.status)
                if expected is not None and current is not expected:
                    raise InvalidTransition(workspace_id, current.value, new_status.value)
                if not is_legal_transition(current, new_status):
                    raise InvalidTransition(workspace_id, current.value, new_status.value)

                values: dict[str, object] = {
                    "status": new_status.value,
                    "updated_at": to_db_datetime(timestamp),
                    **changes,
                }
                if new_status is WorkspaceStatus.FINISHED:
                    values["finish_time"] = to_db_datetime(timestamp)
                if new_status is WorkspaceStatus.PUBLISHED:
                    values["publication_time"] = to_db_datetime(timestamp)
                try:
                    result = session.exec(
                        sa_update(Workspace)
                        .where(
                            col(Workspace.workspace_id) == workspace_id,
                            col(Workspace.status) == current.value,
                        )
                        .values(**values),
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        continue
                    session.commit()
                except IntegrityError as error:
                    session.rollback()
                    raise Conflict(
                        f"Technique {row.technique_id} already has a published workspace.",
                    ) from error
                logger.info(
                    "Workspace %s: %s -> %s",
                    workspace_id,
                    current.value,
                    new_status.value,
                )
                return _to_workspace_view(_get_row(session, workspace_id))
        raise RuntimeError(f"Workspace {workspace_id} kept changing; transition abandoned.")

    def prune(self, workspace_id: int, *, now: datetime | None = None) -> bool:
        """Supersede a live or failed workspace; False if it was already superseded."""

        timestamp = now or utc_now()
        for _ in range(_MAX_CAS_ATTEMPTS):
            with Session(self.engine) as session:
                row = _get_row(session, workspace_id)
                current = WorkspaceStatus(row.status)
                if current is WorkspaceStatus.SUPERSEDED:
                    return False
                if current not in PRUNABLE_STATUSES:
                    raise InvalidTransition(
                        workspace_id,
                        current.value,
                        WorkspaceStatus.SUPERSEDED.value,
                    )
                result = session.exec(
                    sa_update(Workspace)
                    .where(
                        col(Workspace.workspace_id) == workspace_id,
                        col(Workspace.status) == current.value,
                    )
                    .values(
                        status=WorkspaceStatus.SUPERSEDED.value,
                        publish_pending=False,
                        publishing=False,
                        pruned_at=to_db_datetime(timestamp),
                        updated_at=to_db_datetime(timestamp),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                logger.info("Pruned workspace %s (was %s)", workspace_id, current.value)
                return True
        raise RuntimeError(f"Workspace {workspace_id} kept changing; prune abandoned.")

    def publish(self, workspace_id: int, *, now: datetime | None = None) -> int | None:
        """Publish a finished workspace and supersede the technique's previous one.

        Both updates share one transaction; the partial unique index on
        published rows rejects a concurrent publish of a sibling, which is
        then retried against the new published row. Returns the id of the
        superseded workspace, if any.
        """

        timestamp = now or utc_now()
        for _ in range(_MAX_CAS_ATTEMPTS):
            with Session(self.engine) as session:
                row = _get_row(session, workspace_id)
                current = WorkspaceStatus(row.status)
                if current is not WorkspaceStatus.FINISHED:
                    raise InvalidTransition(
                        workspace_id,
                        current.value,
                        WorkspaceStatus.PUBLISHED.value,
                    )
                previous = session.exec(
                    select(Workspace).where(
                        Workspace.technique_id == row.technique_id,
                        Workspace.status == WorkspaceStatus.PUBLISHED.value,
                    ),
                ).one_or_none()
                previous_id = previous.workspace_id if previous is not None else None
                try:
                    if not _swap_published(
                        session,
                        workspace_id=workspace_id,
                        previous_id=previous_id,
                        timestamp=timestamp,
                    ):
                        session.rollback()
                        continue
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning(
                        "Concurrent publish detected for technique %s; retrying",
                        row.technique_id,
                    )
                    continue
                logger.info(
                    "Published workspace %s (superseded %s)",
                    workspace_id,
                    previous_id,
                )
                return previous_id
        raise RuntimeError(f"Workspace {workspace_id} could not be published after retries.")

    def try_begin_publishing(self, workspace_id: int) -> bool:
        """Set ``publishing`` on a finished workspace; only one caller can win.

        The update also fails while any sibling of the same technique is being
        published, so at most one copy per technique is ever in flight.
        """

        now = utc_now()
        with Session(self.engine) as session:
            technique_id = _get_row(session, workspace_id).technique_id
            sibling = aliased(Workspace)
            sibling_publishing = (
                select(sibling.workspace_id)
                .where(
                    sibling.technique_id == technique_id,
                    col(sibling.publishing).is_(True),
                )
                .exists()
            )
            result = session.exec(
                sa_update(Workspace)
                .where(
                    col(Workspace.workspace_id) == workspace_id,
                    col(Workspace.status) == WorkspaceStatus.FINISHED.value,
                    col(Workspace.publishing).is_(False),
                    ~sibling_publishing,
                )
                .values(publishing=True, publish_pending=False, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def set_publish_flags(
        self,
        workspace_id: int,
        *,
        publish_pending: bool | None = None,
        publishing: bool | None = None,
        rerun_cycles: int | None = None,
    ) -> WorkspaceView:
        values: dict[str, object] = {"updated_at": to_db_datetime(utc_now())}
        if publish_pending is not None:
            values["publish_pending"] = publish_pending
        if publishing is not None:
            values["publishing"] = publishing
        if rerun_cycles is not None:
            values["rerun_cycles"] = rerun_cycles
        with Session(self.engine) as session:
            session.exec(
                sa_update(Workspace)
                .where(col(Workspace.workspace_id) == workspace_id)
                .values(**values),
            )
            session.commit()
            return _to_workspace_view(_get_row(session, workspace_id))

    def add_required_scenes(self, workspace_id: int, scene_names: Iterable[str]) -> int:
        """Record scenes the workspace must report on; existing entries are kept."""

        now = utc_now()
        added = 0
        with Session(self.engine) as session:
            known = set(
                session.exec(
                    select(WorkspaceScene.scene_name).where(
                        WorkspaceScene.workspace_id == workspace_id,
                    ),
                ).all(),
            )
            for name in scene_names:
                if name in known:
                    continue
                known.add(name)
                session.add(
                    WorkspaceScene(
                        workspace_id=workspace_id,
                        scene_name=name,
                        status=SceneResultStatus.PENDING.value,
                        updated_at=to_db_datetime(now),
                    ),
                )
                added += 1
            session.commit()
        return added

    def required_scenes(self, workspace_id: int) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(WorkspaceScene.scene_name)
                    .where(WorkspaceScene.workspace_id == workspace_id)
                    .order_by(col(WorkspaceScene.id).asc()),
                ).all(),
            )

    def record_scene_result(  # noqa: PLR0913
        self,
        workspace_id: int,
        scene_name: str,
        status: SceneResultStatus,
        *,
        result_ref: str | None = None,
        error_summary: str | None = None,
    ) -> bool:
        """Store a scene outcome; False when the scene is not required by the workspace."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(WorkspaceScene)
                .where(
                    col(WorkspaceScene.workspace_id) == workspace_id,
                    col(WorkspaceScene.scene_name) == scene_name,
                )
                .values(
                    status=status.value,
                    result_ref=result_ref,
                    error_summary=error_summary,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Workspace %s reported unknown scene %r",
                    workspace_id,
                    scene_name,
                )
                return False
            session.commit()
            return True

    def scene_progress(self, workspace_id: int) -> SceneProgress:
        with Session(self.engine) as session:
            statuses = session.exec(
                select(WorkspaceScene.status).where(WorkspaceScene.workspace_id == workspace_id),
            ).all()
        return SceneProgress(
            required=len(statuses),
            succeeded=sum(1 for item in statuses if item == SceneResultStatus.SUCCEEDED.value),
            failed=sum(1 for item in statuses if item == SceneResultStatus.FAILED.value),
            pending=sum(1 for item in statuses if item == SceneResultStatus.PENDING.value),
        )


def _swap_published(
    session: Session,
    *,
    workspace_id: int,
    previous_id: int | None,
    timestamp: datetime,
) -> bool:
    if previous_id is not None:
        superseded = session.exec(
            sa_update(Workspace)
            .where(
                col(Workspace.workspace_id) == previous_id,
                col(Workspace.status) == WorkspaceStatus.PUBLISHED.value,
            )
            .values(
                status=WorkspaceStatus.SUPERSEDED.value,
                pruned_at=to_db_datetime(timestamp),
                updated_at=to_db_datetime(timestamp),
            ),
        )
        if superseded.rowcount != 1:
            return False
    result = session.exec(
        sa_update(Workspace)
        .where(
            col(Workspace.workspace_id) == workspace_id,
            col(Workspace.status) == WorkspaceStatus.FINISHED.value,
        )
        .values(
            status=WorkspaceStatus.PUBLISHED.value,
            publish_pending=False,
            publishing=False,
            rerun_cycles=0,
            publication_time=to_db_datetime(timestamp),
            updated_at=to_db_datetime(timestamp),
        ),
    )
    return result.rowcount == 1


def _get_row(session: Session, workspace_id: int) -> Workspace:
    row = session.get(Workspace, workspace_id)
    if row is None:
        raise NotFound(f"Workspace not found: id={workspace_id}")
    session.refresh(row)
    return row


def _to_workspace_view(row: Workspace) -> WorkspaceView:
    if row.workspace_id is None:
        raise RuntimeError("Workspace row has no primary key.")
    return WorkspaceView(
        workspace_id=row.workspace_id,
        uuid=row.uuid,
        technique_id=row.technique_id,
        commit_sha=row.commit_sha,
        artifact_ref=row.artifact_ref,
        status=WorkspaceStatus(row.status),
        scene_set_version=row.scene_set_version,
        publish_pending=row.publish_pending,
        publishing=row.publishing,
        rerun_cycles=row.rerun_cycles,
        build_log_ref=row.build_log_ref,
        creation_time=to_utc_aware(row.creation_time),
        finish_time=to_utc_aware_optional(row.finish_time),
        publication_time=to_utc_aware_optional(row.publication_time),
        pruned_at=to_utc_aware_optional(row.pruned_at),
        updated_at=to_utc_aware(row.updated_at),
    )
