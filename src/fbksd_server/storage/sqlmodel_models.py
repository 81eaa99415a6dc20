"""SQLModel ORM tables for coordinator storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Technique(SQLModel, table=True):
    __tablename__ = "techniques"  # type: ignore[bad-override]

    technique_id: int | None = Field(default=None, primary_key=True)
    short_name: str = Field(unique=True, index=True)
    technique_type: str = Field(index=True)
    full_name: str = ""
    citation: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    comment: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    owner_email: str | None = None
    workspace_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CorpusVersion(SQLModel, table=True):
    __tablename__ = "corpus_versions"  # type: ignore[bad-override]

    version: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    scene_count: int = Field(default=0)
    added_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Scene(SQLModel, table=True):
    __tablename__ = "scenes"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_scenes_version", "version", "scene_id"),)

    scene_id: int | None = Field(default=None, primary_key=True)
    version: int = Field(
        sa_column=Column(
            ForeignKey("corpus_versions.version", ondelete="RESTRICT"),
            nullable=False,
        ),
    )
    name: str = Field(unique=True, index=True)
    renderer: str
    path: str
    reference_image: str = ""
    citation: str = ""
    added_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Workspace(SQLModel, table=True):
    __tablename__ = "workspaces"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_workspaces_technique_published",
            "technique_id",
            unique=True,
            sqlite_where=text("status = 'published'"),
        ),
        Index("idx_workspaces_technique_status", "technique_id", "status"),
    )

    workspace_id: int | None = Field(default=None, primary_key=True)
    uuid: str = Field(unique=True, index=True)
    technique_id: int = Field(
        sa_column=Column(
            ForeignKey("techniques.technique_id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
    )
    commit_sha: str
    artifact_ref: str
    status: str = Field(index=True)
    scene_set_version: int = Field(default=0)
    publish_pending: bool = Field(default=False)
    publishing: bool = Field(default=False)
    rerun_cycles: int = Field(default=0)
    build_log_ref: str | None = None
    creation_time: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finish_time: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    publication_time: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    pruned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkspaceScene(SQLModel, table=True):
    __tablename__ = "workspace_scenes"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "workspace_id",
            "scene_name",
            name="uq_workspace_scenes_workspace_scene",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    workspace_id: int = Field(
        sa_column=Column(
            ForeignKey("workspaces.workspace_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    scene_name: str = Field(index=True)
    status: str
    result_ref: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("queue", "position", name="uq_tasks_queue_position"),
        Index("idx_tasks_queue_head", "queue", "status", "position"),
        Index("idx_tasks_lease_deadline", "status", "lease_deadline"),
    )

    task_id: str = Field(primary_key=True)
    queue: str = Field(index=True)
    position: int
    kind: str = Field(index=True)
    technique_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("techniques.technique_id", ondelete="RESTRICT"),
            nullable=True,
            index=True,
        ),
    )
    workspace_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("workspaces.workspace_id", ondelete="RESTRICT"),
            nullable=True,
            index=True,
        ),
    )
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    retries: int = Field(default=0)
    max_retries: int = Field(default=3)
    worker_id: str | None = Field(default=None, index=True)
    leased_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_deadline: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
