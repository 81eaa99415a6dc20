"""Initial coordinator schema: techniques, corpus, workspaces, task queues."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "techniques",
        sa.Column("technique_id", sa.Integer(), nullable=False),
        sa.Column("short_name", sa.String(), nullable=False),
        sa.Column("technique_type", sa.String(), nullable=False),
        sa.Column("full_name", sa.String(), nullable=False, server_default=""),
        sa.Column("citation", sa.Text(), nullable=False, server_default=""),
        sa.Column("comment", sa.Text(), nullable=False, server_default=""),
        sa.Column("owner_email", sa.String(), nullable=True),
        sa.Column("workspace_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("technique_id"),
    )
    op.create_index("ix_techniques_short_name", "techniques", ["short_name"], unique=True)
    op.create_index("ix_techniques_technique_type", "techniques", ["technique_type"])

    op.create_table(
        "corpus_versions",
        sa.Column("version", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("scene_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("version"),
    )

    op.create_table(
        "scenes",
        sa.Column("scene_id", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("renderer", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("reference_image", sa.String(), nullable=False, server_default=""),
        sa.Column("citation", sa.String(), nullable=False, server_default=""),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["version"],
            ["corpus_versions.version"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("scene_id"),
    )
    op.create_index("ix_scenes_name", "scenes", ["name"], unique=True)
    op.create_index("idx_scenes_version", "scenes", ["version", "scene_id"])

    op.create_table(
        "workspaces",
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("uuid", sa.String(), nullable=False),
        sa.Column("technique_id", sa.Integer(), nullable=False),
        sa.Column("commit_sha", sa.String(), nullable=False),
        sa.Column("artifact_ref", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("scene_set_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("publish_pending", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("publishing", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("rerun_cycles", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("build_log_ref", sa.String(), nullable=True),
        sa.Column("creation_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finish_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("publication_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pruned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["technique_id"],
            ["techniques.technique_id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("workspace_id"),
    )
    op.create_index("ix_workspaces_uuid", "workspaces", ["uuid"], unique=True)
    op.create_index("ix_workspaces_technique_id", "workspaces", ["technique_id"])
    op.create_index("ix_workspaces_status", "workspaces", ["status"])
    op.create_index(
        "idx_workspaces_technique_status",
        "workspaces",
        ["technique_id", "status"],
    )
    op.create_index(
        "uq_workspaces_technique_published",
        "workspaces",
        ["technique_id"],
        unique=True,
        sqlite_where=sa.text("status = 'published'"),
    )

    op.create_table(
        "workspace_scenes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("workspace_id", sa.Integer(), nullable=False),
        sa.Column("scene_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result_ref", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["workspace_id"],
            ["workspaces.workspace_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workspace_id",
            "scene_name",
            name="uq_workspace_scenes_workspace_scene",
        ),
    )
    op.create_index("ix_workspace_scenes_workspace_id", "workspace_scenes", ["workspace_id"])
    op.create_index("ix_workspace_scenes_scene_name", "workspace_scenes", ["scene_name"])

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("queue", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("technique_id", sa.Integer(), nullable=True),
        sa.Column("workspace_id", sa.Integer(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("leased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["technique_id"],
            ["techniques.technique_id"],
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["workspace_id"],
            ["workspaces.workspace_id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("queue", "position", name="uq_tasks_queue_position"),
    )
    op.create_index("ix_tasks_queue", "tasks", ["queue"])
    op.create_index("ix_tasks_kind", "tasks", ["kind"])
    op.create_index("ix_tasks_status", "tasks", ["status"])
    op.create_index("ix_tasks_technique_id", "tasks", ["technique_id"])
    op.create_index("ix_tasks_workspace_id", "tasks", ["workspace_id"])
    op.create_index("ix_tasks_worker_id", "tasks", ["worker_id"])
    op.create_index("idx_tasks_queue_head", "tasks", ["queue", "status", "position"])
    op.create_index("idx_tasks_lease_deadline", "tasks", ["status", "lease_deadline"])

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"])
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"])
    op.create_index("idx_task_events_task_time", "task_events", ["task_id", "created_at"])


def downgrade() -> None:
    op.drop_table("task_events")
    op.drop_table("tasks")
    op.drop_table("workspace_scenes")
    op.drop_table("workspaces")
    op.drop_table("scenes")
    op.drop_table("corpus_versions")
    op.drop_table("techniques")
