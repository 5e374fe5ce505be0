"""Initial try-on schema: users, assets, tasks and task events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("monthly_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_users_user_id", "users", ["user_id"])
    op.create_index("ix_users_display_name", "users", ["display_name"])

    op.create_table(
        "assets",
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("file_name", sa.String(), nullable=False),
        sa.Column("original_name", sa.String(), nullable=False),
        sa.Column("file_url", sa.String(), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("is_valid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("asset_id"),
    )
    op.create_index("ix_assets_owner_id", "assets", ["owner_id"])
    op.create_index("ix_assets_kind", "assets", ["kind"])
    op.create_index("ix_assets_is_deleted", "assets", ["is_deleted"])
    op.create_index("idx_assets_owner_kind", "assets", ["owner_id", "kind", "is_deleted"])

    op.create_table(
        "tryon_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("external_job_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("garment_category", sa.String(), nullable=False),
        sa.Column("hd_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("progress_percent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("model_asset_id", sa.String(), nullable=False),
        sa.Column("garment_asset_ids_json", sa.Text(), nullable=False),
        sa.Column("model_image_url", sa.String(), nullable=False),
        sa.Column("garment_image_urls_json", sa.Text(), nullable=False),
        sa.Column("result_asset_id", sa.String(), nullable=True),
        sa.Column("result_download_url", sa.Text(), nullable=True),
        sa.Column("result_image_url", sa.String(), nullable=True),
        sa.Column("result_quality_score", sa.Float(), nullable=True),
        sa.Column("processing_seconds", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_payload_json", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_polled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("poll_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["owner_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "ix_tryon_tasks_external_job_id",
        "tryon_tasks",
        ["external_job_id"],
        unique=True,
    )
    op.create_index("ix_tryon_tasks_owner_id", "tryon_tasks", ["owner_id"])
    op.create_index("ix_tryon_tasks_state", "tryon_tasks", ["state"])
    op.create_index("ix_tryon_tasks_error_code", "tryon_tasks", ["error_code"])
    op.create_index("idx_tryon_tasks_inflight", "tryon_tasks", ["is_deleted", "state"])
    op.create_index(
        "idx_tryon_tasks_owner_created",
        "tryon_tasks",
        ["owner_id", "created_at"],
    )

    op.create_table(
        "tryon_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("state_from", sa.String(), nullable=True),
        sa.Column("state_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tryon_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tryon_task_events_task_id", "tryon_task_events", ["task_id"])
    op.create_index("ix_tryon_task_events_event_type", "tryon_task_events", ["event_type"])
    op.create_index(
        "idx_tryon_task_events_task_time",
        "tryon_task_events",
        ["task_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("tryon_task_events")
    op.drop_table("tryon_tasks")
    op.drop_table("assets")
    op.drop_table("users")
