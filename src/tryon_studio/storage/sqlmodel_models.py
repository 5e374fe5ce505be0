"""SQLModel ORM tables for try-on storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    total_requests: int = Field(default=0)
    monthly_requests: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Asset(SQLModel, table=True):
    __tablename__ = "assets"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_assets_owner_kind", "owner_id", "kind", "is_deleted"),)

    asset_id: str = Field(primary_key=True)
    owner_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    file_name: str
    original_name: str
    file_url: str
    file_size: int
    mime_type: str
    width: int
    height: int
    category: str | None = None
    is_valid: bool = Field(default=False)
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TryOnTask(SQLModel, table=True):
    __tablename__ = "tryon_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tryon_tasks_inflight", "is_deleted", "state"),
        Index("idx_tryon_tasks_owner_created", "owner_id", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    external_job_id: str = Field(unique=True, index=True)
    owner_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    mode: str
    garment_category: str
    hd_mode: bool = Field(default=False)
    state: str = Field(index=True)
    progress_percent: int = Field(default=0)
    model_asset_id: str
    garment_asset_ids_json: str = Field(sa_column=Column(Text, nullable=False))
    model_image_url: str
    garment_image_urls_json: str = Field(sa_column=Column(Text, nullable=False))
    result_asset_id: str | None = None
    result_download_url: str | None = Field(default=None, sa_column=Column(Text))
    result_image_url: str | None = None
    result_quality_score: float | None = None
    processing_seconds: int | None = None
    error_code: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    error_payload_json: str | None = Field(default=None, sa_column=Column(Text))
    submitted_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_polled_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    poll_count: int = Field(default=0)
    retry_count: int = Field(default=0)
    is_deleted: bool = Field(default=False)
    deleted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    version: int = Field(default=1)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TryOnTaskEvent(SQLModel, table=True):
    __tablename__ = "tryon_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tryon_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tryon_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    state_from: str | None = None
    state_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
