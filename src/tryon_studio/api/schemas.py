"""Request and response bodies of the try-on HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tryon_studio.orchestrator.models import GarmentCategory, TaskState, TaskView, TryOnMode


class SubmitTaskRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_asset_id: str = Field(..., description="Id of an uploaded, validated model image")
    garment_asset_ids: list[str] = Field(
        ...,
        description="One garment for single mode, upper + lower for combo mode",
    )
    garment_category: GarmentCategory
    mode: TryOnMode = TryOnMode.SINGLE
    hd_mode: bool = False


class ResultBody(BaseModel):
    result_asset_id: str
    download_signed_url: str | None
    result_image_url: str | None
    quality_score: float | None
    processing_seconds: int | None


class ErrorDetailBody(BaseModel):
    code: str
    message: str
    provider_payload: dict[str, Any] | None = None


class TaskBody(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    task_id: str
    external_job_id: str
    state: TaskState
    progress_percent: int
    mode: TryOnMode
    garment_category: GarmentCategory
    hd_mode: bool
    model_asset_id: str
    garment_asset_ids: list[str]
    model_image_url: str
    garment_image_urls: list[str]
    result: ResultBody | None
    error_detail: ErrorDetailBody | None
    retry_count: int
    poll_count: int
    submitted_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_polled_at: datetime | None
    processing_seconds: int | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_view(cls, task: TaskView) -> TaskBody:
        return cls(
            task_id=task.task_id,
            external_job_id=task.external_job_id,
            state=task.state,
            progress_percent=task.progress_percent,
            mode=task.mode,
            garment_category=task.garment_category,
            hd_mode=task.hd_mode,
            model_asset_id=task.inputs.model_asset_id,
            garment_asset_ids=list(task.inputs.garment_asset_ids),
            model_image_url=task.inputs.model_image_url,
            garment_image_urls=list(task.inputs.garment_image_urls),
            result=(
                ResultBody(
                    result_asset_id=task.result.result_asset_id,
                    download_signed_url=task.result.download_signed_url,
                    result_image_url=task.result.result_image_url,
                    quality_score=task.result.quality_score,
                    processing_seconds=task.result.processing_seconds,
                )
                if task.result is not None
                else None
            ),
            error_detail=(
                ErrorDetailBody(
                    code=task.error_detail.code,
                    message=task.error_detail.message,
                    provider_payload=task.error_detail.provider_payload,
                )
                if task.error_detail is not None
                else None
            ),
            retry_count=task.retry_count,
            poll_count=task.timing.poll_count,
            submitted_at=task.timing.submitted_at,
            started_at=task.timing.started_at,
            completed_at=task.timing.completed_at,
            last_polled_at=task.timing.last_polled_at,
            processing_seconds=task.timing.processing_seconds,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class TaskEnvelope(BaseModel):
    success: bool = True
    message: str | None = None
    task: TaskBody


class HealthBody(BaseModel):
    status: str = "ok"
    polling_enabled: bool
    scheduler_running: bool
    poll_interval_seconds: float
    ticks: int
    last_tick_at: datetime | None
