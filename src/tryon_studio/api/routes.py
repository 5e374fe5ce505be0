"""Try-on HTTP endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import FileResponse

from tryon_studio.api.schemas import HealthBody, SubmitTaskRequest, TaskBody, TaskEnvelope
from tryon_studio.orchestrator.service import TaskOrchestrator
from tryon_studio.runtime import Runtime

router = APIRouter(prefix="/api/tryon", tags=["tryon"])
health_router = APIRouter(tags=["health"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_orchestrator(runtime: Annotated[Runtime, Depends(get_runtime)]) -> TaskOrchestrator:
    return runtime.orchestrator


Owner = Annotated[str, Header(alias="X-User-Id", min_length=1)]
Orchestrator = Annotated[TaskOrchestrator, Depends(get_orchestrator)]


@router.post("", status_code=201, response_model=TaskEnvelope, summary="Submit a try-on task")
def submit_task(body: SubmitTaskRequest, owner_id: Owner, orchestrator: Orchestrator) -> TaskEnvelope:
    task = orchestrator.submit(
        owner_id=owner_id,
        model_asset_id=body.model_asset_id,
        garment_asset_ids=body.garment_asset_ids,
        garment_category=body.garment_category,
        mode=body.mode,
        hd_mode=body.hd_mode,
    )
    return TaskEnvelope(message="Try-on task created", task=TaskBody.from_view(task))


@router.get("/{task_id}", response_model=TaskEnvelope, summary="Read task status")
def get_task(
    task_id: str,
    owner_id: Owner,
    orchestrator: Orchestrator,
    refresh: Annotated[bool, Query(description="Reconcile with the provider first")] = True,
) -> TaskEnvelope:
    task = orchestrator.get_status(task_id, owner_id=owner_id, refresh=refresh)
    return TaskEnvelope(task=TaskBody.from_view(task))


@router.post("/{task_id}/retry", response_model=TaskEnvelope, summary="Retry a failed task")
def retry_task(task_id: str, owner_id: Owner, orchestrator: Orchestrator) -> TaskEnvelope:
    task = orchestrator.retry(task_id, owner_id=owner_id)
    return TaskEnvelope(message="Try-on task retried", task=TaskBody.from_view(task))


@router.delete("/{task_id}/cancel", response_model=TaskEnvelope, summary="Cancel a task")
def cancel_task(task_id: str, owner_id: Owner, orchestrator: Orchestrator) -> TaskEnvelope:
    task = orchestrator.cancel(task_id, owner_id=owner_id)
    return TaskEnvelope(message="Try-on task cancelled", task=TaskBody.from_view(task))


@router.delete("/{task_id}", response_model=TaskEnvelope, summary="Delete a task")
def delete_task(task_id: str, owner_id: Owner, orchestrator: Orchestrator) -> TaskEnvelope:
    task = orchestrator.delete(task_id, owner_id=owner_id)
    return TaskEnvelope(message="Try-on task deleted", task=TaskBody.from_view(task))


@router.get("/{task_id}/download", summary="Download the result image")
def download_result(task_id: str, owner_id: Owner, orchestrator: Orchestrator) -> FileResponse:
    result = orchestrator.open_result(task_id, owner_id=owner_id)
    return FileResponse(
        result.path,
        media_type=result.mime_type,
        filename=result.file_name,
        content_disposition_type="attachment",
    )


@health_router.get("/health", response_model=HealthBody)
def health(runtime: Annotated[Runtime, Depends(get_runtime)]) -> HealthBody:
    scheduler = runtime.scheduler
    return HealthBody(
        polling_enabled=runtime.settings.polling.enabled,
        scheduler_running=scheduler.is_running,
        poll_interval_seconds=scheduler.interval_seconds,
        ticks=scheduler.tick_count,
        last_tick_at=scheduler.last_tick_at,
    )
