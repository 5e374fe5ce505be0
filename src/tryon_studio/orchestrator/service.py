"""Try-on task orchestration: submit, reconcile, retry, cancel, delete."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from tryon_studio.assets.models import AssetKind, AssetView
from tryon_studio.assets.store import AssetStore
from tryon_studio.config import PollingSettings
from tryon_studio.orchestrator.errors import (
    InvalidStateTransition,
    ResultNotAvailable,
    RetryLimitExceeded,
    TaskStateConflict,
    ValidationError,
)
from tryon_studio.orchestrator.materializer import ResultMaterializer
from tryon_studio.orchestrator.models import (
    ErrorDetail,
    GarmentCategory,
    ReconcileOutcome,
    ReconcileSummary,
    TaskCreate,
    TaskErrorCode,
    TaskInputs,
    TaskState,
    TaskView,
    TryOnMode,
)
from tryon_studio.orchestrator.repository import TaskRepository
from tryon_studio.provider.base import (
    ImagePart,
    ProviderRejection,
    ProviderStatus,
    ProviderTransientError,
    SubmitRequest,
)
from tryon_studio.storage.common import utc_now

logger = logging.getLogger(__name__)


class ProviderGateway(Protocol):
    def submit(self, request: SubmitRequest) -> str: ...

    def status(self, job_id: str) -> ProviderStatus: ...

    def download(self, result_handle: str) -> bytes: ...


@dataclass(slots=True)
class ResolvedInputs:
    model: AssetView
    garments: tuple[AssetView, ...]


@dataclass(slots=True)
class ResultFile:
    """Readable result asset for the download endpoint."""

    path: Path
    file_name: str
    mime_type: str
    file_size: int


class TaskOrchestrator:
    """Owns every state change of a try-on task."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        assets: AssetStore,
        provider: ProviderGateway,
        materializer: ResultMaterializer,
        polling: PollingSettings | None = None,
        usage_callback: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.assets = assets
        self.provider = provider
        self.materializer = materializer
        self.polling = polling or PollingSettings()
        self._usage_callback = usage_callback or assets.increment_usage
        self._clock = clock

    def submit(  # noqa: PLR0913
        self,
        *,
        owner_id: str,
        model_asset_id: str,
        garment_asset_ids: Sequence[str],
        garment_category: GarmentCategory,
        mode: TryOnMode,
        hd_mode: bool = False,
    ) -> TaskView:
        """Validate inputs, create the provider job, then persist the task.

        Provider errors propagate unchanged and leave no task behind.
        """

        resolved = self._resolve_inputs(
            owner_id=owner_id,
            model_asset_id=model_asset_id,
            garment_asset_ids=garment_asset_ids,
            mode=mode,
        )
        job_id = self.provider.submit(
            self._build_submit_request(resolved, garment_category, mode, hd_mode),
        )
        task = self.repository.create_task(
            TaskCreate(
                owner_id=owner_id,
                external_job_id=job_id,
                mode=mode,
                garment_category=garment_category,
                hd_mode=hd_mode,
                inputs=TaskInputs(
                    model_asset_id=resolved.model.asset_id,
                    garment_asset_ids=tuple(asset.asset_id for asset in resolved.garments),
                    model_image_url=resolved.model.file_url,
                    garment_image_urls=tuple(asset.file_url for asset in resolved.garments),
                ),
            ),
        )
        logger.info("Task %s submitted as provider job %s", task.task_id, job_id)
        try:
            self._usage_callback(owner_id)
        except Exception:  # noqa: BLE001
            logger.exception("Usage accounting failed for owner %s", owner_id)
        return task

    def reconcile_all(self) -> ReconcileSummary:
        """One reconciliation tick over the in-flight snapshot."""

        summary = ReconcileSummary()
        for task in self.repository.list_in_flight():
            try:
                outcome = self.reconcile_task(task)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error reconciling task %s", task.task_id)
                outcome = ReconcileOutcome(task_id=task.task_id, action="skipped")
            summary.record(outcome)
        if summary.checked:
            logger.info(
                "Reconciled %d task(s): %d completed, %d failed, %d processing, "
                "%d skipped, %d conflicts",
                summary.checked,
                summary.completed,
                summary.failed,
                summary.processing,
                summary.skipped,
                summary.conflicts,
            )
        return summary

    def reconcile_task(self, task: TaskView) -> ReconcileOutcome:
        """Apply the provider's view of one in-flight task."""

        if task.state not in (TaskState.CREATED, TaskState.PROCESSING) or task.is_deleted:
            return ReconcileOutcome(task_id=task.task_id, action="unchanged", state=task.state)

        try:
            status = self.provider.status(task.external_job_id)
        except ProviderRejection as exc:
            diagnostics = exc.diagnostics(operation="status")
            logger.warning(
                "Provider rejected status query for task %s (job %s): %s %s",
                task.task_id,
                task.external_job_id,
                exc.message,
                diagnostics,
            )
            return self._fail(
                task,
                ErrorDetail(
                    code=TaskErrorCode.PROVIDER_STATUS_REJECTED.value,
                    message=exc.message,
                    provider_payload=exc.payload,
                ),
                event_details=diagnostics,
            )
        except ProviderTransientError as exc:
            diagnostics = exc.diagnostics(operation="status")
            if self._is_stale(task):
                return self._fail(
                    task,
                    ErrorDetail(
                        code=TaskErrorCode.POLLING_ABANDONED.value,
                        message=(
                            "No successful status poll for more than "
                            f"{self.polling.abandon_after_seconds} seconds."
                        ),
                    ),
                    event_details=diagnostics,
                )
            logger.warning(
                "Skipping task %s this tick, status query failed: %s %s",
                task.task_id,
                exc.message,
                diagnostics,
            )
            return ReconcileOutcome(task_id=task.task_id, action="skipped", state=task.state)

        # Full progress is written by complete_task once the result is linked.
        progress = (
            task.progress_percent
            if status.state_hint == TaskState.COMPLETED
            else status.progress_hint
        )
        polled = self.repository.record_poll(
            task,
            observed_state=status.state_hint,
            progress_percent=progress,
        )
        if polled is None:
            return ReconcileOutcome(task_id=task.task_id, action="conflict")

        if status.state_hint == TaskState.COMPLETED:
            return self._complete(polled, status)
        if status.state_hint == TaskState.FAILED:
            return self._fail(
                polled,
                ErrorDetail(
                    code=TaskErrorCode.PROVIDER_PROCESSING_FAILED.value,
                    message=f"Provider processing failed (status {status.raw_status!r}).",
                    provider_payload=status.error_payload,
                ),
            )
        if polled.state != task.state:
            logger.info("Task %s is now %s", task.task_id, polled.state.value)
            return ReconcileOutcome(task_id=task.task_id, action="processing", state=polled.state)
        return ReconcileOutcome(task_id=task.task_id, action="unchanged", state=polled.state)

    def get_status(self, task_id: str, *, owner_id: str, refresh: bool = True) -> TaskView:
        """Read a task, reconciling it out of band first when it is still in flight."""

        task = self.repository.require_task(task_id, owner_id=owner_id)
        if refresh and not task.state.is_terminal:
            self.reconcile_task(task)
            task = self.repository.require_task(task_id, owner_id=owner_id)
        return task

    def retry(self, task_id: str, *, owner_id: str) -> TaskView:
        """Resubmit a FAILED task as a fresh provider job."""

        task = self.repository.require_task(task_id, owner_id=owner_id)
        if task.state != TaskState.FAILED:
            raise InvalidStateTransition(
                f"Only FAILED tasks can be retried, got {task.state.value}.",
            )
        if task.retry_count >= self.polling.max_retries:
            raise RetryLimitExceeded(
                "Maximum retry attempts exceeded "
                f"({task.retry_count}/{self.polling.max_retries}).",
            )
        resolved = self._resolve_inputs(
            owner_id=owner_id,
            model_asset_id=task.inputs.model_asset_id,
            garment_asset_ids=task.inputs.garment_asset_ids,
            mode=task.mode,
        )
        job_id = self.provider.submit(
            self._build_submit_request(resolved, task.garment_category, task.mode, task.hd_mode),
        )
        try:
            retried = self.repository.reset_for_retry(
                task,
                new_external_job_id=job_id,
                max_retries=self.polling.max_retries,
            )
        except TaskStateConflict:
            logger.warning("Retry of task %s lost a race; provider job %s abandoned", task_id, job_id)
            raise
        logger.info(
            "Task %s retried (%d/%d) as provider job %s",
            task_id,
            retried.retry_count,
            self.polling.max_retries,
            job_id,
        )
        return retried

    def cancel(self, task_id: str, *, owner_id: str) -> TaskView:
        cancelled = self.repository.cancel_task(task_id, owner_id=owner_id)
        logger.info("Task %s cancelled by owner", task_id)
        return cancelled

    def delete(self, task_id: str, *, owner_id: str) -> TaskView:
        """Soft-delete a task and its result asset."""

        deleted = self.repository.soft_delete_task(task_id, owner_id=owner_id)
        if deleted.result is not None:
            self.assets.soft_delete_asset(deleted.result.result_asset_id)
        return deleted

    def open_result(self, task_id: str, *, owner_id: str) -> ResultFile:
        task = self.repository.require_task(task_id, owner_id=owner_id)
        if task.state != TaskState.COMPLETED or task.result is None:
            raise ResultNotAvailable(f"Task {task_id} has no result (state {task.state.value}).")
        asset = self.assets.get_asset(task.result.result_asset_id)
        if asset is None or asset.is_deleted or not self.assets.file_exists(asset):
            raise ResultNotAvailable(f"Result file for task {task_id} is missing.")
        return ResultFile(
            path=self.assets.file_path_for(asset),
            file_name=asset.original_name,
            mime_type=asset.mime_type,
            file_size=asset.file_size,
        )

    def _complete(self, task: TaskView, status: ProviderStatus) -> ReconcileOutcome:
        try:
            completed = self.materializer.materialize(task, status)
        except TaskStateConflict:
            return ReconcileOutcome(task_id=task.task_id, action="conflict")
        except Exception as exc:  # noqa: BLE001
            logger.warning("Materialization failed for task %s: %s", task.task_id, exc)
            return self._fail(
                task,
                ErrorDetail(
                    code=TaskErrorCode.RESULT_PROCESSING_FAILED.value,
                    message=str(exc) or type(exc).__name__,
                    provider_payload=status.payload or None,
                ),
            )
        logger.info("Task %s completed", task.task_id)
        return ReconcileOutcome(task_id=task.task_id, action="completed", state=completed.state)

    def _fail(
        self,
        task: TaskView,
        error: ErrorDetail,
        *,
        event_details: dict[str, object] | None = None,
    ) -> ReconcileOutcome:
        failed = self.repository.fail_task(task, error=error, event_details=event_details)
        if failed is None:
            return ReconcileOutcome(task_id=task.task_id, action="conflict")
        logger.info("Task %s failed with %s", task.task_id, error.code)
        return ReconcileOutcome(task_id=task.task_id, action="failed", state=failed.state)

    def _is_stale(self, task: TaskView) -> bool:
        threshold = self.polling.abandon_after_seconds
        if threshold <= 0:
            return False
        reference = task.timing.last_polled_at or task.timing.submitted_at
        return self._clock() - reference > timedelta(seconds=threshold)

    def _resolve_inputs(
        self,
        *,
        owner_id: str,
        model_asset_id: str,
        garment_asset_ids: Sequence[str],
        mode: TryOnMode,
    ) -> ResolvedInputs:
        model = self._owned_asset(model_asset_id, owner_id, AssetKind.MODEL)
        if model is None:
            raise ValidationError(
                f"Model asset not found: {model_asset_id}",
                code="MODEL_ASSET_NOT_FOUND",
            )
        if not model.is_valid:
            raise ValidationError(
                f"Model asset is not valid for try-on: {model_asset_id}",
                code="MODEL_ASSET_INVALID",
            )

        garments: list[AssetView] = []
        for garment_id in garment_asset_ids:
            garment = self._owned_asset(garment_id, owner_id, AssetKind.GARMENT)
            if garment is None:
                raise ValidationError(
                    f"Garment asset not found: {garment_id}",
                    code="GARMENT_ASSET_NOT_FOUND",
                )
            if not garment.is_valid:
                raise ValidationError(
                    f"Garment asset is not valid for try-on: {garment_id}",
                    code="GARMENT_ASSET_INVALID",
                )
            garments.append(garment)

        if len(garments) != mode.garment_count:
            raise ValidationError(
                f"Mode {mode.value} requires exactly {mode.garment_count} garment(s), "
                f"got {len(garments)}.",
                code="GARMENT_COUNT_MISMATCH",
            )

        for asset in (model, *garments):
            if not self.assets.file_exists(asset):
                raise ValidationError(
                    f"File for asset {asset.asset_id} is missing from storage.",
                    code="ASSET_FILE_MISSING",
                )
        return ResolvedInputs(model=model, garments=tuple(garments))

    def _owned_asset(self, asset_id: str, owner_id: str, kind: AssetKind) -> AssetView | None:
        asset = self.assets.get_asset(asset_id)
        if asset is None or asset.owner_id != owner_id or asset.kind != kind or asset.is_deleted:
            return None
        return asset

    def _build_submit_request(
        self,
        resolved: ResolvedInputs,
        garment_category: GarmentCategory,
        mode: TryOnMode,
        hd_mode: bool,
    ) -> SubmitRequest:
        return SubmitRequest(
            model_image=self._image_part(resolved.model),
            garment_images=tuple(self._image_part(asset) for asset in resolved.garments),
            cloth_type=garment_category.value,
            hd_mode=hd_mode,
            combo=mode == TryOnMode.COMBO,
        )

    def _image_part(self, asset: AssetView) -> ImagePart:
        return ImagePart(
            file_name=asset.original_name,
            content=self.assets.read_bytes(asset),
            mime_type=asset.mime_type,
        )
