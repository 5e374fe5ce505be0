from __future__ import annotations

import allure
import pytest

from tryon_studio.orchestrator.errors import (
    InvalidStateTransition,
    RetryLimitExceeded,
    TaskNotFoundError,
    TaskStateConflict,
)
from tryon_studio.orchestrator.models import (
    ErrorDetail,
    GarmentCategory,
    ResultLink,
    TaskCreate,
    TaskInputs,
    TaskState,
    TaskView,
    TryOnMode,
)
from tryon_studio.orchestrator.repository import TaskRepository
from tryon_studio.runtime import Runtime

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Task Store & Compare-and-Set"),
]

OWNER = "repo-user"


def _create(repository: TaskRepository, job_id: str = "job-1") -> TaskView:
    return repository.create_task(
        TaskCreate(
            owner_id=OWNER,
            external_job_id=job_id,
            mode=TryOnMode.SINGLE,
            garment_category=GarmentCategory.UPPER,
            hd_mode=False,
            inputs=TaskInputs(
                model_asset_id="model-1",
                garment_asset_ids=("garment-1",),
                model_image_url="/uploads/models/m.png",
                garment_image_urls=("/uploads/garments/g.png",),
            ),
        ),
    )


@pytest.fixture()
def repository(runtime: Runtime) -> TaskRepository:
    runtime.assets.ensure_user(OWNER)
    return runtime.repository


def _link(asset_id: str = "asset-1") -> ResultLink:
    return ResultLink(
        result_asset_id=asset_id,
        download_signed_url="https://cdn.test/r.png",
        result_image_url=None,
        quality_score=0.8,
    )


def test_create_task_starts_created_with_submitted_event(repository: TaskRepository) -> None:
    task = _create(repository)

    assert task.state == TaskState.CREATED
    assert task.progress_percent == 0
    assert task.version == 1
    assert task.inputs.garment_asset_ids == ("garment-1",)
    assert task.result is None and task.error_detail is None

    details = repository.get_task_details(task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert details.events[0].details["external_job_id"] == "job-1"


def test_record_poll_moves_to_processing_and_keeps_progress_monotonic(
    repository: TaskRepository,
    clock,
) -> None:
    task = _create(repository)
    clock.advance(5)

    polled = repository.record_poll(task, observed_state=TaskState.PROCESSING, progress_percent=60)
    assert polled is not None
    assert polled.state == TaskState.PROCESSING
    assert polled.progress_percent == 60
    assert polled.timing.started_at == clock()
    assert polled.timing.poll_count == 1
    assert polled.version == task.version + 1

    clock.advance(5)
    again = repository.record_poll(polled, observed_state=TaskState.PROCESSING, progress_percent=40)
    assert again is not None
    assert again.progress_percent == 60
    assert again.timing.poll_count == 2
    assert again.timing.last_polled_at == clock()
    assert again.timing.started_at == polled.timing.started_at


def test_record_poll_with_stale_snapshot_is_noop(repository: TaskRepository) -> None:
    task = _create(repository)
    assert repository.record_poll(task, observed_state=TaskState.CREATED, progress_percent=0)

    assert repository.record_poll(task, observed_state=TaskState.PROCESSING, progress_percent=50) is None
    current = repository.require_task(task.task_id)
    assert current.state == TaskState.CREATED
    assert current.timing.poll_count == 1


def test_complete_task_sets_result_and_duration(repository: TaskRepository, clock) -> None:
    task = _create(repository)
    processing = repository.record_poll(task, observed_state=TaskState.PROCESSING, progress_percent=10)
    assert processing is not None
    clock.advance(42)

    completed = repository.complete_task(processing, result=_link())

    assert completed is not None
    assert completed.state == TaskState.COMPLETED
    assert completed.progress_percent == 100
    assert completed.result is not None
    assert completed.result.result_asset_id == "asset-1"
    assert completed.result.processing_seconds == 42
    assert completed.timing.processing_seconds == 42
    assert completed.timing.completed_at == clock()
    assert completed.error_detail is None


def test_completion_without_start_has_undefined_duration(repository: TaskRepository) -> None:
    task = _create(repository)
    completed = repository.complete_task(task, result=_link())
    assert completed is not None
    assert completed.result is not None
    assert completed.result.processing_seconds is None


def test_second_terminal_write_is_rejected(repository: TaskRepository) -> None:
    task = _create(repository)
    assert repository.complete_task(task, result=_link()) is not None

    assert repository.fail_task(task, error=ErrorDetail(code="X", message="late")) is None
    refreshed = repository.require_task(task.task_id)
    assert refreshed.state == TaskState.COMPLETED
    # Even with a fresh snapshot a terminal task cannot move again.
    assert repository.fail_task(refreshed, error=ErrorDetail(code="X", message="late")) is None


def test_fail_task_records_structured_error(repository: TaskRepository) -> None:
    task = _create(repository)
    failed = repository.fail_task(
        task,
        error=ErrorDetail(
            code="PROVIDER_PROCESSING_FAILED",
            message="Provider processing failed",
            provider_payload={"status": "failed", "reason": "pose"},
        ),
    )

    assert failed is not None
    assert failed.state == TaskState.FAILED
    assert failed.result is None
    assert failed.error_detail is not None
    assert failed.error_detail.provider_payload == {"status": "failed", "reason": "pose"}
    assert failed.timing.completed_at is not None


def test_cancel_in_flight_and_reject_terminal(repository: TaskRepository) -> None:
    created = _create(repository, "job-c1")
    cancelled = repository.cancel_task(created.task_id, owner_id=OWNER)
    assert cancelled.state == TaskState.CANCELLED

    completed = _create(repository, "job-c2")
    repository.complete_task(completed, result=_link("asset-2"))
    with pytest.raises(InvalidStateTransition):
        repository.cancel_task(completed.task_id, owner_id=OWNER)

    with pytest.raises(TaskNotFoundError):
        repository.cancel_task(created.task_id, owner_id="someone-else")


def test_failed_and_cancelled_tasks_record_processing_duration(
    repository: TaskRepository,
    clock,
) -> None:
    doomed = _create(repository, "job-d1")
    processing = repository.record_poll(doomed, observed_state=TaskState.PROCESSING, progress_percent=20)
    assert processing is not None
    clock.advance(42)
    failed = repository.fail_task(processing, error=ErrorDetail(code="E", message="boom"))

    assert failed is not None
    assert failed.timing.processing_seconds == 42
    assert failed.result is None

    stopped = _create(repository, "job-d2")
    assert repository.record_poll(stopped, observed_state=TaskState.PROCESSING, progress_percent=20)
    clock.advance(10)
    cancelled = repository.cancel_task(stopped.task_id, owner_id=OWNER)

    assert cancelled.timing.processing_seconds == 10
    assert cancelled.result is None

    never_started = _create(repository, "job-d3")
    unstarted = repository.cancel_task(never_started.task_id, owner_id=OWNER)
    assert unstarted.timing.processing_seconds is None


def test_reset_for_retry_replaces_job_and_resets_attempt(repository: TaskRepository, clock) -> None:
    task = _create(repository, "job-r1")
    processing = repository.record_poll(task, observed_state=TaskState.PROCESSING, progress_percent=70)
    assert processing is not None
    failed = repository.fail_task(processing, error=ErrorDetail(code="E", message="boom"))
    assert failed is not None
    clock.advance(60)

    retried = repository.reset_for_retry(failed, new_external_job_id="job-r2", max_retries=3)

    assert retried.state == TaskState.CREATED
    assert retried.external_job_id == "job-r2"
    assert retried.retry_count == 1
    assert retried.progress_percent == 0
    assert retried.timing.started_at is None
    assert retried.timing.completed_at is None
    assert retried.timing.processing_seconds is None
    assert retried.timing.submitted_at == clock()
    assert retried.error_detail is None
    assert retried.inputs == task.inputs
    assert repository.find_by_external_job_id("job-r1") is None

    details = repository.get_task_details(task.task_id)
    assert details is not None
    retried_event = details.events[-1]
    assert retried_event.event_type == "retried"
    assert retried_event.details["previous_external_job_id"] == "job-r1"


def test_reset_for_retry_enforces_bound_and_state(repository: TaskRepository) -> None:
    task = _create(repository, "job-b1")
    with pytest.raises(InvalidStateTransition):
        repository.reset_for_retry(task, new_external_job_id="job-b2", max_retries=3)

    failed = repository.fail_task(task, error=ErrorDetail(code="E", message="boom"))
    assert failed is not None
    with pytest.raises(RetryLimitExceeded):
        repository.reset_for_retry(failed, new_external_job_id="job-b2", max_retries=0)


def test_reset_for_retry_with_stale_snapshot_conflicts(repository: TaskRepository) -> None:
    task = _create(repository, "job-s1")
    failed = repository.fail_task(task, error=ErrorDetail(code="E", message="boom"))
    assert failed is not None
    repository.reset_for_retry(failed, new_external_job_id="job-s2", max_retries=3)

    with pytest.raises(TaskStateConflict):
        repository.reset_for_retry(failed, new_external_job_id="job-s3", max_retries=3)


def test_soft_deleted_tasks_leave_listings_and_reconciliation(repository: TaskRepository) -> None:
    keep = _create(repository, "job-d1")
    drop = _create(repository, "job-d2")

    deleted = repository.soft_delete_task(drop.task_id, owner_id=OWNER)

    assert deleted.is_deleted
    assert deleted.deleted_at is not None
    in_flight_ids = {task.task_id for task in repository.list_in_flight()}
    assert in_flight_ids == {keep.task_id}
    assert [task.task_id for task in repository.list_tasks(owner_id=OWNER)] == [keep.task_id]
    assert repository.get_task(drop.task_id) is None
    assert repository.get_task(drop.task_id, include_deleted=True) is not None
    assert repository.record_poll(deleted, observed_state=TaskState.PROCESSING, progress_percent=1) is None


def test_list_tasks_filters_by_state(repository: TaskRepository) -> None:
    first = _create(repository, "job-l1")
    _create(repository, "job-l2")
    repository.cancel_task(first.task_id, owner_id=OWNER)

    cancelled = repository.list_tasks(state=TaskState.CANCELLED)
    created = repository.list_tasks(state=TaskState.CREATED)

    assert [task.task_id for task in cancelled] == [first.task_id]
    assert len(created) == 1
