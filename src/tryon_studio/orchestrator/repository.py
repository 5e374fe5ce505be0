"""Durable task store with compare-and-set state transitions."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from tryon_studio.orchestrator.errors import (
    InvalidStateTransition,
    RetryLimitExceeded,
    TaskNotFoundError,
    TaskStateConflict,
)
from tryon_studio.orchestrator.models import (
    IN_FLIGHT_STATES,
    ErrorDetail,
    GarmentCategory,
    ResultLink,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskInputs,
    TaskResult,
    TaskState,
    TaskTiming,
    TaskView,
    TryOnMode,
)
from tryon_studio.orchestrator.state_machine import assert_transition, can_transition, sources_for
from tryon_studio.storage.alembic_runner import upgrade_head
from tryon_studio.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_or_none,
    utc_now,
)
from tryon_studio.storage.sqlmodel_models import TryOnTask, TryOnTaskEvent

_USER_CAS_ATTEMPTS = 3


class TaskRepository:
    """Task persistence facade backed by SQLModel + SQLite.

    Every mutation is a single ``UPDATE ... WHERE version = :expected`` so
    concurrent writers (reconciliation tick, status refresh, user cancel or
    retry) serialize per task without holding locks across provider calls.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
        engine: Engine | None = None,
    ) -> None:
        self.db_path = db_path
        self.engine = engine or build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )
        self._owns_engine = engine is None
        self._clock = clock

    def close(self) -> None:
        """Close underlying DB resources."""

        if self._owns_engine:
            self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Persist a freshly submitted task in CREATED state."""

        now = self._clock()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = TryOnTask(
                task_id=task_id,
                external_job_id=payload.external_job_id,
                owner_id=payload.owner_id,
                mode=payload.mode.value,
                garment_category=payload.garment_category.value,
                hd_mode=payload.hd_mode,
                state=TaskState.CREATED.value,
                progress_percent=0,
                model_asset_id=payload.inputs.model_asset_id,
                garment_asset_ids_json=json.dumps(list(payload.inputs.garment_asset_ids)),
                model_image_url=payload.inputs.model_image_url,
                garment_image_urls_json=json.dumps(list(payload.inputs.garment_image_urls)),
                submitted_at=to_db_datetime(now),
                poll_count=0,
                retry_count=0,
                version=1,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="submitted",
                state_from=None,
                state_to=TaskState.CREATED,
                details={
                    "external_job_id": payload.external_job_id,
                    "mode": payload.mode.value,
                    "garment_category": payload.garment_category.value,
                    "hd_mode": payload.hd_mode,
                },
            )
            session.commit()
            return self._load_view(session, task_id)

    def get_task(
        self,
        task_id: str,
        *,
        owner_id: str | None = None,
        include_deleted: bool = False,
    ) -> TaskView | None:
        with Session(self.engine) as session:
            statement = select(TryOnTask).where(TryOnTask.task_id == task_id)
            if owner_id is not None:
                statement = statement.where(TryOnTask.owner_id == owner_id)
            if not include_deleted:
                statement = statement.where(col(TryOnTask.is_deleted).is_(False))
            row = session.exec(statement).one_or_none()
            return _to_task_view(row) if row is not None else None

    def require_task(self, task_id: str, *, owner_id: str | None = None) -> TaskView:
        task = self.get_task(task_id, owner_id=owner_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def find_by_external_job_id(self, external_job_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TryOnTask).where(TryOnTask.external_job_id == external_job_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_in_flight(self) -> list[TaskView]:
        """Snapshot of non-deleted CREATED/PROCESSING tasks."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TryOnTask)
                .where(
                    col(TryOnTask.is_deleted).is_(False),
                    col(TryOnTask.state).in_([state.value for state in IN_FLIGHT_STATES]),
                )
                .order_by(col(TryOnTask.submitted_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        owner_id: str | None = None,
        state: TaskState | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent non-deleted tasks, optionally filtered by owner and state."""

        with Session(self.engine) as session:
            statement = (
                select(TryOnTask)
                .where(col(TryOnTask.is_deleted).is_(False))
                .order_by(col(TryOnTask.created_at).desc())
                .limit(limit)
            )
            if owner_id is not None:
                statement = statement.where(TryOnTask.owner_id == owner_id)
            if state is not None:
                statement = statement.where(TryOnTask.state == state.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream, including soft-deleted tasks."""

        task = self.get_task(task_id, include_deleted=True)
        if task is None:
            return None
        with Session(self.engine) as session:
            event_rows = session.exec(
                select(TryOnTaskEvent)
                .where(TryOnTaskEvent.task_id == task_id)
                .order_by(col(TryOnTaskEvent.created_at).asc(), col(TryOnTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    state_from=TaskState(row.state_from) if row.state_from else None,
                    state_to=TaskState(row.state_to) if row.state_to else None,
                    created_at=to_utc_aware(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, events=events)

    def record_poll(
        self,
        task: TaskView,
        *,
        observed_state: TaskState,
        progress_percent: int,
    ) -> TaskView | None:
        """Stamp a successful status query and apply CREATED->PROCESSING.

        Terminal observations only update poll bookkeeping here; the terminal
        transition itself goes through ``complete_task`` or ``fail_task``.
        Returns ``None`` when the task changed since ``task`` was read.
        """

        now = self._clock()
        new_state = task.state
        started_at = task.timing.started_at
        if observed_state == TaskState.PROCESSING and task.state == TaskState.CREATED:
            new_state = TaskState.PROCESSING
        if new_state == TaskState.PROCESSING and started_at is None:
            started_at = now

        with Session(self.engine) as session:
            updated = self._cas_update(
                session,
                task=task,
                allowed_states=IN_FLIGHT_STATES,
                values={
                    "state": new_state.value,
                    "progress_percent": max(task.progress_percent, _clamp(progress_percent)),
                    "started_at": to_db_datetime(started_at) if started_at else None,
                    "last_polled_at": to_db_datetime(now),
                    "poll_count": task.timing.poll_count + 1,
                    "updated_at": to_db_datetime(now),
                },
            )
            if not updated:
                return None
            if new_state != task.state:
                self._add_event(
                    session=session,
                    task_id=task.task_id,
                    event_type="processing",
                    state_from=task.state,
                    state_to=new_state,
                    details={"external_job_id": task.external_job_id},
                )
            session.commit()
            return self._load_view(session, task.task_id)

    def complete_task(self, task: TaskView, *, result: ResultLink) -> TaskView | None:
        """Link a materialized result and move an in-flight task to COMPLETED."""

        now = self._clock()
        with Session(self.engine) as session:
            updated = self._cas_update(
                session,
                task=task,
                allowed_states=sources_for(TaskState.COMPLETED),
                values={
                    "state": TaskState.COMPLETED.value,
                    "progress_percent": 100,
                    "result_asset_id": result.result_asset_id,
                    "result_download_url": result.download_signed_url,
                    "result_image_url": result.result_image_url,
                    "result_quality_score": result.quality_score,
                    "processing_seconds": _processing_seconds(task, now),
                    "error_code": None,
                    "error_message": None,
                    "error_payload_json": None,
                    "completed_at": to_db_datetime(now),
                    "updated_at": to_db_datetime(now),
                },
            )
            if not updated:
                return None
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="completed",
                state_from=task.state,
                state_to=TaskState.COMPLETED,
                details={"result_asset_id": result.result_asset_id},
            )
            session.commit()
            return self._load_view(session, task.task_id)

    def fail_task(
        self,
        task: TaskView,
        *,
        error: ErrorDetail,
        event_details: dict[str, object] | None = None,
    ) -> TaskView | None:
        """Move an in-flight task to FAILED with a structured error.

        ``event_details`` are merged into the ``failed`` event, e.g. provider
        failure classification.
        """

        now = self._clock()
        with Session(self.engine) as session:
            updated = self._cas_update(
                session,
                task=task,
                allowed_states=sources_for(TaskState.FAILED),
                values={
                    "state": TaskState.FAILED.value,
                    "error_code": error.code,
                    "error_message": error.message,
                    "error_payload_json": (
                        json.dumps(error.provider_payload, ensure_ascii=False, sort_keys=True)
                        if error.provider_payload is not None
                        else None
                    ),
                    "result_asset_id": None,
                    "result_download_url": None,
                    "result_image_url": None,
                    "result_quality_score": None,
                    "processing_seconds": _processing_seconds(task, now),
                    "completed_at": to_db_datetime(now),
                    "updated_at": to_db_datetime(now),
                },
            )
            if not updated:
                return None
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="failed",
                state_from=task.state,
                state_to=TaskState.FAILED,
                details={
                    **(event_details or {}),
                    "error_code": error.code,
                    "error_message": error.message,
                },
            )
            session.commit()
            return self._load_view(session, task.task_id)

    def cancel_task(self, task_id: str, *, owner_id: str) -> TaskView:
        """Cancel a CREATED/PROCESSING task; terminal state at write time wins."""

        for _ in range(_USER_CAS_ATTEMPTS):
            task = self.require_task(task_id, owner_id=owner_id)
            assert_transition(task.state, TaskState.CANCELLED)
            now = self._clock()
            with Session(self.engine) as session:
                updated = self._cas_update(
                    session,
                    task=task,
                    allowed_states=sources_for(TaskState.CANCELLED),
                    values={
                        "state": TaskState.CANCELLED.value,
                        "completed_at": to_db_datetime(now),
                        "processing_seconds": _processing_seconds(task, now),
                        "updated_at": to_db_datetime(now),
                    },
                )
                if not updated:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="canceled",
                    state_from=task.state,
                    state_to=TaskState.CANCELLED,
                    details={},
                )
                session.commit()
                return self._load_view(session, task_id)
        raise TaskStateConflict(
            f"Task state changed concurrently while canceling; please retry (task_id={task_id}).",
        )

    def reset_for_retry(
        self,
        task: TaskView,
        *,
        new_external_job_id: str,
        max_retries: int,
    ) -> TaskView:
        """Point a FAILED task at a fresh provider job and reset it to CREATED."""

        if not can_transition(task.state, TaskState.CREATED):
            raise InvalidStateTransition(
                f"Only FAILED tasks can be retried, got {task.state.value}.",
            )
        if task.retry_count >= max_retries:
            raise RetryLimitExceeded(
                f"Maximum retry attempts exceeded ({task.retry_count}/{max_retries}).",
            )
        now = self._clock()
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(TryOnTask)
                .where(
                    col(TryOnTask.task_id) == task.task_id,
                    col(TryOnTask.version) == task.version,
                    col(TryOnTask.state) == TaskState.FAILED.value,
                    col(TryOnTask.retry_count) < max_retries,
                    col(TryOnTask.is_deleted).is_(False),
                )
                .values(
                    external_job_id=new_external_job_id,
                    state=TaskState.CREATED.value,
                    progress_percent=0,
                    retry_count=task.retry_count + 1,
                    submitted_at=to_db_datetime(now),
                    started_at=None,
                    completed_at=None,
                    processing_seconds=None,
                    last_polled_at=None,
                    error_code=None,
                    error_message=None,
                    error_payload_json=None,
                    version=task.version + 1,
                    updated_at=to_db_datetime(now),
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskStateConflict(
                    "Task state changed concurrently while retrying; "
                    f"please retry (task_id={task.task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task.task_id,
                event_type="retried",
                state_from=TaskState.FAILED,
                state_to=TaskState.CREATED,
                details={
                    "previous_external_job_id": task.external_job_id,
                    "external_job_id": new_external_job_id,
                    "retry_count": task.retry_count + 1,
                    "previous_error_code": task.error_detail.code if task.error_detail else None,
                },
            )
            session.commit()
            return self._load_view(session, task.task_id)

    def soft_delete_task(self, task_id: str, *, owner_id: str) -> TaskView:
        """Hide a task from listings and reconciliation, keeping the row."""

        for _ in range(_USER_CAS_ATTEMPTS):
            task = self.require_task(task_id, owner_id=owner_id)
            now = self._clock()
            with Session(self.engine) as session:
                result = session.execute(
                    sa_update(TryOnTask)
                    .where(
                        col(TryOnTask.task_id) == task_id,
                        col(TryOnTask.version) == task.version,
                        col(TryOnTask.is_deleted).is_(False),
                    )
                    .values(
                        is_deleted=True,
                        deleted_at=to_db_datetime(now),
                        version=task.version + 1,
                        updated_at=to_db_datetime(now),
                    )
                    .execution_options(synchronize_session=False),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="deleted",
                    state_from=task.state,
                    state_to=task.state,
                    details={},
                )
                session.commit()
                return self._load_view(session, task_id)
        raise TaskStateConflict(
            f"Task state changed concurrently while deleting; please retry (task_id={task_id}).",
        )

    def _cas_update(
        self,
        session: Session,
        *,
        task: TaskView,
        allowed_states: Iterable[TaskState],
        values: dict[str, object],
    ) -> bool:
        result = session.execute(
            sa_update(TryOnTask)
            .where(
                col(TryOnTask.task_id) == task.task_id,
                col(TryOnTask.version) == task.version,
                col(TryOnTask.state).in_([state.value for state in allowed_states]),
                col(TryOnTask.is_deleted).is_(False),
            )
            .values(version=task.version + 1, **values)
            .execution_options(synchronize_session=False),
        )
        if result.rowcount != 1:
            session.rollback()
            return False
        return True

    def _load_view(self, session: Session, task_id: str) -> TaskView:
        row = session.exec(select(TryOnTask).where(TryOnTask.task_id == task_id)).one()
        return _to_task_view(row)

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        state_from: TaskState | None,
        state_to: TaskState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TryOnTaskEvent(
                task_id=task_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _clamp(value: int) -> int:
    return min(100, max(0, int(value)))


def _processing_seconds(task: TaskView, finished_at: datetime) -> int | None:
    started_at = task.timing.started_at
    if started_at is None:
        return None
    return max(0, round((to_utc_aware(finished_at) - started_at).total_seconds()))


def _to_task_view(row: TryOnTask) -> TaskView:
    state = TaskState(row.state)
    result = None
    if state == TaskState.COMPLETED and row.result_asset_id is not None:
        result = TaskResult(
            result_asset_id=row.result_asset_id,
            download_signed_url=row.result_download_url,
            result_image_url=row.result_image_url,
            quality_score=row.result_quality_score,
            processing_seconds=row.processing_seconds,
        )
    error_detail = None
    if state == TaskState.FAILED and row.error_code is not None:
        payload = json.loads(row.error_payload_json) if row.error_payload_json else None
        error_detail = ErrorDetail(
            code=row.error_code,
            message=row.error_message or "",
            provider_payload=payload if isinstance(payload, dict) else None,
        )
    return TaskView(
        task_id=row.task_id,
        external_job_id=row.external_job_id,
        owner_id=row.owner_id,
        mode=TryOnMode(row.mode),
        garment_category=GarmentCategory(row.garment_category),
        hd_mode=row.hd_mode,
        state=state,
        progress_percent=row.progress_percent,
        inputs=TaskInputs(
            model_asset_id=row.model_asset_id,
            garment_asset_ids=tuple(json.loads(row.garment_asset_ids_json)),
            model_image_url=row.model_image_url,
            garment_image_urls=tuple(json.loads(row.garment_image_urls_json)),
        ),
        result=result,
        error_detail=error_detail,
        timing=TaskTiming(
            submitted_at=to_utc_aware(row.submitted_at),
            started_at=to_utc_aware_or_none(row.started_at),
            completed_at=to_utc_aware_or_none(row.completed_at),
            last_polled_at=to_utc_aware_or_none(row.last_polled_at),
            poll_count=row.poll_count,
            processing_seconds=row.processing_seconds,
        ),
        retry_count=row.retry_count,
        is_deleted=row.is_deleted,
        deleted_at=to_utc_aware_or_none(row.deleted_at),
        version=row.version,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
