"""Domain models for try-on task lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskState(str, Enum):
    """Durable task lifecycle states."""

    CREATED = "CREATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


IN_FLIGHT_STATES: frozenset[TaskState] = frozenset({TaskState.CREATED, TaskState.PROCESSING})
TERMINAL_STATES: frozenset[TaskState] = frozenset(
    {TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED},
)


class TryOnMode(str, Enum):
    SINGLE = "single"
    COMBO = "combo"

    @property
    def garment_count(self) -> int:
        return 2 if self is TryOnMode.COMBO else 1


class GarmentCategory(str, Enum):
    UPPER = "upper"
    LOWER = "lower"
    FULL_SET = "full_set"
    COMBO = "combo"


class TaskErrorCode(str, Enum):
    """Stable error codes recorded on FAILED tasks."""

    PROVIDER_PROCESSING_FAILED = "PROVIDER_PROCESSING_FAILED"
    PROVIDER_STATUS_REJECTED = "PROVIDER_STATUS_REJECTED"
    RESULT_PROCESSING_FAILED = "RESULT_PROCESSING_FAILED"
    POLLING_ABANDONED = "POLLING_ABANDONED"


@dataclass(slots=True)
class TaskInputs:
    """Input asset references plus URLs denormalized at submission time."""

    model_asset_id: str
    garment_asset_ids: tuple[str, ...]
    model_image_url: str
    garment_image_urls: tuple[str, ...]


@dataclass(slots=True)
class TaskResult:
    """Materialized result, present only on COMPLETED tasks."""

    result_asset_id: str
    download_signed_url: str | None
    result_image_url: str | None
    quality_score: float | None
    processing_seconds: int | None


@dataclass(slots=True)
class ResultLink:
    """Fields written when a materialized asset is linked to its task."""

    result_asset_id: str
    download_signed_url: str | None
    result_image_url: str | None
    quality_score: float | None


@dataclass(slots=True)
class ErrorDetail:
    """Structured failure, present only on FAILED tasks."""

    code: str
    message: str
    provider_payload: dict[str, Any] | None = None


@dataclass(slots=True)
class TaskTiming:
    submitted_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    last_polled_at: datetime | None
    poll_count: int
    processing_seconds: int | None = None


@dataclass(slots=True)
class TaskCreate:
    """Input payload for persisting a freshly submitted task."""

    owner_id: str
    external_job_id: str
    mode: TryOnMode
    garment_category: GarmentCategory
    hd_mode: bool
    inputs: TaskInputs
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for API, CLI and reconciliation logic."""

    task_id: str
    external_job_id: str
    owner_id: str
    mode: TryOnMode
    garment_category: GarmentCategory
    hd_mode: bool
    state: TaskState
    progress_percent: int
    inputs: TaskInputs
    result: TaskResult | None
    error_detail: ErrorDetail | None
    timing: TaskTiming
    retry_count: int
    is_deleted: bool
    deleted_at: datetime | None
    version: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    state_from: TaskState | None
    state_to: TaskState | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class ReconcileOutcome:
    """What one reconciliation of one task did."""

    task_id: str
    action: str
    state: TaskState | None = None


@dataclass(slots=True)
class ReconcileSummary:
    """Aggregate counters for one reconciliation tick."""

    checked: int = 0
    unchanged: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    conflicts: int = 0

    def record(self, outcome: ReconcileOutcome) -> None:
        self.checked += 1
        if outcome.action == "completed":
            self.completed += 1
        elif outcome.action == "failed":
            self.failed += 1
        elif outcome.action == "processing":
            self.processing += 1
        elif outcome.action == "skipped":
            self.skipped += 1
        elif outcome.action == "conflict":
            self.conflicts += 1
        else:
            self.unchanged += 1
