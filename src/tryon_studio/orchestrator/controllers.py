"""Controllers for try-on CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from tryon_studio.assets.models import AssetKind
from tryon_studio.config import Settings
from tryon_studio.orchestrator.errors import TaskNotFoundError
from tryon_studio.orchestrator.models import TaskState, TaskView
from tryon_studio.provider.client import ProviderClient
from tryon_studio.runtime import Runtime, build_runtime


@dataclass(slots=True)
class ReconcileCommand:
    """CLI input for reconciliation runs."""

    db_path: Path | None
    once: bool
    max_ticks: int | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    owner_id: str | None
    state: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    task_id: str
    owner_id: str | None = None


@dataclass(slots=True)
class RegisterAssetCommand:
    """CLI input for seeding an input image."""

    db_path: Path | None
    owner_id: str
    kind: str
    source_path: Path
    category: str | None
    is_valid: bool


class TryOnCliController:
    """Build command output lines; click handles the echoing."""

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = _settings(command.db_path, require_provider=True)
        with _runtime(settings) as runtime:
            if command.once:
                summary = runtime.orchestrator.reconcile_all()
                ticks = 1
            else:
                ticks = runtime.scheduler.run_forever(max_ticks=command.max_ticks)
                summary = runtime.scheduler.last_summary
        lines = [f"Reconciliation ticks: {ticks}"]
        if summary is not None:
            lines.extend(
                [
                    f"Checked: {summary.checked}",
                    f"Processing: {summary.processing}",
                    f"Completed: {summary.completed}",
                    f"Failed: {summary.failed}",
                    f"Skipped: {summary.skipped}",
                    f"Conflicts: {summary.conflicts}",
                ],
            )
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        state = _parse_state(command.state)
        with _runtime(settings) as runtime:
            tasks = runtime.repository.list_tasks(
                owner_id=command.owner_id,
                state=state,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} owner={task.owner_id} state={task.state.value} "
                f"progress={task.progress_percent}% mode={task.mode.value} "
                f"job={task.external_job_id} retries={task.retry_count} "
                f"submitted={task.timing.submitted_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Owner: {task.owner_id}",
            f"State: {task.state.value}{' (deleted)' if task.is_deleted else ''}",
            f"Progress: {task.progress_percent}%",
            f"Mode: {task.mode.value} category={task.garment_category.value} hd={task.hd_mode}",
            f"Provider job: {task.external_job_id}",
            f"Retries: {task.retry_count}",
            f"Polls: {task.timing.poll_count}",
            f"Processing time: {_format_seconds(task.timing.processing_seconds)}",
            f"Result asset: {task.result.result_asset_id if task.result else '-'}",
            f"Error: {_format_error(task)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            transition = ""
            if event.state_to is not None:
                source = event.state_from.value if event.state_from else "-"
                transition = f" {source}->{event.state_to.value}"
            lines.append(f"  {event.created_at.isoformat()} {event.event_type}{transition}")
        return lines

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = _settings(command.db_path, require_provider=True)
        with _runtime(settings) as runtime:
            owner_id = _resolve_owner(runtime, command)
            task = runtime.orchestrator.retry(command.task_id, owner_id=owner_id)
        return [
            f"Task retried: {task.task_id}",
            f"Provider job: {task.external_job_id}",
            f"Retries: {task.retry_count}/{settings.polling.max_retries}",
        ]

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            owner_id = _resolve_owner(runtime, command)
            runtime.orchestrator.cancel(command.task_id, owner_id=owner_id)
        return [f"Task cancelled: {command.task_id}"]

    def register_asset(self, command: RegisterAssetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            asset = runtime.assets.register_upload(
                owner_id=command.owner_id,
                kind=AssetKind(command.kind),
                source_path=command.source_path,
                category=command.category,
                is_valid=command.is_valid,
            )
        return [
            f"Asset registered: {asset.asset_id}",
            f"Kind: {asset.kind.value}",
            f"Size: {asset.width}x{asset.height} ({asset.file_size} bytes)",
            f"URL: {asset.file_url}",
        ]


def _settings(db_path: Path | None, *, require_provider: bool = False) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    if require_provider:
        settings.validate()
    return settings


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    runtime = build_runtime(settings, provider=ProviderClient(settings.provider))
    try:
        yield runtime
    finally:
        runtime.close()


def _resolve_owner(runtime: Runtime, command: MutateTaskCommand) -> str:
    if command.owner_id is not None:
        return command.owner_id
    task = runtime.repository.get_task(command.task_id)
    if task is None:
        raise TaskNotFoundError(command.task_id)
    return task.owner_id


def _parse_state(raw: str | None) -> TaskState | None:
    if raw is None:
        return None
    try:
        return TaskState(raw.upper())
    except ValueError as error:
        raise ValueError(f"Unsupported task state: {raw!r}") from error


def _format_error(task: TaskView) -> str:
    if task.error_detail is None:
        return "-"
    return f"{task.error_detail.code}: {task.error_detail.message}"


def _format_seconds(seconds: int | None) -> str:
    return "-" if seconds is None else f"{seconds}s"
