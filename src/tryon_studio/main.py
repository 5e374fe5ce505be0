"""CLI entrypoint for tryon-studio."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click
import uvicorn

from tryon_studio import __version__
from tryon_studio.api.app import create_app
from tryon_studio.config import Settings
from tryon_studio.orchestrator.controllers import (
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    ReconcileCommand,
    RegisterAssetCommand,
    TryOnCliController,
)
from tryon_studio.orchestrator.errors import TryOnError
from tryon_studio.provider.base import ProviderError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TryOnCliController()


@click.group()
@click.version_option(version=__version__, prog_name="tryon-studio")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logging level.",
)
def tryon_studio(log_level: str) -> None:
    """Virtual try-on task orchestrator CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@tryon_studio.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--host", default=None, help="Bind host; defaults to TRYON_API_HOST.")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Run the HTTP API with the background reconciliation scheduler."""

    settings = Settings.from_env(db_path=db_path)
    with _domain_errors():
        app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )


@tryon_studio.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--once", is_flag=True, default=False, help="Run a single reconciliation pass.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the foreground loop after this many ticks.",
)
def reconcile(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Poll the provider for every in-flight task."""

    with _domain_errors():
        lines = CONTROLLER.reconcile(
            ReconcileCommand(db_path=db_path, once=once, max_ticks=max_ticks),
        )
    _emit_lines(lines)


@tryon_studio.group()
def tasks() -> None:
    """Task store operations."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", default=None, help="Only tasks of this user.")
@click.option(
    "--state",
    type=click.Choice(
        ["created", "processing", "completed", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional state filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, owner_id: str | None, state: str | None, limit: int) -> None:
    """List try-on tasks, newest first."""

    with _domain_errors():
        lines = CONTROLLER.list_tasks(
            ListTasksCommand(db_path=db_path, owner_id=owner_id, state=state, limit=limit),
        )
    _emit_lines(lines)


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--owner", "owner_id", default=None, help="Owner id; defaults to the task's owner.")
def tasks_retry(db_path: Path | None, task_id: str, owner_id: str | None) -> None:
    """Resubmit a failed task as a new provider job."""

    with _domain_errors():
        lines = CONTROLLER.retry_task(
            MutateTaskCommand(db_path=db_path, task_id=task_id, owner_id=owner_id),
        )
    _emit_lines(lines)


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option("--owner", "owner_id", default=None, help="Owner id; defaults to the task's owner.")
def tasks_cancel(db_path: Path | None, task_id: str, owner_id: str | None) -> None:
    """Cancel a created or processing task."""

    with _domain_errors():
        lines = CONTROLLER.cancel_task(
            MutateTaskCommand(db_path=db_path, task_id=task_id, owner_id=owner_id),
        )
    _emit_lines(lines)


@tryon_studio.group()
def assets() -> None:
    """Input asset operations."""


@assets.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--owner", "owner_id", required=True, help="Owning user id.")
@click.option(
    "--kind",
    type=click.Choice(["model", "garment"], case_sensitive=False),
    required=True,
    help="Input asset kind.",
)
@click.option("--category", default=None, help="Garment category, e.g. upper or lower.")
@click.option(
    "--invalid",
    is_flag=True,
    default=False,
    help="Register the asset as not valid for try-on.",
)
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def assets_register(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str,
    kind: str,
    category: str | None,
    invalid: bool,
    source: Path,
) -> None:
    """Copy a local image into the asset store."""

    with _domain_errors():
        lines = CONTROLLER.register_asset(
            RegisterAssetCommand(
                db_path=db_path,
                owner_id=owner_id,
                kind=kind.lower(),
                source_path=source,
                category=category,
                is_valid=not invalid,
            ),
        )
    _emit_lines(lines)


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Turn domain, provider and config errors into click errors."""

    try:
        yield
    except (TryOnError, ProviderError) as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}") from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tryon_studio()
