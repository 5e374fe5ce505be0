"""Composition root wiring settings into concrete collaborators."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from tryon_studio.assets.store import AssetStore
from tryon_studio.config import Settings
from tryon_studio.orchestrator.materializer import ResultMaterializer
from tryon_studio.orchestrator.repository import TaskRepository
from tryon_studio.orchestrator.scheduler import ReconciliationScheduler
from tryon_studio.orchestrator.service import ProviderGateway, TaskOrchestrator
from tryon_studio.provider.client import ProviderClient
from tryon_studio.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    """Process-wide collaborators owned by the API server or a CLI command."""

    settings: Settings
    repository: TaskRepository
    assets: AssetStore
    provider: ProviderGateway
    orchestrator: TaskOrchestrator
    scheduler: ReconciliationScheduler

    def close(self) -> None:
        self.scheduler.stop()
        close_provider = getattr(self.provider, "close", None)
        if callable(close_provider):
            close_provider()
        self.repository.close()


def build_runtime(
    settings: Settings,
    *,
    provider: ProviderGateway | None = None,
    clock: Callable[[], datetime] = utc_now,
    init_schema: bool = True,
) -> Runtime:
    """Build a runtime; ``provider`` overrides the HTTP client (tests, dry runs)."""

    repository = TaskRepository(
        settings.storage.db_path,
        sqlite_busy_timeout_ms=settings.storage.sqlite_busy_timeout_ms,
        clock=clock,
    )
    if init_schema:
        repository.init_schema()
    settings.storage.upload_root.mkdir(parents=True, exist_ok=True)
    assets = AssetStore(repository.engine, settings.storage.upload_root, clock=clock)
    gateway = provider or ProviderClient(settings.provider)
    materializer = ResultMaterializer(
        downloader=gateway,
        assets=assets,
        repository=repository,
        jpeg_quality=settings.storage.result_jpeg_quality,
    )
    orchestrator = TaskOrchestrator(
        repository=repository,
        assets=assets,
        provider=gateway,
        materializer=materializer,
        polling=settings.polling,
        clock=clock,
    )
    scheduler = ReconciliationScheduler(
        orchestrator.reconcile_all,
        interval_seconds=settings.polling.interval_seconds,
        clock=clock,
    )
    logger.debug("Runtime built for database %s", settings.storage.db_path)
    return Runtime(
        settings=settings,
        repository=repository,
        assets=assets,
        provider=gateway,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )
