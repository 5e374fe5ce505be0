"""Turn a provider result into a stored result asset linked to its task."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from tryon_studio.assets.models import AssetView
from tryon_studio.assets.store import AssetStore
from tryon_studio.orchestrator.errors import MaterializationError, TaskStateConflict
from tryon_studio.orchestrator.models import ResultLink, TaskView
from tryon_studio.orchestrator.repository import TaskRepository
from tryon_studio.provider.base import ProviderError, ProviderStatus

logger = logging.getLogger(__name__)

DEFAULT_JPEG_QUALITY = 90
DEFAULT_PERSIST_ATTEMPTS = 2


class ResultDownloader(Protocol):
    def download(self, result_handle: str) -> bytes: ...


@dataclass(slots=True)
class EncodedImage:
    content: bytes
    width: int
    height: int


def reencode_jpeg(raw: bytes, *, quality: int = DEFAULT_JPEG_QUALITY) -> EncodedImage:
    """Decode any Pillow-readable image and re-encode it as a plain RGB JPEG.

    The image is rebuilt from pixel data only, so EXIF and ICC blocks from the
    provider are not carried over.
    """

    try:
        with Image.open(io.BytesIO(raw)) as source:
            source.load()
            rgb = source.convert("RGB")
        clean = Image.new("RGB", rgb.size)
        clean.paste(rgb)
    except (UnidentifiedImageError, OSError) as exc:
        raise MaterializationError(f"Result image could not be decoded: {exc}") from exc

    buffer = io.BytesIO()
    clean.save(buffer, format="JPEG", quality=quality)
    return EncodedImage(content=buffer.getvalue(), width=clean.width, height=clean.height)


class ResultMaterializer:
    """Download, normalize, persist and link one provider result."""

    def __init__(
        self,
        *,
        downloader: ResultDownloader,
        assets: AssetStore,
        repository: TaskRepository,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        persist_attempts: int = DEFAULT_PERSIST_ATTEMPTS,
    ) -> None:
        self._downloader = downloader
        self._assets = assets
        self._repository = repository
        self._jpeg_quality = jpeg_quality
        self._persist_attempts = max(1, persist_attempts)

    def materialize(self, task: TaskView, status: ProviderStatus) -> TaskView:
        """Return the COMPLETED task view.

        Raises ``MaterializationError`` on download, decode or persist failure,
        and ``TaskStateConflict`` when the task changed before it could be
        linked (the new asset is discarded in that case).
        """

        if not status.result_handle:
            raise MaterializationError(
                f"Provider reported success for job {task.external_job_id} without a result URL.",
            )
        try:
            raw = self._downloader.download(status.result_handle)
        except ProviderError as exc:
            raise MaterializationError(f"Result download failed: {exc.message}") from exc

        encoded = reencode_jpeg(raw, quality=self._jpeg_quality)
        asset = self._persist(task, encoded)

        linked = self._repository.complete_task(
            task,
            result=ResultLink(
                result_asset_id=asset.asset_id,
                download_signed_url=status.result_handle,
                result_image_url=asset.file_url,
                quality_score=status.quality_score,
            ),
        )
        if linked is None:
            self._assets.discard_asset(asset.asset_id)
            raise TaskStateConflict(
                f"Task {task.task_id} changed before its result could be linked.",
            )
        logger.info(
            "Materialized result %s for task %s (%dx%d, %d bytes)",
            asset.asset_id,
            task.task_id,
            encoded.width,
            encoded.height,
            len(encoded.content),
        )
        return linked

    def _persist(self, task: TaskView, encoded: EncodedImage) -> AssetView:
        last_error: Exception | None = None
        for attempt in range(1, self._persist_attempts + 1):
            try:
                return self._assets.create_result_asset(
                    owner_id=task.owner_id,
                    content=encoded.content,
                    width=encoded.width,
                    height=encoded.height,
                    category=task.garment_category.value,
                    external_job_id=task.external_job_id,
                    mode=task.mode.value,
                )
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning(
                    "Persisting result for task %s failed (attempt %d/%d): %s",
                    task.task_id,
                    attempt,
                    self._persist_attempts,
                    exc,
                )
        raise MaterializationError(f"Result could not be stored: {last_error}") from last_error
