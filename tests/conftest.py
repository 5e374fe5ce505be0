"""Shared test fixtures."""

from __future__ import annotations

import io
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from threading import Lock

import pytest
from PIL import Image

from tryon_studio.assets.models import AssetKind, AssetView
from tryon_studio.config import PollingSettings, ProviderSettings, Settings, StorageSettings
from tryon_studio.orchestrator.models import GarmentCategory, TaskView, TryOnMode
from tryon_studio.provider.base import ProviderStatus, ProviderTransientError, SubmitRequest
from tryon_studio.provider.client import map_provider_status, resolve_progress
from tryon_studio.runtime import Runtime, build_runtime

OWNER_ID = "user-1"
RESULT_URL = "https://storage.example.com/results/signed.png"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        self._lock = Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self.now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self.now = self.now + timedelta(seconds=seconds)


@dataclass
class FakeProvider:
    """In-memory provider with scripted status and download responses."""

    submitted: list[SubmitRequest] = field(default_factory=list)
    statuses: dict[str, ProviderStatus | Exception] = field(default_factory=dict)
    downloads: dict[str, bytes | Exception] = field(default_factory=dict)
    submit_error: Exception | None = None
    status_calls: int = 0
    _next_job: int = 0
    _lock: Lock = field(default_factory=Lock)

    def submit(self, request: SubmitRequest) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        with self._lock:
            self._next_job += 1
            self.submitted.append(request)
            return f"J{self._next_job}"

    def status(self, job_id: str) -> ProviderStatus:
        with self._lock:
            self.status_calls += 1
        scripted = self.statuses.get(job_id)
        if scripted is None:
            raise ProviderTransientError("no scripted status", reason_code="provider_network_error")
        if isinstance(scripted, Exception):
            raise scripted
        return scripted

    def download(self, result_handle: str) -> bytes:
        scripted = self.downloads.get(result_handle)
        if scripted is None:
            raise ProviderTransientError("not found", status_code=404)
        if isinstance(scripted, Exception):
            raise scripted
        return scripted

    def set_status(
        self,
        job_id: str,
        raw_status: str,
        *,
        progress: int | None = None,
        result_url: str | None = None,
        quality_score: float | None = None,
    ) -> None:
        payload: dict[str, object] = {"task_id": job_id, "status": raw_status}
        if progress is not None:
            payload["progress"] = progress
        if result_url is not None:
            payload["download_signed_url"] = result_url
        if quality_score is not None:
            payload["quality_score"] = quality_score
        state = map_provider_status(raw_status)
        self.statuses[job_id] = ProviderStatus(
            job_id=job_id,
            raw_status=raw_status,
            state_hint=state,
            progress_hint=resolve_progress(payload, state),
            result_handle=result_url,
            quality_score=quality_score,
            error_payload=payload if state.value == "FAILED" else None,
            payload=payload,
        )


def image_bytes(width: int = 64, height: int = 96, image_format: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    mode = "RGBA" if image_format == "PNG" else "RGB"
    color = (200, 30, 60, 255) if mode == "RGBA" else (200, 30, 60)
    Image.new(mode, (width, height), color).save(buffer, format=image_format)
    return buffer.getvalue()


@dataclass
class Seeded:
    model: AssetView
    upper: AssetView
    lower: AssetView


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        provider=ProviderSettings(api_key="test-key", retry_backoff_seconds=0.0),
        polling=PollingSettings(enabled=False, interval_seconds=0.01),
        storage=StorageSettings(
            db_path=tmp_path / "tryon.db",
            upload_root=tmp_path / "uploads",
        ),
    )


@pytest.fixture()
def runtime(settings: Settings, provider: FakeProvider, clock: FakeClock) -> Iterator[Runtime]:
    built = build_runtime(settings, provider=provider, clock=clock)
    try:
        yield built
    finally:
        built.close()


@pytest.fixture()
def seeded(runtime: Runtime, tmp_path: Path) -> Seeded:
    sources = tmp_path / "sources"
    sources.mkdir()

    def _register(name: str, kind: AssetKind, category: str | None) -> AssetView:
        path = sources / name
        path.write_bytes(image_bytes())
        return runtime.assets.register_upload(
            owner_id=OWNER_ID,
            kind=kind,
            source_path=path,
            category=category,
        )

    return Seeded(
        model=_register("model.png", AssetKind.MODEL, None),
        upper=_register("shirt.png", AssetKind.GARMENT, "upper"),
        lower=_register("pants.png", AssetKind.GARMENT, "lower"),
    )


@pytest.fixture()
def submit_single(runtime: Runtime, seeded: Seeded):
    def _submit() -> TaskView:
        return runtime.orchestrator.submit(
            owner_id=OWNER_ID,
            model_asset_id=seeded.model.asset_id,
            garment_asset_ids=[seeded.upper.asset_id],
            garment_category=GarmentCategory.UPPER,
            mode=TryOnMode.SINGLE,
        )

    return _submit


def assert_result_error_exclusive(task: TaskView) -> None:
    """``result`` only on COMPLETED, ``error_detail`` only on FAILED."""

    assert (task.result is not None) == (task.state.value == "COMPLETED")
    assert (task.error_detail is not None) == (task.state.value == "FAILED")


@pytest.fixture()
def check_invariants():
    return assert_result_error_exclusive


@pytest.fixture()
def make_image():
    return image_bytes
