"""Runtime configuration for the try-on service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class ProviderSettings:
    """Remote generation provider settings."""

    base_url: str = "https://platform.fitroom.app"
    api_key: str = ""
    request_timeout_seconds: float = 30.0
    submit_timeout_seconds: float = 60.0
    download_timeout_seconds: float = 30.0
    submit_max_attempts: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(slots=True)
class PollingSettings:
    """Reconciliation loop settings."""

    enabled: bool = True
    interval_seconds: float = 5.0
    abandon_after_seconds: int = 3_600
    max_retries: int = 3


@dataclass(slots=True)
class StorageSettings:
    """Database and file storage settings."""

    db_path: Path = Path(".tryon_studio.db")
    upload_root: Path = Path("uploads")
    sqlite_busy_timeout_ms: int = 5_000
    result_jpeg_quality: int = 90


@dataclass(slots=True)
class ApiSettings:
    """HTTP server settings."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    provider: ProviderSettings = field(default_factory=ProviderSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            provider=ProviderSettings(
                base_url=os.getenv("TRYON_PROVIDER_BASE_URL", "https://platform.fitroom.app"),
                api_key=os.getenv("TRYON_PROVIDER_API_KEY", ""),
                request_timeout_seconds=float(
                    os.getenv("TRYON_PROVIDER_TIMEOUT_SECONDS", "30.0"),
                ),
                submit_timeout_seconds=float(
                    os.getenv("TRYON_PROVIDER_SUBMIT_TIMEOUT_SECONDS", "60.0"),
                ),
                download_timeout_seconds=float(
                    os.getenv("TRYON_PROVIDER_DOWNLOAD_TIMEOUT_SECONDS", "30.0"),
                ),
                submit_max_attempts=int(os.getenv("TRYON_PROVIDER_SUBMIT_MAX_ATTEMPTS", "3")),
                retry_backoff_seconds=float(
                    os.getenv("TRYON_PROVIDER_RETRY_BACKOFF_SECONDS", "1.0"),
                ),
            ),
            polling=PollingSettings(
                enabled=_env_bool("TRYON_POLLING_ENABLED", default=True),
                interval_seconds=float(os.getenv("TRYON_POLL_INTERVAL_SECONDS", "5.0")),
                abandon_after_seconds=int(os.getenv("TRYON_POLL_ABANDON_AFTER_SECONDS", "3600")),
                max_retries=int(os.getenv("TRYON_MAX_RETRIES", "3")),
            ),
            storage=StorageSettings(
                db_path=db_path or Path(os.getenv("TRYON_DB_PATH", ".tryon_studio.db")),
                upload_root=Path(os.getenv("TRYON_UPLOAD_ROOT", "uploads")),
                sqlite_busy_timeout_ms=int(os.getenv("TRYON_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                result_jpeg_quality=int(os.getenv("TRYON_RESULT_JPEG_QUALITY", "90")),
            ),
            api=ApiSettings(
                host=os.getenv("TRYON_API_HOST", "127.0.0.1"),
                port=int(os.getenv("TRYON_API_PORT", "8000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the service cannot run with."""

        parsed = urlparse(self.provider.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid TRYON_PROVIDER_BASE_URL: "
                f"{self.provider.base_url!r}. Expected an absolute http(s) URL.",
            )
        if not self.provider.api_key.strip():
            raise ValueError("TRYON_PROVIDER_API_KEY is required.")
        if self.provider.submit_max_attempts <= 0:
            raise ValueError("TRYON_PROVIDER_SUBMIT_MAX_ATTEMPTS must be > 0.")
        if self.provider.retry_backoff_seconds < 0:
            raise ValueError("TRYON_PROVIDER_RETRY_BACKOFF_SECONDS must be >= 0.")
        for name, value in (
            ("TRYON_PROVIDER_TIMEOUT_SECONDS", self.provider.request_timeout_seconds),
            ("TRYON_PROVIDER_SUBMIT_TIMEOUT_SECONDS", self.provider.submit_timeout_seconds),
            ("TRYON_PROVIDER_DOWNLOAD_TIMEOUT_SECONDS", self.provider.download_timeout_seconds),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.polling.interval_seconds <= 0:
            raise ValueError("TRYON_POLL_INTERVAL_SECONDS must be > 0.")
        if self.polling.abandon_after_seconds < 0:
            raise ValueError("TRYON_POLL_ABANDON_AFTER_SECONDS must be >= 0.")
        if self.polling.max_retries < 0:
            raise ValueError("TRYON_MAX_RETRIES must be >= 0.")
        if not 1 <= self.storage.result_jpeg_quality <= 95:
            raise ValueError("TRYON_RESULT_JPEG_QUALITY must be between 1 and 95.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
