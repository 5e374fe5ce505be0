from __future__ import annotations

from pathlib import Path

import allure
import pytest

from tryon_studio.config import PollingSettings, ProviderSettings, Settings, StorageSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TRYON_PROVIDER_BASE_URL", "https://provider.test")
    monkeypatch.setenv("TRYON_PROVIDER_API_KEY", "key-1")
    monkeypatch.setenv("TRYON_PROVIDER_SUBMIT_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TRYON_POLLING_ENABLED", "off")
    monkeypatch.setenv("TRYON_POLL_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("TRYON_POLL_ABANDON_AFTER_SECONDS", "0")
    monkeypatch.setenv("TRYON_MAX_RETRIES", "1")
    monkeypatch.setenv("TRYON_UPLOAD_ROOT", str(tmp_path / "files"))

    settings = Settings.from_env(db_path=tmp_path / "x.db")

    assert settings.provider.base_url == "https://provider.test"
    assert settings.provider.api_key == "key-1"
    assert settings.provider.submit_max_attempts == 5
    assert settings.polling.enabled is False
    assert settings.polling.interval_seconds == 2.5
    assert settings.polling.abandon_after_seconds == 0
    assert settings.polling.max_retries == 1
    assert settings.storage.db_path == tmp_path / "x.db"
    assert settings.storage.upload_root == tmp_path / "files"
    settings.validate()


def test_from_env_rejects_unparseable_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRYON_POLLING_ENABLED", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for TRYON_POLLING_ENABLED"):
        Settings.from_env()


def test_validate_requires_api_key() -> None:
    with pytest.raises(ValueError, match="TRYON_PROVIDER_API_KEY is required"):
        Settings(provider=ProviderSettings(api_key="  ")).validate()


def test_validate_rejects_relative_base_url() -> None:
    settings = Settings(provider=ProviderSettings(base_url="platform.test", api_key="k"))

    with pytest.raises(ValueError, match="Invalid TRYON_PROVIDER_BASE_URL"):
        settings.validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(provider=ProviderSettings(api_key="k", submit_max_attempts=0)), "MAX_ATTEMPTS"),
        (Settings(provider=ProviderSettings(api_key="k", retry_backoff_seconds=-1)), "BACKOFF"),
        (
            Settings(provider=ProviderSettings(api_key="k", download_timeout_seconds=0)),
            "DOWNLOAD_TIMEOUT",
        ),
        (
            Settings(provider=ProviderSettings(api_key="k"), polling=PollingSettings(interval_seconds=0)),
            "POLL_INTERVAL",
        ),
        (
            Settings(provider=ProviderSettings(api_key="k"), polling=PollingSettings(max_retries=-1)),
            "MAX_RETRIES",
        ),
        (
            Settings(
                provider=ProviderSettings(api_key="k"),
                storage=StorageSettings(result_jpeg_quality=100),
            ),
            "JPEG_QUALITY",
        ),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
