from __future__ import annotations

from collections.abc import Iterator

import pytest
from pydantic import ValidationError

from whatsapp_worker.config import Settings, get_settings
from whatsapp_worker.dispatcher import DispatchConfig
from whatsapp_worker.providers import build_sender


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WASENDER_API_KEY", "key-from-env")
    monkeypatch.setenv("BULK_BATCH_SIZE", "4")
    monkeypatch.setenv("BULK_DELAY_MS", "1500")
    monkeypatch.setenv("BULK_SEND_MODE", "background")
    monkeypatch.setenv("WORKER_SECRET", "s3cret")

    settings = get_settings()

    assert settings.wasender_api_key == "key-from-env"
    assert build_sender(settings).is_configured
    assert settings.bulk_send_mode == "background"
    assert settings.worker_secret == "s3cret"
    assert DispatchConfig.from_settings(settings) == DispatchConfig(batch_size=4, delay_ms=1500)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "WASENDER_API_KEY",
        "WASENDER_PERSONAL_ACCESS_TOKEN",
        "BULK_BATCH_SIZE",
        "BULK_DELAY_MS",
        "BULK_SEND_MODE",
        "WHATSAPP_PROVIDER",
        "PORT",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings()

    assert settings.provider == "wasender"
    assert settings.port == 3000
    assert settings.bulk_send_mode == "sync"
    assert not build_sender(settings).is_configured
    assert DispatchConfig.from_settings(settings) == DispatchConfig(batch_size=1, delay_ms=6000)


def test_empty_values_count_as_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WASENDER_API_KEY", "")
    monkeypatch.setenv("WASENDER_PERSONAL_ACCESS_TOKEN", "")

    assert not build_sender(Settings()).is_configured


@pytest.mark.parametrize("name", ["PORT", "BULK_BATCH_SIZE", "BULK_DELAY_MS", "WASENDER_MAX_RETRIES"])
def test_malformed_numbers_are_reported_by_field(
    monkeypatch: pytest.MonkeyPatch, name: str
) -> None:
    monkeypatch.setenv(name, "six seconds")

    with pytest.raises(ValidationError) as exc_info:
        Settings()

    assert exc_info.value.errors()[0]["loc"] == (name.lower(),)


def test_invalid_send_mode_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BULK_SEND_MODE", "eventually")

    with pytest.raises(ValidationError):
        Settings()
