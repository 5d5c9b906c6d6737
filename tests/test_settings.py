from __future__ import annotations

import os
from pathlib import Path

import pytest

from marketplace_core.settings import RuntimeSettings, load_settings

_VARS = (
    "MARKETPLACE_DATA_ROOT",
    "MARKETPLACE_RETRY_MAX_ATTEMPTS",
    "MARKETPLACE_RETRY_BASE_DELAY_MS",
    "MARKETPLACE_RETRY_BACKOFF_MULTIPLIER",
    "MARKETPLACE_RETRY_MAX_DELAY_MS",
    "MARKETPLACE_NOTIFICATION_LOOKBACK_DAYS",
    "MARKETPLACE_PAYMENT_NOTIFICATIONS_DISABLED",
    "MARKETPLACE_INDEX_LOCKING",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # setenv first so teardown also removes values that load_dotenv writes.
    for name in _VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings == RuntimeSettings()
    assert settings.retry_max_attempts == 3
    assert settings.notification_lookback_days == 7
    assert settings.index_locking is True


def test_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MARKETPLACE_DATA_ROOT", "  /srv/marketplace  ")
    monkeypatch.setenv("MARKETPLACE_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("MARKETPLACE_RETRY_BACKOFF_MULTIPLIER", "1.5")
    monkeypatch.setenv("MARKETPLACE_PAYMENT_NOTIFICATIONS_DISABLED", "yes")
    monkeypatch.setenv("MARKETPLACE_INDEX_LOCKING", "off")

    settings = RuntimeSettings.from_env()

    assert settings.data_root == "/srv/marketplace"
    assert settings.retry_max_attempts == 5
    assert settings.retry_backoff_multiplier == 1.5
    assert settings.payment_notifications_disabled is True
    assert settings.index_locking is False


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("MARKETPLACE_RETRY_MAX_ATTEMPTS", "zero"),
        ("MARKETPLACE_RETRY_MAX_ATTEMPTS", "0"),
        ("MARKETPLACE_RETRY_BACKOFF_MULTIPLIER", "0.5"),
        ("MARKETPLACE_NOTIFICATION_LOOKBACK_DAYS", "400"),
        ("MARKETPLACE_INDEX_LOCKING", "sometimes"),
        ("MARKETPLACE_DATA_ROOT", "   "),
        ("MARKETPLACE_RETRY_MAX_DELAY_MS", "100"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_data_path(tmp_path: Path) -> None:
    assert RuntimeSettings(data_root="data").data_path(tmp_path) == tmp_path / "data"
    assert RuntimeSettings(data_root="/abs/data").data_path(tmp_path) == Path("/abs/data")


def test_load_settings_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("MARKETPLACE_RETRY_MAX_ATTEMPTS=7\nMARKETPLACE_DATA_ROOT=store\n", encoding="utf-8")
    monkeypatch.setenv("MARKETPLACE_DATA_ROOT", "from-env")

    settings = load_settings(tmp_path)

    assert settings.retry_max_attempts == 7
    assert settings.data_root == "from-env"
    assert os.environ["MARKETPLACE_RETRY_MAX_ATTEMPTS"] == "7"
