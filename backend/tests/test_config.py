import pytest
from pydantic import ValidationError

from conversation_scheduler.core.config import Settings


@pytest.mark.unit
def test_defaults(monkeypatch):
    for name in (
        "STALE_MESSAGE_THRESHOLD_MS",
        "MAX_RECOVERY_ATTEMPTS",
        "STALE_DETECTION_ENABLED",
        "STALE_RECOVERY_DRY_RUN",
        "EVENTS_CHANNEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.STALE_MESSAGE_THRESHOLD_MS == 30000
    assert settings.MAX_RECOVERY_ATTEMPTS == 5
    assert settings.STALE_DETECTION_ENABLED is True
    assert settings.STALE_RECOVERY_DRY_RUN is False
    assert settings.EVENTS_CHANNEL == "websocket:events"


@pytest.mark.unit
def test_values_come_from_environment(monkeypatch):
    monkeypatch.setenv("STALE_MESSAGE_THRESHOLD_MS", "45000")
    monkeypatch.setenv("STALE_RECOVERY_DRY_RUN", "true")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example.com, https://b.example.com")

    settings = Settings(_env_file=None)

    assert settings.STALE_MESSAGE_THRESHOLD_MS == 45000
    assert settings.STALE_RECOVERY_DRY_RUN is True
    assert settings.ALLOWED_ORIGINS == ["https://a.example.com", "https://b.example.com"]


@pytest.mark.unit
@pytest.mark.parametrize(
    "name,value",
    [
        ("STALE_MESSAGE_THRESHOLD_MS", "-1"),
        ("SCHEDULER_TICK_INTERVAL_SECONDS", "0"),
        ("PROCESSING_LOCK_TTL_SECONDS", "-5"),
        ("MAX_RECOVERY_ATTEMPTS", "0"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
