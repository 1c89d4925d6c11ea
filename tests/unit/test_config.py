"""Tests for configuration loading."""

from datetime import date, time

import pytest
from pydantic import ValidationError

from stepwatch import persistence
from stepwatch.config import CalendarConfig, load_config
from stepwatch.persistence import (
    InMemoryEngineRepository,
    SQLiteEngineRepository,
    get_repository,
)
from stepwatch.transports import get_transport
from stepwatch.transports.inmemory import InMemoryTransport
from stepwatch.transports.redis import RedisTransport


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    for name in (
        "STEPWATCH_CONFIG",
        "STEPWATCH_DATABASE_URL",
        "DATABASE_URL",
        "STEPWATCH_TRANSPORT",
        "STEPWATCH_BLUEPRINTS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(persistence, "_repository_instance", None)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "stepwatch.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  topic: n8n-events
  redis:
    host: testhost
    port: 1234
calendar:
  timezone: America/New_York
  open: 08:30
  close: 17:00
  holidays: [2024-07-04]
sla:
  thresholds:
    yellow: 40
    orange: 75
notifications:
  operators: [ops-lead]
"""
    )
    monkeypatch.setenv("STEPWATCH_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.topic == "n8n-events"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.calendar.timezone == "America/New_York"
    assert config.calendar.open == time(8, 30)
    assert config.calendar.close == time(17, 0)
    assert config.calendar.holidays == [date(2024, 7, 4)]
    assert config.sla.thresholds.yellow == 40
    assert config.sla.thresholds.red == 100
    assert config.notifications.operators == ["ops-lead"]


def test_defaults_without_config_file():
    config = load_config()

    assert config.transport.backend == "inmemory"
    assert config.database_url is None
    assert config.calendar.workdays == [1, 2, 3, 4, 5]
    assert config.sla.default_sla_hours == 24.0
    assert config.audit.max_attempts == 3


def test_env_overrides_database_url(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("STEPWATCH_CONFIG", str(config_path))
    monkeypatch.setenv("STEPWATCH_DATABASE_URL", "sqlite:///from-env.db")

    assert load_config().database_url == "sqlite:///from-env.db"


@pytest.mark.parametrize(
    "calendar",
    [
        {"open": "17:00", "close": "09:00"},
        {"workdays": [0, 1]},
        {"workdays": []},
    ],
)
def test_invalid_calendar_rejected(calendar):
    with pytest.raises(ValidationError):
        CalendarConfig(**calendar)


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("STEPWATCH_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_transport_env_override(monkeypatch):
    monkeypatch.setenv("STEPWATCH_TRANSPORT", "inmemory")

    assert isinstance(get_transport(), InMemoryTransport)
    with pytest.raises(ValueError):
        get_transport("kafka")


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryEngineRepository)
    # cached until an explicit url or config is given
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite://{tmp_path / 'engine.db'}")
    assert isinstance(repo, SQLiteEngineRepository)
    assert (tmp_path / "engine.db").exists()

    with pytest.raises(ValueError):
        get_repository("mysql://nope")


def test_get_repository_reads_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")

    assert isinstance(get_repository(), SQLiteEngineRepository)
