from __future__ import annotations

import os
from datetime import date, time
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Inbound event channel settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = "orchestrator-events"
    redis: RedisConfig = RedisConfig()


class CalendarConfig(BaseModel):
    """Weekly business calendar used by the SLA clock."""

    timezone: str = "UTC"
    # ISO weekdays, Monday=1 .. Sunday=7
    workdays: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    open: time = time(9, 0)
    close: time = time(17, 0)
    holidays: List[date] = Field(default_factory=list)

    @field_validator("open", "close", mode="before")
    @classmethod
    def _sexagesimal_time(cls, v):
        # unquoted YAML values like 17:00 load as base-60 integers
        if isinstance(v, int):
            return time(v // 60, v % 60)
        return v

    @field_validator("workdays")
    @classmethod
    def _valid_workdays(cls, v: List[int]) -> List[int]:
        if not v or any(day < 1 or day > 7 for day in v):
            raise ValueError("workdays must be ISO weekday numbers 1-7")
        return sorted(set(v))

    @model_validator(mode="after")
    def _open_before_close(self) -> "CalendarConfig":
        if self.open >= self.close:
            raise ValueError("calendar open time must be before close time")
        return self


class SlaThresholds(BaseModel):
    """Percent-of-SLA-elapsed boundaries for each risk level."""

    yellow: int = 50
    orange: int = 80
    red: int = 100

    @model_validator(mode="after")
    def _ordered(self) -> "SlaThresholds":
        if not 0 < self.yellow < self.orange < self.red:
            raise ValueError("thresholds must satisfy 0 < yellow < orange < red")
        return self


class SlaConfig(BaseModel):
    default_sla_hours: float = 24.0
    thresholds: SlaThresholds = SlaThresholds()
    sweep_interval_seconds: float = 900.0


class NotificationConfig(BaseModel):
    """Operators that receive SLA and interrupt alerts."""

    operators: List[str] = Field(default_factory=list)


class AuditConfig(BaseModel):
    enabled: bool = True
    max_attempts: int = 3
    backoff_base: float = 1.5
    backoff_jitter: float = 0.5


class StepwatchConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    blueprints_path: Optional[str] = None
    calendar: CalendarConfig = CalendarConfig()
    sla: SlaConfig = SlaConfig()
    notifications: NotificationConfig = NotificationConfig()
    audit: AuditConfig = AuditConfig()


def load_config(path: Optional[str] = None) -> StepwatchConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPWATCH_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPWATCH_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepwatchConfig(**data)
    else:
        config = StepwatchConfig()

    env_db_url = os.getenv("STEPWATCH_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_blueprints = os.getenv("STEPWATCH_BLUEPRINTS")
    if env_blueprints:
        config.blueprints_path = env_blueprints
    return config
