from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


_DB_PATH_ENV = "TELEMETRY_DB_PATH"
_BROKER_ENV = "MQTT_BROKER"
_PORT_ENV = "MQTT_PORT"
_USER_ENV = "MQTT_USER"
_PASSWORD_ENV = "MQTT_PASSWORD"
_TOPIC_PREFIX_ENV = "MQTT_TOPIC_PREFIX"
_RETENTION_ENV = "RETENTION_DAYS"
_PRUNE_INTERVAL_ENV = "PRUNE_INTERVAL_HOURS"
_STALE_AFTER_ENV = "STALE_AFTER_SECONDS"
_LOG_LEVEL_ENV = "LOG_LEVEL"


@dataclass(frozen=True)
class Topics:
    """Publish/subscribe channel names shared by the device and the service."""

    sensors: str
    status: str
    control_rate: str
    control_enable: str
    control_buzzer: str
    control_led: str

    @classmethod
    def from_prefix(cls, prefix: str) -> "Topics":
        base = prefix.rstrip("/")
        return cls(
            sensors=f"{base}/data",
            status=f"{base}/status",
            control_rate=f"{base}/control/rate",
            control_enable=f"{base}/control/enable",
            control_buzzer=f"{base}/control/buzzer",
            control_led=f"{base}/control/led",
        )


@dataclass(frozen=True)
class Settings:
    db_path: Optional[str]
    mqtt_broker: str
    mqtt_port: int
    mqtt_user: Optional[str]
    mqtt_password: Optional[str]
    topic_prefix: str
    retention_days: int
    prune_interval_hours: float
    stale_after_seconds: float
    log_level: str

    @property
    def topics(self) -> Topics:
        return Topics.from_prefix(self.topic_prefix)


def _read_str_env(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or default


def _read_optional_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate or None


def _read_int_env(name: str, default: int, minimum: int = 1) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_float_env(name: str, default: float, minimum: float = 0.0) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_log_level(default: str) -> str:
    value = os.getenv(_LOG_LEVEL_ENV)
    if value is None:
        return default
    candidate = value.strip()
    if not candidate:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    prune_interval = _read_float_env(_PRUNE_INTERVAL_ENV, 24.0)
    return Settings(
        db_path=_read_optional_env(_DB_PATH_ENV, "./tmp/telemetry.db"),
        mqtt_broker=_read_str_env(_BROKER_ENV, "localhost"),
        mqtt_port=_read_int_env(_PORT_ENV, 1883),
        mqtt_user=_read_optional_env(_USER_ENV, None),
        mqtt_password=_read_optional_env(_PASSWORD_ENV, None),
        topic_prefix=_read_str_env(_TOPIC_PREFIX_ENV, "home/sensors"),
        retention_days=_read_int_env(_RETENTION_ENV, 30, minimum=0),
        prune_interval_hours=prune_interval if prune_interval > 0 else 24.0,
        stale_after_seconds=_read_float_env(_STALE_AFTER_ENV, 120.0),
        log_level=_read_log_level("INFO"),
    )
