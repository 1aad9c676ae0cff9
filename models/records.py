"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SensorKind(str, Enum):
    """Sensors attached to the device, valued by their wire discriminator."""

    co = "mq7"
    flame = "flame"
    humidity_temp = "dht22"
    particulate = "pm25"
    secondary_temp = "se95"

    @property
    def control_key(self) -> str:
        """Name the device firmware expects in enable/disable commands."""
        if self is SensorKind.humidity_temp:
            return "dht"
        return self.value

    @classmethod
    def from_control_key(cls, name: str) -> "SensorKind":
        for kind in cls:
            if name in (kind.value, kind.control_key):
                return kind
        raise ValueError(f"Unknown sensor {name!r}.")


class SeriesKey(str, Enum):
    """Logical time series persisted by the store."""

    co_level = "co_level"
    flame = "flame"
    temperature_dht22 = "temperature_dht22"
    temperature_se95 = "temperature_se95"
    humidity = "humidity"
    air_quality = "air_quality"


class ConnectionStatus(str, Enum):
    online = "online"
    offline = "offline"


class AlertType(str, Enum):
    fire = "FIRE"
    co = "CO"
    air_quality = "AIR_QUALITY"


class Severity(str, Enum):
    warning = "warning"
    critical = "critical"


@dataclass(frozen=True, slots=True)
class StoredReading:
    """One persisted measurement row."""

    timestamp: datetime
    series_key: SeriesKey
    value: Optional[float]
    unit: Optional[str] = None
    status: Optional[str] = None
    raw_payload: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Alert:
    """A threshold-crossing notification; ``id`` is assigned on insert."""

    timestamp: datetime
    alert_type: AlertType
    message: str
    severity: Severity
    acknowledged: bool = False
    id: Optional[int] = None
