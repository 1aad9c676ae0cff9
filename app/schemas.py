"""Pydantic schemas for the snapshot and the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.records import ConnectionStatus, SensorKind

DEFAULT_POLLING_RATE_MS = 1000
MIN_POLLING_RATE_MS = 100
MAX_POLLING_RATE_MS = 60000


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CoState(CamelModel):
    raw: Optional[int] = None
    voltage: Optional[float] = None
    level: str = ""
    timestamp: Optional[datetime] = None


class FlameState(CamelModel):
    raw: Optional[int] = None
    voltage: Optional[float] = None
    detected: Optional[bool] = None
    status: str = ""
    timestamp: Optional[datetime] = None


class HumidityTempState(CamelModel):
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    temp_status: str = ""
    humid_status: str = ""
    timestamp: Optional[datetime] = None


class ParticulateState(CamelModel):
    raw: Optional[int] = None
    voltage: Optional[float] = None
    dust: Optional[float] = None
    quality: str = ""
    timestamp: Optional[datetime] = None


class SecondaryTempState(CamelModel):
    temp: Optional[float] = None
    status: str = ""
    timestamp: Optional[datetime] = None


class AverageTemperature(CamelModel):
    temp: float
    status: str


def _default_enabled() -> Dict[str, bool]:
    return {kind.control_key: True for kind in SensorKind}


class Snapshot(CamelModel):
    """Authoritative current state across all sensors."""

    mq7: CoState = Field(default_factory=CoState)
    flame: FlameState = Field(default_factory=FlameState)
    dht22: HumidityTempState = Field(default_factory=HumidityTempState)
    pm25: ParticulateState = Field(default_factory=ParticulateState)
    se95: SecondaryTempState = Field(default_factory=SecondaryTempState)
    average_temperature: Optional[AverageTemperature] = None
    status: ConnectionStatus = ConnectionStatus.offline
    last_update: Optional[datetime] = None
    polling_rate: int = DEFAULT_POLLING_RATE_MS
    sensors_enabled: Dict[str, bool] = Field(default_factory=_default_enabled)
    status_led_enabled: bool = True


class HistoryPoint(CamelModel):
    timestamp: datetime
    value: Optional[float] = None
    status: Optional[str] = None


class HistoryResponse(CamelModel):
    series_key: str
    hours: float
    bucket_minutes: int = Field(..., ge=0)
    data: List[HistoryPoint] = Field(default_factory=list)


class StatisticsResponse(CamelModel):
    min: Optional[float] = None
    max: Optional[float] = None
    avg: Optional[float] = None
    count: int = Field(..., ge=0)


class AlertRecord(BaseModel):
    """Persisted alert as exposed to clients."""

    id: int
    timestamp: datetime
    alert_type: str
    message: str
    severity: str
    acknowledged: bool = False


class AlertsResponse(BaseModel):
    alerts: List[AlertRecord] = Field(default_factory=list)


class AcknowledgeResponse(BaseModel):
    success: bool


# Command bodies stay loosely typed so the command router owns validation.
class RateCommand(BaseModel):
    rate: Any = Field(None, description="Polling interval in milliseconds (100-60000).")


class EnableCommand(BaseModel):
    sensor: Any = Field(None, description="Sensor control key: mq7, flame, dht, pm25 or se95.")
    enabled: Any = Field(None, description="Whether the sensor should report readings.")


class BuzzerCommand(BaseModel):
    command: Any = Field(None, description="One of alarm, warning, test, off.")


class LedCommand(BaseModel):
    enabled: Any = Field(None, description="Whether the status LED should blink.")


class RateResponse(BaseModel):
    success: bool
    rate: int


class EnableResponse(BaseModel):
    success: bool
    sensor: str
    enabled: bool


class BuzzerResponse(BaseModel):
    success: bool
    command: str


class LedResponse(BaseModel):
    success: bool
    enabled: bool
