"""Inbound message shapes delivered by the device over the sensor-data topic."""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    Strict,
    StrictBool,
    StrictInt,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from models.records import ConnectionStatus, SensorKind

StrictNumber = Annotated[float, Strict()]


class MalformedPayload(ValueError):
    """Raised when an inbound message cannot be folded into the snapshot."""


class _SensorPayload(BaseModel):
    model_config = ConfigDict(
        extra="ignore", frozen=True, populate_by_name=True, allow_inf_nan=False
    )

    @property
    def kind(self) -> SensorKind:
        return SensorKind(self.sensor)  # type: ignore[attr-defined]


class CoPayload(_SensorPayload):
    sensor: Literal["mq7"]
    voltage: StrictNumber
    raw: Optional[StrictInt] = None
    level: Optional[str] = None


class FlamePayload(_SensorPayload):
    sensor: Literal["flame"]
    detected: Optional[StrictBool] = None
    status: Optional[str] = None
    raw: Optional[StrictInt] = None
    voltage: Optional[StrictNumber] = None

    @model_validator(mode="after")
    def _require_signal(self) -> "FlamePayload":
        if self.detected is None and self.status is None:
            raise ValueError("flame payload needs 'detected' or 'status'")
        return self


class HumidityTempPayload(_SensorPayload):
    sensor: Literal["dht22"]
    temp: Optional[StrictNumber]
    humidity: Optional[StrictNumber]
    temp_status: Optional[str] = Field(default=None, alias="tempStatus")
    humid_status: Optional[str] = Field(default=None, alias="humidStatus")


class ParticulatePayload(_SensorPayload):
    sensor: Literal["pm25"]
    dust: StrictNumber
    raw: Optional[StrictInt] = None
    voltage: Optional[StrictNumber] = None
    quality: Optional[str] = None


class SecondaryTempPayload(_SensorPayload):
    sensor: Literal["se95"]
    temp: StrictNumber
    status: Optional[str] = None


SensorPayload = Annotated[
    Union[
        CoPayload,
        FlamePayload,
        HumidityTempPayload,
        ParticulatePayload,
        SecondaryTempPayload,
    ],
    Field(discriminator="sensor"),
]

_PAYLOAD_ADAPTER: TypeAdapter[SensorPayload] = TypeAdapter(SensorPayload)


def decode_payload(raw: bytes | str) -> str:
    if isinstance(raw, str):
        return raw
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayload("payload is not valid UTF-8") from exc


def parse_sensor_payload(raw: bytes | str) -> SensorPayload:
    """Validate a sensor-data message against the per-kind schemas."""
    text = decode_payload(raw)
    try:
        return _PAYLOAD_ADAPTER.validate_json(text)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        reason = first.get("msg", "invalid payload")
        if location:
            reason = f"{location}: {reason}"
        raise MalformedPayload(reason) from exc


def parse_status_token(raw: bytes | str) -> ConnectionStatus:
    token = decode_payload(raw).strip().lower()
    try:
        return ConnectionStatus(token)
    except ValueError as exc:
        raise MalformedPayload(f"unknown status token {token!r}") from exc
