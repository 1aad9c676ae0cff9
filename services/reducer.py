"""Single-writer reduction of inbound sensor events into the live snapshot.

Every mutation runs under one lock that is held only for the in-memory state
change. While holding it the reducer hands the resulting snapshot copy to the
broadcaster and queues persistence on a single background writer, both of which
return immediately. Queuing inside the lock keeps the stored series and the
broadcast stream in the same order the events were serialized.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from pydantic import BaseModel

from app.schemas import (
    AverageTemperature,
    CoState,
    FlameState,
    HumidityTempState,
    ParticulateState,
    SecondaryTempState,
    Snapshot,
)
from datastore.timeseries import PersistenceError, TimeSeriesStore
from models.payloads import (
    CoPayload,
    FlamePayload,
    HumidityTempPayload,
    MalformedPayload,
    ParticulatePayload,
    SecondaryTempPayload,
    decode_payload,
    parse_sensor_payload,
    parse_status_token,
)
from models.records import Alert, ConnectionStatus, SensorKind, SeriesKey, StoredReading
from services.alerts import AlertEvaluator
from services.classification import (
    FIRE_DETECTED,
    classify_air_quality,
    classify_co,
    classify_flame,
    classify_humidity,
    classify_temperature,
)
from settings import Topics

logger = logging.getLogger(__name__)

_TEMPERATURE_KINDS = frozenset({SensorKind.humidity_temp, SensorKind.secondary_temp})


class SnapshotPublisher(Protocol):
    def publish(self, snapshot: Snapshot) -> None: ...


@dataclass
class ApplyResult:
    updated: bool
    error: Optional[MalformedPayload] = None
    alerts: List[Alert] = field(default_factory=list)


Folded = Tuple[BaseModel, List[StoredReading]]


def _fold_co(message: CoPayload, at: datetime, raw: str) -> Folded:
    level = message.level or classify_co(message.voltage)
    state = CoState(raw=message.raw, voltage=message.voltage, level=level, timestamp=at)
    return state, [
        StoredReading(at, SeriesKey.co_level, message.voltage, "V", level, raw),
    ]


def _fold_flame(message: FlamePayload, at: datetime, raw: str) -> Folded:
    if message.detected is not None:
        detected = message.detected
    else:
        detected = message.status == FIRE_DETECTED
    status = message.status or classify_flame(detected)
    state = FlameState(
        raw=message.raw,
        voltage=message.voltage,
        detected=detected,
        status=status,
        timestamp=at,
    )
    return state, [
        StoredReading(at, SeriesKey.flame, 1.0 if detected else 0.0, "bool", status, raw),
    ]


def _fold_humidity_temp(message: HumidityTempPayload, at: datetime, raw: str) -> Folded:
    temp_status = message.temp_status or (
        classify_temperature(message.temp) if message.temp is not None else ""
    )
    humid_status = message.humid_status or (
        classify_humidity(message.humidity) if message.humidity is not None else ""
    )
    state = HumidityTempState(
        temperature=message.temp,
        humidity=message.humidity,
        temp_status=temp_status,
        humid_status=humid_status,
        timestamp=at,
    )
    return state, [
        StoredReading(at, SeriesKey.temperature_dht22, message.temp, "°C", temp_status or None, raw),
        StoredReading(at, SeriesKey.humidity, message.humidity, "%", humid_status or None, raw),
    ]


def _fold_particulate(message: ParticulatePayload, at: datetime, raw: str) -> Folded:
    quality = message.quality or classify_air_quality(message.dust)
    state = ParticulateState(
        raw=message.raw,
        voltage=message.voltage,
        dust=message.dust,
        quality=quality,
        timestamp=at,
    )
    return state, [
        StoredReading(at, SeriesKey.air_quality, message.dust, "mg/m³", quality, raw),
    ]


def _fold_secondary_temp(message: SecondaryTempPayload, at: datetime, raw: str) -> Folded:
    status = message.status or classify_temperature(message.temp)
    state = SecondaryTempState(temp=message.temp, status=status, timestamp=at)
    return state, [
        StoredReading(at, SeriesKey.temperature_se95, message.temp, "°C", status, raw),
    ]


_FOLDERS: Dict[SensorKind, Callable[..., Folded]] = {
    SensorKind.co: _fold_co,
    SensorKind.flame: _fold_flame,
    SensorKind.humidity_temp: _fold_humidity_temp,
    SensorKind.particulate: _fold_particulate,
    SensorKind.secondary_temp: _fold_secondary_temp,
}


class StateReducer:
    """Owns the snapshot; applies readings, derives alerts, persists, broadcasts."""

    def __init__(
        self,
        store: TimeSeriesStore,
        broadcaster: SnapshotPublisher,
        topics: Topics,
        evaluator: Optional[AlertEvaluator] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.topics = topics
        self.evaluator = evaluator or AlertEvaluator()
        self._snapshot = Snapshot()
        self._lock = Lock()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="telemetry-writer")
        self._pending: Optional[Future[None]] = None
        self._closed = False
        self.broadcaster.publish(self._snapshot.model_copy(deep=True))

    def snapshot(self) -> Snapshot:
        """Consistent copy of the current state."""
        with self._lock:
            return self._snapshot.model_copy(deep=True)

    def apply(
        self,
        topic: str,
        payload: bytes | str,
        arrival_time: Optional[datetime] = None,
    ) -> ApplyResult:
        """Fold one transport event into the snapshot.

        Malformed input is logged and reported in the result; it never raises
        and leaves both the snapshot and the store untouched.
        """
        arrival = arrival_time or datetime.now(timezone.utc)
        if arrival.tzinfo is None:
            arrival = arrival.replace(tzinfo=timezone.utc)
        try:
            if topic == self.topics.sensors:
                return self._apply_reading(payload, arrival)
            if topic == self.topics.status:
                return self._apply_status(parse_status_token(payload))
            raise MalformedPayload(f"unrecognized topic {topic!r}")
        except MalformedPayload as exc:
            logger.warning(
                "Dropping malformed message",
                extra={"topic": topic, "reason": str(exc)},
            )
            return ApplyResult(updated=False, error=exc)

    def mark_offline(self) -> Snapshot:
        """Record a lost device connection reported by the transport."""
        return self._mutate(lambda snapshot: setattr(snapshot, "status", ConnectionStatus.offline))

    def expire_if_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """Flip to ``offline`` when no reading arrived within ``max_age``."""
        moment = now or datetime.now(timezone.utc)
        with self._lock:
            last = self._snapshot.last_update
            if self._snapshot.status is not ConnectionStatus.online or last is None:
                return False
            if moment - last <= max_age:
                return False
            self._snapshot.status = ConnectionStatus.offline
            self.broadcaster.publish(self._snapshot.model_copy(deep=True))
        logger.info("No readings for %s; marking device offline", max_age)
        return True

    def republish(self) -> Snapshot:
        """Broadcast the unchanged snapshot, e.g. after a stateless command."""
        return self._mutate(lambda snapshot: None)

    def set_polling_rate(self, rate_ms: int) -> Snapshot:
        return self._mutate(lambda snapshot: setattr(snapshot, "polling_rate", rate_ms))

    def set_sensor_enabled(self, kind: SensorKind, enabled: bool) -> Snapshot:
        def change(snapshot: Snapshot) -> None:
            snapshot.sensors_enabled[kind.control_key] = enabled

        return self._mutate(change)

    def set_status_led(self, enabled: bool) -> Snapshot:
        return self._mutate(lambda snapshot: setattr(snapshot, "status_led_enabled", enabled))

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued write has been attempted."""
        with self._lock:
            pending = self._pending
        if pending is not None:
            pending.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._writer.shutdown(wait=wait)

    def _apply_reading(self, payload: bytes | str, arrival: datetime) -> ApplyResult:
        text = decode_payload(payload)
        message = parse_sensor_payload(text)
        kind = message.kind
        record, readings = _FOLDERS[kind](message, arrival, text)
        alerts = self.evaluator.evaluate(kind, record, arrival)

        with self._lock:
            setattr(self._snapshot, kind.value, record)
            self._snapshot.status = ConnectionStatus.online
            self._snapshot.last_update = arrival
            if kind in _TEMPERATURE_KINDS:
                self._refresh_average()
            self._enqueue_writes(readings, alerts)
            self.broadcaster.publish(self._snapshot.model_copy(deep=True))

        logger.debug("Applied reading", extra={"sensor": kind.value})
        return ApplyResult(updated=True, alerts=alerts)

    def _apply_status(self, status: ConnectionStatus) -> ApplyResult:
        self._mutate(lambda snapshot: setattr(snapshot, "status", status))
        logger.info("Device reported status %s", status.value)
        return ApplyResult(updated=True)

    def _mutate(self, change: Callable[[Snapshot], None]) -> Snapshot:
        with self._lock:
            change(self._snapshot)
            published = self._snapshot.model_copy(deep=True)
            self.broadcaster.publish(published)
        return published

    def _refresh_average(self) -> None:
        first = self._snapshot.dht22.temperature
        second = self._snapshot.se95.temp
        if first is None or second is None:
            return
        average = (first + second) / 2
        self._snapshot.average_temperature = AverageTemperature(
            temp=average, status=classify_temperature(average)
        )

    def _enqueue_writes(self, readings: Sequence[StoredReading], alerts: Sequence[Alert]) -> None:
        if self._closed:
            logger.warning("Writer is shut down; discarding %d readings", len(readings))
            return
        self._pending = self._writer.submit(self._persist, list(readings), list(alerts))

    def _persist(self, readings: List[StoredReading], alerts: List[Alert]) -> None:
        for reading in readings:
            try:
                self.store.append(reading)
            except PersistenceError as exc:
                logger.error(
                    "Failed to store reading",
                    extra={"series_key": reading.series_key.value, "reason": str(exc)},
                )
        for alert in alerts:
            try:
                stored = self.store.append_alert(alert)
            except PersistenceError as exc:
                logger.error(
                    "Failed to store alert",
                    extra={"alert_type": alert.alert_type.value, "reason": str(exc)},
                )
                continue
            logger.warning(
                alert.message,
                extra={
                    "alert_id": stored.id,
                    "alert_type": stored.alert_type.value,
                    "severity": stored.severity.value,
                },
            )
