from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Iterator, List

import pytest

from app.schemas import Snapshot
from datastore.timeseries import PersistenceError, TimeSeriesStore
from models.records import AlertType, ConnectionStatus, SensorKind, SeriesKey
from services.reducer import StateReducer
from settings import Topics

TOPICS = Topics.from_prefix("home/sensors")
AT = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.published: List[Snapshot] = []
        self._lock = Lock()

    def publish(self, snapshot: Snapshot) -> None:
        with self._lock:
            self.published.append(snapshot)


@pytest.fixture()
def store() -> Iterator[TimeSeriesStore]:
    instance = TimeSeriesStore()
    yield instance
    instance.close()


@pytest.fixture()
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture()
def reducer(store: TimeSeriesStore, broadcaster: RecordingBroadcaster) -> Iterator[StateReducer]:
    instance = StateReducer(store, broadcaster, TOPICS)
    yield instance
    instance.shutdown()


def _series(store: TimeSeriesStore, key: SeriesKey) -> list:
    return store.readings(key, hours=24 * 365, now=AT + timedelta(hours=1))


def test_initial_snapshot_is_empty_and_offline(reducer: StateReducer, broadcaster) -> None:
    snapshot = reducer.snapshot()

    assert snapshot.status is ConnectionStatus.offline
    assert snapshot.last_update is None
    assert snapshot.mq7.voltage is None
    assert snapshot.average_temperature is None
    assert snapshot.polling_rate == 1000
    assert snapshot.sensors_enabled == {"mq7": True, "flame": True, "dht": True, "pm25": True, "se95": True}
    assert len(broadcaster.published) == 1


def test_apply_updates_only_the_reported_sensor(reducer: StateReducer, store, broadcaster) -> None:
    before = reducer.snapshot()

    result = reducer.apply(TOPICS.sensors, b'{"sensor":"mq7","raw":410,"voltage":0.45}', AT)

    assert result.updated is True
    assert result.error is None
    after = reducer.snapshot()
    assert after.mq7.voltage == 0.45
    assert after.mq7.raw == 410
    assert after.mq7.level == "Moderate"
    assert after.mq7.timestamp == AT
    assert after.status is ConnectionStatus.online
    assert after.last_update == AT
    for name in ("flame", "dht22", "pm25", "se95"):
        assert getattr(after, name) == getattr(before, name)
    assert broadcaster.published[-1] == after

    reducer.flush(timeout=5)
    (stored,) = _series(store, SeriesKey.co_level)
    assert stored.value == 0.45
    assert stored.unit == "V"
    assert stored.status == "Moderate"


def test_device_supplied_labels_take_precedence(reducer: StateReducer) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"mq7","voltage":0.1,"level":"High"}', AT)

    assert reducer.snapshot().mq7.level == "High"


@pytest.mark.parametrize(
    "payload",
    [
        b"{not json",
        b'{"sensor":"bmp280","pressure":1000}',
        b'{"sensor":"se95"}',
        b"\xff\xfe",
        b'{"sensor":"se95","temp":NaN}',
        b'{"sensor":"pm25","dust":Infinity}',
    ],
)
def test_malformed_payload_leaves_state_and_store_untouched(
    reducer: StateReducer, store, broadcaster, payload: bytes, caplog
) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"se95","temp":21.0}', AT)
    reducer.flush(timeout=5)
    before = reducer.snapshot()
    published = len(broadcaster.published)

    with caplog.at_level(logging.WARNING, logger="services.reducer"):
        result = reducer.apply(TOPICS.sensors, payload, AT + timedelta(minutes=5))

    assert result.updated is False
    assert result.error is not None
    assert reducer.snapshot() == before
    assert reducer.snapshot().last_update == AT
    assert len(broadcaster.published) == published
    reducer.flush(timeout=5)
    assert len(_series(store, SeriesKey.temperature_se95)) == 1
    assert _series(store, SeriesKey.air_quality) == []
    assert store.recent_alerts() == []
    assert any(record.getMessage() == "Dropping malformed message" for record in caplog.records)


def test_unrecognized_topic_is_rejected(reducer: StateReducer) -> None:
    result = reducer.apply("home/sensors/other", '{"sensor":"se95","temp":21.0}', AT)

    assert result.updated is False
    assert reducer.snapshot().se95.temp is None


def test_status_topic_sets_connectivity(reducer: StateReducer) -> None:
    assert reducer.apply(TOPICS.status, b"online", AT).updated is True
    assert reducer.snapshot().status is ConnectionStatus.online
    assert reducer.snapshot().last_update is None

    reducer.apply(TOPICS.status, b"offline", AT)
    assert reducer.snapshot().status is ConnectionStatus.offline


def test_humidity_temp_reading_writes_two_series(reducer: StateReducer, store) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"dht22","temp":22.5,"humidity":64.0}', AT)
    reducer.flush(timeout=5)

    snapshot = reducer.snapshot()
    assert snapshot.dht22.temp_status == "Comfortable"
    assert snapshot.dht22.humid_status == "Humid"
    (temperature,) = _series(store, SeriesKey.temperature_dht22)
    (humidity,) = _series(store, SeriesKey.humidity)
    assert temperature.value == 22.5
    assert humidity.value == 64.0
    assert humidity.unit == "%"


def test_humidity_temp_with_null_values_stores_nulls(reducer: StateReducer, store) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"dht22","temp":null,"humidity":null}', AT)
    reducer.flush(timeout=5)

    snapshot = reducer.snapshot()
    assert snapshot.dht22.temperature is None
    assert snapshot.dht22.temp_status == ""
    (temperature,) = _series(store, SeriesKey.temperature_dht22)
    assert temperature.value is None


@pytest.mark.parametrize(
    ("first", "second", "expected"),
    [
        (14.9, 14.9, "Cold"),
        (15.0, 15.0, "Cool"),
        (19.9, 19.9, "Cool"),
        (20.0, 20.0, "Comfortable"),
        (24.9, 24.9, "Comfortable"),
        (25.0, 25.0, "Warm"),
        (29.9, 29.9, "Warm"),
        (30.0, 30.0, "Hot"),
        (18.0, 22.0, "Comfortable"),
    ],
)
def test_average_temperature_band_edges(reducer: StateReducer, first, second, expected) -> None:
    reducer.apply(TOPICS.sensors, json.dumps({"sensor": "dht22", "temp": first, "humidity": 40.0}), AT)
    reducer.apply(TOPICS.sensors, json.dumps({"sensor": "se95", "temp": second}), AT)

    average = reducer.snapshot().average_temperature
    assert average is not None
    assert average.temp == pytest.approx((first + second) / 2)
    assert average.status == expected


def test_average_temperature_requires_both_sources(reducer: StateReducer) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"se95","temp":21.0}', AT)
    assert reducer.snapshot().average_temperature is None

    reducer.apply(TOPICS.sensors, '{"sensor":"dht22","temp":23.0,"humidity":40.0}', AT)
    assert reducer.snapshot().average_temperature.temp == 22.0

    reducer.apply(TOPICS.sensors, '{"sensor":"dht22","temp":null,"humidity":40.0}', AT)
    assert reducer.snapshot().average_temperature.temp == 22.0


def test_fire_reading_stores_alert(reducer: StateReducer, store, caplog) -> None:
    with caplog.at_level(logging.WARNING, logger="services.reducer"):
        result = reducer.apply(TOPICS.sensors, '{"sensor":"flame","detected":true}', AT)
        reducer.flush(timeout=5)

    assert [alert.alert_type for alert in result.alerts] == [AlertType.fire]
    snapshot = reducer.snapshot()
    assert snapshot.flame.detected is True
    assert snapshot.flame.status == "FIRE DETECTED"
    (alert,) = store.recent_alerts()
    assert alert.id is not None
    assert alert.timestamp == AT
    (flame,) = _series(store, SeriesKey.flame)
    assert flame.value == 1.0
    assert any(getattr(record, "alert_id", None) == alert.id for record in caplog.records)


def test_flame_status_only_payload_infers_detection(reducer: StateReducer) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"flame","status":"Normal"}', AT)

    assert reducer.snapshot().flame.detected is False


def test_storage_failure_does_not_block_live_updates(broadcaster: RecordingBroadcaster, caplog) -> None:
    class FailingStore(TimeSeriesStore):
        def append(self, reading) -> None:
            raise PersistenceError("disk full")

    failing = FailingStore()
    reducer = StateReducer(failing, broadcaster, TOPICS)
    try:
        with caplog.at_level(logging.ERROR, logger="services.reducer"):
            result = reducer.apply(TOPICS.sensors, '{"sensor":"pm25","dust":0.02}', AT)
            reducer.flush(timeout=5)
    finally:
        reducer.shutdown()
        failing.close()

    assert result.updated is True
    assert broadcaster.published[-1].pm25.quality == "Moderate"
    assert any(record.getMessage() == "Failed to store reading" for record in caplog.records)


def test_concurrent_applies_never_publish_torn_snapshots(reducer: StateReducer, store, broadcaster) -> None:
    def send(value: int) -> None:
        reducer.apply(
            TOPICS.sensors,
            json.dumps({"sensor": "dht22", "temp": float(value), "humidity": float(value)}),
            AT + timedelta(seconds=value),
        )
        reducer.apply(TOPICS.sensors, json.dumps({"sensor": "se95", "temp": float(value)}), AT)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(send, range(50)))
    reducer.flush(timeout=10)

    assert len(broadcaster.published) == 1 + 100
    for snapshot in broadcaster.published[1:]:
        assert snapshot.dht22.temperature == snapshot.dht22.humidity
        assert snapshot.status is ConnectionStatus.online
        if snapshot.average_temperature is not None:
            expected = (snapshot.dht22.temperature + snapshot.se95.temp) / 2
            assert snapshot.average_temperature.temp == pytest.approx(expected)
    assert len(_series(store, SeriesKey.humidity)) == 50
    assert len(_series(store, SeriesKey.temperature_se95)) == 50


def test_expire_if_stale_marks_offline_once(reducer: StateReducer, broadcaster) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"se95","temp":21.0}', AT)
    window = timedelta(seconds=120)

    assert reducer.expire_if_stale(window, now=AT + timedelta(seconds=60)) is False
    assert reducer.expire_if_stale(window, now=AT + timedelta(seconds=121)) is True
    assert reducer.snapshot().status is ConnectionStatus.offline
    assert broadcaster.published[-1].status is ConnectionStatus.offline
    assert reducer.expire_if_stale(window, now=AT + timedelta(seconds=500)) is False


def test_mark_offline_and_command_state(reducer: StateReducer) -> None:
    reducer.apply(TOPICS.status, "online", AT)

    reducer.mark_offline()
    reducer.set_polling_rate(5000)
    reducer.set_sensor_enabled(SensorKind.humidity_temp, False)
    reducer.set_status_led(False)

    snapshot = reducer.snapshot()
    assert snapshot.status is ConnectionStatus.offline
    assert snapshot.polling_rate == 5000
    assert snapshot.sensors_enabled["dht"] is False
    assert snapshot.status_led_enabled is False


def test_snapshot_returns_independent_copies(reducer: StateReducer) -> None:
    copy = reducer.snapshot()
    copy.sensors_enabled["mq7"] = False
    copy.polling_rate = 1

    fresh = reducer.snapshot()
    assert fresh.sensors_enabled["mq7"] is True
    assert fresh.polling_rate == 1000


def test_naive_arrival_times_are_treated_as_utc(reducer: StateReducer) -> None:
    reducer.apply(TOPICS.sensors, '{"sensor":"se95","temp":21.0}', datetime(2024, 5, 10, 9, 0))

    assert reducer.snapshot().last_update == AT
