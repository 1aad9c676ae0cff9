"""Parsing behaviour for inbound device messages."""

from __future__ import annotations

import pytest

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
from models.records import ConnectionStatus, SensorKind


@pytest.mark.parametrize(
    ("raw", "expected_type", "kind"),
    [
        ('{"sensor":"mq7","raw":512,"voltage":0.45,"level":"Moderate"}', CoPayload, SensorKind.co),
        ('{"sensor":"flame","detected":false}', FlamePayload, SensorKind.flame),
        (
            '{"sensor":"dht22","temp":21.5,"humidity":48.0,"tempStatus":"Comfortable"}',
            HumidityTempPayload,
            SensorKind.humidity_temp,
        ),
        ('{"sensor":"pm25","dust":0.02}', ParticulatePayload, SensorKind.particulate),
        ('{"sensor":"se95","temp":22}', SecondaryTempPayload, SensorKind.secondary_temp),
    ],
)
def test_parse_sensor_payload_dispatches_on_discriminator(raw, expected_type, kind) -> None:
    message = parse_sensor_payload(raw)

    assert isinstance(message, expected_type)
    assert message.kind is kind


def test_parse_sensor_payload_accepts_bytes_and_ignores_unknown_fields() -> None:
    message = parse_sensor_payload(b'{"sensor":"se95","temp":19.5,"firmware":"1.2"}')

    assert isinstance(message, SecondaryTempPayload)
    assert message.temp == 19.5
    assert message.status is None


def test_humidity_temp_payload_reads_camel_case_status_fields() -> None:
    message = parse_sensor_payload(
        '{"sensor":"dht22","temp":null,"humidity":65.0,"humidStatus":"Humid"}'
    )

    assert isinstance(message, HumidityTempPayload)
    assert message.temp is None
    assert message.humid_status == "Humid"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '{"temp": 21.0}',
        '{"sensor":"bmp280","pressure":1013}',
        '{"sensor":"mq7"}',
        '{"sensor":"mq7","voltage":"0.4"}',
        '{"sensor":"flame"}',
        '{"sensor":"dht22","temp":21.0}',
        '{"sensor":"pm25","dust":true}',
        '{"sensor":"se95","temp":NaN}',
        '{"sensor":"pm25","dust":Infinity}',
        '{"sensor":"mq7","voltage":-Infinity}',
    ],
)
def test_parse_sensor_payload_rejects_malformed_messages(raw: str) -> None:
    with pytest.raises(MalformedPayload):
        parse_sensor_payload(raw)


def test_malformed_payload_reason_names_the_offending_field() -> None:
    with pytest.raises(MalformedPayload) as excinfo:
        parse_sensor_payload('{"sensor":"se95","temp":"warm"}')

    assert "temp" in str(excinfo.value)


def test_decode_payload_rejects_invalid_utf8() -> None:
    with pytest.raises(MalformedPayload):
        decode_payload(b"\xff\xfe\xfa")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (b"online", ConnectionStatus.online),
        ("offline", ConnectionStatus.offline),
        (b" ONLINE\n", ConnectionStatus.online),
    ],
)
def test_parse_status_token(raw, expected) -> None:
    assert parse_status_token(raw) is expected


def test_parse_status_token_rejects_unknown_values() -> None:
    with pytest.raises(MalformedPayload):
        parse_status_token("rebooting")


def test_sensor_kind_control_keys() -> None:
    assert SensorKind.humidity_temp.control_key == "dht"
    assert SensorKind.from_control_key("dht") is SensorKind.humidity_temp
    assert SensorKind.from_control_key("dht22") is SensorKind.humidity_temp
    assert SensorKind.from_control_key("pm25") is SensorKind.particulate
    with pytest.raises(ValueError):
        SensorKind.from_control_key("bmp280")
