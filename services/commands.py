"""Operator commands forwarded to the device."""

from __future__ import annotations

import json
import logging
from threading import Lock
from typing import Any, Protocol

from app.schemas import MAX_POLLING_RATE_MS, MIN_POLLING_RATE_MS
from models.records import SensorKind
from services.reducer import StateReducer
from settings import Topics

logger = logging.getLogger(__name__)

BUZZER_COMMANDS = ("alarm", "warning", "test", "off")


class CommandRejected(ValueError):
    """A command failed validation; nothing was changed or published."""


class OutOfRange(CommandRejected):
    pass


class UnknownSensor(CommandRejected):
    pass


class UnknownCommand(CommandRejected):
    pass


class InvalidType(CommandRejected):
    pass


class Publisher(Protocol):
    def publish(self, topic: str, payload: str) -> None: ...


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise InvalidType(f"{name} must be a boolean.")
    return value


class CommandRouter:
    """Validates commands, updates the snapshot optimistically and forwards them.

    Every method raises a ``CommandRejected`` subclass before touching state when
    its input is invalid. Snapshot changes and forwarded messages are applied
    in the same order under a command-level lock.
    """

    def __init__(self, reducer: StateReducer, publisher: Publisher, topics: Topics) -> None:
        self.reducer = reducer
        self.publisher = publisher
        self.topics = topics
        self._lock = Lock()

    def set_polling_rate(self, rate_ms: Any) -> int:
        if isinstance(rate_ms, bool) or not isinstance(rate_ms, int):
            raise InvalidType("rate must be an integer number of milliseconds.")
        if not MIN_POLLING_RATE_MS <= rate_ms <= MAX_POLLING_RATE_MS:
            raise OutOfRange(
                f"Invalid rate. Must be between {MIN_POLLING_RATE_MS} and "
                f"{MAX_POLLING_RATE_MS} ms"
            )
        with self._lock:
            self.reducer.set_polling_rate(rate_ms)
            self._forward(self.topics.control_rate, str(rate_ms), "rate")
        logger.info("Polling rate changed to %dms", rate_ms, extra={"command": "rate"})
        return rate_ms

    def set_sensor_enabled(self, sensor: Any, enabled: Any) -> SensorKind:
        if not isinstance(sensor, str):
            raise UnknownSensor("Invalid sensor name")
        try:
            kind = SensorKind.from_control_key(sensor)
        except ValueError as exc:
            raise UnknownSensor("Invalid sensor name") from exc
        flag = _require_bool("enabled", enabled)
        payload = json.dumps({"sensor": kind.control_key, "enabled": flag})
        with self._lock:
            self.reducer.set_sensor_enabled(kind, flag)
            self._forward(self.topics.control_enable, payload, "enable")
        return kind

    def trigger_buzzer(self, command: Any) -> str:
        if command not in BUZZER_COMMANDS:
            raise UnknownCommand("Invalid command. Use: alarm, warning, test, or off")
        with self._lock:
            self._forward(self.topics.control_buzzer, command, "buzzer")
            self.reducer.republish()
        logger.info("Buzzer command sent: %s", command, extra={"command": "buzzer"})
        return command

    def set_indicator(self, enabled: Any) -> bool:
        flag = _require_bool("enabled", enabled)
        with self._lock:
            self.reducer.set_status_led(flag)
            self._forward(self.topics.control_led, "on" if flag else "off", "led")
        return flag

    def _forward(self, topic: str, payload: str, command: str) -> None:
        self.publisher.publish(topic, payload)
        logger.debug("Forwarded command", extra={"topic": topic, "command": command})
