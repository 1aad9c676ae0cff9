"""MQTT adapter between the broker and the state reducer."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

import paho.mqtt.client as mqtt

from settings import Topics

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, bytes, datetime], Any]
DisconnectHandler = Callable[[], Any]


class MqttTransport:
    """Subscribes to sensor and status topics and publishes control commands.

    Reconnection is left to paho's network loop; subscriptions are renewed on
    every (re)connect.
    """

    def __init__(
        self,
        broker: str,
        port: int,
        topics: Topics,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        client: Optional[mqtt.Client] = None,
    ) -> None:
        self.broker = broker
        self.port = port
        self.topics = topics
        self.keepalive = keepalive
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"telemetry-hub-{uuid4().hex[:8]}",
            clean_session=True,
        )
        if username:
            self._client.username_pw_set(username, password)
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._on_event: Optional[EventHandler] = None
        self._on_lost: Optional[DisconnectHandler] = None
        self._stopping = False

    def start(self, on_event: EventHandler, on_disconnect: DisconnectHandler) -> None:
        self._on_event = on_event
        self._on_lost = on_disconnect
        self._stopping = False
        logger.info("Connecting to MQTT broker %s:%s", self.broker, self.port)
        self._client.connect_async(self.broker, self.port, self.keepalive)
        self._client.loop_start()

    def stop(self) -> None:
        self._stopping = True
        self._client.disconnect()
        self._client.loop_stop()

    def publish(self, topic: str, payload: str) -> None:
        info = self._client.publish(topic, payload, qos=0)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(
                "Publish failed: %s",
                mqtt.error_string(info.rc),
                extra={"topic": topic},
            )

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            return
        logger.info("Connected to MQTT broker")
        client.subscribe([(self.topics.sensors, 0), (self.topics.status, 0)])

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if self._stopping:
            return
        logger.warning("Lost connection to MQTT broker: %s", reason_code)
        if self._on_lost is not None:
            self._on_lost()

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(message.topic, message.payload, datetime.now(timezone.utc))
        except Exception:  # noqa: BLE001 - keep paho's network loop alive
            logger.exception("Unhandled error while applying message", extra={"topic": message.topic})
