"""Wiring of the telemetry pipeline and its lifecycle."""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Callable, Optional, Protocol

from datastore.timeseries import TimeSeriesStore, build_default_store
from services.alerts import AlertEvaluator
from services.broadcaster import Broadcaster
from services.commands import CommandRouter
from services.maintenance import MaintenanceScheduler
from services.reducer import StateReducer
from services.transport import MqttTransport
from settings import Topics, get_settings

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def start(self, on_event: Callable[..., Any], on_disconnect: Callable[[], Any]) -> None: ...

    def stop(self) -> None: ...

    def publish(self, topic: str, payload: str) -> None: ...


class TelemetryService:
    """Owns every pipeline component: transport → reducer → store/broadcaster."""

    def __init__(
        self,
        store: TimeSeriesStore,
        transport: Transport,
        topics: Topics,
        broadcaster: Optional[Broadcaster] = None,
        evaluator: Optional[AlertEvaluator] = None,
        retention_days: int = 30,
        prune_interval: timedelta = timedelta(hours=24),
        stale_after: Optional[timedelta] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.topics = topics
        self.broadcaster = broadcaster or Broadcaster()
        self.reducer = StateReducer(
            store=store,
            broadcaster=self.broadcaster,
            topics=topics,
            evaluator=evaluator,
        )
        self.commands = CommandRouter(self.reducer, transport, topics)
        self.maintenance = MaintenanceScheduler(
            store=store,
            reducer=self.reducer,
            retention_days=retention_days,
            prune_interval=prune_interval,
            stale_after=stale_after,
        )
        self._started = False

    def start(self) -> None:
        if self._started:
            return
        self.transport.start(self.reducer.apply, self._on_transport_lost)
        self.maintenance.start()
        self._started = True
        logger.info("Telemetry pipeline started", extra={"topic": self.topics.sensors})

    def shutdown(self) -> None:
        """Stop intake first, then drain pending writes before closing the store."""
        if self._started:
            self.transport.stop()
            self.maintenance.stop()
            self._started = False
        self.reducer.shutdown(wait=True)
        self.broadcaster.close()
        self.store.close()
        logger.info("Telemetry pipeline stopped")

    def _on_transport_lost(self) -> None:
        self.reducer.mark_offline()


@lru_cache
def build_default_telemetry() -> TelemetryService:
    """Factory that wires the service from environment settings."""
    settings = get_settings()
    topics = settings.topics
    transport = MqttTransport(
        broker=settings.mqtt_broker,
        port=settings.mqtt_port,
        topics=topics,
        username=settings.mqtt_user,
        password=settings.mqtt_password,
    )
    stale_after = (
        timedelta(seconds=settings.stale_after_seconds)
        if settings.stale_after_seconds > 0
        else None
    )
    return TelemetryService(
        store=build_default_store(),
        transport=transport,
        topics=topics,
        retention_days=settings.retention_days,
        prune_interval=timedelta(hours=settings.prune_interval_hours),
        stale_after=stale_after,
    )
