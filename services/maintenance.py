"""Periodic housekeeping: retention pruning and the staleness watchdog."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Thread
from typing import Optional

from datastore.timeseries import PersistenceError, TimeSeriesStore
from services.reducer import StateReducer

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Background thread that prunes old rows and expires a silent device."""

    def __init__(
        self,
        store: TimeSeriesStore,
        reducer: StateReducer,
        retention_days: int = 30,
        prune_interval: timedelta = timedelta(hours=24),
        stale_after: Optional[timedelta] = None,
        tick_seconds: float = 1.0,
    ) -> None:
        self.store = store
        self.reducer = reducer
        self.retention_days = retention_days
        self.prune_interval = prune_interval
        self.stale_after = stale_after
        self.tick_seconds = tick_seconds
        self._next_prune: Optional[datetime] = None
        self._stop = Event()
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = Thread(target=self._run, name="telemetry-maintenance", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_pending(self, now: Optional[datetime] = None) -> None:
        moment = now or datetime.now(timezone.utc)
        if self._next_prune is None or moment >= self._next_prune:
            self.prune(moment)
            self._next_prune = moment + self.prune_interval
        if self.stale_after is not None:
            self.reducer.expire_if_stale(self.stale_after, now=moment)

    def prune(self, now: Optional[datetime] = None) -> None:
        try:
            readings, alerts = self.store.prune(self.retention_days, now=now)
        except PersistenceError as exc:
            logger.error("Retention pruning failed", extra={"reason": str(exc)})
            return
        logger.info(
            "Pruned data older than %d days",
            self.retention_days,
            extra={"deleted_readings": readings, "deleted_alerts": alerts},
        )

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_pending()
            except Exception:  # noqa: BLE001 - housekeeping must outlive a bad tick
                logger.exception("Maintenance tick failed")
            self._stop.wait(self.tick_seconds)
