from __future__ import annotations

import sqlite3
from contextlib import contextmanager, suppress
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Iterator, List, Optional, Tuple, Union

from models.records import Alert, AlertType, SeriesKey, Severity, StoredReading
from services.aggregator import (
    Aggregator,
    SeriesPoint,
    SeriesStatistics,
    select_bucket_minutes,
)
from settings import get_settings

MEMORY = ":memory:"
_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sensor_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    series_key TEXT NOT NULL,
    value REAL,
    unit TEXT,
    status TEXT,
    raw_data TEXT
);
CREATE INDEX IF NOT EXISTS idx_readings_timestamp ON sensor_readings(timestamp);
CREATE INDEX IF NOT EXISTS idx_readings_series_timestamp
    ON sensor_readings(series_key, timestamp);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    alert_type TEXT NOT NULL,
    message TEXT NOT NULL,
    severity TEXT NOT NULL,
    acknowledged INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_alerts_timestamp ON alerts(timestamp);
"""


class PersistenceError(RuntimeError):
    """Raised when the underlying database rejects a read or write."""


def format_timestamp(moment: datetime) -> str:
    """Fixed-width UTC ISO-8601 so lexical order matches chronological order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _window_start(now: Optional[datetime], **units: float) -> datetime:
    """``now`` minus the span, clamped to the earliest representable instant."""
    moment = now or datetime.now(timezone.utc)
    try:
        return moment - timedelta(**units)
    except OverflowError:
        return _EARLIEST


def _coerce_series(series_key: Union[SeriesKey, str]) -> SeriesKey:
    try:
        return SeriesKey(series_key)
    except ValueError as exc:
        raise KeyError(f"Unknown series {series_key!r}.") from exc


class TimeSeriesStore:
    """Append-only reading log plus an alert log, backed by SQLite."""

    def __init__(
        self,
        path: Union[Path, str] = MEMORY,
        aggregator: Optional[Aggregator] = None,
    ) -> None:
        self.path = path
        self.aggregator = aggregator or Aggregator()
        self._lock = Lock()
        if str(path) != MEMORY:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def append(self, reading: StoredReading) -> None:
        with self._transaction("append reading") as conn:
            conn.execute(
                "INSERT INTO sensor_readings "
                "(timestamp, series_key, value, unit, status, raw_data) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    format_timestamp(reading.timestamp),
                    reading.series_key.value,
                    reading.value,
                    reading.unit,
                    reading.status,
                    reading.raw_payload,
                ),
            )

    def append_alert(self, alert: Alert) -> Alert:
        with self._transaction("append alert") as conn:
            cursor = conn.execute(
                "INSERT INTO alerts (timestamp, alert_type, message, severity, acknowledged) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    format_timestamp(alert.timestamp),
                    alert.alert_type.value,
                    alert.message,
                    alert.severity.value,
                    int(alert.acknowledged),
                ),
            )
            alert_id = cursor.lastrowid
        return Alert(
            timestamp=alert.timestamp,
            alert_type=alert.alert_type,
            message=alert.message,
            severity=alert.severity,
            acknowledged=alert.acknowledged,
            id=alert_id,
        )

    def readings(
        self,
        series_key: Union[SeriesKey, str],
        hours: float,
        now: Optional[datetime] = None,
    ) -> List[StoredReading]:
        """Rows of one series with ``timestamp >= now - hours``, oldest first."""
        series = _coerce_series(series_key)
        if not hours > 0:
            raise ValueError("hours must be positive.")
        cutoff = _window_start(now, hours=hours)
        with self._transaction("read series") as conn:
            rows = conn.execute(
                "SELECT timestamp, value, unit, status, raw_data FROM sensor_readings "
                "WHERE series_key = ? AND timestamp >= ? "
                "ORDER BY timestamp ASC, id ASC",
                (series.value, format_timestamp(cutoff)),
            ).fetchall()
        return [
            StoredReading(
                timestamp=parse_timestamp(row["timestamp"]),
                series_key=series,
                value=row["value"],
                unit=row["unit"],
                status=row["status"],
                raw_payload=row["raw_data"],
            )
            for row in rows
        ]

    def query(
        self,
        series_key: Union[SeriesKey, str],
        hours: float,
        bucket_minutes: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[int, List[SeriesPoint]]:
        """Return the effective bucket width and the ascending points of a window."""
        if bucket_minutes is None:
            bucket_minutes = select_bucket_minutes(hours)
        rows = self.readings(series_key, hours, now=now)
        return bucket_minutes, self.aggregator.bucketize(rows, bucket_minutes)

    def statistics(
        self,
        series_key: Union[SeriesKey, str],
        hours: float,
        now: Optional[datetime] = None,
    ) -> SeriesStatistics:
        return self.aggregator.summarize(self.readings(series_key, hours, now=now))

    def recent_alerts(self, limit: int = 50) -> List[Alert]:
        with self._transaction("read alerts") as conn:
            rows = conn.execute(
                "SELECT id, timestamp, alert_type, message, severity, acknowledged "
                "FROM alerts ORDER BY timestamp DESC, id DESC LIMIT ?",
                (max(limit, 0),),
            ).fetchall()
        return [
            Alert(
                id=row["id"],
                timestamp=parse_timestamp(row["timestamp"]),
                alert_type=AlertType(row["alert_type"]),
                message=row["message"],
                severity=Severity(row["severity"]),
                acknowledged=bool(row["acknowledged"]),
            )
            for row in rows
        ]

    def acknowledge(self, alert_id: int) -> bool:
        with self._transaction("acknowledge alert") as conn:
            cursor = conn.execute(
                "UPDATE alerts SET acknowledged = 1 WHERE id = ?", (alert_id,)
            )
            return cursor.rowcount > 0

    def prune(
        self, retention_days: float, now: Optional[datetime] = None
    ) -> Tuple[int, int]:
        """Delete readings older than the horizon and acknowledged alerts older than it.

        Returns the number of deleted readings and alerts.
        """
        cutoff = _window_start(now, days=retention_days)
        stamp = format_timestamp(cutoff)
        with self._transaction("prune") as conn:
            readings = conn.execute(
                "DELETE FROM sensor_readings WHERE timestamp < ?", (stamp,)
            ).rowcount
            alerts = conn.execute(
                "DELETE FROM alerts WHERE timestamp < ? AND acknowledged = 1", (stamp,)
            ).rowcount
        return readings, alerts

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    self._conn.rollback()
                raise PersistenceError(f"Failed to {operation}: {exc}") from exc


@lru_cache
def build_default_store(path: Optional[str] = None) -> TimeSeriesStore:
    settings = get_settings()
    db_path = settings.db_path if path is None else path
    return TimeSeriesStore(path=db_path or MEMORY)
