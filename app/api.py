"""HTTP and WebSocket route definitions for the service."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, status

from app.schemas import (
    AcknowledgeResponse,
    AlertRecord,
    AlertsResponse,
    BuzzerCommand,
    BuzzerResponse,
    EnableCommand,
    EnableResponse,
    HistoryPoint,
    HistoryResponse,
    LedCommand,
    LedResponse,
    RateCommand,
    RateResponse,
    Snapshot,
    StatisticsResponse,
)
from datastore.timeseries import PersistenceError
from services.broadcaster import Observer
from services.commands import CommandRejected
from services.telemetry import TelemetryService, build_default_telemetry

router = APIRouter()


def get_telemetry() -> TelemetryService:
    return build_default_telemetry()


def _unknown_series(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0])


def _store_unavailable(exc: PersistenceError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


def _rejected(exc: CommandRejected) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get(
    "/api/sensors",
    response_model=Snapshot,
    summary="Current state of every sensor.",
)
async def get_snapshot(service: TelemetryService = Depends(get_telemetry)) -> Snapshot:
    return service.reducer.snapshot()


@router.get(
    "/api/history/{series_key}",
    response_model=HistoryResponse,
    summary="Time-bucketed history of one series.",
)
def get_history(
    series_key: str,
    hours: float = Query(24.0, gt=0, description="Window length; fractions allowed."),
    bucket: Optional[int] = Query(
        None, ge=0, description="Bucket width in minutes; 0 returns raw rows, omit to auto-select."
    ),
    service: TelemetryService = Depends(get_telemetry),
) -> HistoryResponse:
    try:
        bucket_minutes, points = service.store.query(series_key, hours, bucket)
    except KeyError as exc:
        raise _unknown_series(exc) from exc
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc
    return HistoryResponse(
        series_key=series_key,
        hours=hours,
        bucket_minutes=bucket_minutes,
        data=[
            HistoryPoint(timestamp=point.timestamp, value=point.value, status=point.status)
            for point in points
        ],
    )


@router.get(
    "/api/statistics/{series_key}",
    response_model=StatisticsResponse,
    summary="Min, max, mean and count of one series over a window.",
)
def get_statistics(
    series_key: str,
    hours: float = Query(24.0, gt=0),
    service: TelemetryService = Depends(get_telemetry),
) -> StatisticsResponse:
    try:
        stats = service.store.statistics(series_key, hours)
    except KeyError as exc:
        raise _unknown_series(exc) from exc
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc
    return StatisticsResponse(min=stats.min, max=stats.max, avg=stats.avg, count=stats.count)


@router.get(
    "/api/alerts",
    response_model=AlertsResponse,
    summary="Most recent alerts, newest first.",
)
def get_alerts(
    limit: int = Query(50, ge=1, le=1000),
    service: TelemetryService = Depends(get_telemetry),
) -> AlertsResponse:
    try:
        alerts = service.store.recent_alerts(limit)
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc
    return AlertsResponse(
        alerts=[
            AlertRecord(
                id=alert.id,
                timestamp=alert.timestamp,
                alert_type=alert.alert_type.value,
                message=alert.message,
                severity=alert.severity.value,
                acknowledged=alert.acknowledged,
            )
            for alert in alerts
        ]
    )


@router.post(
    "/api/alerts/{alert_id}/acknowledge",
    response_model=AcknowledgeResponse,
    summary="Mark an alert as acknowledged.",
)
def acknowledge_alert(
    alert_id: int,
    service: TelemetryService = Depends(get_telemetry),
) -> AcknowledgeResponse:
    try:
        found = service.store.acknowledge(alert_id)
    except PersistenceError as exc:
        raise _store_unavailable(exc) from exc
    if not found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Alert {alert_id} not found.",
        )
    return AcknowledgeResponse(success=True)


@router.post("/api/control/rate", response_model=RateResponse, summary="Change the polling interval.")
def set_polling_rate(
    body: RateCommand,
    service: TelemetryService = Depends(get_telemetry),
) -> RateResponse:
    try:
        rate = service.commands.set_polling_rate(body.rate)
    except CommandRejected as exc:
        raise _rejected(exc) from exc
    return RateResponse(success=True, rate=rate)


@router.post("/api/control/enable", response_model=EnableResponse, summary="Enable or disable a sensor.")
def set_sensor_enabled(
    body: EnableCommand,
    service: TelemetryService = Depends(get_telemetry),
) -> EnableResponse:
    try:
        kind = service.commands.set_sensor_enabled(body.sensor, body.enabled)
    except CommandRejected as exc:
        raise _rejected(exc) from exc
    return EnableResponse(success=True, sensor=kind.control_key, enabled=body.enabled)


@router.post("/api/control/buzzer", response_model=BuzzerResponse, summary="Sound the buzzer.")
def trigger_buzzer(
    body: BuzzerCommand,
    service: TelemetryService = Depends(get_telemetry),
) -> BuzzerResponse:
    try:
        command = service.commands.trigger_buzzer(body.command)
    except CommandRejected as exc:
        raise _rejected(exc) from exc
    return BuzzerResponse(success=True, command=command)


@router.post("/api/control/led", response_model=LedResponse, summary="Toggle the status LED.")
def set_indicator(
    body: LedCommand,
    service: TelemetryService = Depends(get_telemetry),
) -> LedResponse:
    try:
        enabled = service.commands.set_indicator(body.enabled)
    except CommandRejected as exc:
        raise _rejected(exc) from exc
    return LedResponse(success=True, enabled=enabled)


async def _wait_for_close(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws")
async def live_updates(
    websocket: WebSocket,
    service: TelemetryService = Depends(get_telemetry),
) -> None:
    """Stream the full snapshot on connect and after every change."""
    await websocket.accept()
    observer = Observer(websocket.send_json, asyncio.get_running_loop())
    service.broadcaster.connect(observer)
    pump = asyncio.create_task(observer.pump())
    listener = asyncio.create_task(_wait_for_close(websocket))
    try:
        done, _ = await asyncio.wait({pump, listener}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        service.broadcaster.disconnect(observer)
        for task in (pump, listener):
            task.cancel()
        await asyncio.gather(pump, listener, return_exceptions=True)
    if listener not in done:
        # Dropped by the broadcaster; the client is still connected.
        with suppress(RuntimeError):
            await websocket.close()


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
