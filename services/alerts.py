"""Alert derivation from freshly folded sensor state."""

from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel

from app.schemas import CoState, FlameState, ParticulateState
from models.records import Alert, AlertType, SensorKind, Severity
from services.classification import FIRE_DETECTED

FIRE_MESSAGE = "Fire detected by flame sensor!"

_UNHEALTHY_AIR = frozenset({"Very Unhealthy", "Hazardous"})


class AlertEvaluator:
    """Maps one sensor sub-record to zero or one alerts.

    There is no de-duplication: every qualifying reading yields a new alert and
    operators silence them by acknowledging.
    """

    def evaluate(
        self, kind: SensorKind, record: BaseModel, timestamp: datetime
    ) -> List[Alert]:
        if kind is SensorKind.flame and isinstance(record, FlameState):
            if record.status == FIRE_DETECTED:
                return [
                    Alert(
                        timestamp=timestamp,
                        alert_type=AlertType.fire,
                        message=FIRE_MESSAGE,
                        severity=Severity.critical,
                    )
                ]
        elif kind is SensorKind.co and isinstance(record, CoState):
            if record.level == "Dangerous":
                severity = Severity.critical
            elif record.level == "High":
                severity = Severity.warning
            else:
                return []
            message = f"{record.level} carbon monoxide level"
            if record.voltage is not None:
                message = f"{message} ({record.voltage:.2f} V)"
            return [
                Alert(
                    timestamp=timestamp,
                    alert_type=AlertType.co,
                    message=message,
                    severity=severity,
                )
            ]
        elif kind is SensorKind.particulate and isinstance(record, ParticulateState):
            if record.quality in _UNHEALTHY_AIR:
                dust = (record.dust or 0.0) * 1000
                return [
                    Alert(
                        timestamp=timestamp,
                        alert_type=AlertType.air_quality,
                        message=f"Air quality is {record.quality} ({dust:.1f} µg/m³)",
                        severity=Severity.warning,
                    )
                ]
        return []
