"""Threshold classification for raw sensor values.

These cut points mirror the device firmware and are consumed by dashboards, so
they are kept bit-exact.
"""

from __future__ import annotations

FIRE_DETECTED = "FIRE DETECTED"
FLAME_NORMAL = "Normal"


def classify_temperature(celsius: float) -> str:
    if celsius < 15:
        return "Cold"
    if celsius < 20:
        return "Cool"
    if celsius < 25:
        return "Comfortable"
    if celsius < 30:
        return "Warm"
    return "Hot"


def classify_humidity(percent: float) -> str:
    if percent < 30:
        return "Dry"
    if percent < 60:
        return "Comfortable"
    if percent < 70:
        return "Humid"
    return "Very Humid"


def classify_co(voltage: float) -> str:
    """MQ-7 output voltage to CO level."""
    if voltage < 0.3:
        return "Good"
    if voltage < 0.6:
        return "Moderate"
    if voltage < 1.0:
        return "High"
    return "Dangerous"


def classify_air_quality(dust_mg_m3: float) -> str:
    """Dust density (mg/m³) to the EPA PM2.5 category."""
    ug_m3 = dust_mg_m3 * 1000
    if ug_m3 <= 12.0:
        return "Good"
    if ug_m3 <= 35.4:
        return "Moderate"
    if ug_m3 <= 55.4:
        return "Unhealthy (Sensitive)"
    if ug_m3 <= 150.4:
        return "Unhealthy"
    if ug_m3 <= 250.4:
        return "Very Unhealthy"
    return "Hazardous"


def classify_flame(detected: bool) -> str:
    return FIRE_DETECTED if detected else FLAME_NORMAL
