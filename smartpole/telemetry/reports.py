"""
Inbound device report shapes. Parsing never fails on a bad field: anything
that cannot be read as the expected type is treated as absent.
"""

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from ..db.models import AlertType


def parse_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value) if isinstance(value, (int, float)) else float(str(value).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_int(value: Any) -> Optional[int]:
    number = parse_float(value)
    if number is None:
        return None
    return int(number)


def parse_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple, set)):
        return None
    text = str(value).strip()
    return text or None


def parse_alert_type(value: Any) -> Optional[AlertType]:
    text = parse_str(value)
    if text is None:
        return None
    try:
        return AlertType(text.lower())
    except ValueError:
        return None


class ReportError(ValueError):
    """Payload is not a key/value mapping or lacks a device id."""


def _require_mapping(payload: Any) -> Mapping:
    if not isinstance(payload, Mapping):
        raise ReportError("report payload must be a key/value object")
    return payload


def _require_device(payload: Mapping) -> str:
    device_id = parse_str(payload.get("device_id"))
    if device_id is None:
        raise ReportError("device_id is required")
    return device_id


@dataclass(frozen=True)
class TelemetryReport:
    device_id: str
    current_weight: Optional[float] = None
    initial_weight: Optional[float] = None
    baseline_weight: Optional[float] = None
    weight_consumed: Optional[float] = None
    weight_remaining: Optional[float] = None
    flow_rate_measured: Optional[float] = None  # mL/min
    flow_rate_prescribed: Optional[float] = None  # mL/min
    deviation_percent: Optional[float] = None
    remaining_time_sec: Optional[float] = None
    state: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TelemetryReport":
        payload = _require_mapping(payload)
        return cls(
            device_id=_require_device(payload),
            current_weight=parse_float(payload.get("current_weight")),
            initial_weight=parse_float(payload.get("initial_weight")),
            baseline_weight=parse_float(payload.get("baseline_weight")),
            weight_consumed=parse_float(payload.get("weight_consumed")),
            weight_remaining=parse_float(payload.get("weight_remaining")),
            flow_rate_measured=parse_float(payload.get("flow_rate_measured")),
            flow_rate_prescribed=parse_float(payload.get("flow_rate_prescribed")),
            deviation_percent=parse_float(payload.get("deviation_percent")),
            remaining_time_sec=parse_float(payload.get("remaining_time_sec")),
            state=parse_str(payload.get("state")),
        )


@dataclass(frozen=True)
class AlertReport:
    device_id: str
    alert_type: Optional[AlertType] = None
    raw_alert_type: Optional[str] = None
    deviation_percent: Optional[float] = None
    timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "AlertReport":
        payload = _require_mapping(payload)
        return cls(
            device_id=_require_device(payload),
            alert_type=parse_alert_type(payload.get("alert_type")),
            raw_alert_type=parse_str(payload.get("alert_type")),
            deviation_percent=parse_float(payload.get("deviation_percent")),
            timestamp=parse_int(payload.get("timestamp")),
        )


@dataclass(frozen=True)
class PingReport:
    device_id: str
    battery_level: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "PingReport":
        payload = _require_mapping(payload)
        battery = parse_int(payload.get("battery_level"))
        if battery is not None and not 0 <= battery <= 100:
            battery = None
        return cls(device_id=_require_device(payload), battery_level=battery)
