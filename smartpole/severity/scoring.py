"""
Threshold decisions for infusion anomalies.
Pure functions of their inputs: no persistence, no clock.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..db.models import AlertType, Severity


class VolumeLevel(str, Enum):
    NORMAL = "normal"
    LOW = "low"
    CRITICAL = "critical"


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


@dataclass
class AlertDecision:
    alert_type: AlertType
    severity: Severity
    message: str


def completion_percentage(total_volume: float, remaining_volume: float) -> float:
    if not total_volume:
        return 0.0
    return (total_volume - remaining_volume) / total_volume * 100.0


def _fmt(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "n/a"


class SeverityScorer:
    """
    Classifies flow deviation, remaining-volume bands and battery level.
    Deviation: |d| > critical -> critical, warning < |d| <= critical -> warning.
    Volume: completion > low -> low band, completion > critical -> critical band.
    """

    def __init__(
        self,
        deviation_warning_percent: float = 15.0,
        deviation_critical_percent: float = 25.0,
        low_volume_percent: float = 90.0,
        critical_volume_percent: float = 95.0,
        battery_low_percent: int = 20,
        battery_critical_percent: int = 10,
    ):
        self._dev_warning = deviation_warning_percent
        self._dev_critical = deviation_critical_percent
        self._low_volume = low_volume_percent
        self._critical_volume = critical_volume_percent
        self._battery_low = battery_low_percent
        self._battery_critical = battery_critical_percent

    @property
    def battery_low_percent(self) -> int:
        return self._battery_low

    # ---- flow deviation ----

    def deviation_severity(self, deviation_percent: Optional[float]) -> Optional[Severity]:
        if deviation_percent is None:
            return None
        magnitude = abs(deviation_percent)
        if magnitude > self._dev_critical:
            return Severity.CRITICAL
        if magnitude > self._dev_warning:
            return Severity.WARNING
        return None

    def score_deviation(
        self,
        deviation_percent: Optional[float],
        prescribed_flow: Optional[float] = None,
        measured_flow: Optional[float] = None,
    ) -> Optional[AlertDecision]:
        severity = self.deviation_severity(deviation_percent)
        if severity is None:
            return None
        message = (
            f"Flow deviation detected: {deviation_percent:.1f}% "
            f"(prescribed: {_fmt(prescribed_flow)} mL/min, measured: {_fmt(measured_flow)} mL/min)"
        )
        return AlertDecision(AlertType.FLOW_STOPPED, severity, message)

    def score_deviation_escalation(
        self,
        previous_deviation: Optional[float],
        deviation_percent: Optional[float],
        prescribed_flow: Optional[float] = None,
        measured_flow: Optional[float] = None,
    ) -> Optional[AlertDecision]:
        """Like score_deviation, but only when the reading enters a worse band."""
        before = self.deviation_severity(previous_deviation)
        after = self.deviation_severity(deviation_percent)
        if after is None:
            return None
        if before is not None and _SEVERITY_RANK[after] <= _SEVERITY_RANK[before]:
            return None
        return self.score_deviation(deviation_percent, prescribed_flow, measured_flow)

    # ---- remaining volume ----

    def volume_level(self, completion: float) -> VolumeLevel:
        if completion > self._critical_volume:
            return VolumeLevel.CRITICAL
        if completion > self._low_volume:
            return VolumeLevel.LOW
        return VolumeLevel.NORMAL

    def score_volume_crossing(
        self,
        total_volume: float,
        previous_remaining: float,
        new_remaining: float,
    ) -> Optional[AlertDecision]:
        """
        Boundary-crossing only: fires when the volume went down and the session
        entered a more severe band than it was in before. Re-reading the same
        level, or staying inside a band, yields nothing.
        """
        if new_remaining >= previous_remaining:
            return None
        before = self.volume_level(completion_percentage(total_volume, previous_remaining))
        after_pct = completion_percentage(total_volume, new_remaining)
        after = self.volume_level(after_pct)
        rank = [VolumeLevel.NORMAL, VolumeLevel.LOW, VolumeLevel.CRITICAL]
        if rank.index(after) <= rank.index(before):
            return None
        remaining_pct = 100.0 - after_pct
        if after == VolumeLevel.CRITICAL:
            return AlertDecision(
                AlertType.LOW_VOLUME,
                Severity.CRITICAL,
                f"IV fluid critically low ({remaining_pct:.1f}% remaining)",
            )
        return AlertDecision(
            AlertType.LOW_VOLUME,
            Severity.WARNING,
            f"IV fluid level is low ({remaining_pct:.1f}% remaining)",
        )

    # ---- battery ----

    def battery_severity(self, level: int) -> Severity:
        return Severity.CRITICAL if level < self._battery_critical else Severity.WARNING

    def score_battery(
        self,
        pole_id: str,
        previous_level: Optional[int],
        new_level: Optional[int],
    ) -> Optional[AlertDecision]:
        if previous_level is None or new_level is None:
            return None
        if not (new_level <= self._battery_low < previous_level):
            return None
        return AlertDecision(
            AlertType.BATTERY_LOW,
            self.battery_severity(new_level),
            f"IV Pole {pole_id} battery level is low: {new_level}%",
        )
