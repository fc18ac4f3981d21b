"""
Device liveness: keep-alive pings flip a pole online, the periodic sweep
flips poles with no recent ping offline. The sweep never brings a pole back
online; the next ping does.
"""

import logging
from typing import Any, List, Optional

from ..alerts.alert_manager import AlertManager
from ..db.models import Pole, iso
from ..devices.registry import DeviceRegistry, PoleStatistics
from ..events.broadcaster import ALL_PATIENTS, POLE_STATUS, Broadcaster, pole_topic
from ..responses import ServiceResult
from ..sessions.manager import SessionManager
from ..telemetry.reports import PingReport, ReportError

logger = logging.getLogger("smartpole.liveness")


class LivenessTracker:
    def __init__(
        self,
        registry: DeviceRegistry,
        sessions: SessionManager,
        broadcaster: Broadcaster,
        alerts: Optional[AlertManager] = None,
        window_seconds: float = 60.0,
        low_battery_percent: int = 20,
    ):
        self._registry = registry
        self._sessions = sessions
        self._broadcaster = broadcaster
        self._alerts = alerts
        self._window = window_seconds
        self._low_battery = low_battery_percent

    @property
    def window_seconds(self) -> float:
        return self._window

    # ---- pings ----

    def handle_ping(self, payload: Any) -> ServiceResult:
        try:
            report = PingReport.from_payload(payload)
        except ReportError as e:
            logger.warning("rejected ping: %s", e)
            return ServiceResult.error(f"Invalid ping: {e}")

        try:
            outcome = self._registry.record_ping(report.device_id, report.battery_level)
            pole = outcome.pole
            available = self._prescription_available(pole)

            if self._alerts is not None and not outcome.created:
                try:
                    self._alerts.battery_low(pole.id, outcome.previous_battery, pole.battery_level)
                except Exception as e:
                    logger.exception("failed to record battery alert for pole %s: %s", pole.id, e)

            message = {
                "type": "battery_update",
                "device_id": pole.id,
                "battery_level": pole.battery_level,
                "is_online": pole.is_online,
                "status": pole.status.value,
                "patient_id": pole.patient_id,
                "prescription_available": available,
                "last_ping_at": iso(pole.last_ping_at),
            }
            self._publish([POLE_STATUS, ALL_PATIENTS], message)

            data = {
                "device_id": pole.id,
                "status": "online",
                "battery_level": pole.battery_level,
                "auto_registered": outcome.created,
                "prescription_available": available,
            }
            return ServiceResult.success("Ping received", data)
        except Exception as e:
            logger.exception("failed to process ping from %s: %s", report.device_id, e)
            return ServiceResult.error(f"Failed to process ping: {e}")

    def _prescription_available(self, pole: Pole) -> bool:
        if self._sessions.active_for_pole(pole.id) is not None:
            return True
        if pole.patient_id is not None:
            return self._sessions.active_for_patient(pole.patient_id) is not None
        return False

    # ---- periodic ----

    def sweep(self) -> List[str]:
        """Mark stale online poles offline. Returns the ids that transitioned."""
        went_offline = []
        for pole in self._registry.list_online():
            try:
                stale = self._registry.mark_offline_if_stale(pole.id, self._window)
            except Exception as e:
                logger.exception("liveness check failed for pole %s: %s", pole.id, e)
                continue
            if stale is None:
                continue
            went_offline.append(stale.id)
            logger.warning("pole %s went offline (last ping %s)", stale.id, iso(stale.last_ping_at))
            self._publish(
                [POLE_STATUS, pole_topic(stale.id)],
                {
                    "type": "status_change",
                    "device_id": stale.id,
                    "status_change": "offline",
                    "is_online": False,
                    "patient_id": stale.patient_id,
                    "battery_level": stale.battery_level,
                    "last_ping_at": iso(stale.last_ping_at),
                },
            )
        if went_offline:
            logger.info("liveness sweep: %d pole(s) offline", len(went_offline))
        return went_offline

    def statistics(self) -> PoleStatistics:
        return self._registry.statistics(low_battery_below=self._low_battery)

    def log_statistics(self) -> PoleStatistics:
        stats = self.statistics()
        logger.info(
            "pole statistics: total=%d online=%d offline=%d low_battery=%d assigned=%d",
            stats.total, stats.online, stats.offline, stats.low_battery, stats.assigned,
        )
        return stats

    def _publish(self, topics, message: dict) -> None:
        try:
            self._broadcaster.publish_many(topics, message)
        except Exception as e:
            logger.exception("liveness broadcast error: %s", e)
