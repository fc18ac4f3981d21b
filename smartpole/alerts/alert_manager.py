"""
Alert manager: persists alerts, logs them, and broadcasts them on the alert feeds.
"""

import logging
from typing import Optional

from ..db.models import AlertLog, AlertType, Severity
from ..events.broadcaster import (
    ALERTS,
    Broadcaster,
    alert_type_topic,
    patient_topic,
    pole_alert_topic,
)
from ..severity.scoring import AlertDecision, SeverityScorer
from .alert_log import AlertLogStore

logger = logging.getLogger("smartpole.alerts")


class AlertManager:
    """
    Single entry point for every alert producer (flow deviation, low volume,
    battery, pole fall, nurse call, system). Each alert is stored first and
    then announced; a failed announcement never undoes the stored record.
    """

    def __init__(
        self,
        store: AlertLogStore,
        broadcaster: Broadcaster,
        scorer: Optional[SeverityScorer] = None,
    ):
        self._store = store
        self._broadcaster = broadcaster
        self._scorer = scorer or SeverityScorer()

    @property
    def store(self) -> AlertLogStore:
        return self._store

    @property
    def scorer(self) -> SeverityScorer:
        return self._scorer

    def emit(
        self,
        alert_type: AlertType,
        severity: Severity,
        message: str,
        session_id: Optional[int] = None,
        device_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AlertLog:
        """Store one alert, log it, then broadcast (best effort)."""
        alert = self._store.create(alert_type, severity, message, session_id=session_id)
        logger.warning("[%s] %s: %s", alert.severity.value, alert.alert_type.value, message)

        payload = alert.to_dict()
        payload["type"] = "alert"
        payload["device_id"] = device_id
        payload["patient_id"] = patient_id
        if details:
            payload.update(details)
        topics = [ALERTS, alert_type_topic(alert.alert_type.value)]
        if device_id:
            topics.append(pole_alert_topic(device_id))
        if patient_id is not None:
            topics.append(patient_topic(patient_id))
        try:
            self._broadcaster.publish_many(topics, payload)
        except Exception as e:
            logger.exception("alert broadcast error: %s", e)
        return alert

    def emit_decision(self, decision: AlertDecision, **context) -> AlertLog:
        return self.emit(decision.alert_type, decision.severity, decision.message, **context)

    # ---- producers ----

    def flow_deviation(
        self,
        session_id: int,
        deviation_percent: Optional[float],
        prescribed_flow: Optional[float] = None,
        measured_flow: Optional[float] = None,
        device_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        previous_deviation: Optional[float] = None,
        escalation_only: bool = False,
    ) -> Optional[AlertLog]:
        """
        Raise a flow_stopped alert when the deviation leaves the tolerated band.
        With escalation_only, a reading that stays in the band of the previous
        reading raises nothing (telemetry repeats every few seconds).
        """
        if escalation_only:
            decision = self._scorer.score_deviation_escalation(
                previous_deviation, deviation_percent, prescribed_flow, measured_flow
            )
        else:
            decision = self._scorer.score_deviation(deviation_percent, prescribed_flow, measured_flow)
        if decision is None:
            return None
        return self.emit_decision(
            decision,
            session_id=session_id,
            device_id=device_id,
            patient_id=patient_id,
            details={"deviation_percent": deviation_percent},
        )

    def battery_low(self, pole_id: str, previous_level: Optional[int], new_level: Optional[int]) -> Optional[AlertLog]:
        decision = self._scorer.score_battery(pole_id, previous_level, new_level)
        if decision is None:
            return None
        return self.emit_decision(decision, device_id=pole_id, details={"battery_level": new_level})

    def pole_fall(self, pole_id: str, session_id: Optional[int] = None, patient_id: Optional[str] = None) -> AlertLog:
        return self.emit(
            AlertType.POLE_FALL,
            Severity.CRITICAL,
            f"IV Pole {pole_id} detected fall or movement",
            session_id=session_id,
            device_id=pole_id,
            patient_id=patient_id,
        )

    def nurse_call(
        self,
        patient_id: str,
        session_id: Optional[int] = None,
        patient_name: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> AlertLog:
        # session ids <= 0 come from apps that have no session yet
        if session_id is not None and session_id <= 0:
            session_id = None
        name = patient_name or f"Patient {patient_id}"
        return self.emit(
            AlertType.NURSE_CALL,
            Severity.CRITICAL,
            f"{name} is calling for a nurse",
            session_id=session_id,
            device_id=device_id,
            patient_id=patient_id,
        )

    def system_alert(self, alert_type: AlertType, severity: Severity, message: str) -> AlertLog:
        return self.emit(AlertType(alert_type), Severity(severity), message)

    # ---- acknowledgment ----

    def acknowledge(self, alert_id: int, actor: str) -> AlertLog:
        alert = self._store.acknowledge(alert_id, actor)
        self._announce_ack([alert])
        return alert

    def acknowledge_all(self, actor: str) -> int:
        alerts = self._store.acknowledge_all(actor)
        self._announce_ack(alerts)
        return len(alerts)

    def _announce_ack(self, alerts) -> None:
        for alert in alerts:
            payload = alert.to_dict()
            payload["type"] = "alert_acknowledged"
            try:
                self._broadcaster.publish(ALERTS, payload)
            except Exception as e:
                logger.exception("acknowledgment broadcast error: %s", e)
