"""
Telemetry ingestion gateway: device data reports, device alert reports and
the boot-time init request.

Every handler returns a ServiceResult and never raises: a malformed or
unexpected report must not take the connection or the process down.
"""

import logging
from typing import Any, Optional

from ..alerts.alert_manager import AlertManager
from ..db.models import AlertType, InfusionSession, iso
from ..devices.registry import DeviceRegistry
from ..errors import SmartPoleError
from ..events.broadcaster import ALL_PATIENTS, Broadcaster, patient_topic, pole_topic
from ..responses import ServiceResult
from ..sessions.manager import SessionManager, TelemetryUpdate
from .reports import AlertReport, ReportError, TelemetryReport, parse_str

logger = logging.getLogger("smartpole.telemetry")

ML_PER_HOUR_PER_ML_PER_MIN = 60.0


def _echo(payload: Any) -> Optional[dict]:
    return dict(payload) if isinstance(payload, dict) else None


class TelemetryGateway:
    def __init__(
        self,
        sessions: SessionManager,
        registry: DeviceRegistry,
        alerts: AlertManager,
        broadcaster: Broadcaster,
        default_gtt_factor: int = 20,
    ):
        self._sessions = sessions
        self._registry = registry
        self._alerts = alerts
        self._broadcaster = broadcaster
        self._default_gtt = default_gtt_factor

    # ---- data reports ----

    def handle_telemetry(self, payload: Any) -> ServiceResult:
        try:
            report = TelemetryReport.from_payload(payload)
        except ReportError as e:
            logger.warning("rejected telemetry report: %s", e)
            return ServiceResult.error(f"Invalid telemetry report: {e}", _echo(payload))

        try:
            logger.debug(
                "telemetry %s: weight=%s flow=%s/%s deviation=%s state=%s",
                report.device_id, report.current_weight, report.flow_rate_measured,
                report.flow_rate_prescribed, report.deviation_percent, report.state,
            )
            session = self._sessions.active_for_pole(report.device_id)
            update = None
            if session is not None:
                update = self._sessions.record_telemetry(
                    session.id,
                    current_weight=report.current_weight,
                    initial_weight=report.initial_weight,
                    baseline_weight=report.baseline_weight,
                    weight_remaining=report.weight_remaining,
                    weight_consumed=report.weight_consumed,
                    measured_flow_rate=report.flow_rate_measured,
                    deviation_percent=report.deviation_percent,
                    sensor_state=report.state,
                    remaining_time_sec=report.remaining_time_sec,
                )
            if update is None:
                logger.info("no active session for pole %s; report ignored", report.device_id)
                return ServiceResult.success(
                    "Data received but no active session",
                    {"device_id": report.device_id, "session_active": False},
                )

            session = update.session
            flow_alert = self._check_deviation(report, update)
            message = self._telemetry_message(report, update)
            if update.volume_alert is not None:
                message["volume_alert_id"] = update.volume_alert.id
            if flow_alert is not None:
                message["flow_alert_id"] = flow_alert.id
            self._publish(
                [pole_topic(report.device_id), patient_topic(session.patient_id), ALL_PATIENTS],
                message,
            )
            return ServiceResult.success("Data processed successfully", message)
        except Exception as e:
            logger.exception("failed to process telemetry from %s: %s", report.device_id, e)
            return ServiceResult.error(f"Failed to process data: {e}", _echo(payload))

    def _check_deviation(self, report: TelemetryReport, update: TelemetryUpdate):
        session = update.session
        prescribed = report.flow_rate_prescribed
        if prescribed is None:
            prescribed = session.prescribed_flow_rate
        try:
            return self._alerts.flow_deviation(
                session.id,
                report.deviation_percent,
                prescribed_flow=prescribed,
                measured_flow=report.flow_rate_measured,
                device_id=report.device_id,
                patient_id=session.patient_id,
                previous_deviation=update.previous_deviation,
                escalation_only=True,
            )
        except Exception as e:
            # the volume reading is already committed
            logger.exception("failed to record flow alert for session %s: %s", session.id, e)
            return None

    @staticmethod
    def _telemetry_message(report: TelemetryReport, update: TelemetryUpdate) -> dict:
        session = update.session
        remaining_min = report.remaining_time_sec / 60.0 if report.remaining_time_sec is not None else None
        return {
            "type": "telemetry",
            "device_id": report.device_id,
            "patient_id": session.patient_id,
            "session_id": session.id,
            "current_weight": report.current_weight,
            "initial_weight": report.initial_weight,
            "total_volume": session.total_volume_ml,
            "consumed_volume": update.consumed_volume,
            "remaining_volume": update.remaining_volume,
            "percentage": round(min(100.0, session.completion_percentage), 2),
            "flow_rate_measured": report.flow_rate_measured,
            "flow_rate_prescribed": (
                report.flow_rate_prescribed
                if report.flow_rate_prescribed is not None
                else session.prescribed_flow_rate
            ),
            "deviation_percent": report.deviation_percent,
            "remaining_time_sec": report.remaining_time_sec,
            "remaining_time_min": remaining_min,
            "expected_end_time": iso(session.expected_end_time),
            "last_update": iso(session.last_sensor_update),
            "state": report.state,
            "timestamp": iso(session.last_sensor_update),
        }

    def _publish(self, topics, message: dict) -> None:
        try:
            self._broadcaster.publish_many(topics, message)
        except Exception as e:
            logger.exception("telemetry broadcast error: %s", e)

    # ---- device alert reports ----

    def handle_alert_report(self, payload: Any) -> ServiceResult:
        try:
            report = AlertReport.from_payload(payload)
        except ReportError as e:
            logger.warning("rejected alert report: %s", e)
            return ServiceResult.error(f"Invalid alert report: {e}", _echo(payload))

        try:
            session = self._sessions.active_for_pole(report.device_id)
            if report.alert_type == AlertType.POLE_FALL:
                alert = self._alerts.pole_fall(
                    report.device_id,
                    session_id=session.id if session else None,
                    patient_id=session.patient_id if session else self._assigned_patient(report.device_id),
                )
                return ServiceResult.success("Alert processed successfully", self._alert_data(alert, report, session))

            if report.alert_type == AlertType.NURSE_CALL:
                patient_id = session.patient_id if session else self._assigned_patient(report.device_id)
                if patient_id is None:
                    return ServiceResult.error(
                        f"Pole {report.device_id} is not assigned to a patient", _echo(payload)
                    )
                alert = self._alerts.nurse_call(
                    patient_id, session_id=session.id if session else None, device_id=report.device_id
                )
                return ServiceResult.success("Alert processed successfully", self._alert_data(alert, report, session))

            if session is None:
                logger.info("alert from pole %s without active session ignored", report.device_id)
                return ServiceResult.success("Alert received but no active session", _echo(payload))

            if report.alert_type is None and report.raw_alert_type:
                logger.warning("unknown alert_type %r from %s; treating as flow deviation",
                               report.raw_alert_type, report.device_id)
            alert = self._alerts.flow_deviation(
                session.id,
                report.deviation_percent,
                prescribed_flow=session.prescribed_flow_rate,
                measured_flow=session.measured_flow_rate,
                device_id=report.device_id,
                patient_id=session.patient_id,
            )
            if alert is None:
                return ServiceResult.success(
                    "Alert received; deviation within tolerance",
                    {
                        "device_id": report.device_id,
                        "session_id": session.id,
                        "deviation_percent": report.deviation_percent,
                    },
                )
            return ServiceResult.success("Alert processed successfully", self._alert_data(alert, report, session))
        except Exception as e:
            logger.exception("failed to process alert from %s: %s", report.device_id, e)
            return ServiceResult.error(f"Failed to process alert: {e}", _echo(payload))

    def _assigned_patient(self, device_id: str) -> Optional[str]:
        pole = self._registry.find(device_id)
        return pole.patient_id if pole is not None else None

    @staticmethod
    def _alert_data(alert, report: AlertReport, session: Optional[InfusionSession]) -> dict:
        data = alert.to_dict()
        data.update({
            "device_id": report.device_id,
            "patient_id": session.patient_id if session else None,
            "reported_alert_type": report.raw_alert_type,
            "deviation_percent": report.deviation_percent,
        })
        return data

    # ---- boot-time init ----

    def handle_init(self, device_id: Any) -> ServiceResult:
        """
        Return the prescription a booting pole should run. When the session is
        not linked to the pole yet, resolve pole -> assigned patient -> active
        session and link it.
        """
        device_id = parse_str(device_id)
        if device_id is None:
            return ServiceResult.error("device_id is required")
        try:
            session = self._sessions.active_for_pole(device_id)
            if session is None:
                pole = self._registry.find(device_id)
                if pole is None or pole.patient_id is None:
                    logger.info("init: pole %s not found or not assigned", device_id)
                    return ServiceResult.error("No active session found for this device")
                session = self._sessions.active_for_patient(pole.patient_id)
                if session is None:
                    return ServiceResult.error(f"No active session found for patient {pole.patient_id}")
                session = self._sessions.link_pole(session.id, device_id)

            prescription = self._sessions.prescription(session.prescription_id)
            flow_ml_min = session.prescribed_flow_rate
            gtt_factor = prescription.gtt_factor if prescription is not None else self._default_gtt
            data = {
                "device_id": device_id,
                "session_id": session.id,
                "patient_id": session.patient_id,
                "prescription_id": session.prescription_id,
                "drug_id": session.drug_id,
                "total_volume_ml": session.total_volume_ml,
                "flow_rate_ml_min": flow_ml_min,
                "flow_rate_ml_hr": flow_ml_min * ML_PER_HOUR_PER_ML_PER_MIN,
                "gtt_factor": gtt_factor,
                # drops/min = mL/min * drops/mL
                "calculated_gtt": int(round(flow_ml_min * gtt_factor)),
                "initial_volume_ml": session.remaining_volume_ml,
                "start_time": iso(session.start_time),
                "expected_end_time": iso(session.expected_end_time),
            }
            logger.info("init: pole %s -> session %s (%.2f mL/min, %d gtt/mL)",
                        device_id, session.id, flow_ml_min, gtt_factor)
            return ServiceResult.success("Prescription data retrieved successfully", data)
        except SmartPoleError as e:
            logger.warning("init for %s rejected: %s", device_id, e)
            return ServiceResult.error(str(e))
        except Exception as e:
            logger.exception("failed to initialize device %s: %s", device_id, e)
            return ServiceResult.error(f"Failed to initialize device: {e}")
