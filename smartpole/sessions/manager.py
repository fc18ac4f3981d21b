"""
Infusion session lifecycle and remaining-volume tracking.

Status transitions: ACTIVE <-> PAUSED, ACTIVE -> ENDED, PAUSED -> ENDED.
ENDED sessions are never mutated again. Remaining volume is clamped to
[0, total] and low/critical volume alerts fire only when a reading moves the
session into a worse band.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..alerts.alert_manager import AlertManager
from ..db.models import (
    AlertLog,
    InfusionSession,
    Pole,
    PoleStatus,
    Prescription,
    PrescriptionStatus,
    SessionStatus,
    utc_now,
)
from ..db.session import Database
from ..errors import InvalidStateError, NotFoundError, ValidationError
from ..severity.scoring import AlertDecision, SeverityScorer

logger = logging.getLogger("smartpole.sessions")

_PRESCRIPTION_STATUS_FOR = {
    SessionStatus.ACTIVE: PrescriptionStatus.ACTIVE,
    SessionStatus.PAUSED: PrescriptionStatus.PAUSED,
    SessionStatus.ENDED: PrescriptionStatus.COMPLETED,
}


@dataclass
class TelemetryUpdate:
    session: InfusionSession
    consumed_volume: float
    remaining_volume: float
    previous_deviation: Optional[float] = None
    volume_alert: Optional[AlertLog] = None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class SessionManager:
    def __init__(
        self,
        database: Database,
        alerts: Optional[AlertManager] = None,
        scorer: Optional[SeverityScorer] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._db = database
        self._alerts = alerts
        self._scorer = scorer or (alerts.scorer if alerts is not None else SeverityScorer())
        self._clock = clock

    # ---- lookups ----

    def get(self, session_id: int) -> InfusionSession:
        with self._db.transaction() as sess:
            session = sess.get(InfusionSession, session_id)
        if session is None:
            raise NotFoundError(f"Session not found with id: {session_id}")
        return session

    def active_for_pole(self, pole_id: str) -> Optional[InfusionSession]:
        with self._db.transaction() as sess:
            return self._active_for_pole(sess, pole_id)

    def active_for_patient(self, patient_id: str) -> Optional[InfusionSession]:
        with self._db.transaction() as sess:
            return self._active_for_patient(sess, patient_id)

    def list_active(self) -> List[InfusionSession]:
        with self._db.transaction() as sess:
            return (
                sess.query(InfusionSession)
                .filter(InfusionSession.status == SessionStatus.ACTIVE)
                .order_by(InfusionSession.id.asc())
                .all()
            )

    def for_patient(self, patient_id: str) -> List[InfusionSession]:
        with self._db.transaction() as sess:
            return (
                sess.query(InfusionSession)
                .filter(InfusionSession.patient_id == patient_id)
                .order_by(InfusionSession.start_time.desc())
                .all()
            )

    def prescription(self, prescription_id: Optional[int]) -> Optional[Prescription]:
        if prescription_id is None:
            return None
        with self._db.transaction() as sess:
            return sess.get(Prescription, prescription_id)

    @staticmethod
    def _active_for_pole(sess, pole_id: str) -> Optional[InfusionSession]:
        return (
            sess.query(InfusionSession)
            .filter(InfusionSession.pole_id == pole_id, InfusionSession.status == SessionStatus.ACTIVE)
            .first()
        )

    @staticmethod
    def _active_for_patient(sess, patient_id: str) -> Optional[InfusionSession]:
        return (
            sess.query(InfusionSession)
            .filter(InfusionSession.patient_id == patient_id, InfusionSession.status == SessionStatus.ACTIVE)
            .first()
        )

    # ---- creation ----

    def create(
        self,
        patient_id: str,
        pole_id: str,
        total_volume_ml: float,
        flow_rate_ml_min: float,
        prescription_id: Optional[int] = None,
        drug_id: Optional[str] = None,
    ) -> InfusionSession:
        """
        Start a session on the patient's assigned pole. Rejected when the
        patient or the pole already has an ACTIVE session, when the pole is not
        the one assigned to the patient, or when the pole is not in service.
        """
        if not patient_id:
            raise ValidationError("patient id is required")
        if not pole_id:
            raise ValidationError("pole id is required")
        if total_volume_ml is None or total_volume_ml <= 0:
            raise ValidationError("total volume must be positive")
        if flow_rate_ml_min is None or flow_rate_ml_min <= 0:
            raise ValidationError("flow rate must be positive")

        with self._db.row_lock("patient-sessions", patient_id), \
                self._db.row_lock("pole-sessions", pole_id), \
                self._db.transaction() as sess:
            if self._active_for_patient(sess, patient_id) is not None:
                raise InvalidStateError(f"Patient {patient_id} already has an active infusion session")
            if self._active_for_pole(sess, pole_id) is not None:
                raise InvalidStateError(f"IV Pole {pole_id} is already in use")

            pole = sess.get(Pole, pole_id)
            if pole is None:
                raise NotFoundError(f"Pole not found with id: {pole_id}")
            if pole.patient_id != patient_id:
                assigned = sess.query(Pole).filter(Pole.patient_id == patient_id).first()
                if assigned is None:
                    raise ValidationError(
                        f"Patient {patient_id} does not have a pole assigned; assign a pole before starting infusion"
                    )
                raise ValidationError(
                    f"Session pole ID ({pole_id}) does not match patient's assigned pole ({assigned.id})"
                )
            if pole.status != PoleStatus.ACTIVE:
                raise ValidationError(f"Pole {pole_id} is not active (status: {pole.status.value})")

            now = self._clock()
            prescription = None
            if prescription_id is not None:
                prescription = sess.get(Prescription, prescription_id)
                if prescription is None:
                    raise NotFoundError(f"Prescription not found with id: {prescription_id}")
                prescription.status = PrescriptionStatus.ACTIVE
                prescription.started_at = now

            session = InfusionSession(
                patient_id=patient_id,
                pole_id=pole_id,
                prescription_id=prescription_id,
                drug_id=drug_id if drug_id is not None else (prescription.drug_id if prescription else None),
                total_volume_ml=float(total_volume_ml),
                remaining_volume_ml=float(total_volume_ml),
                consumed_volume_ml=0.0,
                prescribed_flow_rate=float(flow_rate_ml_min),
                start_time=now,
                expected_end_time=now + timedelta(minutes=total_volume_ml / flow_rate_ml_min),
                status=SessionStatus.ACTIVE,
            )
            sess.add(session)
        logger.info("session %s started: patient=%s pole=%s volume=%.0fmL flow=%.2fmL/min",
                    session.id, patient_id, pole_id, total_volume_ml, flow_rate_ml_min)
        return session

    def start_from_prescription(self, prescription_id: int, pole_id: str) -> InfusionSession:
        with self._db.transaction() as sess:
            prescription = sess.get(Prescription, prescription_id)
        if prescription is None:
            raise NotFoundError(f"Prescription not found with id: {prescription_id}")
        if prescription.status != PrescriptionStatus.PRESCRIBED:
            raise InvalidStateError(
                f"Cannot start prescription {prescription_id} with status: {prescription.status.value}"
            )
        return self.create(
            patient_id=prescription.patient_id,
            pole_id=pole_id,
            total_volume_ml=prescription.total_volume_ml,
            flow_rate_ml_min=prescription.flow_rate_ml_min,
            prescription_id=prescription.id,
            drug_id=prescription.drug_id,
        )

    # ---- status transitions ----

    def pause(self, session_id: int) -> InfusionSession:
        return self._transition(session_id, SessionStatus.PAUSED)

    def resume(self, session_id: int) -> InfusionSession:
        current = self.get(session_id)
        locks_needed = current.status == SessionStatus.PAUSED
        if not locks_needed:
            return self._transition(session_id, SessionStatus.ACTIVE)
        # resuming re-enters ACTIVE, so the one-active-per-patient/pole rule applies again
        with self._db.row_lock("patient-sessions", current.patient_id), \
                self._db.row_lock("pole-sessions", current.pole_id or ""):
            return self._transition(session_id, SessionStatus.ACTIVE, check_exclusive=True)

    def end(self, session_id: int) -> InfusionSession:
        return self._transition(session_id, SessionStatus.ENDED)

    def _transition(self, session_id: int, target: SessionStatus, check_exclusive: bool = False) -> InfusionSession:
        with self._db.row_scope("session", session_id) as sess:
            session = self._locked_session(sess, session_id)
            if not session.can_transition_to(target):
                raise InvalidStateError(
                    f"Cannot change session {session_id} from {session.status.value} to {target.value}"
                )
            if check_exclusive:
                other = self._active_for_patient(sess, session.patient_id)
                if other is not None and other.id != session.id:
                    raise InvalidStateError(f"Patient {session.patient_id} already has an active infusion session")
                if session.pole_id:
                    other = self._active_for_pole(sess, session.pole_id)
                    if other is not None and other.id != session.id:
                        raise InvalidStateError(f"IV Pole {session.pole_id} is already in use")
            session.status = target
            if target == SessionStatus.ENDED:
                session.end_time = self._clock()
            self._sync_prescription(sess, session)
        logger.info("session %s -> %s", session_id, target.value)
        return session

    def _sync_prescription(self, sess, session: InfusionSession) -> None:
        if session.prescription_id is None:
            return
        prescription = sess.get(Prescription, session.prescription_id)
        if prescription is None:
            return
        prescription.status = _PRESCRIPTION_STATUS_FOR[session.status]
        if session.status == SessionStatus.ENDED:
            prescription.completed_at = session.end_time

    def _locked_session(self, sess, session_id: int) -> InfusionSession:
        session = self._db.lock_query(
            sess.query(InfusionSession).filter(InfusionSession.id == session_id)
        ).first()
        if session is None:
            raise NotFoundError(f"Session not found with id: {session_id}")
        return session

    # ---- volume ----

    def _apply_remaining(self, session: InfusionSession, remaining: float) -> Optional[AlertDecision]:
        """Mutates the session in place; returns the alert to raise, if any."""
        previous = session.remaining_volume_ml
        remaining = _clamp(float(remaining), 0.0, session.total_volume_ml)
        session.remaining_volume_ml = remaining
        session.consumed_volume_ml = session.total_volume_ml - remaining
        return self._scorer.score_volume_crossing(session.total_volume_ml, previous, remaining)

    def update_remaining_volume(self, session_id: int, remaining_volume: float) -> InfusionSession:
        if remaining_volume is None:
            raise ValidationError("remaining volume is required")
        with self._db.row_scope("session", session_id) as sess:
            session = self._locked_session(sess, session_id)
            if session.status == SessionStatus.ENDED:
                raise InvalidStateError(f"Session {session_id} has ended and cannot be updated")
            decision = self._apply_remaining(session, remaining_volume)
        self._raise_volume_alert(decision, session)
        return session

    def record_telemetry(
        self,
        session_id: int,
        current_weight: Optional[float] = None,
        initial_weight: Optional[float] = None,
        baseline_weight: Optional[float] = None,
        weight_remaining: Optional[float] = None,
        weight_consumed: Optional[float] = None,
        measured_flow_rate: Optional[float] = None,
        deviation_percent: Optional[float] = None,
        sensor_state: Optional[str] = None,
        remaining_time_sec: Optional[float] = None,
    ) -> Optional[TelemetryUpdate]:
        """
        Apply one device report to an ACTIVE session. Returns None when the
        session stopped being ACTIVE before the lock was taken.

        Weight convention: 1 g of fluid ~ 1 mL.
        """
        with self._db.row_scope("session", session_id) as sess:
            session = self._locked_session(sess, session_id)
            if session.status != SessionStatus.ACTIVE:
                return None

            if current_weight is not None and initial_weight is not None:
                consumed = initial_weight - current_weight
                remaining = max(0.0, session.total_volume_ml - consumed)
                session.initial_weight = initial_weight
                session.baseline_weight = baseline_weight
            elif weight_remaining is not None:
                remaining = weight_remaining
            elif weight_consumed is not None:
                remaining = max(0.0, session.total_volume_ml - weight_consumed)
            else:
                remaining = session.remaining_volume_ml

            decision = self._apply_remaining(session, remaining)
            previous_deviation = session.deviation_percent

            now = self._clock()
            session.real_time_weight = current_weight
            session.measured_flow_rate = measured_flow_rate
            session.deviation_percent = deviation_percent
            session.sensor_state = sensor_state
            session.last_sensor_update = now
            if remaining_time_sec is not None and remaining_time_sec > 0:
                session.expected_end_time = now + timedelta(seconds=remaining_time_sec)

        update = TelemetryUpdate(
            session=session,
            consumed_volume=session.consumed_volume_ml,
            remaining_volume=session.remaining_volume_ml,
            previous_deviation=previous_deviation,
        )
        update.volume_alert = self._raise_volume_alert(decision, session)
        return update

    def _raise_volume_alert(self, decision: Optional[AlertDecision], session: InfusionSession) -> Optional[AlertLog]:
        # the volume update is already committed; a lost alert must not undo it
        if decision is None or self._alerts is None:
            return None
        try:
            return self._alerts.emit_decision(
                decision,
                session_id=session.id,
                device_id=session.pole_id,
                patient_id=session.patient_id,
                details={"remaining_volume_ml": session.remaining_volume_ml},
            )
        except Exception as e:
            logger.exception("failed to record low volume alert for session %s: %s", session.id, e)
            return None

    # ---- pole link ----

    def link_pole(self, session_id: int, pole_id: str) -> InfusionSession:
        """Attach a pole to a session that was found through the patient."""
        with self._db.row_lock("pole-sessions", pole_id), \
                self._db.row_scope("session", session_id) as sess:
            session = self._locked_session(sess, session_id)
            if session.status == SessionStatus.ENDED:
                raise InvalidStateError(f"Session {session_id} has ended")
            other = self._active_for_pole(sess, pole_id)
            if other is not None and other.id != session.id:
                raise InvalidStateError(f"IV Pole {pole_id} is already in use by session {other.id}")
            if sess.get(Pole, pole_id) is None:
                raise NotFoundError(f"Pole not found with id: {pole_id}")
            session.pole_id = pole_id
        logger.info("session %s linked to pole %s", session_id, pole_id)
        return session
