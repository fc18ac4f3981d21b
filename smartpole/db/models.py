"""SQLAlchemy ORM models for SmartPole.
Compatible with both SQLite (local) and PostgreSQL (Docker/production).
Flow rates are stored in mL/min, volumes in mL.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    event,
    inspect,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now():
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _enum_column(enum_cls, **kwargs):
    return Column(
        SAEnum(enum_cls, native_enum=False, values_callable=_enum_values, length=20),
        **kwargs,
    )


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ENDED = "ENDED"


# ENDED is terminal: it has no entry here.
SESSION_TRANSITIONS = {
    SessionStatus.ACTIVE: {SessionStatus.PAUSED, SessionStatus.ENDED},
    SessionStatus.PAUSED: {SessionStatus.ACTIVE, SessionStatus.ENDED},
}


class PoleStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    INACTIVE = "inactive"


class AlertType(str, Enum):
    LOW_VOLUME = "low_volume"
    FLOW_STOPPED = "flow_stopped"
    POLE_FALL = "pole_fall"
    BATTERY_LOW = "battery_low"
    SYSTEM_ERROR = "system_error"
    NURSE_CALL = "nurse_call"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class PrescriptionStatus(str, Enum):
    PRESCRIBED = "PRESCRIBED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Pole(Base):
    __tablename__ = "poles"

    id = Column(String(20), primary_key=True)
    status = _enum_column(PoleStatus, nullable=False, default=PoleStatus.ACTIVE)
    battery_level = Column(Integer, nullable=False, default=100)
    is_online = Column(Boolean, nullable=False, default=False)
    last_ping_at = Column(DateTime(timezone=True), nullable=True)
    # unique: a patient holds at most one pole
    patient_id = Column(String(64), nullable=True, unique=True, index=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    @property
    def is_assigned(self) -> bool:
        return self.patient_id is not None

    def is_online_at(self, now: datetime, window_seconds: float = 60.0) -> bool:
        """Online iff the last ping is strictly younger than the liveness window."""
        last = as_utc(self.last_ping_at)
        if last is None:
            return False
        return (as_utc(now) - last).total_seconds() < window_seconds

    def record_ping(self, now: datetime) -> None:
        self.last_ping_at = now
        self.is_online = True

    def mark_offline(self) -> None:
        self.is_online = False

    def assign_to(self, patient_id: str, now: datetime) -> None:
        self.patient_id = patient_id
        self.assigned_at = now

    def unassign(self) -> None:
        self.patient_id = None
        self.assigned_at = None

    def to_dict(self) -> dict:
        return {
            "pole_id": self.id,
            "status": self.status.value if self.status else None,
            "battery_level": self.battery_level,
            "is_online": self.is_online,
            "last_ping_at": iso(self.last_ping_at),
            "patient_id": self.patient_id,
            "assigned_at": iso(self.assigned_at),
        }


class Prescription(Base):
    __tablename__ = "prescriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String(64), nullable=False, index=True)
    drug_id = Column(String(64), nullable=True)
    total_volume_ml = Column(Float, nullable=False)
    flow_rate_ml_min = Column(Float, nullable=False)
    gtt_factor = Column(Integer, nullable=False, default=20)
    status = _enum_column(PrescriptionStatus, nullable=False, default=PrescriptionStatus.PRESCRIBED)
    prescribed_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class InfusionSession(Base):
    __tablename__ = "infusion_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String(64), nullable=False, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=True)
    drug_id = Column(String(64), nullable=True)
    pole_id = Column(String(20), ForeignKey("poles.id"), nullable=True, index=True)

    total_volume_ml = Column(Float, nullable=False)
    remaining_volume_ml = Column(Float, nullable=False)
    consumed_volume_ml = Column(Float, nullable=False, default=0.0)
    prescribed_flow_rate = Column(Float, nullable=False)

    measured_flow_rate = Column(Float, nullable=True)
    deviation_percent = Column(Float, nullable=True)
    sensor_state = Column(String(32), nullable=True)
    real_time_weight = Column(Float, nullable=True)
    initial_weight = Column(Float, nullable=True)
    baseline_weight = Column(Float, nullable=True)
    last_sensor_update = Column(DateTime(timezone=True), nullable=True)

    start_time = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    expected_end_time = Column(DateTime(timezone=True), nullable=True)
    status = _enum_column(SessionStatus, nullable=False, default=SessionStatus.ACTIVE, index=True)

    @property
    def completion_percentage(self) -> float:
        if not self.total_volume_ml:
            return 0.0
        return (self.total_volume_ml - self.remaining_volume_ml) / self.total_volume_ml * 100.0

    @property
    def remaining_percentage(self) -> float:
        return 100.0 - self.completion_percentage

    def can_transition_to(self, target: SessionStatus) -> bool:
        return target in SESSION_TRANSITIONS.get(self.status, set())

    def to_dict(self) -> dict:
        return {
            "session_id": self.id,
            "patient_id": self.patient_id,
            "prescription_id": self.prescription_id,
            "drug_id": self.drug_id,
            "pole_id": self.pole_id,
            "status": self.status.value if self.status else None,
            "total_volume_ml": self.total_volume_ml,
            "remaining_volume_ml": self.remaining_volume_ml,
            "consumed_volume_ml": self.consumed_volume_ml,
            "completion_percentage": round(self.completion_percentage, 2),
            "remaining_percentage": round(self.remaining_percentage, 2),
            "prescribed_flow_rate_ml_min": self.prescribed_flow_rate,
            "measured_flow_rate_ml_min": self.measured_flow_rate,
            "deviation_percent": self.deviation_percent,
            "sensor_state": self.sensor_state,
            "real_time_weight": self.real_time_weight,
            "start_time": iso(self.start_time),
            "end_time": iso(self.end_time),
            "expected_end_time": iso(self.expected_end_time),
            "last_sensor_update": iso(self.last_sensor_update),
        }


class AlertLog(Base):
    __tablename__ = "alert_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # nullable: nurse calls and device/system alerts may have no session
    session_id = Column(Integer, ForeignKey("infusion_sessions.id"), nullable=True, index=True)
    alert_type = _enum_column(AlertType, nullable=False)
    severity = _enum_column(Severity, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_by = Column(String(50), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "alert_id": self.id,
            "session_id": self.session_id,
            "alert_type": self.alert_type.value if self.alert_type else None,
            "severity": self.severity.value if self.severity else None,
            "message": self.message,
            "created_at": iso(self.created_at),
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": iso(self.acknowledged_at),
        }


IMMUTABLE_ALERT_FIELDS = ("session_id", "alert_type", "severity", "message", "created_at")


@event.listens_for(AlertLog, "before_update")
def _guard_alert_log(mapper, connection, target):
    state = inspect(target)
    for name in IMMUTABLE_ALERT_FIELDS:
        if state.attrs[name].history.has_changes():
            raise ValueError(f"AlertLog.{name} is immutable")
    ack_history = state.attrs["acknowledged"].history
    if ack_history.deleted and ack_history.deleted[0] and not target.acknowledged:
        raise ValueError("AlertLog acknowledgment cannot be revoked")
