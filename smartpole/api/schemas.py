"""Request bodies for the clinical command endpoints."""

from typing import Optional

from pydantic import BaseModel

from ..db.models import AlertType, PoleStatus, Severity


class StartInfusionRequest(BaseModel):
    patient_id: str
    pole_id: str
    total_volume_ml: float
    # one of the two flow fields is required; mL/hr is converted at the boundary
    flow_rate_ml_min: Optional[float] = None
    flow_rate_ml_hr: Optional[float] = None
    prescription_id: Optional[int] = None
    drug_id: Optional[str] = None


class StartFromPrescriptionRequest(BaseModel):
    prescription_id: int
    pole_id: str


class VolumeUpdateRequest(BaseModel):
    remaining_volume_ml: float


class RegisterPoleRequest(BaseModel):
    pole_id: str
    battery_level: int = 100
    status: PoleStatus = PoleStatus.ACTIVE


class PoleStatusRequest(BaseModel):
    status: PoleStatus


class BatteryRequest(BaseModel):
    battery_level: int


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str


class SystemAlertRequest(BaseModel):
    alert_type: AlertType = AlertType.SYSTEM_ERROR
    severity: Severity
    message: str


class PoleFallRequest(BaseModel):
    pole_id: str


class NurseCallRequest(BaseModel):
    patient_id: str
    session_id: Optional[int] = None
    patient_name: Optional[str] = None
