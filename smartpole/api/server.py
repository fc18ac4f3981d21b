"""
FastAPI backend: device ingestion endpoints, clinical commands, WebSocket
topic feeds, health check.

Device endpoints always answer 200 with a {status, message, data, timestamp}
envelope. Clinical commands map domain errors to 404 / 409 / 400.
"""

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..app_context import Services
from ..db.models import InfusionSession, Severity
from ..errors import InvalidStateError, NotFoundError, SmartPoleError, ValidationError
from ..responses import ServiceResult
from .schemas import (
    AcknowledgeRequest,
    BatteryRequest,
    NurseCallRequest,
    PoleFallRequest,
    PoleStatusRequest,
    RegisterPoleRequest,
    StartFromPrescriptionRequest,
    StartInfusionRequest,
    SystemAlertRequest,
    VolumeUpdateRequest,
)

logger = logging.getLogger("smartpole.api")

_STATUS_FOR_ERROR = (
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ValidationError, 400),
)


def _status_code(exc: SmartPoleError) -> int:
    for error_cls, code in _STATUS_FOR_ERROR:
        if isinstance(exc, error_cls):
            return code
    return 500


def _session_view(session: InfusionSession) -> dict:
    data = session.to_dict()
    data["prescribed_flow_rate_ml_hr"] = session.prescribed_flow_rate * 60.0
    return data


def _ok(message: str, data=None) -> dict:
    return ServiceResult.success(message, data).to_dict()


async def _read_json(request: Request):
    """Body as parsed JSON, or None when it is not valid JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        message = await outbox.get()
        await websocket.send_json(message)


def _log_sender_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("websocket feed send failed: %s", exc)


def start_sender(websocket: WebSocket, outbox: asyncio.Queue) -> asyncio.Task:
    """Relay queued messages to the socket; a failed send is logged, not lost."""
    task = asyncio.create_task(_pump(websocket, outbox))
    task.add_done_callback(_log_sender_failure)
    return task


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="SmartPole API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.services = services
    gateway = services.gateway
    liveness = services.liveness
    sessions = services.sessions
    registry = services.registry
    alerts = services.alerts
    alert_log = services.alert_log

    @app.exception_handler(SmartPoleError)
    async def domain_error(request: Request, exc: SmartPoleError):
        code = _status_code(exc)
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, code, exc)
        return JSONResponse(status_code=code, content=ServiceResult.error(str(exc)).to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content=ServiceResult.error(f"Internal error: {exc}").to_dict())

    @app.get("/health")
    async def health():
        """Health check."""
        return {"status": "ok", "service": "SmartPole"}

    # ---- device ingestion ----

    @app.post("/api/esp/data")
    async def device_data(request: Request):
        payload = await _read_json(request)
        result = await run_in_threadpool(gateway.handle_telemetry, payload)
        return result.to_dict()

    @app.post("/api/esp/alert")
    async def device_alert(request: Request):
        payload = await _read_json(request)
        result = await run_in_threadpool(gateway.handle_alert_report, payload)
        return result.to_dict()

    @app.post("/api/esp/ping")
    async def device_ping(request: Request):
        payload = await _read_json(request)
        result = await run_in_threadpool(liveness.handle_ping, payload)
        return result.to_dict()

    @app.get("/api/esp/init")
    def device_init(device_id: Optional[str] = None):
        return gateway.handle_init(device_id).to_dict()

    # ---- infusion sessions ----

    @app.post("/api/v1/infusions/start")
    def start_infusion(body: StartInfusionRequest):
        if body.flow_rate_ml_min is not None:
            flow = body.flow_rate_ml_min
        elif body.flow_rate_ml_hr is not None:
            flow = body.flow_rate_ml_hr / 60.0
        else:
            raise ValidationError("flow_rate_ml_min or flow_rate_ml_hr is required")
        session = sessions.create(
            patient_id=body.patient_id,
            pole_id=body.pole_id,
            total_volume_ml=body.total_volume_ml,
            flow_rate_ml_min=flow,
            prescription_id=body.prescription_id,
            drug_id=body.drug_id,
        )
        return _ok("Infusion started successfully", _session_view(session))

    @app.post("/api/v1/infusions/start-prescription")
    def start_from_prescription(body: StartFromPrescriptionRequest):
        session = sessions.start_from_prescription(body.prescription_id, body.pole_id)
        return _ok("Infusion started from prescription", _session_view(session))

    @app.get("/api/v1/infusions/active")
    def active_infusions():
        return _ok("Active infusions", [_session_view(s) for s in sessions.list_active()])

    @app.get("/api/v1/infusions/pole/{pole_id}/active")
    def active_for_pole(pole_id: str):
        session = sessions.active_for_pole(pole_id)
        if session is None:
            raise NotFoundError(f"No active session for pole {pole_id}")
        return _ok("Active infusion", _session_view(session))

    @app.get("/api/v1/infusions/patient/{patient_id}/active")
    def active_for_patient(patient_id: str):
        session = sessions.active_for_patient(patient_id)
        if session is None:
            raise NotFoundError(f"No active session for patient {patient_id}")
        return _ok("Active infusion", _session_view(session))

    @app.get("/api/v1/infusions/patient/{patient_id}")
    def patient_history(patient_id: str):
        return _ok("Patient infusions", [_session_view(s) for s in sessions.for_patient(patient_id)])

    @app.get("/api/v1/infusions/{session_id}")
    def get_infusion(session_id: int):
        return _ok("Infusion", _session_view(sessions.get(session_id)))

    @app.post("/api/v1/infusions/{session_id}/pause")
    def pause_infusion(session_id: int):
        return _ok("Infusion paused", _session_view(sessions.pause(session_id)))

    @app.post("/api/v1/infusions/{session_id}/resume")
    def resume_infusion(session_id: int):
        return _ok("Infusion resumed", _session_view(sessions.resume(session_id)))

    @app.post("/api/v1/infusions/{session_id}/end")
    def end_infusion(session_id: int):
        return _ok("Infusion ended", _session_view(sessions.end(session_id)))

    @app.put("/api/v1/infusions/{session_id}/volume")
    def update_volume(session_id: int, body: VolumeUpdateRequest):
        session = sessions.update_remaining_volume(session_id, body.remaining_volume_ml)
        return _ok("Volume updated", _session_view(session))

    # ---- poles ----

    @app.get("/api/v1/poles")
    def list_poles():
        return _ok("Poles", [p.to_dict() for p in registry.list_all()])

    @app.post("/api/v1/poles")
    def register_pole(body: RegisterPoleRequest):
        pole = registry.register(body.pole_id, battery_level=body.battery_level, status=body.status)
        return _ok("Pole registered", pole.to_dict())

    @app.get("/api/v1/poles/online")
    def online_poles():
        return _ok("Online poles", [p.to_dict() for p in registry.list_online()])

    @app.get("/api/v1/poles/statistics")
    def pole_statistics():
        return _ok("Pole statistics", liveness.statistics().to_dict())

    @app.post("/api/v1/poles/patient/{patient_id}/unassign-all")
    def unassign_patient(patient_id: str):
        released = registry.unassign_patient(patient_id)
        return _ok(f"Released {len(released)} pole(s)", {"patient_id": patient_id, "pole_ids": released})

    @app.get("/api/v1/poles/patient/{patient_id}")
    def pole_of_patient(patient_id: str):
        pole = registry.pole_for_patient(patient_id)
        if pole is None:
            raise NotFoundError(f"Patient {patient_id} has no pole assigned")
        return _ok("Assigned pole", pole.to_dict())

    @app.get("/api/v1/poles/{pole_id}")
    def get_pole(pole_id: str):
        return _ok("Pole", registry.get(pole_id).to_dict())

    @app.post("/api/v1/poles/{pole_id}/assign/{patient_id}")
    def assign_pole(pole_id: str, patient_id: str):
        return _ok("Pole assigned", registry.assign(pole_id, patient_id).to_dict())

    @app.post("/api/v1/poles/{pole_id}/unassign")
    def unassign_pole(pole_id: str):
        return _ok("Pole unassigned", registry.unassign(pole_id).to_dict())

    @app.put("/api/v1/poles/{pole_id}/status")
    def set_pole_status(pole_id: str, body: PoleStatusRequest):
        return _ok("Pole status updated", registry.set_status(pole_id, body.status).to_dict())

    @app.put("/api/v1/poles/{pole_id}/battery")
    def set_pole_battery(pole_id: str, body: BatteryRequest):
        outcome = registry.set_battery(pole_id, body.battery_level)
        try:
            alerts.battery_low(pole_id, outcome.previous_battery, body.battery_level)
        except Exception as e:
            # the battery level is already committed
            logger.exception("failed to record battery alert for pole %s: %s", pole_id, e)
        return _ok("Battery level updated", outcome.pole.to_dict())

    # ---- alerts ----

    @app.get("/api/v1/alerts")
    def unacknowledged_alerts():
        return _ok("Unacknowledged alerts", [a.to_dict() for a in alert_log.unacknowledged()])

    @app.get("/api/v1/alerts/critical")
    def critical_alerts():
        return _ok("Critical alerts", [a.to_dict() for a in alert_log.critical_unacknowledged()])

    @app.get("/api/v1/alerts/recent")
    def recent_alerts(hours: int = 24, limit: int = 50):
        return _ok("Recent alerts", [a.to_dict() for a in alert_log.recent(hours=hours, limit=limit)])

    @app.get("/api/v1/alerts/session/{session_id}")
    def session_alerts(session_id: int):
        return _ok("Session alerts", [a.to_dict() for a in alert_log.for_session(session_id)])

    @app.get("/api/v1/alerts/count/{severity}")
    def count_alerts(severity: Severity):
        count = alert_log.count_unacknowledged(severity)
        return _ok("Unacknowledged alert count", {"severity": severity.value, "count": count})

    @app.post("/api/v1/alerts/acknowledge-all")
    def acknowledge_all(body: AcknowledgeRequest):
        count = alerts.acknowledge_all(body.acknowledged_by)
        return _ok(f"Acknowledged {count} alert(s)", {"count": count})

    @app.post("/api/v1/alerts/{alert_id}/acknowledge")
    def acknowledge(alert_id: int, body: AcknowledgeRequest):
        return _ok("Alert acknowledged", alerts.acknowledge(alert_id, body.acknowledged_by).to_dict())

    @app.post("/api/v1/alerts/system")
    def system_alert(body: SystemAlertRequest):
        alert = alerts.system_alert(body.alert_type, body.severity, body.message)
        return _ok("System alert created", alert.to_dict())

    @app.post("/api/v1/alerts/pole-fall")
    def pole_fall(body: PoleFallRequest):
        session = sessions.active_for_pole(body.pole_id)
        alert = alerts.pole_fall(
            body.pole_id,
            session_id=session.id if session else None,
            patient_id=session.patient_id if session else None,
        )
        return _ok("Pole fall alert created", alert.to_dict())

    @app.post("/api/v1/mobile/alerts/call-nurse")
    def call_nurse(body: NurseCallRequest):
        alert = alerts.nurse_call(body.patient_id, session_id=body.session_id, patient_name=body.patient_name)
        return _ok("Nurse has been notified", alert.to_dict())

    # ---- live feeds ----

    @app.websocket("/ws/{topic:path}")
    async def topic_feed(websocket: WebSocket, topic: str):
        """Relay every broadcast on `topic` to the connected client."""
        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue = asyncio.Queue()

        def deliver(_topic: str, message: dict) -> None:
            loop.call_soon_threadsafe(outbox.put_nowait, message)

        # subscribed before accept so nothing published after the handshake is missed
        subscription = services.broadcaster.subscribe(topic, deliver)
        sender = None
        try:
            await websocket.accept()
            sender = start_sender(websocket, outbox)
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            subscription.cancel()
            if sender is not None:
                sender.cancel()

    return app
