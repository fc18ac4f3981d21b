from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from smartpole.db.models import AlertType, InfusionSession, Prescription, PrescriptionStatus, Severity
from smartpole.events import patient_topic, pole_alert_topic, pole_topic


def _report(**fields) -> dict:
    payload = {"device_id": "pole-07"}
    payload.update(fields)
    return payload


def test_end_to_end_weight_report(services, start_session, recorder, broadcaster) -> None:
    session = start_session(total_volume_ml=1000.0, flow_rate_ml_min=2.0)
    recorder.listen(broadcaster, pole_topic("pole-07"))
    recorder.listen(broadcaster, patient_topic("P-100"))

    result = services.gateway.handle_telemetry(
        _report(current_weight=450, initial_weight=500, flow_rate_measured=2.0, deviation_percent=0.0, state="RUNNING")
    )

    assert result.ok
    assert result.data["consumed_volume"] == 50.0
    assert result.data["remaining_volume"] == 950.0
    assert result.data["percentage"] == pytest.approx(5.0)
    stored = services.sessions.get(session.id)
    assert stored.remaining_volume_ml == 950.0
    assert stored.consumed_volume_ml == 50.0
    assert stored.sensor_state == "RUNNING"

    for topic in (pole_topic("pole-07"), patient_topic("P-100"), "patients"):
        messages = recorder.on(topic)
        assert len(messages) == 1
        assert messages[0]["type"] == "telemetry"
        assert messages[0]["remaining_volume"] == 950.0
        assert messages[0]["timestamp"]
    assert services.alert_log.count() == 0


def test_replayed_report_is_idempotent(services, start_session) -> None:
    session = start_session(total_volume_ml=1000.0)
    report = _report(current_weight=95, initial_weight=1000, deviation_percent=20.0)

    services.gateway.handle_telemetry(report)
    services.gateway.handle_telemetry(report)

    assert services.sessions.get(session.id).remaining_volume_ml == 95.0
    alerts = services.alert_log.for_session(session.id)
    assert sorted((a.alert_type, a.severity) for a in alerts) == sorted([
        (AlertType.LOW_VOLUME, Severity.WARNING),
        (AlertType.FLOW_STOPPED, Severity.WARNING),
    ])


def test_deviation_escalation_raises_new_alert(services, start_session, recorder) -> None:
    session = start_session()

    services.gateway.handle_telemetry(_report(deviation_percent=18.0))
    services.gateway.handle_telemetry(_report(deviation_percent=35.0))
    services.gateway.handle_telemetry(_report(deviation_percent=-36.0))

    alerts = services.alert_log.for_session(session.id)
    assert [a.severity for a in reversed(alerts)] == [Severity.WARNING, Severity.CRITICAL]
    assert len(recorder.on("alerts")) == 2


def test_weight_remaining_fallback(services, start_session) -> None:
    session = start_session(total_volume_ml=1000.0)

    services.gateway.handle_telemetry(_report(weight_remaining=600))
    assert services.sessions.get(session.id).remaining_volume_ml == 600.0

    services.gateway.handle_telemetry(_report(flow_rate_measured=1.9))
    stored = services.sessions.get(session.id)
    assert stored.remaining_volume_ml == 600.0
    assert stored.consumed_volume_ml == 400.0
    assert stored.measured_flow_rate == 1.9


def test_weight_consumed_fallback(services, start_session) -> None:
    session = start_session(total_volume_ml=1000.0)

    result = services.gateway.handle_telemetry(_report(weight_consumed=300))

    assert result.data["remaining_volume"] == 700.0
    assert services.sessions.get(session.id).consumed_volume_ml == 300.0

    # weight_remaining wins when both are reported
    services.gateway.handle_telemetry(_report(weight_remaining=650, weight_consumed=300))
    assert services.sessions.get(session.id).remaining_volume_ml == 650.0


def test_interleaved_reports_for_one_session(services, start_session) -> None:
    session = start_session(total_volume_ml=1000.0)
    workers = 8
    barrier = threading.Barrier(workers)

    def send(_):
        barrier.wait()
        return services.gateway.handle_telemetry(_report(weight_remaining=95))

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(send, range(workers)))

    assert all(r.ok for r in results)
    assert services.sessions.get(session.id).remaining_volume_ml == 95.0
    alerts = services.alert_log.for_session(session.id)
    assert [a.alert_type for a in alerts] == [AlertType.LOW_VOLUME]


def test_over_consumption_clamps_to_zero(services, start_session) -> None:
    session = start_session(total_volume_ml=500.0)

    result = services.gateway.handle_telemetry(_report(current_weight=0, initial_weight=800))

    assert result.data["remaining_volume"] == 0.0
    assert result.data["percentage"] == 100.0
    assert services.sessions.get(session.id).consumed_volume_ml == 500.0


def test_report_without_active_session_is_a_no_op(services, recorder) -> None:
    services.registry.register("pole-07")

    result = services.gateway.handle_telemetry(_report(current_weight=400, initial_weight=500, deviation_percent=50))

    assert result.ok
    assert result.message == "Data received but no active session"
    assert services.alert_log.count() == 0
    assert recorder.messages == []


def test_paused_session_ignores_telemetry(services, start_session) -> None:
    session = start_session()
    services.sessions.pause(session.id)

    result = services.gateway.handle_telemetry(_report(weight_remaining=10))

    assert result.ok
    assert services.sessions.get(session.id).remaining_volume_ml == 1000.0


@pytest.mark.parametrize("payload", [None, [], "text", {"current_weight": 10}, {"device_id": "  "}])
def test_malformed_reports_return_error_envelope(services, payload) -> None:
    result = services.gateway.handle_telemetry(payload)
    assert result.status == "error"


def test_unparseable_fields_are_treated_as_absent(services, start_session) -> None:
    session = start_session(total_volume_ml=1000.0)

    result = services.gateway.handle_telemetry(
        _report(current_weight="heavy", initial_weight=500, weight_remaining="700", deviation_percent="NaN")
    )

    assert result.ok
    assert services.sessions.get(session.id).remaining_volume_ml == 700.0
    assert services.alert_log.count() == 0


def test_broadcast_failure_does_not_fail_ingestion(services, start_session, broadcaster) -> None:
    start_session()

    def _explode(topic, message):
        raise RuntimeError("subscriber gone")

    broadcaster.subscribe("patients", _explode)
    result = services.gateway.handle_telemetry(_report(weight_remaining=900))

    assert result.ok


# ---- device alert reports ----

def test_alert_report_deviation(services, start_session, recorder, broadcaster) -> None:
    session = start_session()
    recorder.listen(broadcaster, pole_alert_topic("pole-07"))

    result = services.gateway.handle_alert_report(_report(alert_type="flow_deviation", deviation_percent=30.0))

    assert result.ok
    assert result.data["alert_type"] == "flow_stopped"
    assert result.data["severity"] == "critical"
    assert result.data["session_id"] == session.id
    assert len(recorder.on(pole_alert_topic("pole-07"))) == 1


def test_alert_report_within_tolerance(services, start_session) -> None:
    start_session()

    result = services.gateway.handle_alert_report(_report(deviation_percent=10.0))

    assert result.ok
    assert services.alert_log.count() == 0


def test_alert_report_without_session(services) -> None:
    result = services.gateway.handle_alert_report(_report(deviation_percent=40.0))
    assert result.ok
    assert services.alert_log.count() == 0


def test_alert_report_pole_fall(services, start_session) -> None:
    session = start_session()

    result = services.gateway.handle_alert_report(_report(alert_type="POLE_FALL"))

    assert result.ok
    alert = services.alert_log.get(result.data["alert_id"])
    assert alert.alert_type == AlertType.POLE_FALL
    assert alert.severity == Severity.CRITICAL
    assert alert.session_id == session.id


def test_alert_report_nurse_call_needs_assignment(services) -> None:
    services.registry.register("pole-07")
    assert services.gateway.handle_alert_report(_report(alert_type="nurse_call")).status == "error"

    services.registry.assign("pole-07", "P-5")
    result = services.gateway.handle_alert_report(_report(alert_type="nurse_call"))
    assert result.ok
    assert result.data["alert_type"] == "nurse_call"
    assert result.data["session_id"] is None


# ---- init ----

def test_init_returns_prescription(services, start_session) -> None:
    session = start_session(total_volume_ml=1000.0, flow_rate_ml_min=2.0)

    result = services.gateway.handle_init("pole-07")

    assert result.ok
    data = result.data
    assert data["session_id"] == session.id
    assert data["patient_id"] == "P-100"
    assert data["flow_rate_ml_min"] == 2.0
    assert data["flow_rate_ml_hr"] == 120.0
    assert data["gtt_factor"] == 20
    assert data["calculated_gtt"] == 40
    assert data["initial_volume_ml"] == 1000.0
    assert data["start_time"] is not None


def test_init_uses_prescription_gtt(services) -> None:
    with services.database.transaction() as sess:
        prescription = Prescription(
            patient_id="P-100", total_volume_ml=500.0, flow_rate_ml_min=2.5,
            gtt_factor=15, status=PrescriptionStatus.PRESCRIBED,
        )
        sess.add(prescription)
    services.registry.register("pole-07")
    services.registry.assign("pole-07", "P-100")
    services.sessions.start_from_prescription(prescription.id, "pole-07")

    data = services.gateway.handle_init("pole-07").data

    assert data["gtt_factor"] == 15
    assert data["calculated_gtt"] == round(2.5 * 15)


def test_init_links_pole_through_patient(services, start_session) -> None:
    session = start_session()
    with services.database.transaction() as sess:
        sess.get(InfusionSession, session.id).pole_id = None

    result = services.gateway.handle_init("pole-07")

    assert result.ok
    assert result.data["session_id"] == session.id
    assert services.sessions.get(session.id).pole_id == "pole-07"


def test_init_without_session(services) -> None:
    assert services.gateway.handle_init("pole-unknown").status == "error"
    assert services.gateway.handle_init(None).status == "error"

    services.registry.register("pole-07")
    services.registry.assign("pole-07", "P-100")
    result = services.gateway.handle_init("pole-07")
    assert result.status == "error"
    assert "P-100" in result.message
