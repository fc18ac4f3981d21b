from __future__ import annotations

import pytest

from smartpole.db.models import AlertLog, AlertType, Severity
from smartpole.errors import InvalidStateError, NotFoundError


def test_acknowledge_once(services, clock, recorder) -> None:
    alert = services.alerts.system_alert(AlertType.SYSTEM_ERROR, Severity.WARNING, "scale drift")

    acked = services.alerts.acknowledge(alert.id, "nurse.kim")

    assert acked.acknowledged is True
    assert acked.acknowledged_by == "nurse.kim"
    with pytest.raises(InvalidStateError):
        services.alerts.acknowledge(alert.id, "nurse.lee")
    assert services.alert_log.get(alert.id).acknowledged_by == "nurse.kim"
    assert [m["type"] for m in recorder.on("alerts")] == ["alert", "alert_acknowledged"]


def test_acknowledge_unknown_alert(services) -> None:
    with pytest.raises(NotFoundError):
        services.alerts.acknowledge(999, "nurse.kim")


def test_acknowledge_all(services) -> None:
    services.alerts.pole_fall("pole-1")
    services.alerts.nurse_call("P-1")
    services.alerts.system_alert(AlertType.SYSTEM_ERROR, Severity.INFO, "restart")

    assert services.alerts.acknowledge_all("charge.nurse") == 3
    assert services.alert_log.unacknowledged() == []
    assert services.alerts.acknowledge_all("charge.nurse") == 0


def test_queries(services, start_session, clock) -> None:
    session = start_session()
    services.alerts.flow_deviation(session.id, 40.0, 2.0, 2.8)
    services.alerts.nurse_call("P-100", session_id=session.id, patient_name="Dana Cruz")
    old = services.alerts.system_alert(AlertType.SYSTEM_ERROR, Severity.WARNING, "db slow")
    services.alerts.acknowledge(old.id, "tech")

    assert len(services.alert_log.for_session(session.id)) == 2
    assert len(services.alert_log.critical_unacknowledged()) == 2
    assert services.alert_log.count_unacknowledged(Severity.CRITICAL) == 2
    assert services.alert_log.count_unacknowledged(Severity.WARNING) == 0

    clock.advance(3 * 3600)
    services.alerts.pole_fall("pole-07")
    assert len(services.alert_log.recent(hours=1)) == 1
    assert len(services.alert_log.recent(hours=24)) == 4
    assert len(services.alert_log.recent(hours=24, limit=2)) == 2


def test_nurse_call_message_and_session(services) -> None:
    alert = services.alerts.nurse_call("P-3", session_id=0)
    assert alert.session_id is None
    assert alert.severity == Severity.CRITICAL
    assert alert.message == "Patient P-3 is calling for a nurse"


def test_alert_fields_are_immutable(services) -> None:
    alert = services.alerts.pole_fall("pole-1")
    with pytest.raises(ValueError, match="immutable"):
        with services.database.transaction() as sess:
            stored = sess.get(AlertLog, alert.id)
            stored.message = "edited"
