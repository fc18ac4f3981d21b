from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from smartpole.api import create_app
from smartpole.api.server import start_sender


@pytest.fixture()
def client(services):
    with TestClient(create_app(services)) as c:
        yield c


def _start(client, pole_id="pole-07", patient_id="P-100", **body):
    client.post("/api/v1/poles", json={"pole_id": pole_id})
    client.post(f"/api/v1/poles/{pole_id}/assign/{patient_id}")
    payload = {"patient_id": patient_id, "pole_id": pole_id, "total_volume_ml": 1000, "flow_rate_ml_hr": 120}
    payload.update(body)
    return client.post("/api/v1/infusions/start", json=payload)


def test_health(client) -> None:
    assert client.get("/health").json()["status"] == "ok"


def test_start_infusion_converts_ml_per_hour(client) -> None:
    response = _start(client)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["data"]["prescribed_flow_rate_ml_min"] == 2.0
    assert body["data"]["prescribed_flow_rate_ml_hr"] == 120.0


def test_start_requires_a_flow_rate(client) -> None:
    response = _start(client, flow_rate_ml_hr=None)
    assert response.status_code == 400
    assert response.json()["status"] == "error"


def test_domain_errors_map_to_status_codes(client) -> None:
    session_id = _start(client).json()["data"]["session_id"]

    assert client.get("/api/v1/infusions/4040").status_code == 404
    assert _start(client).status_code == 409
    assert client.post(f"/api/v1/infusions/{session_id}/end").status_code == 200
    response = client.post(f"/api/v1/infusions/{session_id}/pause")
    assert response.status_code == 409
    assert "Cannot change session" in response.json()["message"]


def test_session_lookups_and_volume(client) -> None:
    session_id = _start(client).json()["data"]["session_id"]

    assert client.get("/api/v1/infusions/pole/pole-07/active").json()["data"]["session_id"] == session_id
    assert client.get("/api/v1/infusions/patient/P-100/active").json()["data"]["session_id"] == session_id
    assert len(client.get("/api/v1/infusions/active").json()["data"]) == 1
    assert client.get("/api/v1/infusions/pole/pole-99/active").status_code == 404

    response = client.put(f"/api/v1/infusions/{session_id}/volume", json={"remaining_volume_ml": 400})
    assert response.json()["data"]["remaining_volume_ml"] == 400.0


def test_device_data_endpoint(client) -> None:
    _start(client)

    response = client.post(
        "/api/esp/data",
        json={"device_id": "pole-07", "current_weight": 450, "initial_weight": 500},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["data"]["remaining_volume"] == 950.0
    assert body["timestamp"]


def test_device_endpoints_never_fail_on_bad_input(client) -> None:
    response = client.post("/api/esp/data", content=b"{not json", headers={"content-type": "application/json"})
    assert response.status_code == 200
    assert response.json()["status"] == "error"

    response = client.post("/api/esp/alert", json=[1, 2, 3])
    assert response.status_code == 200
    assert response.json()["status"] == "error"

    response = client.get("/api/esp/init")
    assert response.status_code == 200
    assert response.json()["status"] == "error"


def test_ping_and_init(client) -> None:
    _start(client)

    ping = client.post("/api/esp/ping", json={"device_id": "pole-07", "battery_level": 77}).json()
    assert ping["data"]["prescription_available"] is True

    init = client.get("/api/esp/init", params={"device_id": "pole-07"}).json()
    assert init["status"] == "success"
    assert init["data"]["calculated_gtt"] == 40


def test_pole_commands(client) -> None:
    client.post("/api/v1/poles", json={"pole_id": "pole-1"})
    assert client.post("/api/v1/poles", json={"pole_id": "pole-1"}).status_code == 409

    assert client.post("/api/v1/poles/pole-1/assign/P-1").status_code == 200
    assert client.post("/api/v1/poles/pole-1/assign/P-2").status_code == 409
    assert client.post("/api/v1/poles/pole-9/assign/P-2").status_code == 404

    released = client.post("/api/v1/poles/patient/P-1/unassign-all").json()["data"]["pole_ids"]
    assert released == ["pole-1"]
    assert client.post("/api/v1/poles/pole-1/unassign").status_code == 409

    status = client.put("/api/v1/poles/pole-1/status", json={"status": "maintenance"}).json()
    assert status["data"]["status"] == "maintenance"

    assert client.put("/api/v1/poles/pole-1/battery", json={"battery_level": 150}).status_code == 400
    assert client.put("/api/v1/poles/pole-1/battery", json={"battery_level": 15}).status_code == 200
    assert client.get("/api/v1/alerts/count/warning").json()["data"]["count"] == 1

    stats = client.get("/api/v1/poles/statistics").json()["data"]
    assert stats["total"] == 1


def test_alert_endpoints(client) -> None:
    _start(client)
    client.post("/api/v1/alerts/pole-fall", json={"pole_id": "pole-07"})
    client.post("/api/v1/alerts/system", json={"severity": "info", "message": "maintenance window"})

    alerts = client.get("/api/v1/alerts").json()["data"]
    assert len(alerts) == 2
    assert len(client.get("/api/v1/alerts/critical").json()["data"]) == 1
    assert len(client.get("/api/v1/alerts/recent", params={"hours": 1}).json()["data"]) == 2

    fall = next(a for a in alerts if a["alert_type"] == "pole_fall")
    assert fall["session_id"] is not None
    assert len(client.get(f"/api/v1/alerts/session/{fall['session_id']}").json()["data"]) == 1

    ack = client.post(f"/api/v1/alerts/{fall['alert_id']}/acknowledge", json={"acknowledged_by": "nurse.kim"})
    assert ack.json()["data"]["acknowledged_by"] == "nurse.kim"
    again = client.post(f"/api/v1/alerts/{fall['alert_id']}/acknowledge", json={"acknowledged_by": "nurse.lee"})
    assert again.status_code == 409

    done = client.post("/api/v1/alerts/acknowledge-all", json={"acknowledged_by": "nurse.kim"}).json()
    assert done["data"]["count"] == 1


def test_websocket_receives_alerts(client) -> None:
    with client.websocket_connect("/ws/alerts") as ws:
        response = client.post(
            "/api/v1/mobile/alerts/call-nurse",
            json={"patient_id": "P-8", "patient_name": "Sam Ortiz"},
        )
        assert response.status_code == 200

        message = ws.receive_json()
        assert message["type"] == "alert"
        assert message["alert_type"] == "nurse_call"
        assert message["message"] == "Sam Ortiz is calling for a nurse"


def test_websocket_per_pole_feed(client) -> None:
    _start(client)
    with client.websocket_connect("/ws/pole/pole-07") as ws:
        client.post("/api/esp/data", json={"device_id": "pole-07", "weight_remaining": 900})
        message = ws.receive_json()
        assert message["type"] == "telemetry"
        assert message["remaining_volume"] == 900.0


def test_concurrent_assignments_to_one_patient(client, services) -> None:
    pole_ids = [f"pole-{i}" for i in range(8)]
    for pole_id in pole_ids:
        client.post("/api/v1/poles", json={"pole_id": pole_id})
    barrier = threading.Barrier(len(pole_ids))

    def assign(pole_id):
        barrier.wait()
        return client.post(f"/api/v1/poles/{pole_id}/assign/P-X")

    with ThreadPoolExecutor(max_workers=len(pole_ids)) as pool:
        responses = list(pool.map(assign, pole_ids))

    assert sorted(r.status_code for r in responses) == [200] + [409] * 7
    rejected = [r.json() for r in responses if r.status_code == 409]
    assert all(body["status"] == "error" and "P-X" in body["message"] for body in rejected)
    winner = next(pole_id for pole_id, r in zip(pole_ids, responses) if r.status_code == 200)
    assert services.registry.pole_for_patient("P-X").id == winner


def test_unexpected_error_returns_envelope(services, monkeypatch) -> None:
    def broken():
        raise RuntimeError("disk gone")

    monkeypatch.setattr(services.registry, "list_all", broken)
    with TestClient(create_app(services), raise_server_exceptions=False) as c:
        response = c.get("/api/v1/poles")

    assert response.status_code == 500
    body = response.json()
    assert body["status"] == "error"
    assert "disk gone" in body["message"]
    assert body["timestamp"]


def test_battery_update_survives_alert_store_failure(client, services, monkeypatch) -> None:
    client.post("/api/v1/poles", json={"pole_id": "pole-1"})

    def broken(*args, **kwargs):
        raise RuntimeError("alert store unavailable")

    monkeypatch.setattr(services.alert_log, "create", broken)
    response = client.put("/api/v1/poles/pole-1/battery", json={"battery_level": 15})

    assert response.status_code == 200
    assert response.json()["data"]["battery_level"] == 15
    assert services.registry.get("pole-1").battery_level == 15


class _ClosedSocket:
    async def send_json(self, message):
        raise RuntimeError("socket closed")


def test_feed_send_failure_is_logged(caplog) -> None:
    async def run():
        outbox = asyncio.Queue()
        outbox.put_nowait({"type": "alert"})
        task = start_sender(_ClosedSocket(), outbox)
        await asyncio.wait([task])
        await asyncio.sleep(0)
        return task

    with caplog.at_level(logging.WARNING, logger="smartpole.api"):
        task = asyncio.run(run())

    assert isinstance(task.exception(), RuntimeError)
    assert "websocket feed send failed: socket closed" in caplog.text
