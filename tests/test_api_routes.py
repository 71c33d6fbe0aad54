"""Tests for the REST API and task endpoints."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from pillsync.sync.config_mirror import config_path
from pillsync.triggers.context import HandlerContext

SECRET = {"X-Task-Secret": "task-secret"}


def _seed_users(client: TestClient) -> None:
    client.post("/api/users", json={"id": "p1", "role": "patient", "display_name": "Pat"})
    client.post("/api/users", json={"id": "c1", "role": "caregiver", "display_name": "Carol"})


def _link_patient(client: TestClient) -> None:
    _seed_users(client)
    resp = client.put("/api/users/p1/devices/D1")
    assert resp.status_code == 200


def test_health(client: TestClient):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


class TestUsers:
    def test_create_user(self, client: TestClient):
        resp = client.post("/api/users", json={"id": "p1", "display_name": "Pat"})
        assert resp.status_code == 201
        assert resp.json()["role"] == "patient"

    def test_register_push_token(self, client: TestClient):
        resp = client.post("/api/users/p1/push-tokens", json={"token": "tok", "platform": "android"})
        assert resp.status_code == 201
        assert resp.json()["token"] == "tok"

    def test_invalid_role_rejected(self, client: TestClient):
        resp = client.post("/api/users", json={"id": "x", "role": "admin"})
        assert resp.status_code == 422


class TestLinks:
    def test_presence_link_creates_device(self, client: TestClient):
        _link_patient(client)
        device = client.get("/api/devices/D1").json()
        assert device["primary_patient_id"] == "p1"
        assert device["linked_users"] == {"p1": "patient"}

    def test_device_link_notifies_patient(self, client: TestClient):
        _link_patient(client)

        resp = client.post("/api/device-links", json={"device_id": "D1", "user_id": "c1"})
        assert resp.status_code == 201
        assert resp.json()["role"] == "caregiver"
        assert resp.json()["status"] == "active"

        notes = client.get("/api/users/p1/notifications").json()
        assert len(notes) == 1
        assert notes[0]["type"] == "caregiver_connected"
        assert notes[0]["data"]["caregiverId"] == "c1"

    def test_remove_device_link(self, client: TestClient, ctx: HandlerContext):
        _link_patient(client)
        resp = client.delete("/api/device-links/D1/p1")
        assert resp.status_code == 200
        assert resp.json()["status"] == "inactive"
        assert ctx.tree.get("users/p1/devices/D1") is None
        assert client.get("/api/devices/D1").json()["primary_patient_id"] is None

    def test_remove_unknown_link(self, client: TestClient):
        assert client.delete("/api/device-links/D1/nobody").status_code == 404

    def test_delete_presence_link(self, client: TestClient):
        _link_patient(client)
        resp = client.delete("/api/users/p1/devices/D1")
        assert resp.json() == {"status": "unlinked"}
        assert client.get("/api/devices/D1").json()["linked_users"] == {}


class TestDevices:
    def test_unknown_device(self, client: TestClient):
        assert client.get("/api/devices/nope").status_code == 404

    def test_state_report_mirrors_battery(self, client: TestClient):
        _link_patient(client)
        resp = client.patch(
            "/api/devices/D1/state", json={"battery_level": 0.73, "current_status": "IDLE"}
        )
        assert resp.status_code == 200
        assert resp.json() == {"battery_level": 0.73, "current_status": "IDLE"}

        state = client.get("/api/devices/D1").json()["last_known_state"]
        assert state["battery"] == 73
        assert state["status"] == "IDLE"

    def test_desired_config_reaches_realtime(self, client: TestClient, ctx: HandlerContext):
        _link_patient(client)
        resp = client.put("/api/devices/D1/desired-config", json={"volume": 4})
        assert resp.status_code == 200
        assert resp.json()["desired_config"] == {"volume": 4}
        assert ctx.tree.get(config_path("D1")) == {"volume": 4}

    def test_dispense_event_creates_intake_record(self, client: TestClient):
        _link_patient(client)
        client.post("/api/medications", json={"id": "m1", "patient_id": "p1", "name": "Aspirin"})

        resp = client.post(
            "/api/devices/D1/dispense-events",
            json={"eventId": "e1", "medicationId": "m1", "ok": True},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["eventId"] == "e1"
        assert body["intakeRecord"]["status"] == "TAKEN"
        assert body["intakeRecord"]["medication_name"] == "Aspirin"

        records = client.get("/api/patients/p1/intake-records").json()
        assert [r["id"] for r in records] == ["D1_e1"]

    def test_duplicate_dispense_event(self, client: TestClient):
        _link_patient(client)
        payload = {"eventId": "e1", "ok": True}
        assert client.post("/api/devices/D1/dispense-events", json=payload).status_code == 201
        assert client.post("/api/devices/D1/dispense-events", json=payload).status_code == 409

    def test_empty_dispense_event(self, client: TestClient):
        resp = client.post("/api/devices/D1/dispense-events", json={"eventId": "e1"})
        assert resp.status_code == 400

    def test_dispense_without_owner_has_no_record(self, client: TestClient):
        resp = client.post("/api/devices/D9/dispense-events", json={"ok": True})
        assert resp.status_code == 201
        assert resp.json()["intakeRecord"] is None


class TestReports:
    def test_adherence_without_records(self, client: TestClient):
        resp = client.get("/api/patients/p1/adherence")
        assert resp.json() == {"adherence": 100.0, "total": 0, "segments": []}

    def test_adherence_after_events(self, client: TestClient):
        _link_patient(client)
        client.post("/api/devices/D1/dispense-events", json={"eventId": "e1", "ok": True})
        client.post("/api/devices/D1/dispense-events", json={"eventId": "e2", "ok": False})
        report = client.get("/api/patients/p1/adherence").json()
        assert report["total"] == 2
        assert report["adherence"] == 50.0


class TestCriticalEvents:
    def test_create_and_list(self, client: TestClient, push):
        client.post("/api/users/c1/push-tokens", json={"token": "tok-c1"})
        resp = client.post(
            "/api/critical-events",
            json={"event_type": "missed_dose", "caregiver_id": "c1", "patient_id": "p1"},
        )
        assert resp.status_code == 201
        assert resp.json()["notification_sent"] is True
        assert push.calls[0]["tokens"] == ["tok-c1"]

        events = client.get("/api/critical-events", params={"caregiver_id": "c1"}).json()
        assert len(events) == 1
        assert client.get("/api/critical-events", params={"caregiver_id": "c9"}).json() == []


class TestCheckMissedDoseTask:
    def test_missing_secret_forbidden(self, client: TestClient):
        resp = client.post("/tasks/check-missed-dose", json={"deviceId": "D1", "userID": "p1"})
        assert resp.status_code == 403

    def test_wrong_secret_forbidden(self, client: TestClient):
        resp = client.post(
            "/tasks/check-missed-dose",
            json={"deviceId": "D1", "userID": "p1"},
            headers={"X-Task-Secret": "nope"},
        )
        assert resp.status_code == 403

    def test_missing_fields(self, client: TestClient):
        resp = client.post("/tasks/check-missed-dose", json={"deviceId": "D1"}, headers=SECRET)
        assert resp.status_code == 400

    def test_missing_body(self, client: TestClient):
        resp = client.post("/tasks/check-missed-dose", headers=SECRET)
        assert resp.status_code == 400

    def test_non_object_body(self, client: TestClient):
        resp = client.post("/tasks/check-missed-dose", json=["D1", "p1"], headers=SECRET)
        assert resp.status_code == 400

    def test_invalid_json_body(self, client: TestClient):
        resp = client.post(
            "/tasks/check-missed-dose",
            content=b"{deviceId: D1",
            headers={**SECRET, "Content-Type": "application/json"},
        )
        assert resp.status_code == 400

    def test_non_ascii_secret_forbidden(self, client: TestClient):
        resp = client.post(
            "/tasks/check-missed-dose",
            json={"deviceId": "D1", "userID": "p1"},
            headers={"X-Task-Secret": "s\xe9cret".encode("latin-1")},
        )
        assert resp.status_code == 403

    def test_method_not_allowed(self, client: TestClient):
        assert client.get("/tasks/check-missed-dose").status_code == 405

    def test_missed_dose_logged(self, client: TestClient, ctx: HandlerContext):
        _link_patient(client)
        client.patch("/api/devices/D1/state", json={"current_status": "ALARM_SOUNDING"})
        assert len(ctx.tasks.list_tasks()) == 1

        resp = client.post(
            "/tasks/check-missed-dose", json={"deviceID": "D1", "userId": "p1"}, headers=SECRET
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "missed_logged"
        assert body["logPath"].startswith("adherence_logs/p1/")

        logs = client.get("/api/patients/p1/adherence-logs").json()
        [day] = logs.values()
        [entry] = day.values()
        assert entry["status"] == "missed"
        assert entry["deviceId"] == "D1"

    def test_dose_already_taken(self, client: TestClient):
        _link_patient(client)
        client.patch("/api/devices/D1/state", json={"current_status": "DOSE_TAKEN"})
        resp = client.post(
            "/tasks/check-missed-dose", json={"deviceId": "D1", "userID": "p1"}, headers=SECRET
        )
        assert resp.json()["status"] == "already_taken"
        assert client.get("/api/patients/p1/adherence-logs").json() == {}

    def test_internal_failure(self, client: TestClient):
        with patch("pillsync.api.tasks.check_missed_dose", side_effect=RuntimeError("boom")):
            resp = client.post(
                "/tasks/check-missed-dose", json={"deviceId": "D1", "userID": "p1"}, headers=SECRET
            )
        assert resp.status_code == 500
