"""
HTTP surface tests - unlock, session and form workflow, key rotation and diagnostics
through the FastAPI app.
"""

import pytest
from fastapi.testclient import TestClient

from healthbridge.api.main import AppContext, app, reset_context
from healthbridge.core import config

from conftest import TEST_ITERATIONS, TEST_PIN


@pytest.fixture
def client(db_path, schema_dir, monkeypatch):
    monkeypatch.setattr(config, "KEY_DERIVATION_ITERATIONS", TEST_ITERATIONS)
    reset_context(AppContext(db_path, schema_dir))
    yield TestClient(app)
    reset_context()


@pytest.fixture
def unlocked_client(client):
    response = client.post("/key/unlock", json={"secret": TEST_PIN})
    assert response.status_code == 200
    return client


def create_session(client, **fields):
    response = client.post("/sessions", json=fields)
    assert response.status_code == 200
    return response.json()


class TestHealthAndKeys:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["key_state"] == "uninitialized"
        assert data["document_count"] == 0

    def test_weak_secret(self, client):
        response = client.post("/key/unlock", json={"secret": "12"})

        assert response.status_code == 400
        assert response.json()["kind"] == "WeakSecret"

    def test_locked_requests_rejected(self, client):
        response = client.post("/sessions", json={})

        assert response.status_code == 401
        assert response.json()["kind"] == "NoKeyAvailable"

    def test_unlock_status_lock(self, client):
        unlock = client.post("/key/unlock", json={"secret": TEST_PIN}).json()
        assert unlock["version"] == 1

        status = client.get("/key/status").json()
        assert status["state"] == "active"
        assert status["key_id"] == unlock["key_id"]

        assert client.post("/key/lock").json()["state"] == "cleared"
        assert client.get("/key/status").json()["key_id"] is None

    def test_wrong_pin_after_first_unlock(self, unlocked_client):
        unlocked_client.post("/key/lock")
        response = unlocked_client.post("/key/unlock", json={"secret": "9999"})

        assert response.status_code == 401
        assert response.json()["kind"] == "SecretMismatch"

    def test_backup_and_restore_without_pin(self, unlocked_client):
        session = create_session(unlocked_client, patient_ref="MRN-7")
        backup = unlocked_client.post("/key/backup", json={"backup_secret": "orange-lantern-42"}).json()
        assert [b["key_id"] for b in unlocked_client.get("/key/backups").json()] == [backup["key_id"]]
        unlocked_client.post("/key/lock")

        wrong = unlocked_client.post("/key/restore", json={"backup_secret": "not-the-phrase"})
        assert wrong.status_code == 401
        assert wrong.json()["kind"] == "SecretMismatch"

        restored = unlocked_client.post("/key/restore", json={"backup_secret": "orange-lantern-42"})
        assert restored.status_code == 200
        assert restored.json()["key_id"] == backup["key_id"]
        assert unlocked_client.get(f"/sessions/{session['id']}").json()["patient_ref"] == "MRN-7"

    def test_rotate_migrates_store(self, unlocked_client):
        session = create_session(unlocked_client, patient_ref="MRN-1")

        response = unlocked_client.post("/key/rotate", json={})

        assert response.status_code == 200
        data = response.json()
        assert data["version"] == 2
        assert data["migration"]["completed"]
        assert data["migration"]["migrated"] == 1
        assert unlocked_client.get(f"/sessions/{session['id']}").json()["patient_ref"] == "MRN-1"
        assert unlocked_client.post("/key/migrate", json={}).json() == []

    def test_degraded_mode(self, unlocked_client):
        assert unlocked_client.post("/key/degraded", json={"reason": "keystore unavailable"}).json()["degraded"]

        assert unlocked_client.post("/key/rotate", json={}).status_code == 423
        session = create_session(unlocked_client)
        assert unlocked_client.get("/diagnostics/degraded").json()["documents"] == [session["id"]]

        assert not unlocked_client.delete("/key/degraded").json()["degraded"]
        assert unlocked_client.post("/diagnostics/reconcile").json() == {"reconciled": 1}

    def test_degraded_reason_required(self, unlocked_client):
        assert unlocked_client.post("/key/degraded", json={"reason": "  "}).status_code == 422


class TestSessionEndpoints:

    def test_create_get_update(self, unlocked_client):
        session = create_session(unlocked_client, patient_ref="MRN-2", triage="red")
        assert session["stage"] == "registration"

        response = unlocked_client.patch(f"/sessions/{session['id']}", json={"chief_complaint": "fever"})
        assert response.json()["chief_complaint"] == "fever"

        assert unlocked_client.patch(f"/sessions/{session['id']}", json={}).status_code == 400
        assert unlocked_client.get("/sessions/session_missing").status_code == 404

    def test_invalid_triage(self, unlocked_client):
        assert unlocked_client.post("/sessions", json={"triage": "purple"}).status_code == 422

    def test_rejected_advance_is_a_result(self, unlocked_client):
        session = create_session(unlocked_client)

        response = unlocked_client.post(f"/sessions/{session['id']}/advance", json={"stage": "treatment"})

        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["kind"] == "InvalidTransition"

    def test_queue_and_stats(self, unlocked_client):
        create_session(unlocked_client, triage="red")
        create_session(unlocked_client, triage="green")

        queue = unlocked_client.get("/sessions/queue").json()
        assert len(queue["red"]) == 1
        assert len(queue["green"]) == 1
        assert unlocked_client.get("/sessions/stats").json()["total"] == 2
        assert len(unlocked_client.get("/sessions", params={"status": "open"}).json()) == 2

    def test_unknown_session_form_link(self, unlocked_client):
        response = unlocked_client.post("/sessions/session_missing/forms", json={"form_instance_id": "form_1"})
        assert response.status_code == 404


class TestFormEndpoints:

    def test_schemas(self, unlocked_client):
        assert unlocked_client.get("/schemas").json() == ["pediatric_assessment"]
        assert unlocked_client.get("/schemas/pediatric_assessment").json()["initialState"] == "intake"
        assert unlocked_client.get("/schemas/nope").status_code == 404

    def test_form_needs_existing_session(self, unlocked_client):
        response = unlocked_client.post("/forms", json={"schema_id": "pediatric_assessment", "session_id": "session_x"})
        assert response.status_code == 404

    def test_field_validation_result(self, unlocked_client):
        session = create_session(unlocked_client)
        form = unlocked_client.post("/forms", json={"schema_id": "pediatric_assessment",
                                                    "session_id": session["id"]}).json()

        response = unlocked_client.put(f"/forms/{form['id']}/fields/patient_age_months", json={"value": -2})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["validation"]["kind"] == "ValidationFailed"
        assert data["validation"]["field_id"] == "patient_age_months"

    def test_transition_validation(self, unlocked_client):
        session = create_session(unlocked_client)
        form = unlocked_client.post("/forms", json={"schema_id": "pediatric_assessment",
                                                    "session_id": session["id"]}).json()

        response = unlocked_client.post(f"/forms/{form['id']}/validate-transition",
                                        json={"target_state_id": "assessment"})

        assert response.json()["valid"] is False
        assert len(response.json()["errors"]) == 2


class TestClinicalWorkflow:

    def test_end_to_end(self, unlocked_client):
        c = unlocked_client
        session = create_session(c, patient_ref="MRN-3")
        sid = session["id"]
        form = c.post("/forms", json={"schema_id": "pediatric_assessment", "session_id": sid}).json()
        fid = form["id"]

        for field_id, value in (("patient_age_months", 9), ("temperature", 38.0), ("resp_rate", 55),
                                ("has_cough", True), ("cough_days", 2)):
            assert c.put(f"/forms/{fid}/fields/{field_id}", json={"value": value}).json()["success"]
        assert c.post(f"/forms/{fid}/transition", json={"target_state_id": "assessment"}).json()["allowed"]
        completed = c.post(f"/forms/{fid}/transition", json={"target_state_id": "review"}).json()
        assert completed["instance"]["status"] == "completed"
        assert completed["instance"]["calculated"]["triage_priority"] == "yellow"

        c.post(f"/sessions/{sid}/forms", json={"form_instance_id": fid})
        c.put(f"/sessions/{sid}/triage", json={"triage": "yellow"})
        for stage in ("assessment", "treatment", "discharge"):
            assert c.post(f"/sessions/{sid}/advance", json={"stage": stage}).json()["allowed"]
        done = c.post(f"/sessions/{sid}/complete", json={"status": "completed"}).json()
        assert done["session"]["status"] == "completed"

        latest = c.get("/forms/latest", params={"schema_id": "pediatric_assessment", "session_id": sid}).json()
        assert latest["id"] == fid

        timeline = c.get(f"/sessions/{sid}/timeline").json()
        assert [e["type"] for e in timeline["events"]] == [
            "session_created", "form_started", "form_completed", "triage_update",
            "stage_change", "stage_change", "stage_change", "status_change",
        ]


class TestDiagnostics:

    def test_integrity_and_corruption(self, unlocked_client):
        create_session(unlocked_client)

        report = unlocked_client.post("/diagnostics/integrity").json()
        assert report["verified"] == 1
        assert report["failed"] == 0

        corrupted = unlocked_client.get("/diagnostics/corrupted").json()
        assert corrupted["summary"]["corruption_level"] == "healthy"
        assert corrupted["records"] == []
        assert unlocked_client.delete("/diagnostics/corrupted").json() == {"cleared": 0}

    def test_recent_audit(self, unlocked_client, monkeypatch):
        monkeypatch.setenv("DEBUG", "true")
        create_session(unlocked_client)

        events = unlocked_client.get("/audit/recent", params={"category": "session"}).json()
        assert events[0]["event_type"] == "session.created"

        monkeypatch.setenv("DEBUG", "false")
        assert unlocked_client.get("/audit/recent").status_code == 403
