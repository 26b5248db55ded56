"""
tests/unit/test_widget_api.py - Widget REST API tests

Sessions are created through the API and driven with field updates.
Delayed reveals are scheduled on the client's event loop, so the tests
assert on pending_reveals instead of waiting for them to fire.
"""

import pytest

# Skip all tests if FastAPI not installed
pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from cardstream.bootstrap.config import CardStreamConfig
from cardstream.deployment.api import create_fastapi_app


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def client(bundle):
    app = create_fastapi_app(CardStreamConfig(), bundle=bundle)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_id(client):
    response = client.post("/api/v1/sessions", json={"session_id": "visitor_1"})
    assert response.status_code == 200
    return response.json()["session_id"]


def _fill_property(client, session_id):
    for name, value in (("floor_area", 120), ("heating_type", "oil")):
        response = client.post(
            f"/api/v1/sessions/{session_id}/fields",
            json={"field_name": name, "value": value},
        )
        assert response.status_code == 200
    return response.json()


def _status(state, card_id):
    return next(c["status"] for c in state["cards"] if c["card_id"] == card_id)


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:

    def test_health(self, client):
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["content_loaded"] is True
        assert data["sessions"] == 0

    def test_without_bundle(self):
        config = CardStreamConfig()
        config.api.content_path = None
        client = TestClient(create_fastapi_app(config))

        assert client.get("/health").json()["content_loaded"] is False
        assert client.post("/api/v1/sessions", json={}).status_code == 503


# =============================================================================
# SESSIONS
# =============================================================================

class TestSessions:
    """Tests for session lifecycle endpoints."""

    def test_create_reveals_first_card(self, client):
        state = client.post("/api/v1/sessions", json={}).json()

        assert state["session_id"].startswith("session_")
        assert state["active_card_id"] == "property"
        assert [c["card_id"] for c in state["cards"] if c["is_revealed"]] == ["property"]

    def test_create_resumes_existing(self, client, session_id):
        _fill_property(client, session_id)
        state = client.post("/api/v1/sessions", json={"session_id": session_id}).json()

        assert state["fields"]["floor_area"] == 120

    def test_force_new(self, client, session_id):
        state = client.post("/api/v1/sessions", json={"session_id": session_id, "new": True}).json()
        assert state["session_id"] != session_id

    def test_unknown_session(self, client):
        assert client.get("/api/v1/sessions/nope").status_code == 404
        assert client.post("/api/v1/sessions/nope/fields", json={"field_name": "x"}).status_code == 404

    def test_delete(self, client, session_id):
        assert client.delete(f"/api/v1/sessions/{session_id}").json() == {"deleted": session_id}
        assert client.delete(f"/api/v1/sessions/{session_id}").status_code == 404

    def test_reset_with_new_id(self, client, session_id):
        _fill_property(client, session_id)

        data = client.post(f"/api/v1/sessions/{session_id}/reset", json={"new_id": True}).json()

        new_id = data["state"]["session_id"]
        assert new_id != session_id
        assert data["result"]["data"]["cancelled_reveals"] == 1
        assert data["state"]["fields"] == {}
        assert client.get(f"/api/v1/sessions/{session_id}").status_code == 404
        assert client.get(f"/api/v1/sessions/{new_id}").status_code == 200


# =============================================================================
# FIELDS AND CARDS
# =============================================================================

class TestCardFlow:
    """Tests for field updates and card actions over HTTP."""

    def test_field_update_progresses(self, client, session_id):
        data = _fill_property(client, session_id)
        state = data["state"]

        assert data["result"]["success"] is True
        assert _status(state, "property") == "complete"
        assert _status(state, "energy") == "complete"
        assert state["pending_reveals"] == ["savings"]

    def test_blank_field_name_rejected(self, client, session_id):
        response = client.post(f"/api/v1/sessions/{session_id}/fields", json={"field_name": "  "})
        assert response.status_code == 422

    def test_advance_reports_validation(self, client, session_id):
        client.post(f"/api/v1/sessions/{session_id}/fields", json={"field_name": "floor_area", "value": 5})

        result = client.post(f"/api/v1/sessions/{session_id}/advance", json={}).json()["result"]

        assert result["success"] is False
        assert result["error_code"] == "VAL_REQUIRED"
        assert "floor_area" in result["validation"]

    def test_activate(self, client, session_id):
        _fill_property(client, session_id)

        data = client.post(f"/api/v1/sessions/{session_id}/cards/property/activate", json={}).json()

        assert data["result"]["success"] is True
        assert data["state"]["active_card_id"] == "property"

    def test_activate_bad_policy(self, client, session_id):
        response = client.post(
            f"/api/v1/sessions/{session_id}/cards/property/activate",
            json={"policy": "demote_to_nowhere"},
        )
        assert response.status_code == 422

    def test_card_results(self, client, session_id):
        _fill_property(client, session_id)

        data = client.get(f"/api/v1/sessions/{session_id}/cards/energy/results").json()

        assert data["success"] is True
        assert data["data"]["results"][0]["result"] == "12 000 kWh"


# =============================================================================
# CALCULATIONS AND SUBMISSION
# =============================================================================

class TestCalculations:

    def test_process(self, client, session_id):
        _fill_property(client, session_id)

        data = client.post(
            f"/api/v1/sessions/{session_id}/process",
            json={"template": "[calc:annual_savings]"},
        ).json()

        assert data["success"] is True
        assert data["result"] == "1 800 €"
        assert data["value"] == 1800.0

    def test_process_with_unit(self, client, session_id):
        _fill_property(client, session_id)

        data = client.post(
            f"/api/v1/sessions/{session_id}/process",
            json={"template": "[field:floor_area] / 2", "unit": "m²"},
        ).json()

        assert data["result"] == "60 m²"

    def test_process_failure(self, client, session_id):
        data = client.post(
            f"/api/v1/sessions/{session_id}/process",
            json={"template": "[calc:missing]"},
        ).json()

        assert data["success"] is False
        assert data["error_category"] == "resolution"

    def test_submit_requires_contact_fields(self, client, session_id):
        data = client.post(f"/api/v1/sessions/{session_id}/submit", json={}).json()

        assert data["success"] is False
        assert set(data["validation"]) == {"name", "email"}

    def test_submit_delivers_to_submitter(self, bundle):
        received = []
        app = create_fastapi_app(CardStreamConfig(), bundle=bundle, submitter=received.append)

        with TestClient(app) as client:
            sid = client.post("/api/v1/sessions", json={}).json()["session_id"]
            for name, value in (("name", "Matti"), ("email", "matti@example.fi")):
                client.post(f"/api/v1/sessions/{sid}/fields", json={"field_name": name, "value": value})

            data = client.post(f"/api/v1/sessions/{sid}/submit", json={}).json()

        assert data["success"] is True
        assert data["data"]["delivered"] is True
        assert received[0]["email"] == "matti@example.fi"
