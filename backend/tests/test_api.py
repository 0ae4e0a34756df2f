"""
Tests for the triage and case API endpoints.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import ORG_ID, OTHER_ORG_ID, crew, make_case, make_vendor, seed

CONTACT = {"name": "Sam Lee", "email": "sam.lee@mit.edu", "phone": "6175550142"}
SINK_LEAK = "My sink is leaking in Baker House 305"


def contractor(user_id: str) -> dict:
    return {"X-Org-Id": ORG_ID, "X-User-Id": user_id}


@pytest.fixture
def crew_on_file(store):
    """Plumbers c1, c2 and c3 on file for the org."""
    asyncio.run(seed(store, crew("c1", "c2", "c3")))


class TestTriageEndpoints:
    """Test the conversation endpoints."""

    def test_start_continue_complete(self, client: TestClient, org_headers):
        """Test a full conversation filed as a case."""
        response = client.post(
            "/triage/start",
            headers={**org_headers, "X-User-Id": "req-1"},
            json={"text": "My sink is leaking"},
        )
        assert response.status_code == 200
        turn = response.json()
        assert turn["requester_id"] == "req-1"
        assert turn["next_action"] == "ask_followup"
        conversation_id = turn["conversation_id"]

        response = client.post(
            f"/triage/{conversation_id}/messages",
            headers=org_headers,
            json={"text": "Baker House room 305. My name is Sam Lee, sam.lee@mit.edu, 617-555-0142"},
        )
        assert response.status_code == 200
        assert response.json()["next_action"] == "complete_triage"

        response = client.post(f"/triage/{conversation_id}/complete", headers=org_headers)
        assert response.status_code == 200
        completion = response.json()
        assert completion["status"] == "New"

        response = client.get(f"/cases/{completion['case_id']}", headers=org_headers)
        assert response.status_code == 200
        case = response.json()
        assert case["building"] == "Baker House"
        assert case["reporter_id"] == "req-1"

        response = client.get(f"/triage/{conversation_id}", headers=org_headers)
        assert response.json()["case_id"] == completion["case_id"]

    def test_anonymous_requester_gets_pseudo_id(self, client: TestClient, org_headers):
        """Test a caller without a user id."""
        response = client.post("/triage/start", headers=org_headers, json={"text": SINK_LEAK})
        assert response.status_code == 200
        assert response.json()["requester_id"].startswith("anon-")

    def test_hazard_response(self, client: TestClient, org_headers):
        """Test that a hazard is escalated in the first reply."""
        response = client.post("/triage/start", headers=org_headers, json={"text": "I smell gas in the hallway"})
        assert response.status_code == 200
        turn = response.json()
        assert turn["next_action"] == "escalate_immediate"
        assert turn["phase"] == "emergency"
        assert "hazard_gas" in turn["safety_flags"]

    def test_complete_without_contact(self, client: TestClient, org_headers):
        """Test that filing without contact details is rejected."""
        turn = client.post("/triage/start", headers=org_headers, json={"text": SINK_LEAK}).json()
        response = client.post(
            f"/triage/{turn['conversation_id']}/complete",
            headers=org_headers,
            json={"force": True},
        )
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "missing_contact_info"
        assert detail["missing_fields"] == ["name", "email", "phone"]

    def test_conversation_not_found(self, client: TestClient, org_headers):
        """Test continuing an unknown conversation."""
        response = client.post("/triage/no-such-conversation/messages", headers=org_headers, json={"text": "hi"})
        assert response.status_code == 404

    def test_conversation_is_org_scoped(self, client: TestClient, org_headers):
        """Test that another org cannot read the conversation."""
        turn = client.post("/triage/start", headers=org_headers, json={"text": SINK_LEAK}).json()
        response = client.get(f"/triage/{turn['conversation_id']}", headers={"X-Org-Id": OTHER_ORG_ID})
        assert response.status_code == 404

    def test_missing_org_header(self, client: TestClient):
        """Test that every call must name its organization."""
        response = client.post("/triage/start", json={"text": SINK_LEAK})
        assert response.status_code == 400


class TestCaseEndpoints:
    """Test acceptance, scheduling and assignment endpoints."""

    def test_case_not_found(self, client: TestClient, org_headers):
        """Test getting a non-existent case."""
        response = client.get("/cases/no-such-case", headers=org_headers)
        assert response.status_code == 404

    def test_accept_conflict(self, client: TestClient, store, crew_on_file):
        """Test that the second contractor is told to move on."""
        case, = asyncio.run(seed(store, [make_case()]))

        first = client.post(f"/cases/{case.id}/accept", headers=contractor("c1"))
        second = client.post(f"/cases/{case.id}/accept", headers=contractor("c2"))

        assert first.status_code == 200
        assert first.json()["status"] == "In Review"
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "already_assigned"

    def test_accept_requires_user(self, client: TestClient, store, org_headers):
        """Test that contractor actions need a user id."""
        case, = asyncio.run(seed(store, [make_case()]))
        response = client.post(f"/cases/{case.id}/accept", headers=org_headers)
        assert response.status_code == 401

    def test_schedule_conflict(self, client: TestClient, store, crew_on_file, future_start):
        """Test that an overlapping booking names the existing appointment."""
        first, second = asyncio.run(seed(store, [make_case(), make_case()]))
        for case in (first, second):
            client.post(f"/cases/{case.id}/accept", headers=contractor("c1"))

        booked = client.post(
            f"/cases/{first.id}/schedule",
            headers=contractor("c1"),
            json={"start": future_start.isoformat(), "duration_minutes": 120},
        )
        assert booked.status_code == 200

        clash = client.post(
            f"/cases/{second.id}/schedule",
            headers=contractor("c1"),
            json={"start": future_start.isoformat(), "duration_minutes": 30},
        )
        assert clash.status_code == 409
        detail = clash.json()["detail"]
        assert detail["code"] == "schedule_conflict"
        assert detail["conflicting_appointment_id"] == booked.json()["id"]

    @pytest.mark.parametrize("payload", [
        {"start": "2026-03-02T10:00:00+00:00", "duration_minutes": 0},
        {"start": "2026-03-01T10:00:00+00:00", "duration_minutes": 60},
    ])
    def test_schedule_rejects_bad_windows(self, client: TestClient, store, crew_on_file, payload):
        """Test zero durations and past start times."""
        case, = asyncio.run(seed(store, [make_case()]))
        client.post(f"/cases/{case.id}/accept", headers=contractor("c1"))

        response = client.post(f"/cases/{case.id}/schedule", headers=contractor("c1"), json=payload)
        assert response.status_code == 422

    def test_decline_and_override(self, client: TestClient, store, crew_on_file):
        """Test handing a case back and a manager reassigning it."""
        case, = asyncio.run(seed(store, [make_case()]))
        client.post(f"/cases/{case.id}/accept", headers=contractor("c1"))

        declined = client.post(
            f"/cases/{case.id}/decline",
            headers=contractor("c1"),
            json={"reason": "Outside my service area"},
        )
        assert declined.status_code == 200
        assert declined.json()["status"] == "New"

        overridden = client.post(
            f"/cases/{case.id}/assignment",
            headers=contractor("manager-7"),
            json={"contractor_id": "c3", "reason": "Preferred vendor for Baker House"},
        )
        assert overridden.status_code == 200
        body = overridden.json()
        assert body["assigned_contractor_id"] == "c3"
        assert body["audit_trail"][-1]["event_type"] == "assignment_overridden"

    def test_decline_requires_reason(self, client: TestClient, store, crew_on_file):
        """Test that a blank decline reason is rejected."""
        case, = asyncio.run(seed(store, [make_case()]))
        client.post(f"/cases/{case.id}/accept", headers=contractor("c1"))
        response = client.post(f"/cases/{case.id}/decline", headers=contractor("c1"), json={"reason": ""})
        assert response.status_code == 422

    def test_rank_contractors(self, client: TestClient, store, org_headers):
        """Test the contractor ranking endpoint."""
        case, vendor = asyncio.run(seed(store, [make_case(), make_vendor()]))
        response = client.get(f"/cases/{case.id}/contractors", headers=org_headers)
        assert response.status_code == 200
        assert [c["contractor_id"] for c in response.json()] == [vendor.id]

    def test_ineligible_contractor_is_forbidden(self, client: TestClient, store):
        """Test that a contractor outside the case's trade cannot take it."""
        case, electrician = asyncio.run(seed(store, [
            make_case(),
            make_vendor(id="e1", category="Electrical", specializations=["wiring"]),
        ]))

        response = client.post(f"/cases/{case.id}/accept", headers=contractor(electrician.id))

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["code"] == "contractor_ineligible"
        assert detail["reason"] == "does not cover Plumbing"

    def test_suggest_slots(self, client: TestClient, store, crew_on_file, org_headers):
        """Test free windows for a contractor, best first."""
        case, = asyncio.run(seed(store, [make_case()]))
        response = client.get(
            f"/cases/{case.id}/slots",
            headers=org_headers,
            params={"contractor_id": "c1", "duration_minutes": 60, "horizon_days": 1},
        )
        assert response.status_code == 200
        slots = response.json()
        assert len(slots) == 5
        assert slots[0]["contractor_id"] == "c1"
        assert slots[0]["start"].startswith("2026-03-02T09:00:00")
        assert slots[0]["score"] == 1.0

    def test_suggest_slots_rejects_long_horizons(self, client: TestClient, store, crew_on_file, org_headers):
        """Test that the look-ahead is capped."""
        case, = asyncio.run(seed(store, [make_case()]))
        response = client.get(
            f"/cases/{case.id}/slots",
            headers=org_headers,
            params={"contractor_id": "c1", "horizon_days": 365},
        )
        assert response.status_code == 422


class TestNotificationSocket:
    """Test the notification WebSocket endpoint."""

    def test_connect_and_ping(self, client: TestClient):
        """Test subscribing to the org channel."""
        with client.websocket_connect(f"/ws/notifications?org_id={ORG_ID}") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

            status = client.get("/ws/notifications/status").json()
            assert status["channels"][f"org:{ORG_ID}"] >= 1

    def test_foreign_channel_is_refused(self, client: TestClient):
        """Test that a caller cannot listen to another org."""
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(
                f"/ws/notifications?org_id={ORG_ID}&channels=org:{OTHER_ORG_ID}"
            ) as ws:
                ws.receive_json()
