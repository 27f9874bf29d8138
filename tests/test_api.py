"""Tests for the HTTP API: envelope, error mapping and routing to the engine."""
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from fixflow_core.api.dependencies import get_engine
from fixflow_core.api.main import app
from fixflow_core.database import get_db
from fixflow_core.models import Notification


def headers(actor):
    return {"X-Actor-Id": str(actor.user_id), "X-Actor-Role": actor.role.value}


@pytest.fixture
def client(session_factory, lifecycle):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: lifecycle
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def created(client, seed):
    response = client.post(
        "/api/v1/requests/",
        json={
            "title": "Aircon not cooling",
            "category_id": str(seed.category_id),
            "location_id": str(seed.location_id),
            "priority": "high",
        },
        headers=headers(seed.requester),
    )
    assert response.status_code == 201
    return response.json()["data"]


class TestEnvelope:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_create_returns_request(self, created, seed):
        assert created["status"] == "pending"
        assert created["priority"] == "high"
        assert created["request_number"].startswith("REQ-")
        assert created["requester"]["name"] == "Somchai Requester"
        assert created["category"]["label"] == "ประปา"
        assert created["location"]["label"] == "Building A Floor 3 Room 301"

    def test_missing_actor_headers(self, client):
        response = client.get("/api/v1/requests/")
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"

    def test_unknown_role(self, client, seed):
        response = client.get(
            "/api/v1/requests/",
            headers={"X-Actor-Id": str(seed.requester.user_id), "X-Actor-Role": "janitor"},
        )
        assert response.status_code == 401

    def test_request_not_found(self, client, seed):
        response = client.get(f"/api/v1/requests/{uuid4()}", headers=headers(seed.admin))
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "NOT_FOUND"
        assert "data" not in body

    def test_malformed_body_is_validation_error(self, client, seed):
        response = client.post(
            "/api/v1/requests/",
            json={"title": "x", "priority": "whenever"},
            headers=headers(seed.requester),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_title_is_validation_error(self, client, seed):
        response = client.post(
            "/api/v1/requests/",
            json={"category_id": str(seed.category_id), "location_id": str(seed.location_id)},
            headers=headers(seed.requester),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestLifecycleEndpoints:
    """Drive a request through its lifecycle over HTTP."""

    def test_full_lifecycle(self, client, created, seed):
        base = f"/api/v1/requests/{created['id']}"

        response = client.post(
            f"{base}/assign", json={"technician_id": str(seed.technician_id)}, headers=headers(seed.admin)
        )
        assert response.json()["data"]["status"] == "assigned"
        assert response.json()["data"]["technician"]["user"]["name"] == "Niran Tech"

        for action, expected in [("accept", "accepted"), ("start", "in_progress")]:
            response = client.post(f"{base}/{action}", headers=headers(seed.tech))
            assert response.status_code == 200
            assert response.json()["data"]["status"] == expected

        response = client.post(f"{base}/hold", json={"reason": "Waiting for compressor"}, headers=headers(seed.tech))
        assert response.json()["data"]["status"] == "on_hold"
        response = client.post(f"{base}/resume", headers=headers(seed.tech))
        assert response.json()["data"]["status"] == "in_progress"

        response = client.post(f"{base}/complete", json={"note": "Refilled gas"}, headers=headers(seed.tech))
        data = response.json()["data"]
        assert data["status"] == "completed"
        assert data["completed_at"] is not None

        history = client.get(f"{base}/history", headers=headers(seed.requester)).json()["data"]
        assert [e["action"] for e in history] == [
            "create", "assign", "accept", "start", "hold", "resume", "complete",
        ]
        assert history[-1]["note"] == "Refilled gas"

    def test_illegal_transition(self, client, created, seed):
        response = client.post(f"/api/v1/requests/{created['id']}/start", headers=headers(seed.tech))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "CANNOT_START"

    def test_wrong_actor(self, client, created, seed):
        response = client.post(
            f"/api/v1/requests/{created['id']}/assign",
            json={"technician_id": str(seed.technician_id)},
            headers=headers(seed.requester),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_reject_requires_reason(self, client, created, seed):
        base = f"/api/v1/requests/{created['id']}"
        client.post(f"{base}/assign", json={"technician_id": str(seed.technician_id)}, headers=headers(seed.admin))

        response = client.post(f"{base}/reject", json={}, headers=headers(seed.tech))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_technician(self, client, created, seed):
        response = client.post(
            f"/api/v1/requests/{created['id']}/assign",
            json={"technician_id": str(uuid4())},
            headers=headers(seed.admin),
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "TECHNICIAN_NOT_FOUND"

        response = client.post(
            f"/api/v1/requests/{created['id']}/assign",
            json={"technician_id": str(seed.busy_technician_id)},
            headers=headers(seed.admin),
        )
        assert response.status_code == 404
        assert client.get(
            f"/api/v1/requests/{created['id']}", headers=headers(seed.admin)
        ).json()["data"]["status"] == "pending"

    def test_cancel_without_body_hides_request(self, client, created, seed):
        base = f"/api/v1/requests/{created['id']}"
        response = client.post(f"{base}/cancel", headers=headers(seed.requester))
        assert response.json()["data"]["status"] == "cancelled"

        assert client.get(base, headers=headers(seed.requester)).status_code == 404
        listed = client.get("/api/v1/requests/", headers=headers(seed.requester)).json()["data"]
        assert listed["total"] == 0
        # Audit trail stays readable
        history = client.get(f"{base}/history", headers=headers(seed.requester)).json()["data"]
        assert history[-1]["new_status"] == "cancelled"

    def test_update(self, client, created, seed):
        response = client.patch(
            f"/api/v1/requests/{created['id']}",
            json={"title": "Aircon leaking water"},
            headers=headers(seed.requester),
        )
        assert response.status_code == 200
        assert response.json()["data"]["title"] == "Aircon leaking water"

    def test_update_rejects_unknown_fields(self, client, created, seed):
        response = client.patch(
            f"/api/v1/requests/{created['id']}",
            json={"status": "completed"},
            headers=headers(seed.requester),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert "status" in response.json()["error"]["message"]

    def test_update_checks_existence_before_fields(self, client, seed):
        response = client.patch(
            f"/api/v1/requests/{uuid4()}",
            json={"status": "completed"},
            headers=headers(seed.requester),
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_update_checks_owner_before_fields(self, client, created, seed):
        response = client.patch(
            f"/api/v1/requests/{created['id']}",
            json={"status": "completed"},
            headers=headers(seed.other_requester),
        )
        assert response.status_code == 403

    def test_allowed_actions(self, client, created, seed):
        data = client.get(f"/api/v1/requests/{created['id']}/actions", headers=headers(seed.requester)).json()["data"]
        assert data["status"] == "pending"
        assert "cancel" in data["actions"]
        assert "assign" not in data["actions"]

        data = client.get(f"/api/v1/requests/{created['id']}/actions", headers=headers(seed.admin)).json()["data"]
        assert "assign" in data["actions"]


class TestListing:
    def test_filters(self, client, created, seed, new_request):
        new_request(title="Someone else's", actor=seed.other_requester)

        everything = client.get("/api/v1/requests/", headers=headers(seed.admin)).json()["data"]
        assert everything["total"] == 2

        mine = client.get("/api/v1/requests/?mine=true", headers=headers(seed.requester)).json()["data"]
        assert [r["id"] for r in mine["items"]] == [created["id"]]

        assigned = client.get("/api/v1/requests/?status=assigned", headers=headers(seed.admin)).json()["data"]
        assert assigned["total"] == 0

        client.post(
            f"/api/v1/requests/{created['id']}/assign",
            json={"technician_id": str(seed.technician_id)},
            headers=headers(seed.admin),
        )
        jobs = client.get(
            f"/api/v1/requests/?technician_id={seed.technician_id}", headers=headers(seed.tech)
        ).json()["data"]
        assert [r["id"] for r in jobs["items"]] == [created["id"]]

    def test_available_technicians(self, client, seed):
        data = client.get("/api/v1/technicians/", headers=headers(seed.admin)).json()["data"]
        assert sorted(t["id"] for t in data) == sorted([str(seed.technician_id), str(seed.other_technician_id)])


class TestNotificationEndpoints:
    def test_list_and_mark_read(self, client, seed, session_factory):
        with session_factory() as session:
            notification = Notification(
                user_id=seed.tech.user_id, type="request_assign", title="New job", message="You have a job"
            )
            session.add(notification)
            session.commit()
            notification_id = str(notification.id)

        listed = client.get("/api/v1/notifications/", headers=headers(seed.tech)).json()["data"]
        assert [n["id"] for n in listed] == [notification_id]
        assert client.get("/api/v1/notifications/", headers=headers(seed.requester)).json()["data"] == []

        response = client.post(f"/api/v1/notifications/{notification_id}/read", headers=headers(seed.tech))
        body = response.json()
        assert body["success"] is True
        assert body["data"] == {"id": notification_id, "is_read": True}

        unread = client.get("/api/v1/notifications/?unread_only=true", headers=headers(seed.tech)).json()["data"]
        assert unread == []

    def test_mark_read_of_someone_else(self, client, seed):
        response = client.post(f"/api/v1/notifications/{uuid4()}/read", headers=headers(seed.tech))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_unread_count_and_mark_all_read(self, client, seed, session_factory):
        with session_factory() as session:
            session.add_all([
                Notification(user_id=seed.tech.user_id, type="request_assign", title="New job", message="Job 1"),
                Notification(user_id=seed.tech.user_id, type="request_assign", title="New job", message="Job 2"),
                Notification(user_id=seed.requester.user_id, type="request_accept", title="Accepted", message="Yours"),
            ])
            session.commit()

        count = client.get("/api/v1/notifications/unread-count", headers=headers(seed.tech)).json()["data"]
        assert count == {"count": 2}

        response = client.post("/api/v1/notifications/read-all", headers=headers(seed.tech))
        assert response.json()["data"] == {"updated": 2}

        count = client.get("/api/v1/notifications/unread-count", headers=headers(seed.tech)).json()["data"]
        assert count == {"count": 0}
        # Other users' notifications are untouched
        count = client.get("/api/v1/notifications/unread-count", headers=headers(seed.requester)).json()["data"]
        assert count == {"count": 1}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
