from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.core.security import SessionIdentity, TokenManager
from app.core.settings import get_settings
from app.main import app
from app.services.watermark_store import WatermarkPersistenceError


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _headers(user_id=None, role="operator", tenant="T1"):
    identity = SessionIdentity(user_id=user_id or f"user-{uuid4().hex[:8]}", role=role, tenant_id=tenant)
    token = TokenManager(get_settings()).create_access_token(identity)
    return {"Authorization": f"Bearer {token}"}


def _ago(minutes: int) -> str:
    return (datetime.now(timezone.utc) - timedelta(minutes=minutes)).isoformat()


def test_requires_token(client):
    assert client.get("/api/activity/summary").status_code == 401


def test_rejects_token_without_tenant(client):
    token = TokenManager(get_settings()).create_access_token(SessionIdentity("u1", "operator", ""))
    response = client.get("/api/activity/counts", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403


def test_unknown_category_is_rejected(client):
    response = client.post("/api/activity/categories/bogus/seen", headers=_headers())
    assert response.status_code == 422


def test_records_show_up_in_counts_and_feed(client):
    headers = _headers()
    for minutes in (30, 10):
        response = client.post(
            "/api/activity/records/faults",
            json={"title": f"Fault {minutes}", "created_at": _ago(minutes), "company_id": "someone-else"},
            headers=headers,
        )
        assert response.status_code == 201
        assert response.json()["collection"] == "faults"
    client.post("/api/activity/records/power_outages", json={"description": "Grid cut"}, headers=headers)

    body = client.get("/api/activity/summary", headers=headers).json()

    assert body["counts"]["faults"] == 2
    assert body["counts"]["power_outages"] == 1
    assert body["total_count"] == 3
    assert body["degraded"] == []
    assert [item["category"] for item in body["feed"]] == ["power_outages", "faults", "faults"]
    assert body["feed"][1]["title"] == "Fault 10"


def test_other_tenants_are_invisible(client):
    client.post("/api/activity/records/faults", json={"title": "theirs"}, headers=_headers(tenant="T2"))

    body = client.get("/api/activity/counts", headers=_headers(tenant="T1")).json()

    assert body["total_count"] == 0


def test_mark_seen_resets_only_that_category(client):
    headers = _headers()
    client.post("/api/activity/records/faults", json={"title": "f"}, headers=headers)
    client.post("/api/activity/records/shift_notifications", json={"title": "s"}, headers=headers)

    response = client.post("/api/activity/categories/faults/seen", headers=headers)
    assert response.status_code == 200
    assert response.json()["category"] == "faults"

    counts = client.get("/api/activity/counts", headers=headers).json()["counts"]
    assert counts["faults"] == 0
    assert counts["shift_notifications"] == 1

    client.post("/api/activity/records/faults", json={"title": "after"}, headers=headers)
    feed = client.get("/api/activity/feed", headers=headers).json()
    assert [item["title"] for item in feed] == ["after", "s"]


def test_hide_and_hide_all_keep_counts(client):
    headers = _headers()
    ids = [
        client.post("/api/activity/records/faults", json={"title": f"f{i}", "created_at": _ago(i)}, headers=headers).json()["id"]
        for i in range(3)
    ]

    response = client.post("/api/activity/hide", json={"category": "faults", "id": ids[0]}, headers=headers)
    assert response.json() == {"hidden": 1}

    body = client.get("/api/activity/summary", headers=headers).json()
    assert [item["id"] for item in body["feed"]] == ids[1:]
    assert body["total_count"] == 3

    assert client.post("/api/activity/hide-all", headers=headers).json() == {"hidden": 2}
    body = client.get("/api/activity/summary", headers=headers).json()
    assert body["feed"] == []
    assert body["total_count"] == 3


def test_seen_persistence_failure_returns_503(client, mocker):
    headers = _headers()
    client.get("/api/activity/counts", headers=headers)
    mocker.patch(
        "app.services.watermark_store.KeyValueWatermarkStore.advance_watermark",
        side_effect=WatermarkPersistenceError("disk full"),
    )

    response = client.post("/api/activity/categories/faults/seen", headers=headers)

    assert response.status_code == 503


def test_role_switch_restarts_session(client):
    user_id = f"user-{uuid4().hex[:8]}"
    operator = _headers(user_id=user_id, role="operator")
    manager = _headers(user_id=user_id, role="manager")
    client.post("/api/activity/records/faults", json={"title": "f"}, headers=operator)

    client.post("/api/activity/categories/faults/seen", headers=operator)
    assert client.get("/api/activity/counts", headers=operator).json()["total_count"] == 0

    # watermarks are kept per role, so the manager still sees the fault
    assert client.get("/api/activity/counts", headers=manager).json()["total_count"] == 1
    assert len(app.state.activity_sessions) >= 1
    assert app.state.activity_sessions.get(user_id).identity.role == "manager"


def test_close_session(client):
    user_id = f"user-{uuid4().hex[:8]}"
    headers = _headers(user_id=user_id)
    client.get("/api/activity/counts", headers=headers)
    assert app.state.activity_sessions.get(user_id) is not None

    assert client.delete("/api/activity/session", headers=headers).status_code == 204
    assert app.state.activity_sessions.get(user_id) is None


def test_refresh_returns_counts(client):
    headers = _headers()
    client.post("/api/activity/records/faults", json={"title": "f"}, headers=headers)

    body = client.post("/api/activity/refresh", headers=headers).json()

    assert body["reopened"] == 7
    assert body["counts"]["faults"] == 1


def test_inbox_read_flow(client):
    user_id = f"user-{uuid4().hex[:8]}"
    sender = _headers(role="manager")
    recipient = _headers(user_id=user_id)
    for title in ("first", "second"):
        response = client.post(
            "/api/activity/inbox",
            json={"recipient_id": user_id, "title": title, "kind": "fault"},
            headers=sender,
        )
        assert response.status_code == 201

    body = client.get("/api/activity/inbox", headers=recipient).json()
    assert body["unread_count"] == 2
    assert [item["title"] for item in body["items"]] == ["second", "first"]

    first_id = body["items"][1]["id"]
    assert client.post(f"/api/activity/inbox/{first_id}/read", headers=recipient).json() == {"read": 1}
    assert client.get("/api/activity/inbox", headers=recipient).json()["unread_count"] == 1

    assert client.post("/api/activity/inbox/read-all", headers=recipient).json() == {"read": 1}
    assert client.get("/api/activity/inbox", headers=recipient).json()["unread_count"] == 0


def test_inbox_hides_other_users_notifications(client):
    owner = f"user-{uuid4().hex[:8]}"
    response = client.post("/api/activity/inbox", json={"recipient_id": owner, "title": "private"}, headers=_headers())
    doc_id = response.json()["id"]

    stranger = _headers()
    assert client.get("/api/activity/inbox", headers=stranger).json()["items"] == []
    assert client.post(f"/api/activity/inbox/{doc_id}/read", headers=stranger).status_code == 404
