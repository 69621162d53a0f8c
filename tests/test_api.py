from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from conftest import FakeExtractor
from splitit.api import SessionStore, app, get_extractor, get_session_store
from splitit.errors import ExtractionError

AUTH = {"Authorization": "Bearer test-key"}


@pytest.fixture
def extractor(extracted_bill):
    return FakeExtractor(extracted_bill)


@pytest.fixture
def client(monkeypatch, extractor):
    monkeypatch.setenv("API_KEY", "test-key")
    monkeypatch.setenv("APP_BASE_URL", "https://split.example")
    store = SessionStore()
    app.dependency_overrides[get_extractor] = lambda: extractor
    app.dependency_overrides[get_session_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _new_session(client):
    resp = client.post("/sessions", headers=AUTH)
    assert resp.status_code == 201
    return resp.json()["session_id"]


def _upload(client, session_id, data=b"fake-jpeg"):
    return client.post(
        f"/sessions/{session_id}/upload-receipt",
        files={"file": ("receipt.jpg", data, "image/jpeg")},
        headers=AUTH,
    )


def _to_summary(client):
    session_id = _new_session(client)
    assert _upload(client, session_id).status_code == 200
    client.post(f"/sessions/{session_id}/members", json={"name": "A"}, headers=AUTH)
    state = client.post(f"/sessions/{session_id}/members", json={"name": "B"}, headers=AUTH).json()["state"]
    a_id, b_id = (m["id"] for m in state["bill"]["members"])
    client.post(f"/sessions/{session_id}/advance", headers=AUTH)
    burger, soda = (i["id"] for i in state["bill"]["items"])
    for item_id, member_id in ((burger, a_id), (burger, b_id), (soda, a_id)):
        resp = client.post(f"/sessions/{session_id}/items/{item_id}/assignees/{member_id}", headers=AUTH)
        assert resp.status_code == 200
    resp = client.post(f"/sessions/{session_id}/advance", headers=AUTH)
    assert resp.json()["state"]["stage"] == "summary"
    return session_id, a_id, b_id


def test_root(client):
    assert client.get("/").json() == {"message": "SplitIt API is running"}


def test_wrong_api_key_is_rejected(client):
    resp = client.post("/sessions", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401


def test_unknown_session_is_404(client):
    assert client.get("/sessions/doesnotexist", headers=AUTH).status_code == 404


def test_upload_moves_to_members(client):
    session_id = _new_session(client)
    resp = _upload(client, session_id)

    assert resp.status_code == 200
    state = resp.json()["state"]
    assert state["stage"] == "members"
    assert [i["name"] for i in state["bill"]["items"]] == ["Burger", "Soda"]


def test_failed_upload_reports_error(client, extractor):
    extractor.result = ExtractionError("no function call")
    session_id = _new_session(client)

    resp = _upload(client, session_id)

    assert resp.status_code == 502
    assert client.get(f"/sessions/{session_id}", headers=AUTH).json()["state"]["stage"] == "upload"


def test_oversized_upload_is_rejected(client, monkeypatch, extractor):
    monkeypatch.setenv("MAX_IMAGE_SIZE_MB", "0.001")
    session_id = _new_session(client)

    resp = _upload(client, session_id, data=b"x" * 5000)

    assert resp.status_code == 400
    assert extractor.calls == 0


def test_blank_member_name_is_400(client):
    session_id = _new_session(client)
    _upload(client, session_id)
    resp = client.post(f"/sessions/{session_id}/members", json={"name": "  "}, headers=AUTH)
    assert resp.status_code == 400


def test_advance_without_members_is_409(client):
    session_id = _new_session(client)
    _upload(client, session_id)
    assert client.post(f"/sessions/{session_id}/advance", headers=AUTH).status_code == 409


def test_summary_and_tip(client):
    session_id, a_id, _ = _to_summary(client)

    body = client.get(f"/sessions/{session_id}/summary", headers=AUTH).json()
    assert [Decimal(s["total"]) for s in body["summaries"]] == [Decimal("8.96"), Decimal("6.40")]
    assert Decimal(body["totals"]["total"]) == Decimal("15.36")

    resp = client.put(f"/sessions/{session_id}/tip", json={"tip_rate": 0}, headers=AUTH)
    assert resp.status_code == 200
    body = client.get(f"/sessions/{session_id}/summary", headers=AUTH).json()
    assert Decimal(body["totals"]["total"]) == Decimal("13.20")

    assert client.put(f"/sessions/{session_id}/tip", json={"tip_rate": -5}, headers=AUTH).status_code == 400


def test_settle_returns_simulated_link(client):
    session_id, a_id, _ = _to_summary(client)

    resp = client.post(f"/sessions/{session_id}/settle/{a_id}", headers=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert Decimal(body["amount"]) == Decimal("8.96")
    assert body["payment_link"] == f"https://split.example/pay/{session_id}/{a_id}?amount=8.96"
    assert body["simulated"] is True
    assert client.post(f"/sessions/{session_id}/settle/mem-unknown", headers=AUTH).status_code == 404


def test_summary_before_summary_stage_is_409(client):
    session_id = _new_session(client)
    assert client.get(f"/sessions/{session_id}/summary", headers=AUTH).status_code == 409


def test_reset_clears_session(client):
    session_id, _, _ = _to_summary(client)
    state = client.post(f"/sessions/{session_id}/reset", headers=AUTH).json()["state"]

    assert state["stage"] == "upload"
    assert state["bill"]["items"] == []
    assert state["bill"]["members"] == []


def test_remove_unknown_member_is_404(client):
    session_id = _new_session(client)
    _upload(client, session_id)
    assert client.delete(f"/sessions/{session_id}/members/mem-unknown", headers=AUTH).status_code == 404


def test_delete_session(client):
    session_id = _new_session(client)

    assert client.delete(f"/sessions/{session_id}", headers=AUTH).status_code == 204
    assert client.get(f"/sessions/{session_id}", headers=AUTH).status_code == 404
    assert client.delete(f"/sessions/{session_id}", headers=AUTH).status_code == 404
