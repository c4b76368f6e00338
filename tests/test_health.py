from __future__ import annotations

from conftest import api, call, seed_and_login


def test_health_ok(app_client):
    _app, client = app_client

    res = client.get("/health")
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["data"]["status"] == "ok"
    assert body["data"]["db"] == "ok"
    assert res.headers.get("X-Request-ID")
    assert res.headers.get("X-Content-Type-Options") == "nosniff"


def test_unknown_endpoint_uses_envelope(app_client):
    _app, client = app_client

    res = client.get("/nope")
    assert res.status_code == 404
    assert res.get_json()["error"]["code"] == "NOT_FOUND"


def test_malformed_requests(app_client):
    _app, client = app_client

    res = client.post("/api", data="not json", content_type="text/plain; charset=utf-8")
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"

    res = api(client, {"token": None, "data": {}})
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_session_required_and_unknown_actions(app_client):
    _app, client = app_client

    res, body = call(client, "GET_ME", "ST-bogus")
    assert res.status_code == 401
    assert body["error"]["code"] == "AUTH_INVALID"

    admin = seed_and_login(client, "ADMIN")
    res, body = call(client, "DROP_TABLES", admin)
    assert res.status_code == 400
    assert body["error"]["code"] == "BAD_REQUEST"


def test_session_round_trip(app_client):
    _app, client = app_client
    token = seed_and_login(client, "EA")

    res, body = call(client, "SESSION_VALIDATE", token)
    assert res.status_code == 200
    assert body["data"]["me"]["role"] == "EA"

    res = client.post(
        "/api",
        data='{"action": "GET_ME", "data": {}}',
        content_type="text/plain; charset=utf-8",
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.get_json()["data"]["me"]["email"] == "ea@example.com"
