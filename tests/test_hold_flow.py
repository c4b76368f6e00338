from __future__ import annotations

from datetime import datetime, timedelta, timezone

from conftest import call, seed_and_login, seed_candidate
from utils import to_iso_utc


def _ids(cid="C1", **extra):
    out = {"candidateId": cid, "requirementId": "R1"}
    out.update(extra)
    return out


def _future(days: int = 2) -> str:
    return to_iso_utc(datetime.now(timezone.utc) + timedelta(days=days))


def _past(days: int = 1) -> str:
    return to_iso_utc(datetime.now(timezone.utc) - timedelta(days=days))


def _get(client, token, cid="C1"):
    _res, body = call(client, "CANDIDATE_GET", token, _ids(cid))
    return body["data"]["candidate"]


def test_hold_needs_future_deadline(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER")

    res, body = call(client, "OWNER_DECIDE", owner, _ids(decision="HOLD"))
    assert res.status_code == 400
    assert body["error"]["code"] == "VALIDATION"

    res, body = call(client, "OWNER_DECIDE", owner, _ids(decision="HOLD", holdUntil=_past()))
    assert res.status_code == 400
    assert body["error"]["code"] == "VALIDATION"
    assert _get(client, owner)["status"] == "OWNER"


def test_hold_and_revert_restore_previous_status(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER")
    until = _future()

    res, body = call(client, "OWNER_DECIDE", owner, _ids(decision="HOLD", holdUntil=until, remark="busy week"))
    assert res.status_code == 200
    cand = body["data"]["candidate"]
    assert cand["status"] == "OWNER_HOLD"
    assert cand["holdFromStatus"] == "OWNER"
    assert cand["holdUntil"] == until
    assert cand["holdExpired"] is False

    res, body = call(client, "HOLD_REVERT", owner, _ids())
    assert res.status_code == 200
    cand = body["data"]["candidate"]
    assert cand["status"] == "OWNER"
    assert cand["holdUntil"] == ""
    assert cand["holdFromStatus"] == ""


def test_final_hold_revert_defaults_to_final_owner_pending(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="FINAL_HOLD", holdUntil=_future())

    res, body = call(client, "HOLD_REVERT", owner, _ids())
    assert res.status_code == 200
    assert body["data"]["status"] == "FINAL_OWNER_PENDING"


def test_approve_from_hold_clears_hold(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER_HOLD", holdUntil=_future(), holdFromStatus="OWNER")

    res, body = call(client, "OWNER_DECIDE", owner, _ids(decision="APPROVE_WALKIN"))
    assert res.status_code == 200
    cand = body["data"]["candidate"]
    assert cand["status"] == "PRECALL"
    assert cand["holdUntil"] == ""


def test_rejection_from_hold_reverts_to_hold(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    admin = seed_and_login(client, "ADMIN")
    until = _future()
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER_HOLD", holdUntil=until, holdFromStatus="OWNER")

    res, _body = call(client, "OWNER_DECIDE", owner, _ids(decision="REJECT", remark="not now"))
    assert res.status_code == 200

    res, body = call(client, "REJECT_REVERT", admin, _ids())
    assert res.status_code == 200
    cand = body["data"]["candidate"]
    assert cand["status"] == "OWNER_HOLD"
    assert cand["holdUntil"] == until
    assert cand["holdFromStatus"] == "OWNER"


def test_expiry_sweep_rejects_expired_owner_holds(app_client):
    _app, client = app_client
    admin = seed_and_login(client, "ADMIN")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER_HOLD", holdUntil=_past(), holdFromStatus="OWNER")
    seed_candidate(candidate_id="C2", requirement_id="R1", status="OWNER_HOLD", holdUntil=_future(), holdFromStatus="OWNER")
    seed_candidate(candidate_id="C3", requirement_id="R1", status="FINAL_HOLD", holdUntil=_past(), holdFromStatus="FINAL_OWNER_PENDING")

    assert _get(client, admin, "C1")["holdExpired"] is True

    res = client.post("/api/jobs/hold-expiry", headers={"X-Internal-Token": "cron-secret"})
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["count"] == 1
    assert data["rejected"][0]["candidateId"] == "C1"

    c1 = _get(client, admin, "C1")
    assert c1["status"] == "REJECTED"
    assert c1["rejectedReasonCode"] == "HOLD_EXPIRED"
    assert _get(client, admin, "C2")["status"] == "OWNER_HOLD"
    c3 = _get(client, admin, "C3")
    assert c3["status"] == "FINAL_HOLD"
    assert c3["holdExpired"] is True

    _res, body = call(client, "REJECTION_LOG_LIST", admin, _ids("C1"))
    entry = body["data"]["items"][0]["latest"]
    assert entry["rejectionType"] == "AUTO"
    assert entry["autoRejectCode"] == "HOLD_EXPIRED"
    assert entry["stageTag"] == "OWNER_HOLD"


def test_expiry_endpoint_requires_credentials(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")

    res = client.post("/api/jobs/hold-expiry", headers={"X-Internal-Token": "wrong"})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"

    res = client.post("/api/jobs/hold-expiry", headers={"Authorization": f"Bearer {hr}"})
    assert res.status_code == 403
