from __future__ import annotations

import pytest

from conftest import call, seed_and_login, seed_candidate
from pipeline_rules import TRANSITIONS, Status


def _ids(cid="C1", rid="R1", **extra):
    out = {"candidateId": cid, "requirementId": rid}
    out.update(extra)
    return out


def _get(client, token, cid="C1", rid="R1"):
    res, body = call(client, "CANDIDATE_GET", token, _ids(cid, rid))
    assert res.status_code == 200
    return body["data"]["candidate"]


def _rejection_logs(client, token, cid="C1", rid="R1"):
    res, body = call(client, "REJECTION_LOG_LIST", token, _ids(cid, rid))
    assert res.status_code == 200
    return body["data"]["items"][0]["logs"]


def test_owner_final_reject_appends_ledger_entry(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    admin = seed_and_login(client, "ADMIN")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="FINAL_OWNER_PENDING")

    res, body = call(client, "OWNER_FINAL_DECIDE", owner, _ids(decision="REJECT", remark="underqualified"))
    assert res.status_code == 200
    assert body["data"]["status"] == "REJECTED"

    cand = _get(client, admin)
    assert cand["status"] == "REJECTED"
    assert cand["rejectedFromStatus"] == "FINAL_OWNER_PENDING"
    assert cand["rejectedReasonCode"] == "FINAL_OWNER_REJECT"

    logs = _rejection_logs(client, admin)
    assert len(logs) == 1
    assert logs[0]["stageTag"] == "FINAL_OWNER_PENDING"
    assert logs[0]["remark"] == "underqualified"
    assert logs[0]["actorRole"] == "OWNER"
    assert logs[0]["rejectionType"] == "MANUAL"


def test_hr_cannot_revert_rejection(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    admin = seed_and_login(client, "ADMIN")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="FINAL_OWNER_PENDING")
    call(client, "OWNER_FINAL_DECIDE", admin, _ids(decision="REJECT", remark="underqualified"))

    res, body = call(client, "REJECT_REVERT", hr, _ids())
    assert res.status_code == 403
    assert body["error"]["code"] == "RBAC_DENIED"
    assert _get(client, admin)["status"] == "REJECTED"


def test_admin_revert_restores_prior_status_without_new_entry(app_client):
    _app, client = app_client
    admin = seed_and_login(client, "ADMIN")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="FINAL_OWNER_PENDING")
    call(client, "OWNER_FINAL_DECIDE", admin, _ids(decision="REJECT", remark="underqualified"))

    res, body = call(client, "REJECT_REVERT", admin, _ids())
    assert res.status_code == 200
    assert body["data"]["status"] == "FINAL_OWNER_PENDING"

    cand = _get(client, admin)
    assert cand["status"] == "FINAL_OWNER_PENDING"
    assert cand["rejectedFromStatus"] == ""
    assert cand["rejectedAt"] == ""
    assert len(_rejection_logs(client, admin)) == 1


def test_illegal_transition_leaves_record_untouched(app_client):
    _app, client = app_client
    admin = seed_and_login(client, "ADMIN")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="HR_REVIEW")
    before = _get(client, admin)

    res, body = call(client, "OWNER_DECIDE", admin, _ids(decision="APPROVE_WALKIN"))
    assert res.status_code == 409
    assert body["error"]["code"] == "ILLEGAL_TRANSITION"

    res, body = call(client, "PROBATION_START", admin, _ids())
    assert body["error"]["code"] == "ILLEGAL_TRANSITION"

    assert _get(client, admin) == before


@pytest.mark.parametrize("rule_", TRANSITIONS, ids=lambda r: f"{r.action}-{r.decision or 'ANY'}")
def test_every_unlisted_source_status_is_illegal(app_client, rule_):
    _app, client = app_client
    admin = seed_and_login(client, "ADMIN")
    payload = {"remark": "not a fit", "holdUntil": "2099-01-01T10:00:00Z"}
    if rule_.decision:
        payload["decision"] = rule_.decision

    illegal = [s.value for s in Status if s.value not in rule_.sources]
    for i, status in enumerate(illegal):
        seed_candidate(candidate_id=f"C{i}", requirement_id="R1", status=status)

    for i, status in enumerate(illegal):
        cid = f"C{i}"
        before = _get(client, admin, cid)
        logs_before = _rejection_logs(client, admin, cid)

        res, body = call(client, rule_.action, admin, _ids(cid, **payload))
        assert res.status_code == 409, (status, body)
        assert body["error"]["code"] == "ILLEGAL_TRANSITION"

        assert _get(client, admin, cid) == before
        assert _rejection_logs(client, admin, cid) == logs_before


def test_authorization_is_checked_before_legality(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="HR_REVIEW")

    res, body = call(client, "OWNER_DECIDE", hr, _ids(decision="APPROVE_WALKIN"))
    assert res.status_code == 403
    assert body["error"]["code"] == "RBAC_DENIED"


def test_rejection_requires_remark(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="HR_REVIEW")
    before = _get(client, hr)

    res, body = call(client, "SHORTLIST_DECIDE", hr, _ids(decision="REJECT", remark="   "))
    assert res.status_code == 400
    assert body["error"]["code"] == "VALIDATION"
    assert _get(client, hr) == before
    assert _rejection_logs(client, hr) == []


def test_unknown_decision_is_a_validation_error(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER")
    before = _get(client, owner)

    res, body = call(client, "OWNER_DECIDE", owner, _ids(decision="MAYBE"))
    assert res.status_code == 400
    assert body["error"]["code"] == "VALIDATION"
    assert "APPROVE_WALKIN" in body["error"]["message"]
    assert _get(client, owner) == before


def test_full_pipeline_to_probation(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    owner = seed_and_login(client, "OWNER")
    ea = seed_and_login(client, "EA")

    res, body = call(client, "CANDIDATE_ADD", hr, {"candidateId": "C1", "requirementId": "R1", "candidateName": "Asha", "jobRole": "Fitter"})
    assert res.status_code == 200
    assert body["data"]["candidate"]["status"] == "HR_REVIEW"

    steps = [
        (hr, "SHORTLIST_DECIDE", {"decision": "OWNER_SEND"}, "OWNER"),
        (owner, "OWNER_DECIDE", {"decision": "APPROVE_WALKIN"}, "PRECALL"),
        (hr, "PRECALL_UPDATE", {"decision": "ADVANCE"}, "PRE_INTERVIEW"),
        (hr, "PREINTERVIEW_DECIDE", {"decision": "ADVANCE"}, "INPERSON_TECH"),
        (hr, "TECH_SELECT", {"decision": "ADVANCE"}, "TECHNICAL"),
        (ea, "PASSFAIL_EVALUATE", {"decision": "PASS", "testType": "Excel"}, "FINAL_INTERVIEW"),
        (hr, "FINAL_SEND_OWNER", {}, "FINAL_OWNER_PENDING"),
        (owner, "OWNER_FINAL_DECIDE", {"decision": "SELECT"}, "HIRED"),
        (hr, "PROBATION_START", {}, "PROBATION"),
    ]
    version = 1
    for token, action, extra, expected in steps:
        res, body = call(client, action, token, _ids(expectedVersion=version, **extra))
        assert res.status_code == 200, (action, body)
        assert body["data"]["status"] == expected
        version = body["data"]["candidate"]["version"]

    cand = _get(client, hr)
    assert cand["status"] == "PROBATION"
    assert cand["testDecisions"]["EXCEL"]["decision"] == "PASS"

    res, body = call(client, "CANDIDATE_REJECT", hr, _ids(remark="late"))
    assert res.status_code == 409
    assert body["error"]["code"] == "ILLEGAL_TRANSITION"


def test_stale_expected_version_conflicts(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="HR_REVIEW")
    version = _get(client, hr)["version"]

    res, body = call(client, "SHORTLIST_DECIDE", hr, _ids(decision="OWNER_SEND", expectedVersion=version + 5))
    assert res.status_code == 409
    assert body["error"]["code"] == "CONFLICT"
    assert _get(client, hr)["status"] == "HR_REVIEW"


def test_duplicate_candidate_conflicts(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    data = {"candidateId": "C1", "requirementId": "R1", "candidateName": "Asha"}

    res, _body = call(client, "CANDIDATE_ADD", hr, data)
    assert res.status_code == 200
    res, body = call(client, "CANDIDATE_ADD", hr, data)
    assert res.status_code == 409
    assert body["error"]["code"] == "CONFLICT"

    res, _body = call(client, "CANDIDATE_ADD", hr, dict(data, requirementId="R2"))
    assert res.status_code == 200


def test_allowed_actions_follow_role_and_status(app_client):
    _app, client = app_client
    owner = seed_and_login(client, "OWNER")
    hr = seed_and_login(client, "HR")
    seed_candidate(candidate_id="C1", requirement_id="R1", status="OWNER")

    owner_view = _get(client, owner)
    assert {(a["action"], a["decision"]) for a in owner_view["allowedActions"]} == {
        ("OWNER_DECIDE", "APPROVE_WALKIN"),
        ("OWNER_DECIDE", "HOLD"),
        ("OWNER_DECIDE", "REJECT"),
    }
    hr_view = _get(client, hr)
    assert [a["action"] for a in hr_view["allowedActions"]] == ["CANDIDATE_REJECT"]


def test_pipeline_counts_refresh_after_transition(app_client):
    _app, client = app_client
    hr = seed_and_login(client, "HR")
    call(client, "CANDIDATE_ADD", hr, {"candidateId": "C1", "requirementId": "R1", "candidateName": "A"})
    call(client, "CANDIDATE_ADD", hr, {"candidateId": "C2", "requirementId": "R1", "candidateName": "B"})

    _res, body = call(client, "PIPELINE_COUNTS", hr)
    assert body["data"]["counts"]["HR_REVIEW"] == 2

    call(client, "SHORTLIST_DECIDE", hr, _ids(decision="OWNER_SEND"))
    _res, body = call(client, "PIPELINE_COUNTS", hr)
    assert body["data"]["counts"]["HR_REVIEW"] == 1
    assert body["data"]["counts"]["OWNER"] == 1
    assert body["data"]["total"] == 2


def test_missing_candidate_is_not_found(app_client):
    _app, client = app_client
    admin = seed_and_login(client, "ADMIN")

    res, body = call(client, "CANDIDATE_REJECT", admin, _ids("NOPE", "R1", remark="x"))
    assert res.status_code == 404
    assert body["error"]["code"] == "NOT_FOUND"
