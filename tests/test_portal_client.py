from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from events import EventQueue
from portal_client import ClientError, ClientGate, PortalClient


def _response(body=None, *, bad_json=False):
    res = MagicMock()
    if bad_json:
        res.json.side_effect = ValueError("not json")
    else:
        res.json.return_value = body
    return res


def _client(session, events=None):
    return PortalClient("http://portal.local", session=session, events=events or EventQueue(), coalesce=False)


def test_success_unwraps_data():
    session = MagicMock()
    session.post.return_value = _response({"ok": True, "data": {"status": "OWNER"}})

    out = _client(session).call("candidate_get", {"candidateId": "C1", "requirementId": "R1"}, "ST-1")
    assert out == {"status": "OWNER"}
    _args, kwargs = session.post.call_args
    assert kwargs["json"] == {"action": "CANDIDATE_GET", "token": "ST-1", "data": {"candidateId": "C1", "requirementId": "R1"}}


def test_network_error_notifies_and_is_not_retried():
    session = MagicMock()
    session.post.side_effect = requests.ConnectionError("refused")
    events = EventQueue()
    seen = []
    events.subscribe(seen.append)

    with pytest.raises(ClientError) as ei:
        _client(session, events).call("GET_ME", {}, "ST-1")
    assert ei.value.code == "NETWORK_ERROR"
    assert session.post.call_count == 1
    assert [e.payload["id"] for e in seen] == ["api_NETWORK_ERROR"]


def test_bad_responses():
    session = MagicMock()
    session.post.return_value = _response(bad_json=True)
    with pytest.raises(ClientError) as ei:
        _client(session).call("GET_ME", {}, "ST-1")
    assert ei.value.code == "BAD_RESPONSE"

    session.post.return_value = _response({"data": {}})
    with pytest.raises(ClientError) as ei:
        _client(session).call("GET_ME", {}, "ST-1")
    assert ei.value.code == "BAD_RESPONSE"


def test_missing_base_url_is_config_error():
    session = MagicMock()
    client = PortalClient("", session=session, coalesce=False)
    with pytest.raises(ClientError) as ei:
        client.call("GET_ME", {}, "ST-1")
    assert ei.value.code == "CONFIG_MISSING"
    session.post.assert_not_called()


def test_backend_error_names_role_and_action():
    session = MagicMock()
    session.post.return_value = _response({"ok": False, "error": {"code": "RBAC_DENIED", "message": "Not allowed for role: hr"}})

    with pytest.raises(ClientError) as ei:
        _client(session).call("reject_revert", {"candidateId": "C1", "requirementId": "R1"}, "ST-1")
    assert ei.value.code == "RBAC_DENIED"
    assert ei.value.message == "Not allowed for role: HR (action: REJECT_REVERT)"


def test_unknown_backend_error_code():
    session = MagicMock()
    session.post.return_value = _response({"ok": False})
    with pytest.raises(ClientError) as ei:
        _client(session).call("GET_ME", {}, "ST-1")
    assert ei.value.code == "UNKNOWN_ERROR"


def test_invalid_transition_payload_fails_before_network():
    session = MagicMock()
    client = _client(session)

    with pytest.raises(ClientError) as ei:
        client.transition("OWNER_DECIDE", "C1", "R1", "ST-1", decision="REJECT", remark=" ")
    assert ei.value.code == "VALIDATION"

    with pytest.raises(ClientError) as ei:
        client.transition("OWNER_DECIDE", "C1", "R1", "ST-1", decision="HOLD", holdUntil="2000-01-01T00:00:00Z")
    assert ei.value.code == "VALIDATION"
    session.post.assert_not_called()


def test_chunked_upsert_stops_at_first_failure():
    session = MagicMock()
    session.post.side_effect = [
        _response({"ok": True, "data": {"upserted": 2}}),
        _response({"ok": False, "error": {"code": "VALIDATION", "message": "Unknown role: X"}}),
        _response({"ok": True, "data": {"upserted": 1}}),
    ]
    items = [{"permType": "UI", "permKey": f"BTN_K{i}", "allowedRoles": ["ADMIN"]} for i in range(5)]

    with pytest.raises(ClientError) as ei:
        _client(session).upsert_permissions_chunked(items, "ST-1", chunk_size=2)
    assert ei.value.applied_chunks == 1
    assert session.post.call_count == 2


def test_chunked_upsert_sends_all_chunks():
    session = MagicMock()
    session.post.return_value = _response({"ok": True, "data": {"upserted": 2}})
    items = [{"permType": "UI", "permKey": f"BTN_K{i}", "allowedRoles": ["ADMIN"]} for i in range(4)]

    out = _client(session).upsert_permissions_chunked(items, "ST-1", chunk_size=2)
    assert out == {"chunks": 2, "upserted": 4}


def test_gate_uses_static_tables_until_loaded():
    gate = ClientGate("hr")
    assert gate.loaded is False
    assert gate.allow_portal("HR_REVIEW") is True
    assert gate.allow_portal("PORTAL_ADMIN") is False
    assert gate.allow_action("REJECT_REVERT") is False

    gate.apply_snapshot({"role": "HR", "uiKeys": ["PORTAL_ADMIN"], "actionKeys": ["REJECT_REVERT"]})
    assert gate.loaded is True
    assert gate.allow_portal("ADMIN") is True
    assert gate.allow_portal("HR_REVIEW") is False
    assert gate.allow_action("reject_revert") is True

    gate.reset()
    assert gate.loaded is False
    assert gate.allow_action("REJECT_REVERT") is False


def test_gate_loads_snapshot_through_client():
    session = MagicMock()
    session.post.return_value = _response(
        {"ok": True, "data": {"role": "OWNER", "uiKeys": ["PORTAL_OWNER"], "portalKeys": ["PORTAL_OWNER"], "actionKeys": ["OWNER_DECIDE"]}}
    )
    gate = ClientGate()
    gate.load(_client(session), "ST-1")
    assert gate.role == "OWNER"
    assert gate.allow_action("OWNER_DECIDE") is True
    assert gate.allow_action("HOLD_REVERT") is False


def test_unknown_decision_fails_validation_before_network():
    session = MagicMock()
    with pytest.raises(ClientError) as ei:
        _client(session).transition("OWNER_DECIDE", "C1", "R1", "ST-1", decision="MAYBE")
    assert ei.value.code == "VALIDATION"
    assert ei.value.message.endswith("(action: OWNER_DECIDE)")
    session.post.assert_not_called()
