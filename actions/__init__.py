from __future__ import annotations

from typing import Any

from actions import admin, auth_actions, candidates, ledger
from pipeline_rules import TRANSITION_ACTIONS
from utils import ApiError, AuthContext

DISPATCH = {
    "LOGIN_EXCHANGE": auth_actions.login_exchange,
    "SESSION_VALIDATE": auth_actions.session_validate,
    "GET_ME": auth_actions.get_me,
    "MY_PERMISSIONS_GET": auth_actions.my_permissions_get,
    "ROLES_LIST": admin.roles_list,
    "ROLES_UPSERT": admin.roles_upsert,
    "PERMISSIONS_LIST": admin.permissions_list,
    "PERMISSIONS_UPSERT": admin.permissions_upsert,
    "CANDIDATE_ADD": candidates.candidate_add,
    "CANDIDATE_GET": candidates.candidate_get,
    "PIPELINE_COUNTS": candidates.pipeline_counts,
    "REJECTION_LOG_LIST": ledger.rejection_log_list,
    "HOLD_EXPIRY_CRON": candidates.hold_expiry_cron,
}

for _action in sorted(TRANSITION_ACTIONS):
    DISPATCH.setdefault(_action, candidates.make_transition_handler(_action))
DISPATCH["REJECT_REVERT"] = candidates.reject_revert


def dispatch(action: str, data: Any, auth: AuthContext | None, db, cfg) -> Any:
    action_u = str(action or "").upper().strip()
    fn = DISPATCH.get(action_u)
    if fn is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    return fn(data if isinstance(data, dict) else {}, auth, db, cfg)
