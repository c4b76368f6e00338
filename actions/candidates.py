from __future__ import annotations

import os
from typing import Any, Callable

from sqlalchemy import func, select

from actions import ledger
from actions.candidate_repo import candidate_view, create_candidate, find_candidate
from actions.helpers import append_audit, stage_event
from actions.lifecycle_service import TRANSITION_EVENT, expire_holds, transition
from auth import is_allowed
from cache_layer import PIPELINE_PREFIX, cache_get_or_set, make_cache_key
from models import Candidate
from pipeline_rules import Status, rules_from
from utils import ApiError, AuthContext, iso_utc_now

Handler = Callable[..., Any]


def _new_candidate_id() -> str:
    return "CND-" + os.urandom(6).hex().upper()


def candidate_add(data, auth: AuthContext | None, db, cfg):
    requirement_id = str((data or {}).get("requirementId") or "").strip()
    candidate_id = str((data or {}).get("candidateId") or "").strip() or _new_candidate_id()
    candidate_name = str((data or {}).get("candidateName") or "").strip()

    if not requirement_id:
        raise ApiError("BAD_REQUEST", "Missing requirementId")
    if not candidate_name:
        raise ApiError("BAD_REQUEST", "Missing candidateName")
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required", http_status=401)

    cand = create_candidate(
        db,
        candidate_id=candidate_id,
        requirement_id=requirement_id,
        fields={
            "candidateName": candidate_name,
            "jobRole": str((data or {}).get("jobRole") or "").strip(),
            "mobile": str((data or {}).get("mobile") or "").strip(),
            "source": str((data or {}).get("source") or "").strip(),
        },
        status=Status.HR_REVIEW.value,
        auth=auth,
    )
    db.flush()

    now = iso_utc_now()
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=candidate_id,
        action="CANDIDATE_ADD",
        fromState="",
        toState=Status.HR_REVIEW.value,
        stageTag="CANDIDATE_ADD",
        actor=auth,
        at=now,
        meta={"requirementId": requirement_id},
    )
    stage_event(
        db,
        TRANSITION_EVENT,
        {
            "candidateId": candidate_id,
            "requirementId": requirement_id,
            "action": "CANDIDATE_ADD",
            "decision": "",
            "fromStatus": "",
            "toStatus": Status.HR_REVIEW.value,
            "actorRole": auth.role,
            "actorUserId": auth.userId,
        },
    )
    return {"candidate": candidate_view(cand)}


def allowed_actions(db, cand: Candidate, role: str) -> list[dict[str, str]]:
    out = []
    for r in rules_from(cand.status):
        if r.action == "REJECT_REVERT" and not cand.rejectedFromStatus:
            continue
        if is_allowed(db, "ACTION", r.action, role):
            out.append({"action": r.action, "decision": r.decision})
    return out


def candidate_get(data, auth: AuthContext | None, db, cfg):
    cand = find_candidate(
        db,
        candidate_id=(data or {}).get("candidateId"),
        requirement_id=(data or {}).get("requirementId"),
    )
    view = candidate_view(cand)
    view["allowedActions"] = allowed_actions(db, cand, auth.role if auth else "")
    return {"candidate": view}


def compute_pipeline_counts(db) -> dict[str, Any]:
    counts = {s.value: 0 for s in Status}
    for status, n in db.execute(select(Candidate.status, func.count()).group_by(Candidate.status)).all():
        key = str(status or "").upper()
        if key in counts:
            counts[key] = int(n or 0)
    return {"counts": counts, "total": sum(counts.values()), "computedAt": iso_utc_now()}


def pipeline_counts(data, auth: AuthContext | None, db, cfg):
    return cache_get_or_set(make_cache_key(PIPELINE_PREFIX, "COUNTS"), lambda: compute_pipeline_counts(db))


def make_transition_handler(action: str) -> Handler:
    action_u = str(action or "").upper().strip()

    def _handler(data, auth: AuthContext | None, db, cfg):
        return transition(
            db,
            candidate_id=(data or {}).get("candidateId"),
            requirement_id=(data or {}).get("requirementId"),
            action=action_u,
            actor=auth,
            payload=data or {},
            cfg=cfg,
        )

    _handler.__name__ = action_u.lower()
    return _handler


def reject_revert(data, auth: AuthContext | None, db, cfg):
    return ledger.revert_latest(
        db,
        candidate_id=(data or {}).get("candidateId"),
        requirement_id=(data or {}).get("requirementId"),
        actor=auth,
        cfg=cfg,
        payload=data or {},
    )


def hold_expiry_cron(data, auth: AuthContext | None, db, cfg):
    return expire_holds(db, cfg=cfg, actor=auth)
