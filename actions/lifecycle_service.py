from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from actions import ledger
from actions.candidate_repo import candidate_view, check_expected_version, lock_candidate, record_test_decision, update_candidate
from actions.helpers import append_audit, append_hold_log, stage_event
from auth import authorize_action
from models import Candidate
from pipeline_rules import HOLD_REVERT_DEFAULTS, HOLD_STATUSES, Effect, Status, TransitionRule, find_rule, is_legal, validate_payload
from utils import SYSTEM_AUTH, ApiError, AuthContext, to_iso_utc

TRANSITION_EVENT = "candidate.transition"

_CLEAR_HOLD = {"holdUntil": "", "holdFromStatus": "", "holdRemark": ""}
_CLEAR_REJECTION = {
    "rejectedFromStatus": "",
    "rejectedReasonCode": "",
    "rejectedStageTag": "",
    "rejectedRemark": "",
    "rejectedAt": "",
}


def _conflict() -> ApiError:
    return ApiError("CONFLICT", "Candidate state changed; refresh and retry", http_status=409)


def _illegal(rule_: TransitionRule, from_status: str, detail: str = "") -> ApiError:
    label = rule_.action + (f"({rule_.decision})" if rule_.decision else "")
    msg = f"Illegal transition: {label} from {from_status or 'UNKNOWN'}"
    if detail:
        msg = f"{msg} ({detail})"
    return ApiError("ILLEGAL_TRANSITION", msg, http_status=409)


def _reject_patch(
    db,
    cand: Candidate,
    *,
    from_status: str,
    remark: str,
    reason_code: str,
    actor: AuthContext,
    rejection_type: str,
    auto_reject_code: str,
    at: str,
) -> dict[str, Any]:
    # Hold fields are kept so a later revert restores the held state as it was.
    entry = ledger.append(
        db,
        candidate_id=cand.candidateId,
        requirement_id=cand.requirementId,
        stage_tag=from_status,
        remark=remark,
        actor=actor,
        rejection_type=rejection_type,
        auto_reject_code=auto_reject_code,
        at=at,
    )
    return {
        "status": Status.REJECTED.value,
        "rejectedFromStatus": from_status,
        "rejectedReasonCode": reason_code,
        "rejectedStageTag": entry.stageTag,
        "rejectedRemark": remark,
        "rejectedAt": entry.at,
    }


def transition(
    db,
    *,
    candidate_id: str,
    requirement_id: str,
    action: str,
    actor: Optional[AuthContext],
    payload: Optional[dict[str, Any]] = None,
    cfg=None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Apply one pipeline transition to a (candidate, requirement) pair.

    Checks run in order and the first failure wins: authorization of the
    action key (RBAC_DENIED), legality of the current status for the action
    (ILLEGAL_TRANSITION, or CONFLICT on an `expectedVersion` mismatch), then
    payload completeness (VALIDATION). Nothing is written until every check
    has passed.

    On success the candidate row, a ledger or hold-log entry where one is
    required, and an audit row are written in the caller's transaction, and a
    `candidate.transition` event is staged for publication after commit.

    IMPORTANT: Do not call `db.commit()` here; the API router owns the transaction boundary.
    """

    data = payload or {}
    action_u = str(action or "").upper().strip()

    authorize_action(db, actor, action_u)
    rule_ = find_rule(action_u, data.get("decision"))

    cand = lock_candidate(db, candidate_id=candidate_id, requirement_id=requirement_id)
    from_status = str(cand.status or "").upper().strip()
    if not is_legal(rule_, from_status):
        raise _illegal(rule_, from_status)
    check_expected_version(cand, data.get("expectedVersion"))

    if rule_.effect == Effect.REJECT_REVERT:
        to_status = str(cand.rejectedFromStatus or "").upper().strip()
        if not to_status:
            raise _illegal(rule_, from_status, "no prior status recorded")
    elif rule_.effect == Effect.HOLD_REVERT:
        to_status = str(cand.holdFromStatus or "").upper().strip() or HOLD_REVERT_DEFAULTS[from_status]
    else:
        to_status = str(rule_.target)

    now_dt = now or datetime.now(timezone.utc)
    app_tz = str(getattr(cfg, "APP_TIMEZONE", "") or "UTC")
    fields = validate_payload(rule_, data, now=now_dt, app_timezone=app_tz)
    remark = fields["remark"]
    at = to_iso_utc(now_dt)
    version_before = int(cand.version or 0)

    patch: dict[str, Any] = {"status": to_status}
    if rule_.effect == Effect.ADVANCE:
        if from_status in HOLD_STATUSES:
            patch.update(_CLEAR_HOLD)
        if rule_.action == "PASSFAIL_EVALUATE":
            patch["testDecisionsJson"] = record_test_decision(
                cand,
                test_type=str(data.get("testType") or "TECHNICAL"),
                decision=rule_.decision,
                remark=remark,
                auth=actor,
                at=at,
            )
    elif rule_.effect == Effect.REJECT:
        patch.update(
            _reject_patch(
                db,
                cand,
                from_status=from_status,
                remark=remark,
                reason_code=rule_.reason_code,
                actor=actor,
                rejection_type=ledger.REJECTION_MANUAL,
                auto_reject_code="",
                at=at,
            )
        )
        if rule_.action == "PASSFAIL_EVALUATE":
            patch["testDecisionsJson"] = record_test_decision(
                cand,
                test_type=str(data.get("testType") or "TECHNICAL"),
                decision=rule_.decision,
                remark=remark,
                auth=actor,
                at=at,
            )
    elif rule_.effect == Effect.HOLD:
        hold_from = from_status
        if from_status in HOLD_STATUSES and cand.holdFromStatus:
            hold_from = str(cand.holdFromStatus)
        patch.update({"holdUntil": fields["holdUntil"], "holdFromStatus": hold_from, "holdRemark": remark})
        append_hold_log(
            db,
            candidateId=cand.candidateId,
            requirementId=cand.requirementId,
            action="HOLD",
            stageTag=rule_.stage_label,
            remark=remark or "Hold",
            actor=actor,
            holdUntil=fields["holdUntil"],
            at=at,
        )
    elif rule_.effect == Effect.HOLD_REVERT:
        patch.update(_CLEAR_HOLD)
        append_hold_log(
            db,
            candidateId=cand.candidateId,
            requirementId=cand.requirementId,
            action="REVERT",
            stageTag=rule_.stage_label,
            remark=remark,
            actor=actor,
            holdUntil=cand.holdUntil or "",
            at=at,
        )
    elif rule_.effect == Effect.REJECT_REVERT:
        patch.update(_CLEAR_REJECTION)

    update_candidate(db, cand=cand, patch=patch, auth=actor)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action=rule_.action,
        fromState=from_status,
        toState=to_status,
        stageTag=rule_.stage_label,
        remark=remark,
        actor=actor,
        at=at,
        meta={
            "requirementId": cand.requirementId,
            "decision": rule_.decision,
            "holdUntil": fields["holdUntil"],
            "versionBefore": version_before,
        },
    )

    try:
        db.flush()
    except StaleDataError:
        raise _conflict()

    stage_event(
        db,
        TRANSITION_EVENT,
        {
            "candidateId": cand.candidateId,
            "requirementId": cand.requirementId,
            "action": rule_.action,
            "decision": rule_.decision,
            "fromStatus": from_status,
            "toStatus": to_status,
            "actorRole": actor.role,
            "actorUserId": actor.userId,
        },
    )

    return {
        "ok": True,
        "action": rule_.action,
        "decision": rule_.decision,
        "fromStatus": from_status,
        "status": to_status,
        "candidate": candidate_view(cand, now=now_dt),
    }


def expire_holds(db, *, cfg=None, now: Optional[datetime] = None, actor: AuthContext = SYSTEM_AUTH) -> dict[str, Any]:
    """
    Auto-reject every OWNER_HOLD candidate whose hold deadline has passed.

    Ledger entries are AUTO with autoRejectCode HOLD_EXPIRED. FINAL_HOLD is
    left alone; an expired final hold only shows as `holdExpired` in views.
    """

    now_dt = now or datetime.now(timezone.utc)
    now_iso = to_iso_utc(now_dt)

    ids = db.execute(
        select(Candidate.candidateId, Candidate.requirementId)
        .where(Candidate.status == Status.OWNER_HOLD.value)
        .where(Candidate.holdUntil != "")
        .where(Candidate.holdUntil <= now_iso)
    ).all()

    rejected = []
    for cid, rid in ids:
        cand = lock_candidate(db, candidate_id=cid, requirement_id=rid)
        from_status = str(cand.status or "").upper()
        if from_status != Status.OWNER_HOLD.value or not cand.holdUntil or cand.holdUntil > now_iso:
            continue

        patch = _reject_patch(
            db,
            cand,
            from_status=from_status,
            remark=f"Hold expired at {cand.holdUntil}",
            reason_code="HOLD_EXPIRED",
            actor=actor,
            rejection_type=ledger.REJECTION_AUTO,
            auto_reject_code="HOLD_EXPIRED",
            at=now_iso,
        )
        update_candidate(db, cand=cand, patch=patch, auth=actor)
        append_audit(
            db,
            entityType="CANDIDATE",
            entityId=cid,
            action="HOLD_EXPIRY_AUTO_REJECT",
            fromState=from_status,
            toState=Status.REJECTED.value,
            stageTag="Owner Hold Expired",
            remark=patch["rejectedRemark"],
            actor=actor,
            at=now_iso,
            meta={"requirementId": rid, "holdUntil": cand.holdUntil},
        )
        stage_event(
            db,
            TRANSITION_EVENT,
            {
                "candidateId": cid,
                "requirementId": rid,
                "action": "HOLD_EXPIRY_CRON",
                "decision": "",
                "fromStatus": from_status,
                "toStatus": Status.REJECTED.value,
                "actorRole": actor.role,
                "actorUserId": actor.userId,
            },
        )
        rejected.append({"candidateId": cid, "requirementId": rid, "holdUntil": cand.holdUntil})

    try:
        db.flush()
    except StaleDataError:
        raise _conflict()

    return {"ok": True, "now": now_iso, "rejected": rejected, "count": len(rejected)}
