from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select

from actions.candidate_repo import candidates_for, find_candidate
from models import Candidate, RejectionLog
from utils import ApiError, AuthContext, add_millis, iso_utc_now, parse_datetime_maybe, to_iso_utc

REJECTION_MANUAL = "MANUAL"
REJECTION_AUTO = "AUTO"


def _latest_at(db, candidate_id: str, requirement_id: str) -> str:
    return str(
        db.execute(
            select(func.max(RejectionLog.at))
            .where(RejectionLog.candidateId == candidate_id)
            .where(RejectionLog.requirementId == requirement_id)
        ).scalar()
        or ""
    )


def append(
    db,
    *,
    candidate_id: str,
    requirement_id: str,
    stage_tag: str,
    remark: str,
    actor: Optional[AuthContext],
    rejection_type: str = REJECTION_MANUAL,
    auto_reject_code: str = "",
    at: Optional[str] = None,
    log_id: Optional[str] = None,
) -> RejectionLog:
    """
    Append one immutable rejection entry for a (candidate, requirement) pair.

    `at` is strictly increasing per pair: a timestamp at or before the latest
    entry is moved 1 ms past it. `logId` defaults to "<at>|<stageTag>", which
    is unique per pair because of that ordering.
    """

    dt = parse_datetime_maybe(at) if at else None
    at_iso = to_iso_utc(dt) if dt else iso_utc_now()
    latest = _latest_at(db, candidate_id, requirement_id)
    if latest and at_iso <= latest:
        at_iso = add_millis(latest, 1)

    row = RejectionLog(
        candidateId=candidate_id,
        requirementId=requirement_id,
        logId=str(log_id or f"{at_iso}|{stage_tag}"),
        rejectionType=str(rejection_type or REJECTION_MANUAL).upper(),
        autoRejectCode=str(auto_reject_code or ""),
        stageTag=str(stage_tag or ""),
        remark=str(remark or ""),
        actorUserId=str(getattr(actor, "userId", "") or ""),
        actorRole=str(getattr(actor, "role", "") or ""),
        at=at_iso,
    )
    db.add(row)
    db.flush()
    return row


def list_by_candidate(db, *, candidate_id: str, requirement_id: str, order: str = "desc") -> list[RejectionLog]:
    q = select(RejectionLog).where(RejectionLog.candidateId == candidate_id).where(RejectionLog.requirementId == requirement_id)
    if str(order or "desc").lower() == "asc":
        q = q.order_by(RejectionLog.at.asc())
    else:
        q = q.order_by(RejectionLog.at.desc())
    return list(db.execute(q).scalars().all())


def revert_latest(db, *, candidate_id: str, requirement_id: str, actor: AuthContext, cfg=None, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Undo the current rejection through the state machine; the log keeps every entry."""

    from actions.lifecycle_service import transition

    return transition(
        db,
        candidate_id=candidate_id,
        requirement_id=requirement_id,
        action="REJECT_REVERT",
        actor=actor,
        payload=payload,
        cfg=cfg,
    )


def entry_view(row: RejectionLog) -> dict[str, Any]:
    return {
        "logId": row.logId or "",
        "candidateId": row.candidateId or "",
        "requirementId": row.requirementId or "",
        "at": row.at or "",
        "stageTag": row.stageTag or "",
        "remark": row.remark or "",
        "actorRole": row.actorRole or "",
        "actorUserId": row.actorUserId or "",
        "rejectionType": row.rejectionType or "",
        "autoRejectCode": row.autoRejectCode or "",
    }


def _pair_item(cand: Candidate, logs: list[dict[str, Any]]) -> dict[str, Any]:
    latest = logs[0] if logs else None
    return {
        "candidateId": cand.candidateId,
        "requirementId": cand.requirementId,
        "candidateName": cand.candidateName or "",
        "jobRole": cand.jobRole or "",
        "status": cand.status or "",
        "rejectedFromStatus": cand.rejectedFromStatus or "",
        "rejectedReasonCode": cand.rejectedReasonCode or "",
        "rejectedStageTag": cand.rejectedStageTag or "",
        "rejectedRemark": cand.rejectedRemark or "",
        "rejectedAt": cand.rejectedAt or "",
        "latest": latest,
        "logs": logs,
    }


def rejection_log_list(data, auth: AuthContext | None, db, cfg):
    candidate_id = str((data or {}).get("candidateId") or "").strip()
    requirement_id = str((data or {}).get("requirementId") or "").strip()
    order = str((data or {}).get("order") or "desc").strip().lower()
    if order not in {"asc", "desc"}:
        raise ApiError("BAD_REQUEST", "order must be asc or desc")

    if candidate_id:
        if requirement_id:
            cands = [find_candidate(db, candidate_id=candidate_id, requirement_id=requirement_id)]
        else:
            cands = candidates_for(db, candidate_id=candidate_id)
        items = []
        for c in cands:
            rows = list_by_candidate(db, candidate_id=c.candidateId, requirement_id=c.requirementId, order="desc")
            logs = [entry_view(r) for r in rows]
            item = _pair_item(c, logs)
            if order == "asc":
                item["logs"] = list(reversed(logs))
            items.append(item)
        return {"items": items, "total": len(items)}

    logs_by_key: dict[tuple[str, str], list[dict[str, Any]]] = {}
    for r in db.execute(select(RejectionLog).order_by(RejectionLog.at.desc())).scalars().all():
        logs_by_key.setdefault((r.candidateId, r.requirementId), []).append(entry_view(r))

    items = []
    for c in db.execute(select(Candidate).where(Candidate.status == "REJECTED")).scalars().all():
        logs = logs_by_key.get((c.candidateId, c.requirementId), [])
        item = _pair_item(c, logs)
        if order == "asc":
            item["logs"] = list(reversed(logs))
        items.append(item)

    items.sort(key=lambda x: str(x.get("rejectedAt") or ""), reverse=True)
    return {"items": items, "total": len(items)}
