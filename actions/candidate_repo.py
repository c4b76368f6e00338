from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from models import Candidate
from pipeline_rules import HOLD_STATUSES
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe, parse_json_object

_PATCHABLE = (
    "status",
    "candidateName",
    "jobRole",
    "mobile",
    "source",
    "holdUntil",
    "holdFromStatus",
    "holdRemark",
    "rejectedFromStatus",
    "rejectedReasonCode",
    "rejectedStageTag",
    "rejectedRemark",
    "rejectedAt",
    "testDecisionsJson",
)


def _ids(candidate_id: Any, requirement_id: Any) -> tuple[str, str]:
    cid = str(candidate_id or "").strip()
    rid = str(requirement_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    if not rid:
        raise ApiError("BAD_REQUEST", "Missing requirementId")
    return cid, rid


def find_candidate(db, *, candidate_id: str, requirement_id: str) -> Candidate:
    cid, rid = _ids(candidate_id, requirement_id)
    cand = db.get(Candidate, (cid, rid))
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found", http_status=404)
    return cand


def lock_candidate(db, *, candidate_id: str, requirement_id: str) -> Candidate:
    """Load the (candidateId, requirementId) row with SELECT .. FOR UPDATE."""

    cid, rid = _ids(candidate_id, requirement_id)
    cand = (
        db.execute(
            select(Candidate)
            .where(Candidate.candidateId == cid)
            .where(Candidate.requirementId == rid)
            .with_for_update(of=Candidate)
        )
        .scalars()
        .first()
    )
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found", http_status=404)
    return cand


def candidates_for(db, *, candidate_id: str) -> list[Candidate]:
    cid = str(candidate_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    return list(db.execute(select(Candidate).where(Candidate.candidateId == cid).order_by(Candidate.requirementId)).scalars().all())


def create_candidate(db, *, candidate_id: str, requirement_id: str, fields: dict[str, Any], status: str, auth: AuthContext) -> Candidate:
    cid, rid = _ids(candidate_id, requirement_id)
    if db.get(Candidate, (cid, rid)) is not None:
        raise ApiError("CONFLICT", "Candidate already exists for this requirement", http_status=409)

    now = iso_utc_now()
    cand = Candidate(
        candidateId=cid,
        requirementId=rid,
        candidateName=str(fields.get("candidateName") or ""),
        jobRole=str(fields.get("jobRole") or ""),
        mobile=str(fields.get("mobile") or ""),
        source=str(fields.get("source") or ""),
        status=status,
        createdAt=now,
        createdBy=auth.userId,
        updatedAt=now,
        updatedBy=auth.userId,
    )
    db.add(cand)
    return cand


def update_candidate(db, *, cand: Candidate, patch: dict[str, Any], auth: AuthContext) -> None:
    for key in _PATCHABLE:
        if key in patch and patch[key] is not None:
            setattr(cand, key, str(patch[key]))
    cand.updatedAt = iso_utc_now()
    cand.updatedBy = auth.userId


def check_expected_version(cand: Candidate, expected: Any) -> None:
    if expected is None or expected == "":
        return
    try:
        want = int(expected)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "expectedVersion must be an integer")
    if int(cand.version or 0) != want:
        raise ApiError("CONFLICT", "Candidate changed since it was loaded; refresh and retry", http_status=409)


def get_test_decisions(cand: Candidate) -> dict:
    return parse_json_object(cand.testDecisionsJson, {})


def record_test_decision(cand: Candidate, *, test_type: str, decision: str, remark: str, auth: AuthContext, at: str) -> str:
    decisions = get_test_decisions(cand)
    decisions[str(test_type or "TEST").upper()] = {
        "decision": str(decision or "").upper(),
        "at": at,
        "userId": auth.userId,
        "role": auth.role,
        "remark": remark or "",
    }
    return json.dumps(decisions, sort_keys=True)


def is_hold_expired(cand: Candidate, now: Optional[datetime] = None) -> bool:
    if not cand.holdUntil:
        return False
    dt = parse_datetime_maybe(cand.holdUntil)
    if dt is None:
        return False
    return dt <= (now or datetime.now(timezone.utc))


def candidate_view(cand: Candidate, *, now: Optional[datetime] = None) -> dict[str, Any]:
    status = str(cand.status or "").upper()
    return {
        "candidateId": cand.candidateId,
        "requirementId": cand.requirementId,
        "candidateName": cand.candidateName or "",
        "jobRole": cand.jobRole or "",
        "mobile": cand.mobile or "",
        "source": cand.source or "",
        "status": status,
        "holdUntil": cand.holdUntil or "",
        "holdFromStatus": cand.holdFromStatus or "",
        "holdRemark": cand.holdRemark or "",
        "holdExpired": status in HOLD_STATUSES and is_hold_expired(cand, now),
        "rejectedFromStatus": cand.rejectedFromStatus or "",
        "rejectedReasonCode": cand.rejectedReasonCode or "",
        "rejectedStageTag": cand.rejectedStageTag or "",
        "rejectedRemark": cand.rejectedRemark or "",
        "rejectedAt": cand.rejectedAt or "",
        "testDecisions": get_test_decisions(cand),
        "version": int(cand.version or 0),
        "createdAt": cand.createdAt or "",
        "createdBy": cand.createdBy or "",
        "updatedAt": cand.updatedAt or "",
        "updatedBy": cand.updatedBy or "",
    }
