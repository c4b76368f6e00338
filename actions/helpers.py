from __future__ import annotations

from typing import Any, Optional

from flask import g, has_request_context

from models import AuditLog, HoldLog
from utils import AuthContext, iso_utc_now, new_uuid, safe_json_string

PENDING_EVENTS_KEY = "pending_events"


def _correlation_id() -> str:
    if has_request_context():
        return str(getattr(g, "request_id", "") or "")
    return ""


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext],
    at: Optional[str] = None,
    meta: Any = None,
) -> AuditLog:
    row = AuditLog(
        logId="AUD-" + new_uuid(),
        entityType=str(entityType or ""),
        entityId=str(entityId or ""),
        action=str(action or "").upper(),
        fromState=str(fromState or ""),
        toState=str(toState or ""),
        stageTag=str(stageTag or ""),
        remark=str(remark or ""),
        actorUserId=str(getattr(actor, "userId", "") or ""),
        actorRole=str(getattr(actor, "role", "") or ""),
        actorEmail=str(getattr(actor, "email", "") or ""),
        at=at or iso_utc_now(),
        correlationId=_correlation_id(),
        metaJson=safe_json_string(meta if meta is not None else {}),
    )
    db.add(row)
    return row


def append_hold_log(
    db,
    *,
    candidateId: str,
    requirementId: str,
    action: str,
    stageTag: str,
    remark: str,
    actor: Optional[AuthContext],
    holdUntil: str = "",
    at: Optional[str] = None,
) -> HoldLog:
    row = HoldLog(
        logId="HLD-" + new_uuid(),
        candidateId=str(candidateId or ""),
        requirementId=str(requirementId or ""),
        action=str(action or "").upper(),
        holdUntil=str(holdUntil or ""),
        stageTag=str(stageTag or ""),
        remark=str(remark or ""),
        actorUserId=str(getattr(actor, "userId", "") or ""),
        actorRole=str(getattr(actor, "role", "") or ""),
        at=at or iso_utc_now(),
    )
    db.add(row)
    return row


def stage_event(db, type_: str, payload: dict[str, Any]) -> None:
    """
    Queue an event on the session. The router publishes staged events only
    after the transaction commits and discards them on rollback.
    """

    db.info.setdefault(PENDING_EVENTS_KEY, []).append((str(type_ or ""), dict(payload or {})))


def pop_staged_events(db) -> list[tuple[str, dict[str, Any]]]:
    return list(db.info.pop(PENDING_EVENTS_KEY, None) or [])
