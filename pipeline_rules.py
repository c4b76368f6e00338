from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from utils import ApiError, parse_datetime_maybe, to_iso_utc


class Status(str, Enum):
    HR_REVIEW = "HR_REVIEW"
    OWNER = "OWNER"
    OWNER_HOLD = "OWNER_HOLD"
    PRECALL = "PRECALL"
    PRE_INTERVIEW = "PRE_INTERVIEW"
    INPERSON_TECH = "INPERSON_TECH"
    TECHNICAL = "TECHNICAL"
    FINAL_INTERVIEW = "FINAL_INTERVIEW"
    FINAL_OWNER_PENDING = "FINAL_OWNER_PENDING"
    FINAL_HOLD = "FINAL_HOLD"
    HIRED = "HIRED"
    PROBATION = "PROBATION"
    REJECTED = "REJECTED"


ALL_STATUSES = frozenset(s.value for s in Status)
TERMINAL_STATUSES = frozenset({Status.PROBATION.value, Status.REJECTED.value})
HOLD_STATUSES = frozenset({Status.OWNER_HOLD.value, Status.FINAL_HOLD.value})
NON_TERMINAL_STATUSES = ALL_STATUSES - TERMINAL_STATUSES

# Where HOLD_REVERT goes when the pre-hold status was never recorded.
HOLD_REVERT_DEFAULTS = {
    Status.OWNER_HOLD.value: Status.OWNER.value,
    Status.FINAL_HOLD.value: Status.FINAL_OWNER_PENDING.value,
}


class Effect(str, Enum):
    ADVANCE = "ADVANCE"
    REJECT = "REJECT"
    HOLD = "HOLD"
    HOLD_REVERT = "HOLD_REVERT"
    REJECT_REVERT = "REJECT_REVERT"


@dataclass(frozen=True)
class TransitionRule:
    action: str
    decision: str
    sources: frozenset
    # None: derived from the candidate (pre-hold or pre-rejection status).
    target: Optional[str]
    effect: Effect
    stage_label: str

    @property
    def requires_remark(self) -> bool:
        return self.effect == Effect.REJECT

    @property
    def requires_hold_until(self) -> bool:
        return self.effect == Effect.HOLD

    @property
    def reason_code(self) -> str:
        return re.sub(r"[^A-Z0-9]+", "_", self.stage_label.upper()).strip("_")


def _t(action, decision, sources, target, effect, label) -> TransitionRule:
    srcs = frozenset(s.value if isinstance(s, Status) else str(s) for s in sources)
    tgt = target.value if isinstance(target, Status) else target
    return TransitionRule(action, decision, srcs, tgt, effect, label)


S = Status

TRANSITIONS: tuple[TransitionRule, ...] = (
    _t("SHORTLIST_DECIDE", "OWNER_SEND", [S.HR_REVIEW], S.OWNER, Effect.ADVANCE, "Shortlist Owner Send"),
    _t("SHORTLIST_DECIDE", "REJECT", [S.HR_REVIEW], S.REJECTED, Effect.REJECT, "Shortlist Reject"),
    _t("OWNER_DECIDE", "APPROVE_WALKIN", [S.OWNER, S.OWNER_HOLD], S.PRECALL, Effect.ADVANCE, "Owner Approve Walk-in"),
    _t("OWNER_DECIDE", "HOLD", [S.OWNER, S.OWNER_HOLD], S.OWNER_HOLD, Effect.HOLD, "Owner Hold"),
    _t("OWNER_DECIDE", "REJECT", [S.OWNER, S.OWNER_HOLD], S.REJECTED, Effect.REJECT, "Owner Reject"),
    _t("PRECALL_UPDATE", "ADVANCE", [S.PRECALL], S.PRE_INTERVIEW, Effect.ADVANCE, "Pre-call Done"),
    _t("PREINTERVIEW_DECIDE", "ADVANCE", [S.PRE_INTERVIEW], S.INPERSON_TECH, Effect.ADVANCE, "Pre-interview Pass"),
    _t("TECH_SELECT", "ADVANCE", [S.INPERSON_TECH], S.TECHNICAL, Effect.ADVANCE, "Tests Selected"),
    _t("PASSFAIL_EVALUATE", "PASS", [S.TECHNICAL], S.FINAL_INTERVIEW, Effect.ADVANCE, "Technical Pass"),
    _t("PASSFAIL_EVALUATE", "FAIL", [S.TECHNICAL], S.REJECTED, Effect.REJECT, "Technical Fail"),
    _t("FINAL_SEND_OWNER", "", [S.FINAL_INTERVIEW], S.FINAL_OWNER_PENDING, Effect.ADVANCE, "Final Sent To Owner"),
    _t("OWNER_FINAL_DECIDE", "SELECT", [S.FINAL_OWNER_PENDING], S.HIRED, Effect.ADVANCE, "Final Owner Select"),
    _t("OWNER_FINAL_DECIDE", "HOLD", [S.FINAL_OWNER_PENDING], S.FINAL_HOLD, Effect.HOLD, "Final Owner Hold"),
    _t("OWNER_FINAL_DECIDE", "REJECT", [S.FINAL_OWNER_PENDING], S.REJECTED, Effect.REJECT, "Final Owner Reject"),
    _t("HOLD_REVERT", "", HOLD_STATUSES, None, Effect.HOLD_REVERT, "Hold Revert"),
    _t("PROBATION_START", "", [S.HIRED], S.PROBATION, Effect.ADVANCE, "Probation Start"),
    _t("CANDIDATE_REJECT", "", NON_TERMINAL_STATUSES, S.REJECTED, Effect.REJECT, "Manual Reject"),
    _t("REJECT_REVERT", "", [S.REJECTED], None, Effect.REJECT_REVERT, "Reject Revert"),
)

TRANSITION_ACTIONS = frozenset(r.action for r in TRANSITIONS)

_BY_KEY = {(r.action, r.decision): r for r in TRANSITIONS}
_DECISIONS: dict[str, list[str]] = {}
for _r in TRANSITIONS:
    _DECISIONS.setdefault(_r.action, []).append(_r.decision)


def decisions_for(action: str) -> list[str]:
    return [d for d in _DECISIONS.get(str(action or "").upper().strip(), []) if d]


def find_rule(action: str, decision: Any = "") -> TransitionRule:
    """
    Look up the transition for `action` (+ `decision` for multi-outcome
    actions). Raises BAD_REQUEST for an unknown action and VALIDATION for a
    decision outside the action's catalogue.
    """

    action_u = str(action or "").upper().strip()
    if action_u not in _DECISIONS:
        raise ApiError("BAD_REQUEST", f"Unknown transition action: {action_u}")
    choices = decisions_for(action_u)
    if not choices:
        return _BY_KEY[(action_u, "")]
    decision_u = str(decision or "").upper().strip()
    if decision_u not in choices:
        raise ApiError("VALIDATION", f"Invalid decision for {action_u}: expected one of {', '.join(choices)}")
    return _BY_KEY[(action_u, decision_u)]


def rules_from(status: str) -> list[TransitionRule]:
    st = str(status or "").upper().strip()
    return [r for r in TRANSITIONS if st in r.sources]


def is_legal(rule_: TransitionRule, status: str) -> bool:
    return str(status or "").upper().strip() in rule_.sources


def validate_payload(
    rule_: TransitionRule,
    payload: Optional[dict[str, Any]],
    *,
    now: Optional[datetime] = None,
    app_timezone: str = "UTC",
) -> dict[str, str]:
    """
    Check the fields a transition needs and return them normalized:
    `remark` trimmed, `holdUntil` as ISO UTC. Raises VALIDATION.
    """

    data = payload or {}
    remark = str(data.get("remark") or "").strip()
    hold_until = ""

    if rule_.requires_remark and not remark:
        raise ApiError("VALIDATION", "Remark is required")

    if rule_.requires_hold_until:
        raw = data.get("holdUntil")
        dt = parse_datetime_maybe(raw, app_timezone=app_timezone)
        if dt is None:
            raise ApiError("VALIDATION", "holdUntil must be a valid date-time")
        now_dt = now or datetime.now(timezone.utc)
        if now_dt.tzinfo is None:
            now_dt = now_dt.replace(tzinfo=timezone.utc)
        if dt <= now_dt:
            raise ApiError("VALIDATION", "holdUntil must be in the future")
        hold_until = to_iso_utc(dt)

    return {"remark": remark, "holdUntil": hold_until}
