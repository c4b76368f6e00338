from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

from utils import join_roles_csv, normalize_role, parse_roles_csv

PUBLIC_ROLE = "PUBLIC"
PERM_TYPES = ("UI", "ACTION")
ROLE_CODE_RE = re.compile(r"^[A-Z][A-Z0-9_]{1,31}$")
PERM_KEY_RE = re.compile(r"^[A-Z][A-Z0-9_]{1,63}$")

DEFAULT_ROLES = ("ADMIN", "EA", "HR", "OWNER", "EMPLOYEE", "ACCOUNTS", "MIS", "DEO")

# The app shell needs these to load. A stored rule decides them; with no rule
# every ACTIVE role may use them. Activating a role grants them.
SESSION_ACTIONS = frozenset({"SESSION_VALIDATE", "GET_ME", "MY_PERMISSIONS_GET"})


class Decision(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class PermissionRule:
    permType: str
    permKey: str
    allowedRoles: frozenset = field(default_factory=frozenset)
    enabled: bool = True
    updatedAt: str = ""
    updatedBy: str = ""

    @property
    def rolesCsv(self) -> str:
        return join_roles_csv(self.allowedRoles)

    def to_dict(self) -> dict:
        return {
            "permType": self.permType,
            "permKey": self.permKey,
            "allowedRoles": sorted(self.allowedRoles),
            "rolesCsv": self.rolesCsv,
            "enabled": bool(self.enabled),
            "updatedAt": self.updatedAt,
            "updatedBy": self.updatedBy,
        }


def rule(perm_type: str, perm_key: str, roles: Iterable[str] | str, enabled: bool = True) -> PermissionRule:
    if isinstance(roles, str):
        role_set = parse_roles_csv(roles)
    else:
        role_set = frozenset(normalize_role(r) for r in roles if normalize_role(r))
    return PermissionRule(
        permType=str(perm_type or "").upper().strip(),
        permKey=str(perm_key or "").upper().strip(),
        allowedRoles=role_set,
        enabled=bool(enabled),
    )


_STAFF = "ADMIN,EA,HR,OWNER"

DEFAULT_PERMISSION_RULES: tuple[PermissionRule, ...] = (
    # Portals and buttons.
    rule("UI", "PORTAL_ADMIN", "ADMIN"),
    rule("UI", "PORTAL_HR_REVIEW", "HR,ADMIN"),
    rule("UI", "PORTAL_HR_PRECALL", "HR,ADMIN"),
    rule("UI", "PORTAL_HR_PREINTERVIEW", "HR,ADMIN"),
    rule("UI", "PORTAL_HR_INPERSON", "HR,ADMIN"),
    rule("UI", "PORTAL_HR_FINAL", "HR,ADMIN"),
    rule("UI", "PORTAL_HR_FINAL_HOLD", "HR,ADMIN"),
    rule("UI", "PORTAL_HR_PROBATION", "HR,EA,ADMIN"),
    rule("UI", "PORTAL_OWNER", "OWNER,ADMIN"),
    rule("UI", "PORTAL_EA_TECH", "EA,ADMIN"),
    rule("UI", "PORTAL_REJECTION_LOG", "EA,HR,ADMIN"),
    rule("UI", "BTN_SHORTLIST_OWNER_SEND", "HR,ADMIN"),
    rule("UI", "BTN_OWNER_APPROVE_WALKIN", "OWNER,ADMIN"),
    rule("UI", "BTN_REJECT_REVERT", "ADMIN"),
    # Session and admin.
    rule("ACTION", "LOGIN_EXCHANGE", PUBLIC_ROLE),
    rule("ACTION", "SESSION_VALIDATE", DEFAULT_ROLES),
    rule("ACTION", "GET_ME", DEFAULT_ROLES),
    rule("ACTION", "MY_PERMISSIONS_GET", DEFAULT_ROLES),
    rule("ACTION", "ROLES_LIST", "ADMIN"),
    rule("ACTION", "ROLES_UPSERT", "ADMIN"),
    rule("ACTION", "PERMISSIONS_LIST", "ADMIN"),
    rule("ACTION", "PERMISSIONS_UPSERT", "ADMIN"),
    # Candidates.
    rule("ACTION", "CANDIDATE_ADD", "HR,EA,ADMIN"),
    rule("ACTION", "CANDIDATE_GET", _STAFF),
    rule("ACTION", "PIPELINE_COUNTS", _STAFF),
    rule("ACTION", "SHORTLIST_DECIDE", "HR,ADMIN"),
    rule("ACTION", "OWNER_DECIDE", "OWNER,ADMIN"),
    rule("ACTION", "PRECALL_UPDATE", "HR,ADMIN"),
    rule("ACTION", "PREINTERVIEW_DECIDE", "HR,ADMIN"),
    rule("ACTION", "TECH_SELECT", "HR,ADMIN"),
    rule("ACTION", "PASSFAIL_EVALUATE", "EA,HR,ADMIN"),
    rule("ACTION", "FINAL_SEND_OWNER", "HR,ADMIN"),
    rule("ACTION", "OWNER_FINAL_DECIDE", "OWNER,ADMIN"),
    rule("ACTION", "HOLD_REVERT", "OWNER,ADMIN"),
    rule("ACTION", "PROBATION_START", "HR,ADMIN"),
    rule("ACTION", "CANDIDATE_REJECT", "HR,ADMIN"),
    rule("ACTION", "REJECT_REVERT", "ADMIN"),
    rule("ACTION", "REJECTION_LOG_LIST", "EA,HR,ADMIN"),
    rule("ACTION", "HOLD_EXPIRY_CRON", "ADMIN"),
)


def _fallback_table(perm_type: str) -> dict[str, frozenset]:
    return {r.permKey: r.allowedRoles for r in DEFAULT_PERMISSION_RULES if r.permType == perm_type and r.enabled}


# Compiled fallbacks used when no live rule exists (first paint, empty table).
STATIC_RBAC_PERMISSIONS: dict[str, frozenset] = _fallback_table("ACTION")
STATIC_UI_PERMISSIONS: dict[str, frozenset] = _fallback_table("UI")


def static_fallback(perm_type: str, perm_key: str) -> Optional[frozenset]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if perm_type_u == "ACTION":
        return STATIC_RBAC_PERMISSIONS.get(perm_key_u)
    if perm_type_u == "UI":
        return STATIC_UI_PERMISSIONS.get(perm_key_u)
    return None


def _role_in(roles: Iterable[str], role_u: str) -> bool:
    roles = roles or ()
    return PUBLIC_ROLE in roles or (bool(role_u) and role_u in roles)


def decide(rule_: Optional[PermissionRule], role: str) -> Decision:
    """
    Decide a single live rule.

    No rule -> UNKNOWN, disabled rule -> DENY for every role, otherwise ALLOW
    iff the role (or PUBLIC) is in the allow-list.
    """

    if rule_ is None:
        return Decision.UNKNOWN
    if not rule_.enabled:
        return Decision.DENY
    return Decision.ALLOW if _role_in(rule_.allowedRoles, normalize_role(role)) else Decision.DENY


def resolve(decision: Decision, fallback: Optional[Iterable[str]], role: str) -> bool:
    if decision == Decision.ALLOW:
        return True
    if decision == Decision.DENY:
        return False
    if fallback is None:
        return False
    return _role_in(frozenset(fallback), normalize_role(role))


def is_allowed(rule_: Optional[PermissionRule], perm_type: str, perm_key: str, role: str) -> bool:
    return resolve(decide(rule_, role), static_fallback(perm_type, perm_key), role)


def allowed_keys(
    rules: Mapping[tuple[str, str], PermissionRule],
    perm_type: str,
    role: str,
) -> list[str]:
    """Every key of `perm_type` the role may use, live rules first then fallbacks."""

    perm_type_u = str(perm_type or "").upper().strip()
    keys = {k for (t, k) in rules.keys() if t == perm_type_u}
    if perm_type_u == "ACTION":
        keys |= set(STATIC_RBAC_PERMISSIONS.keys())
    elif perm_type_u == "UI":
        keys |= set(STATIC_UI_PERMISSIONS.keys())
    out = [k for k in keys if is_allowed(rules.get((perm_type_u, k)), perm_type_u, k, role)]
    out.sort()
    return out
