from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import RBAC_PREFIX, ROLES_PREFIX, cache_get, cache_set
from models import Permission, Role, Session as DbSession, User
from rbac_policy import (
    PUBLIC_ROLE,
    SESSION_ACTIONS,
    STATIC_RBAC_PERMISSIONS,
    Decision,
    PermissionRule,
    allowed_keys,
    decide,
    resolve,
    static_fallback,
)
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, parse_roles_csv, sha256_hex, to_iso_utc

log = logging.getLogger("rbac")

PUBLIC_ACTIONS = {"LOGIN_EXCHANGE"}

_RBAC_RULE_PREFIX = f"{RBAC_PREFIX}RULE:"
_RBAC_ALL_RULES_KEY = f"{RBAC_PREFIX}ALL_RULES"
_RBAC_PERMS_FOR_ROLE_PREFIX = f"{RBAC_PREFIX}PERMS_FOR_ROLE:"
_ROLES_INDEX_KEY = f"{ROLES_PREFIX}INDEX"

_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token", http_status=401)
        return {"email": email, "fullName": "Test User", "sub": "TEST"}

    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID", http_status=500)

    try:
        req = google_requests.Request()
        payload = google_id_token.verify_oauth2_token(id_token, req, audience=google_client_id)
    except ValueError:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token", http_status=401)

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch", http_status=401)

    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified", http_status=401)

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "sub": payload.get("sub", "") or "",
    }


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    issued_at = to_iso_utc(now)
    expires_at = to_iso_utc(now + timedelta(minutes=int(session_ttl_minutes)))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def validate_session_token(db, token: Any) -> AuthContext:
    """
    Resolve an opaque session token. Unknown, expired or revoked tokens give
    an invalid context; a disabled user or an INACTIVE role is refused.
    """

    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _INVALID

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt is None or exp_dt < datetime.now(timezone.utc):
        return _INVALID

    usr = db.execute(select(User).where(User.userId == ses.userId)).scalar_one_or_none()
    if not usr:
        return _INVALID
    if str(usr.status or "").upper().strip() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled", http_status=401)

    role_u = normalize_role(ses.role)
    if not is_role_active(db, role_u):
        raise ApiError("AUTH_INVALID", f"Role is not active: {role_u}", http_status=401)

    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(valid=True, userId=str(ses.userId or ""), email=str(ses.email or ""), role=role_u, expiresAt=ses.expiresAt)


def rule_from_row(row: Permission) -> PermissionRule:
    return PermissionRule(
        permType=str(row.permType or "").upper().strip(),
        permKey=str(row.permKey or "").upper().strip(),
        allowedRoles=parse_roles_csv(row.rolesCsv),
        enabled=bool(row.enabled),
        updatedAt=str(row.updatedAt or ""),
        updatedBy=str(row.updatedBy or ""),
    )


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[PermissionRule]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    def _load() -> Optional[PermissionRule]:
        row = (
            db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
            .scalars()
            .first()
        )
        return rule_from_row(row) if row else None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(cache_key, default=False)
    if cached is not False:
        return cached
    out = _load()
    cache_set(cache_key, out)
    return out


def all_rules(db) -> dict[tuple[str, str], PermissionRule]:
    cached = cache_get(_RBAC_ALL_RULES_KEY)
    if isinstance(cached, dict):
        return cached
    out = {}
    for row in db.execute(select(Permission)).scalars().all():
        r = rule_from_row(row)
        out[(r.permType, r.permKey)] = r
    cache_set(_RBAC_ALL_RULES_KEY, out)
    return out


def decide_key(db, perm_type: str, perm_key: str, role: str) -> Decision:
    return decide(get_permission_rule(db, perm_type, perm_key), role)


def _roles_index(db) -> dict[str, dict[str, Any]]:
    cached = cache_get(_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    out: dict[str, dict[str, Any]] = {}
    for r in db.execute(select(Role)).scalars().all():
        code = normalize_role(r.roleCode)
        if not code:
            continue
        out[code] = {"roleCode": code, "roleName": str(r.roleName or code), "status": str(r.status or "ACTIVE").upper()}
    cache_set(_ROLES_INDEX_KEY, out)
    return out


def known_roles(db) -> dict[str, dict[str, Any]]:
    return dict(_roles_index(db))


def is_role_active(db, role: str) -> bool:
    r = normalize_role(role)
    if not r:
        return False
    it = _roles_index(db).get(r)
    return bool(it) and str(it.get("status", "")).upper() == "ACTIVE"


def is_allowed(db, perm_type: str, perm_key: str, role: str) -> bool:
    role_u = normalize_role(role)
    if role_u != PUBLIC_ROLE and not is_role_active(db, role_u):
        return False
    return resolve(decide_key(db, perm_type, perm_key, role_u), static_fallback(perm_type, perm_key), role_u)


def session_action_allowed(db, action: str, role: str) -> bool:
    """A live rule decides; with no stored rule every active role may use it."""

    return decide_key(db, "ACTION", action, role) != Decision.DENY


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role)
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    if action_u not in STATIC_RBAC_PERMISSIONS and get_permission_rule(db, "ACTION", action_u) is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == PUBLIC_ROLE:
        raise ApiError("AUTH_INVALID", "Login required", http_status=401)
    if not is_role_active(db, role_u):
        log.debug("denied inactive role=%s action=%s", role_u, action_u)
        raise ApiError("RBAC_DENIED", f"Not allowed for role: {role_u}", http_status=403)

    if action_u in SESSION_ACTIONS:
        allowed = session_action_allowed(db, action_u, role_u)
    else:
        allowed = is_allowed(db, "ACTION", action_u, role_u)
    if not allowed:
        log.debug("denied role=%s action=%s", role_u, action_u)
        raise ApiError("RBAC_DENIED", f"Not allowed for role: {role_u}", http_status=403)


def authorize_action(db, auth: Optional[AuthContext], action: str) -> None:
    """Mandatory check before any state change, independent of the router."""

    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required", http_status=401)
    assert_permission(db, auth.role, action)


def permissions_for_role(db, role: str) -> dict[str, Any]:
    role_u = normalize_role(role)
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required", http_status=401)

    cache_key = f"{_RBAC_PERMS_FOR_ROLE_PREFIX}{role_u}"
    cached = cache_get(cache_key)
    if isinstance(cached, dict):
        return cached

    if is_role_active(db, role_u):
        rules = all_rules(db)
        ui_keys = allowed_keys(rules, "UI", role_u)
        action_keys = set(allowed_keys(rules, "ACTION", role_u)) - SESSION_ACTIONS
        action_keys |= {k for k in SESSION_ACTIONS if decide(rules.get(("ACTION", k)), role_u) != Decision.DENY}
        action_keys = sorted(action_keys)
    else:
        ui_keys, action_keys = [], []

    portal_keys = [k for k in ui_keys if k.startswith("PORTAL_")]
    out = {"role": role_u, "uiKeys": ui_keys, "portalKeys": portal_keys, "actionKeys": action_keys}
    cache_set(cache_key, out)
    return out


def serialize_auth(auth: AuthContext) -> dict[str, Any]:
    return {"valid": bool(auth.valid), "expiresAt": auth.expiresAt, "me": {"userId": auth.userId, "email": auth.email, "role": role_or_public(auth)}}


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return PUBLIC_ROLE
    return normalize_role(auth.role) or PUBLIC_ROLE
