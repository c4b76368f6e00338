from __future__ import annotations

from typing import Any, Iterable, Optional

from sqlalchemy import select

from actions.helpers import append_audit, stage_event
from auth import known_roles, rule_from_row
from cache_layer import invalidate_rbac
from models import Permission, Role
from rbac_policy import PERM_KEY_RE, PERM_TYPES, PUBLIC_ROLE, ROLE_CODE_RE, SESSION_ACTIONS, PermissionRule
from utils import ApiError, AuthContext, iso_utc_now, join_roles_csv, normalize_role, parse_roles_csv

RBAC_CHANGED_EVENT = "rbac.changed"

_ROLE_STATUSES = {"ACTIVE", "INACTIVE"}


def _as_bool(value: Any, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _roles_from_item(it: dict[str, Any]) -> frozenset:
    raw = it.get("allowedRoles")
    if raw is None:
        return parse_roles_csv(it.get("rolesCsv"))
    if isinstance(raw, str):
        return parse_roles_csv(raw)
    if not isinstance(raw, (list, tuple, set, frozenset)):
        raise ApiError("VALIDATION", "allowedRoles must be an array")
    return frozenset(normalize_role(r) for r in raw if normalize_role(r))


def parse_rule_item(it: Any, idx: int = 0) -> PermissionRule:
    if not isinstance(it, dict):
        raise ApiError("VALIDATION", f"items[{idx}] must be an object")
    perm_type = str(it.get("permType") or "").upper().strip()
    perm_key = str(it.get("permKey") or "").upper().strip()
    if perm_type not in PERM_TYPES:
        raise ApiError("VALIDATION", f"items[{idx}].permType must be UI or ACTION")
    if not PERM_KEY_RE.match(perm_key):
        raise ApiError("VALIDATION", f"items[{idx}].permKey is invalid: {perm_key or '(empty)'}")
    roles = _roles_from_item(it)
    for r in roles:
        if r != PUBLIC_ROLE and not ROLE_CODE_RE.match(r):
            raise ApiError("VALIDATION", f"items[{idx}] has an invalid role code: {r}")
    return PermissionRule(
        permType=perm_type,
        permKey=perm_key,
        allowedRoles=roles,
        enabled=_as_bool(it.get("enabled"), True),
    )


def list_rules(db, perm_type: Optional[str] = None) -> list[PermissionRule]:
    q = select(Permission)
    perm_type_u = str(perm_type or "").upper().strip()
    if perm_type_u:
        if perm_type_u not in PERM_TYPES:
            raise ApiError("VALIDATION", "permType must be UI or ACTION")
        q = q.where(Permission.permType == perm_type_u)
    rules = [rule_from_row(p) for p in db.execute(q).scalars().all()]
    rules.sort(key=lambda r: (r.permType, r.permKey))
    return rules


def upsert_rules(db, rules: Iterable[PermissionRule], *, actor: AuthContext, max_batch: int = 200) -> dict[str, int]:
    """
    Replace rules by (permType, permKey). The whole batch is validated before
    anything is written, so a bad item leaves every rule untouched.

    A role that is INACTIVE may stay on a rule that already lists it but can
    never be newly granted. Timestamps come from the server clock.
    """

    batch = list(rules)
    if not batch:
        raise ApiError("VALIDATION", "items must not be empty")
    if len(batch) > int(max_batch):
        raise ApiError("VALIDATION", f"Max {int(max_batch)} items per batch")

    roles_idx = known_roles(db)
    existing = {
        (str(p.permType or "").upper(), str(p.permKey or "").upper()): p for p in db.execute(select(Permission)).scalars().all()
    }

    seen: set[tuple[str, str]] = set()
    for r in batch:
        k = (r.permType, r.permKey)
        if k in seen:
            raise ApiError("VALIDATION", f"Duplicate rule in batch: {r.permType}:{r.permKey}")
        seen.add(k)
        already = parse_roles_csv(existing[k].rolesCsv) if k in existing else frozenset()
        for role in r.allowedRoles:
            if role == PUBLIC_ROLE:
                continue
            info = roles_idx.get(role)
            if not info:
                raise ApiError("VALIDATION", f"Unknown role: {role}")
            if str(info.get("status") or "").upper() != "ACTIVE" and role not in already:
                raise ApiError("VALIDATION", f"Role is inactive: {role}")

    now = iso_utc_now()
    by = str(actor.userId or "")
    upserted = 0
    created = 0
    for r in batch:
        row = existing.get((r.permType, r.permKey))
        if row is None:
            row = Permission(permType=r.permType, permKey=r.permKey)
            db.add(row)
            existing[(r.permType, r.permKey)] = row
            created += 1
        row.rolesCsv = join_roles_csv(r.allowedRoles)
        row.enabled = bool(r.enabled)
        row.updatedAt = now
        row.updatedBy = by
        upserted += 1

    invalidate_rbac()
    stage_event(db, RBAC_CHANGED_EVENT, {"kind": "permissions", "upserted": upserted})
    append_audit(
        db,
        entityType="PERMISSION",
        entityId="BATCH",
        action="PERMISSIONS_UPSERT",
        stageTag="ADMIN_PERMISSIONS_UPSERT",
        actor=actor,
        at=now,
        meta={"upserted": upserted, "created": created, "keys": [f"{r.permType}:{r.permKey}" for r in batch][:50]},
    )
    return {"upserted": upserted, "created": created}


def permissions_list(data, auth: AuthContext | None, db, cfg):
    rules = list_rules(db, (data or {}).get("permType"))
    return {"items": [r.to_dict() for r in rules], "total": len(rules)}


def permissions_upsert(data, auth: AuthContext | None, db, cfg):
    items = (data or {}).get("items")
    if not isinstance(items, list):
        raise ApiError("BAD_REQUEST", "items must be an array")
    max_batch = int(getattr(cfg, "PERMISSIONS_UPSERT_MAX_BATCH", 200) or 200)
    if len(items) > max_batch:
        raise ApiError("VALIDATION", f"Max {max_batch} items per batch")
    rules = [parse_rule_item(it, i) for i, it in enumerate(items)]
    return upsert_rules(db, rules, actor=auth, max_batch=max_batch)


def _serialize_role(r: Role) -> dict[str, Any]:
    return {
        "roleCode": r.roleCode,
        "roleName": r.roleName or r.roleCode,
        "status": str(r.status or "ACTIVE").upper(),
        "createdAt": r.createdAt or "",
        "createdBy": r.createdBy or "",
        "updatedAt": r.updatedAt or "",
        "updatedBy": r.updatedBy or "",
    }


def roles_list(data, auth: AuthContext | None, db, cfg):
    rows = db.execute(select(Role).order_by(Role.roleCode)).scalars().all()
    return {"items": [_serialize_role(r) for r in rows]}


def _is_session_rule(p: Permission) -> bool:
    return str(p.permType or "").upper() == "ACTION" and str(p.permKey or "").upper() in SESSION_ACTIONS


def purge_role_from_rules(db, role_code: str, *, actor: AuthContext, now: str) -> int:
    """Drop the role from every stored rule except the session actions."""

    purged = 0
    for p in db.execute(select(Permission)).scalars().all():
        roles = parse_roles_csv(p.rolesCsv)
        if role_code not in roles or _is_session_rule(p):
            continue
        p.rolesCsv = join_roles_csv(roles - {role_code})
        p.updatedAt = now
        p.updatedBy = str(actor.userId or "")
        purged += 1
    return purged


def grant_session_actions(db, role_code: str, *, actor: AuthContext, now: str) -> int:
    granted = 0
    for p in db.execute(select(Permission).where(Permission.permType == "ACTION")).scalars().all():
        roles = parse_roles_csv(p.rolesCsv)
        if not _is_session_rule(p) or role_code in roles:
            continue
        p.rolesCsv = join_roles_csv(roles | {role_code})
        p.updatedAt = now
        p.updatedBy = str(actor.userId or "") if actor else ""
        granted += 1
    return granted


def roles_upsert(data, auth: AuthContext | None, db, cfg):
    role_code = normalize_role((data or {}).get("roleCode"))
    role_name = str((data or {}).get("roleName") or "").strip() or role_code
    status = str((data or {}).get("status") or "ACTIVE").upper().strip()
    purge = _as_bool((data or {}).get("purgePermissions"), False)

    if not ROLE_CODE_RE.match(role_code) or role_code == PUBLIC_ROLE:
        raise ApiError("VALIDATION", f"Invalid roleCode: {role_code or '(empty)'}")
    if status not in _ROLE_STATUSES:
        raise ApiError("VALIDATION", "status must be ACTIVE or INACTIVE")
    if role_code == "ADMIN" and status != "ACTIVE":
        raise ApiError("VALIDATION", "ADMIN role cannot be deactivated")
    if role_code == "ADMIN" and purge:
        raise ApiError("VALIDATION", "ADMIN role cannot be purged from permissions")

    now = iso_utc_now()
    by = str(auth.userId or "") if auth else ""

    row = db.get(Role, role_code)
    from_status = ""
    created = False
    if row is None:
        row = Role(roleCode=role_code, createdAt=now, createdBy=by)
        db.add(row)
        created = True
    else:
        from_status = str(row.status or "").upper()
    row.roleName = role_name
    row.status = status
    row.updatedAt = now
    row.updatedBy = by

    purged = purge_role_from_rules(db, role_code, actor=auth, now=now) if purge else 0
    if status == "ACTIVE" and from_status != "ACTIVE":
        grant_session_actions(db, role_code, actor=auth, now=now)

    invalidate_rbac()
    stage_event(db, RBAC_CHANGED_EVENT, {"kind": "roles", "roleCode": role_code, "status": status})
    append_audit(
        db,
        entityType="ROLE",
        entityId=role_code,
        action="ROLES_UPSERT",
        fromState=from_status,
        toState=status,
        stageTag="ADMIN_ROLES_UPSERT",
        actor=auth,
        at=now,
        meta={"created": created, "purgedRules": purged},
    )
    return {"role": _serialize_role(row), "created": created, "purgedRules": purged}

