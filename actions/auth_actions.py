from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit
from auth import is_role_active, issue_session_token, permissions_for_role, serialize_auth, verify_google_id_token
from models import User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc or "@" not in email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def login_exchange(data, auth: AuthContext | None, db, cfg):
    id_token = (data or {}).get("idToken")
    google_user = verify_google_id_token(
        id_token,
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )

    email = str(google_user.get("email") or "").strip().lower()
    user = _find_user_by_email(db, email)
    if not user:
        raise ApiError("AUTH_INVALID", "User not found in Users", http_status=401)
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled", http_status=401)

    role = normalize_role(user.role)
    if not is_role_active(db, role):
        raise ApiError("AUTH_INVALID", f"Role is not active: {role}", http_status=401)

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(db, user_id=user.userId, email=user.email, role=role, session_ttl_minutes=cfg.SESSION_TTL_MINUTES)

    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="LOGIN_EXCHANGE",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=role, expiresAt=ses["expiresAt"]),
    )

    return {
        "sessionToken": ses["sessionToken"],
        "expiresAt": ses["expiresAt"],
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or str(google_user.get("fullName") or ""),
            "role": role,
        },
    }


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session", http_status=401)
    return serialize_auth(auth)


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session", http_status=401)

    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User missing", http_status=401)

    return {
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or user.userId,
            "role": normalize_role(user.role),
        }
    }


def my_permissions_get(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session", http_status=401)
    return permissions_for_role(db, auth.role)
