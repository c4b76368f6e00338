from __future__ import annotations

import hashlib
import json
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from flask import jsonify


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: int = 400):
        super().__init__(message)
        self.code = str(code or "UNKNOWN_ERROR")
        self.message = str(message or "")
        self.http_status = int(http_status or 400)


@dataclass(frozen=True)
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


SYSTEM_AUTH = AuthContext(valid=True, userId="SYSTEM", email="SYSTEM", role="ADMIN", expiresAt="")


def ok(data: Any = None, http_status: int = 200):
    return jsonify({"ok": True, "data": data if data is not None else {}}), http_status


def err(code: str, message: str, http_status: int = 400):
    return jsonify({"ok": False, "error": {"code": str(code or "UNKNOWN_ERROR"), "message": str(message or "")}}), http_status


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any, *, app_timezone: str = "UTC") -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp. Naive values are interpreted in `app_timezone`.
    Returns an aware UTC datetime, or None when the value is empty/invalid.
    """

    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None

    if dt.tzinfo is None:
        try:
            tz = ZoneInfo(app_timezone or "UTC")
        except Exception:
            tz = timezone.utc
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def add_millis(iso_value: str, millis: int) -> str:
    dt = parse_datetime_maybe(iso_value)
    if dt is None:
        return iso_utc_now()
    return to_iso_utc(dt + timedelta(milliseconds=millis))


def new_uuid() -> str:
    return str(uuid.uuid4())


def now_monotonic() -> float:
    return time.monotonic()


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def canonical_json(value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return str(value)


def safe_json_string(value: Any, fallback: str = "{}") -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return fallback


def parse_json_object(raw: Any, fallback: dict | None = None) -> dict:
    fb = dict(fallback or {})
    s = str(raw or "").strip()
    if not s:
        return fb
    try:
        o = json.loads(s)
    except ValueError:
        return fb
    return o if isinstance(o, dict) else fb


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except ValueError:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def normalize_role(role: Any) -> str:
    return str(role or "").strip().upper()


def parse_roles_csv(raw: Any) -> frozenset[str]:
    parts = [normalize_role(x) for x in str(raw or "").split(",")]
    return frozenset(p for p in parts if p)


def join_roles_csv(roles: Iterable[str]) -> str:
    return ",".join(sorted({normalize_role(r) for r in roles or [] if normalize_role(r)}))


_REDACT_KEYS = {"idtoken", "token", "password", "sessiontoken"}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


class SimpleRateLimiter:
    """Fixed-window, in-process limiter: `limit` calls per key per minute."""

    def __init__(self, window_seconds: int = 60):
        self._window = max(1, int(window_seconds))
        self._hits: dict[str, tuple[int, int]] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int) -> None:
        if int(limit or 0) <= 0:
            return
        bucket = int(time.time()) // self._window
        with self._lock:
            cur_bucket, count = self._hits.get(key, (bucket, 0))
            if cur_bucket != bucket:
                count = 0
            count += 1
            self._hits[key] = (bucket, count)
            if len(self._hits) > 10_000:
                self._hits = {k: v for k, v in self._hits.items() if v[0] == bucket}
        if count > int(limit):
            raise ApiError("RATE_LIMITED", "Too many requests", http_status=429)
