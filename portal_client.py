"""
Portal RPC client.

Posts `{action, token, data}` envelopes to `POST /api` and unwraps
`{ok, data, error}` responses:
- transport failures raise `ClientError` with NETWORK_ERROR, BAD_RESPONSE or
  CONFIG_MISSING and push a notification onto the event queue (never retried)
- backend errors raise `ClientError` with the backend code; the message gets
  an `(action: X)` suffix
- identical concurrent calls share one HTTP round trip
- transition payloads are checked locally before any network traffic

`ClientGate` answers portal/button/action visibility from the caller's
permission snapshot, or from the static fallback tables until one is loaded.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import requests

from dedupe import RequestCoalescer, request_fingerprint
from events import EventQueue
from pipeline_rules import TRANSITION_ACTIONS, find_rule, validate_payload
from rbac_policy import STATIC_RBAC_PERMISSIONS, STATIC_UI_PERMISSIONS, PUBLIC_ROLE
from utils import ApiError, normalize_role

log = logging.getLogger("client")

NOTIFICATION_EVENT = "notification"

_TRANSPORT_CODES = {
    "NETWORK_ERROR": "Network error",
    "BAD_RESPONSE": "Bad response",
    "CONFIG_MISSING": "Configuration error",
}

_RBAC_ROLE_RE = re.compile(r"Not allowed for role:\s*([A-Za-z_\-]+)", re.IGNORECASE)


class ClientError(ApiError):
    """Raised by PortalClient; `code` is a transport or backend error code."""


def normalize_rbac_message(code: str, message: str) -> str:
    if code != "RBAC_DENIED":
        return message
    m = _RBAC_ROLE_RE.search(str(message or ""))
    if not m:
        return str(message or "")
    return f"Not allowed for role: {m.group(1).upper()}"


class PortalClient:
    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        events: Optional[EventQueue] = None,
        timeout: float = 30,
        app_timezone: str = "UTC",
        coalesce: bool = True,
    ):
        self.base_url = str(base_url or "").rstrip("/")
        self.session = session or requests.Session()
        self.events = events if events is not None else EventQueue()
        self.timeout = timeout
        self.app_timezone = app_timezone
        self._coalescer = RequestCoalescer(ttl_seconds=max(1, int(timeout) * 2)) if coalesce else None

    def _notify(self, code: str, message: str) -> None:
        self.events.publish(
            NOTIFICATION_EVENT,
            {"id": f"api_{code}", "type": "error", "title": _TRANSPORT_CODES.get(code, "Error"), "message": message},
        )

    def _transport_error(self, code: str, message: str) -> ClientError:
        log.warning("transport error code=%s message=%s", code, message)
        self._notify(code, message)
        return ClientError(code, message)

    def _precheck(self, action_u: str, data: dict[str, Any]) -> None:
        if action_u not in TRANSITION_ACTIONS:
            return
        try:
            rule_ = find_rule(action_u, data.get("decision"))
            validate_payload(rule_, data, now=datetime.now(timezone.utc), app_timezone=self.app_timezone)
        except ApiError as e:
            raise ClientError(e.code, f"{e.message} (action: {action_u})")

    def _post(self, action_u: str, data: dict[str, Any], token: Optional[str]) -> Any:
        if not self.base_url:
            raise self._transport_error("CONFIG_MISSING", "Missing API base URL")

        payload = {"action": action_u, "token": token or None, "data": data}
        try:
            res = self.session.post(
                f"{self.base_url}/api",
                json=payload,
                headers={"Content-Type": "text/plain; charset=utf-8"},
                timeout=self.timeout,
            )
        except requests.RequestException:
            raise self._transport_error("NETWORK_ERROR", "Network error calling backend")

        try:
            body = res.json()
        except ValueError:
            raise self._transport_error("BAD_RESPONSE", "Backend returned non-JSON response")

        if not isinstance(body, dict) or not isinstance(body.get("ok"), bool):
            raise self._transport_error("BAD_RESPONSE", "Backend response missing ok flag")

        if not body["ok"]:
            error = body.get("error") or {}
            code = str(error.get("code") or "UNKNOWN_ERROR")
            message = normalize_rbac_message(code, str(error.get("message") or "Unknown backend error"))
            raise ClientError(code, f"{message} (action: {action_u})")

        return body.get("data")

    def call(self, action: str, data: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> Any:
        action_u = str(action or "").upper().strip()
        data = dict(data or {})
        self._precheck(action_u, data)
        if self._coalescer is None:
            return self._post(action_u, data, token)
        key = request_fingerprint(action_u, token or "", data)
        return self._coalescer.run(key, lambda: self._post(action_u, data, token))

    def login(self, id_token: str) -> dict[str, Any]:
        return self.call("LOGIN_EXCHANGE", {"idToken": id_token})

    def transition(self, action: str, candidate_id: str, requirement_id: str, token: str, **fields) -> dict[str, Any]:
        data = {"candidateId": candidate_id, "requirementId": requirement_id}
        data.update(fields)
        return self.call(action, data, token)

    def upsert_permissions_chunked(self, items: Iterable[dict[str, Any]], token: str, chunk_size: int = 200) -> dict[str, Any]:
        """
        Send a large rule list as sequential PERMISSIONS_UPSERT batches.

        Each chunk is atomic on the server. The first failing chunk stops the
        run; later chunks are never sent. The raised error carries the count
        of chunks already applied in `applied_chunks`.
        """

        rows = list(items)
        size = max(1, int(chunk_size))
        applied = 0
        upserted = 0
        for start in range(0, len(rows), size):
            chunk = rows[start : start + size]
            try:
                res = self.call("PERMISSIONS_UPSERT", {"items": chunk}, token)
            except ClientError as e:
                e.applied_chunks = applied
                raise
            applied += 1
            upserted += int((res or {}).get("upserted") or 0)
        return {"chunks": applied, "upserted": upserted}


class ClientGate:
    """Advisory visibility checks; the server re-checks every call."""

    def __init__(self, role: str = ""):
        self.role = normalize_role(role)
        self._ui: Optional[frozenset] = None
        self._actions: Optional[frozenset] = None

    @property
    def loaded(self) -> bool:
        return self._ui is not None

    def load(self, client: PortalClient, token: str) -> dict[str, Any]:
        snap = client.call("MY_PERMISSIONS_GET", {}, token) or {}
        self.apply_snapshot(snap)
        return snap

    def apply_snapshot(self, snap: dict[str, Any]) -> None:
        self.role = normalize_role(snap.get("role")) or self.role
        self._ui = frozenset(str(k).upper() for k in (snap.get("uiKeys") or []))
        self._actions = frozenset(str(k).upper() for k in (snap.get("actionKeys") or []))

    def reset(self) -> None:
        self._ui = None
        self._actions = None

    def _static(self, table: dict[str, frozenset], key: str) -> bool:
        roles = table.get(key)
        if roles is None:
            return False
        return PUBLIC_ROLE in roles or (bool(self.role) and self.role in roles)

    def allow_ui(self, key: str) -> bool:
        key_u = str(key or "").upper().strip()
        if self._ui is not None:
            return key_u in self._ui
        return self._static(STATIC_UI_PERMISSIONS, key_u)

    def allow_portal(self, key: str) -> bool:
        key_u = str(key or "").upper().strip()
        if not key_u.startswith("PORTAL_"):
            key_u = f"PORTAL_{key_u}"
        return self.allow_ui(key_u)

    def allow_action(self, key: str) -> bool:
        key_u = str(key or "").upper().strip()
        if self._actions is not None:
            return key_u in self._actions
        return self._static(STATIC_RBAC_PERMISSIONS, key_u)
