from __future__ import annotations

import logging
import os
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request
from flask_cors import CORS
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from zoneinfo import ZoneInfo

from actions import dispatch
from actions.admin import RBAC_CHANGED_EVENT
from actions.helpers import append_audit, pop_staged_events
from actions.lifecycle_service import TRANSITION_EVENT
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from cache_layer import invalidate_pipeline, invalidate_rbac
from config import Config
from db import Base, SessionLocal, init_engine
from dedupe import RequestCoalescer, request_fingerprint
from events import Event, EventQueue
from models import Permission, Role
from rbac_policy import DEFAULT_PERMISSION_RULES, DEFAULT_ROLES
from utils import SYSTEM_AUTH, ApiError, AuthContext, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit

rest_api = Blueprint("rest_api", __name__)

_LOGIN_ACTIONS = {"LOGIN_EXCHANGE"}


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_roles_and_permissions(db):
    now = iso_utc_now()
    actor = "SYSTEM_INIT"

    existing_roles = {str(r.roleCode or "").upper() for r in db.execute(select(Role)).scalars().all()}
    for rc in DEFAULT_ROLES:
        if rc in existing_roles:
            continue
        db.add(Role(roleCode=rc, roleName=rc, status="ACTIVE", createdAt=now, createdBy=actor, updatedAt=now, updatedBy=actor))

    # Insert missing rules only; admin edits survive restarts.
    existing_perms = {
        (str(p.permType or "").upper(), str(p.permKey or "").upper()) for p in db.execute(select(Permission)).scalars().all()
    }
    for r in DEFAULT_PERMISSION_RULES:
        if (r.permType, r.permKey) in existing_perms:
            continue
        db.add(
            Permission(
                permType=r.permType,
                permKey=r.permKey,
                rolesCsv=r.rolesCsv,
                enabled=bool(r.enabled),
                updatedAt=now,
                updatedBy=actor,
            )
        )


def _on_event(ev: Event) -> None:
    if ev.type == TRANSITION_EVENT:
        invalidate_pipeline()
        p = ev.payload
        logging.getLogger("pipeline").info(
            "candidate=%s requirement=%s action=%s %s -> %s by=%s",
            p.get("candidateId"),
            p.get("requirementId"),
            p.get("action"),
            p.get("fromStatus") or "-",
            p.get("toStatus"),
            p.get("actorUserId"),
        )
    elif ev.type == RBAC_CHANGED_EVENT:
        invalidate_rbac()


def _publish_staged(db, events: Optional[EventQueue]) -> None:
    for type_, payload in pop_staged_events(db):
        if events is not None:
            events.publish(type_, payload)


def _request_token(body: Optional[dict] = None) -> str:
    token = (body or {}).get("token")
    if token and isinstance(token, str):
        return token.strip()
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip() or str(request.args.get("token") or "").strip()


def _internal_error(cfg: Config, e: Exception, *, db_error: bool) -> ApiError:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    label = "Database error" if db_error else "Unexpected error"
    if cfg.IS_PRODUCTION:
        msg = f"{label} (requestId: {request_id})" if request_id else label
    else:
        orig = getattr(e, "orig", None) if db_error else None
        detail = re.sub(r"\s+", " ", str(orig if orig is not None else e) or "").strip()
        if len(detail) > 300:
            detail = detail[:300] + "..."
        detail = f"{type(e).__name__}: {detail}" if not db_error else detail
        msg = f"{label}: {detail}" if detail else label
        if request_id:
            msg = f"{msg} (requestId: {request_id})"
    return ApiError("INTERNAL", msg, http_status=500)


def _execute(cfg: Config, action_u: str, token: str, data: Any, *, internal: bool = False) -> tuple[dict, int]:
    """
    Run one action as a single unit of work and return (envelope, status).

    The session is committed once after the handler returns; staged events
    are published only after that commit. Any failure rolls everything back.
    """

    auth_ctx: Optional[AuthContext] = None
    events: Optional[EventQueue] = current_app.config.get("EVENTS")
    db = SessionLocal()
    try:
        try:
            if internal:
                auth_ctx = SYSTEM_AUTH
            elif not is_public_action(action_u):
                auth_ctx = validate_session_token(db, token)
                if not auth_ctx.valid:
                    raise ApiError("AUTH_INVALID", "Invalid or expired session", http_status=401)

            role = role_or_public(auth_ctx)
            assert_permission(db, role, action_u)

            out = dispatch(action_u, data, auth_ctx, db, cfg)

            append_audit(
                db,
                entityType="API",
                entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
                action=action_u,
                stageTag="API_CALL_INTERNAL" if internal else "API_CALL",
                actor=auth_ctx,
                meta={"data": redact_for_audit(data)},
            )

            db.commit()
            _publish_staged(db, events)

            latency_ms = int((now_monotonic() - g.start_ts) * 1000)
            logging.getLogger("api").info(
                "request_id=%s action=%s user=%s role=%s latency_ms=%s",
                g.request_id,
                action_u,
                (auth_ctx.userId if auth_ctx else "PUBLIC"),
                (auth_ctx.role if auth_ctx else "PUBLIC"),
                latency_ms,
            )
            return {"ok": True, "data": out if out is not None else {}}, 200
        except ApiError as e:
            api_err = e
        except (StaleDataError, IntegrityError):
            api_err = ApiError("CONFLICT", "State changed; refresh and retry", http_status=409)
        except DBAPIError as e:
            api_err = _internal_error(cfg, e, db_error=True)
            logging.getLogger("api").exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        except Exception as e:
            api_err = _internal_error(cfg, e, db_error=False)
            logging.getLogger("api").exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)

        db.rollback()
        pop_staged_events(db)
    finally:
        db.close()

    _write_error_audit(action_u, auth_ctx, data, api_err)
    return {"ok": False, "error": {"code": api_err.code, "message": api_err.message}}, api_err.http_status


def _coalesced(cfg: Config, action_u: str, token: str, data: Any, *, internal: bool = False):
    coalescer: Optional[RequestCoalescer] = current_app.config.get("COALESCER")
    if coalescer is None:
        body, status = _execute(cfg, action_u, token, data, internal=internal)
    else:
        key = request_fingerprint(action_u, "INTERNAL" if internal else token, data)
        body, status = coalescer.run(key, lambda: _execute(cfg, action_u, token, data, internal=internal))
    if body.get("ok"):
        return ok(body.get("data"), http_status=status)
    return err(body["error"]["code"], body["error"]["message"], http_status=status)


@rest_api.get("/api/candidates/<candidate_id>/rejections")
def rest_candidate_rejections(candidate_id: str):
    cfg: Config = current_app.config["CFG"]
    data = {
        "candidateId": candidate_id,
        "requirementId": str(request.args.get("requirementId") or "").strip(),
        "order": str(request.args.get("order") or "desc").strip(),
    }
    return _coalesced(cfg, "REJECTION_LOG_LIST", _request_token(), data)


@rest_api.post("/api/jobs/hold-expiry")
def rest_hold_expiry():
    cfg: Config = current_app.config["CFG"]
    internal = str(request.headers.get("X-Internal-Token") or "").strip()
    expected = str(cfg.INTERNAL_CRON_TOKEN or "").strip()
    if expected and internal and internal == expected:
        return _coalesced(cfg, "HOLD_EXPIRY_CRON", "", {}, internal=True)
    return _coalesced(cfg, "HOLD_EXPIRY_CRON", _request_token(), {})


def _maybe_start_internal_scheduler(app: Flask, cfg: Config):
    """
    Daily in-process hold-expiry sweep (APP_TIMEZONE).

    Production recommendation: run a single instance via cron calling
    `POST /api/jobs/hold-expiry` with `X-Internal-Token` = `INTERNAL_CRON_TOKEN`.
    Enable this loop only for single-process deployments:
    - ENABLE_SCHEDULER=1
    - SCHEDULER_HOLD_EXPIRY_HOUR=0
    - SCHEDULER_HOLD_EXPIRY_MINUTE=10
    """

    if not cfg.ENABLE_SCHEDULER:
        return

    hour = cfg.SCHEDULER_HOLD_EXPIRY_HOUR
    minute = cfg.SCHEDULER_HOLD_EXPIRY_MINUTE
    try:
        tz = ZoneInfo(cfg.APP_TIMEZONE)
    except Exception:
        tz = timezone.utc

    log = logging.getLogger("scheduler")

    def _loop():
        while True:
            now_local = datetime.now(tz)
            next_run = datetime(now_local.year, now_local.month, now_local.day, hour, minute, 0, tzinfo=tz)
            if next_run <= now_local:
                next_run = next_run + timedelta(days=1)
            time.sleep(max(1.0, (next_run - now_local).total_seconds()))

            db = None
            try:
                db = SessionLocal()
                res = dispatch("HOLD_EXPIRY_CRON", {}, SYSTEM_AUTH, db, cfg)
                db.commit()
                _publish_staged(db, app.config.get("EVENTS"))
                log.info("HOLD_EXPIRY_CRON rejected=%s", int((res or {}).get("count") or 0))
            except Exception:
                if db is not None:
                    db.rollback()
                log.exception("HOLD_EXPIRY_CRON failed")
            finally:
                if db is not None:
                    db.close()

    t = threading.Thread(target=_loop, name="scheduler", daemon=True)
    t.start()


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    db0 = SessionLocal()
    try:
        _seed_roles_and_permissions(db0)
        db0.commit()
    except Exception:
        db0.rollback()
        raise
    finally:
        db0.close()

    app = Flask(__name__)
    app.config["CFG"] = cfg

    events = EventQueue(maxlen=cfg.EVENT_QUEUE_MAX)
    events.subscribe(_on_event)
    app.config["EVENTS"] = events
    app.config["COALESCER"] = RequestCoalescer(ttl_seconds=cfg.DEDUPE_TTL_SECONDS)

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    limiter = SimpleRateLimiter()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        from cache_layer import cache_stats
        from db import get_pool_stats, ping_db

        return ok(
            {
                "status": "ok",
                "version": cfg.APP_VERSION,
                "db": "ok" if ping_db() else "down",
                "db_pool": get_pool_stats(),
                "cache": cache_stats(),
                "events": {"pending": events.pending(), "dropped": events.dropped, "listeners": events.listener_count()},
            }
        )[0]

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}. Use GET /health or POST /api.", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed. Use POST /api for actions.", http_status=405)

    @app.post("/api")
    def api_route():
        cfg2: Config = app.config["CFG"]
        action_u = ""
        data: Any = {}
        try:
            body = parse_json_body(request.get_data(as_text=True))
            action_u = str(body.get("action") or "").upper().strip()
            data = body.get("data") or {}
            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
            if action_u in _LOGIN_ACTIONS:
                limiter.check(f"{ip}:LOGIN", cfg2.RATE_LIMIT_LOGIN)
            else:
                limiter.check(f"{ip}:GLOBAL", cfg2.RATE_LIMIT_GLOBAL)
                limiter.check(f"{ip}:API:{action_u}", cfg2.RATE_LIMIT_DEFAULT)
        except ApiError as e:
            _write_error_audit(action_u, None, data, e)
            return err(e.code, e.message, http_status=e.http_status)

        return _coalesced(cfg2, action_u, _request_token(body), data)

    _maybe_start_internal_scheduler(app, cfg)
    return app


def _write_error_audit(action: str, auth_ctx: Optional[AuthContext], data: Any, err_obj: ApiError):
    db2 = SessionLocal()
    try:
        append_audit(
            db2,
            entityType="API",
            entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
            action=str(action or "").upper() or "UNKNOWN",
            stageTag="API_ERROR",
            remark=f"{err_obj.code}: {err_obj.message}",
            actor=auth_ctx,
            meta={"data": redact_for_audit(data or {}), "error": {"code": err_obj.code, "message": err_obj.message}},
        )
        db2.commit()
    except Exception:
        db2.rollback()
        logging.getLogger("api").warning("error audit write failed action=%s", action, exc_info=True)
    finally:
        db2.close()


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]
    app.run(host=cfg.HOST, port=cfg.PORT)
