from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

from flask import Blueprint, current_app, g, request
from sqlalchemy.exc import DBAPIError

from actions import dispatch
from auth import assert_permission, is_public_action, role_or_public, validate_session_token
from config import Config
from db import SessionLocal
from models import AuditLog
from utils import ApiError, AuthContext, err, iso_utc_now, now_monotonic, ok, parse_json_body, redact_for_audit

api_bp = Blueprint("api", __name__)

_log = logging.getLogger("api")

LOGIN_ACTIONS = {"LOGIN_EXCHANGE"}


def api_call_audit(action: str, auth_ctx: AuthContext | None, data: Any, *, stage_tag: str = "API_CALL") -> AuditLog:
    return AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType="API",
        entityId=str(auth_ctx.userId or auth_ctx.email or "") if auth_ctx else "PUBLIC",
        action=action,
        fromState="",
        toState="",
        stageTag=stage_tag,
        remark="",
        actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
        actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
        actorEmail=str(getattr(auth_ctx, "email", "") or "") if auth_ctx else "",
        at=iso_utc_now(),
        correlationId=str(getattr(g, "request_id", "") or ""),
        metaJson=json.dumps({"data": redact_for_audit(data or {})}),
    )


def write_error_audit(cfg: Config, action: str, auth_ctx, data: Any, err_obj: ApiError) -> None:
    """Separate session: the request transaction has already been rolled back."""

    db2 = SessionLocal()
    try:
        row = api_call_audit(str(action or "").upper() or "UNKNOWN", auth_ctx, None, stage_tag="API_ERROR")
        row.remark = f"{err_obj.code}: {err_obj.message}"
        row.metaJson = json.dumps(
            {
                "data": redact_for_audit(data or {}),
                "error": {"code": err_obj.code, "message": err_obj.message},
            }
        )
        db2.add(row)
        db2.commit()
    except Exception:
        db2.rollback()
        _log.exception("failed to write error audit action=%s", action)
    finally:
        db2.close()


def _request_token(body: dict) -> str:
    token = body.get("token")
    if token:
        return str(token)
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip()


def _request_id() -> str:
    return str(getattr(g, "request_id", "") or "").strip()


@api_bp.post("/api")
def api_route():
    cfg: Config = current_app.config["CFG"]
    limiter = current_app.extensions["rate_limiter"]
    raw = request.get_data(as_text=True)
    db = None
    auth_ctx = None
    action_u = ""
    data: Any = {}

    try:
        body = parse_json_body(raw)
        action_u = str(body.get("action") or "").upper().strip()
        token = _request_token(body)
        data = body.get("data") or {}
        if not isinstance(data, dict):
            raise ApiError("BAD_REQUEST", "data must be an object")

        if not action_u:
            raise ApiError("BAD_REQUEST", "Missing action")

        ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
        if action_u in LOGIN_ACTIONS:
            limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
        else:
            limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
            limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)

        db = SessionLocal()

        if not is_public_action(action_u):
            auth_ctx = validate_session_token(db, token, action=action_u)
            if not auth_ctx.valid:
                raise ApiError("AUTH_INVALID", "Invalid or expired session")

        role = role_or_public(auth_ctx)
        assert_permission(db, role, action_u)

        out = dispatch(action_u, data, auth_ctx, db, cfg)

        db.add(api_call_audit(action_u, auth_ctx, data))
        db.commit()

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        _log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        write_error_audit(cfg, action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    except DBAPIError as e:
        if db is not None:
            db.rollback()

        request_id = _request_id()
        orig = getattr(e, "orig", None)
        orig_msg = re.sub(r"\s+", " ", str(orig) if orig else "").strip()
        if len(orig_msg) > 300:
            orig_msg = orig_msg[:300] + "..."

        if cfg.IS_PRODUCTION:
            msg = f"Database error (requestId: {request_id})"
        else:
            detail = f": {orig_msg}" if orig_msg else ""
            msg = f"Database error{detail} (requestId: {request_id})"

        api_err = ApiError("INTERNAL", msg, http_status=500)
        write_error_audit(cfg, action_u, auth_ctx, data, api_err)
        _log.exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=500)[0], 500
    except Exception as e:
        if db is not None:
            db.rollback()

        request_id = _request_id()
        if cfg.IS_PRODUCTION:
            msg = f"Unexpected error (requestId: {request_id})"
        else:
            msg = f"Unexpected error: {type(e).__name__} (requestId: {request_id})"

        api_err = ApiError("INTERNAL", msg, http_status=500)
        write_error_audit(cfg, action_u, auth_ctx, data, api_err)
        _log.exception("request_id=%s action=%s", request_id, action_u)
        return err(api_err.code, api_err.message, http_status=500)[0], 500
    finally:
        if db is not None:
            db.close()
