from __future__ import annotations

import logging

from flask import Blueprint, current_app, request

from actions import dispatch
from app.routes.api import api_call_audit, write_error_audit
from auth import assert_permission, role_or_public, validate_session_token
from db import SessionLocal
from utils import ApiError, err, ok

rest_bp = Blueprint("rest_api", __name__)


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return (
        str(request.headers.get("X-Session-Token") or "").strip()
        or str(request.args.get("token") or "").strip()
        or str((request.get_json(silent=True) or {}).get("token") or "").strip()
    )


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _rest_handle(action: str, data: dict):
    cfg = current_app.config["CFG"]
    limiter = current_app.extensions["rate_limiter"]
    token = _rest_token()
    action_u = str(action or "").upper().strip()

    db = None
    auth_ctx = None
    try:
        ip = request.headers.get("X-Forwarded-For", request.remote_addr or "")
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)

        db = SessionLocal()
        auth_ctx = validate_session_token(db, token, action=action_u)
        if not auth_ctx or not auth_ctx.valid:
            raise ApiError("AUTH_INVALID", "Invalid or expired session")

        role = role_or_public(auth_ctx)
        assert_permission(db, role, action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)

        db.add(api_call_audit(action_u, auth_ctx, data, stage_tag="API_CALL_REST"))
        db.commit()
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        write_error_audit(cfg, action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)[0], e.http_status
    except Exception:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", "Unexpected error", http_status=500)
        write_error_audit(cfg, action_u, auth_ctx, data, api_err)
        logging.getLogger("api").exception("rest action=%s", action_u)
        return err(api_err.code, api_err.message, http_status=500)[0], 500
    finally:
        if db is not None:
            db.close()


@rest_bp.post("/api/reviews/<int:review_id>/scores")
def rest_review_score_submit(review_id: int):
    body = _body()
    return _rest_handle(
        "REVIEW_SCORE_SUBMIT",
        {
            "reviewId": review_id,
            "reviewerId": body.get("reviewerId") or "",
            "type": body.get("type") or "",
            "scores": body.get("scores"),
            "comments": body.get("comments") or "",
            "potentialStatus": body.get("potentialStatus") or "",
        },
    )


@rest_bp.post("/api/lessons/<int:lesson_id>/complete")
def rest_lesson_complete(lesson_id: int):
    body = _body()
    return _rest_handle("LESSON_COMPLETE", {"lessonId": lesson_id, "enrollmentId": body.get("enrollmentId")})


@rest_bp.post("/api/quizzes/<int:lesson_id>/attempts")
def rest_quiz_attempt_start(lesson_id: int):
    body = _body()
    return _rest_handle("QUIZ_ATTEMPT_START", {"lessonId": lesson_id, "enrollmentId": body.get("enrollmentId")})


@rest_bp.post("/api/quizzes/<int:lesson_id>/attempts/<int:attempt_no>/submit")
def rest_quiz_attempt_submit(lesson_id: int, attempt_no: int):
    body = _body()
    return _rest_handle(
        "QUIZ_ATTEMPT_SUBMIT",
        {
            "lessonId": lesson_id,
            "attemptNo": attempt_no,
            "enrollmentId": body.get("enrollmentId"),
            "answers": body.get("answers") or {},
        },
    )


@rest_bp.post("/api/promotions/<promotion_id>/submit")
def rest_promotion_submit(promotion_id: str):
    return _rest_handle("PROMOTION_SUBMIT", {"promotionId": promotion_id})


@rest_bp.post("/api/promotion-approvals/<int:approval_id>/decide")
def rest_promotion_decide(approval_id: int):
    body = _body()
    decision = str(body.get("decision") or "").strip().lower()
    if decision == "approved":
        return _rest_handle("PROMOTION_APPROVE", {"approvalId": approval_id, "note": body.get("note") or ""})
    if decision == "rejected":
        return _rest_handle("PROMOTION_REJECT", {"approvalId": approval_id, "reason": body.get("reason") or ""})
    return err("BAD_REQUEST", "decision must be 'approved' or 'rejected'", http_status=400)


@rest_bp.get("/api/certificates/<certificate_id>")
def rest_certificate_get(certificate_id: str):
    return _rest_handle("CERTIFICATE_GET", {"certificateId": certificate_id})
