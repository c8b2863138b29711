from __future__ import annotations

from sqlalchemy import select

from actions.helpers import assert_employee_access, require_auth
from auth import is_privileged
from models import PromotionApproval, PromotionCandidate
from services import promotion_workflow as wf_svc
from utils import ApiError, AuthContext, safe_json_load, to_bool


def _promotion_id(data) -> str:
    pid = str((data or {}).get("promotionId") or "").strip()
    if not pid:
        raise ApiError("BAD_REQUEST", "Missing promotionId")
    return pid


def _assert_sponsor(db, auth: AuthContext, promotion_id: str) -> PromotionCandidate:
    """Creator, the employee's manager, or ADMIN/HR may act on a candidate outside the approval chain."""

    row = db.execute(select(PromotionCandidate).where(PromotionCandidate.id == promotion_id)).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Promotion not found")
    if is_privileged(auth) or str(row.created_by or "") == str(auth.userId or ""):
        return row
    assert_employee_access(db, auth, row.employee_id)
    return row


def promotion_workflow_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    wf, created = wf_svc.upsert_workflow(
        db,
        name=d.get("name"),
        steps=d.get("steps"),
        description=str(d.get("description") or ""),
        is_default=to_bool(d.get("isDefault")),
        is_active=to_bool(d.get("isActive"), True),
        actor=auth,
    )
    return {
        "workflowId": wf.id,
        "name": wf.name,
        "description": wf.description,
        "steps": safe_json_load(wf.steps_json, []),
        "isDefault": bool(wf.is_default),
        "isActive": bool(wf.is_active),
        "created": created,
    }


def promotion_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    employee_id = str(d.get("employeeId") or "").strip()
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    assert_employee_access(db, auth, employee_id)

    row = wf_svc.create_promotion(
        db,
        employee_id=employee_id,
        proposed_role=d.get("proposedRole"),
        justification=str(d.get("justification") or ""),
        comp_adjustment=d.get("compAdjustment"),
        workflow_id=d.get("workflowId"),
        actor=auth,
    )
    return wf_svc.serialize_candidate(db, row)


def promotion_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    pid = _promotion_id(data)
    _assert_sponsor(db, auth, pid)
    changes = {k: v for k, v in (data or {}).items() if k in {"proposedRole", "justification", "compAdjustment", "workflowId"}}
    if not changes:
        raise ApiError("BAD_REQUEST", "Nothing to update")
    row = wf_svc.update_promotion(db, promotion_id=pid, changes=changes, actor=auth)
    return wf_svc.serialize_candidate(db, row)


def promotion_submit(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    pid = _promotion_id(data)
    _assert_sponsor(db, auth, pid)
    row = wf_svc.submit_promotion(db, promotion_id=pid, actor=auth, cfg=cfg)
    return wf_svc.serialize_candidate(db, row)


def promotion_approve(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    row = wf_svc.approve_step(
        db,
        approval_id=(data or {}).get("approvalId"),
        note=str((data or {}).get("note") or ""),
        actor=auth,
        cfg=cfg,
    )
    return wf_svc.serialize_candidate(db, row)


def promotion_reject(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    row = wf_svc.reject_step(
        db,
        approval_id=(data or {}).get("approvalId"),
        reason=str((data or {}).get("reason") or ""),
        actor=auth,
        cfg=cfg,
    )
    return wf_svc.serialize_candidate(db, row)


def promotion_withdraw(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    pid = _promotion_id(data)
    _assert_sponsor(db, auth, pid)
    row = wf_svc.withdraw_promotion(db, promotion_id=pid, reason=str((data or {}).get("reason") or ""), actor=auth)
    return wf_svc.serialize_candidate(db, row)


def _load_visible(db, auth: AuthContext, pid: str) -> PromotionCandidate:
    row = db.execute(select(PromotionCandidate).where(PromotionCandidate.id == pid)).scalar_one_or_none()
    if not row:
        raise ApiError("NOT_FOUND", "Promotion not found")

    is_approver = bool(
        db.execute(
            select(PromotionApproval.id).where(PromotionApproval.promotion_id == pid).where(PromotionApproval.approver_id == auth.userId)
        ).first()
    )
    if not is_approver:
        _assert_sponsor(db, auth, pid)
    return row


def promotion_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    row = _load_visible(db, auth, _promotion_id(data))
    return wf_svc.serialize_candidate(db, row)


def promotion_timeline(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    row = _load_visible(db, auth, _promotion_id(data))
    return {"promotionId": row.id, "status": row.status, "events": wf_svc.timeline(db, row)}


def promotion_approvals_pending(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    rows = wf_svc.pending_for_approver(db, approver_id=auth.userId)
    items = [wf_svc.serialize_candidate(db, r) for r in rows]
    return {"items": items, "total": len(items)}


def promotion_metrics(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    d = data or {}
    return wf_svc.metrics(
        db,
        date_from=str(d.get("dateFrom") or "").strip(),
        date_to=str(d.get("dateTo") or "").strip(),
    )
