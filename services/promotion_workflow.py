from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select

from actions.helpers import append_audit, next_prefixed_id
from app.tasks.dispatch import enqueue_after_commit
from models import Employee, Pip, PromotionApproval, PromotionCandidate, PromotionWorkflow, SuccessionCandidate, User
from services.employee_roles import change_role
from utils import (
    ApiError,
    AuthContext,
    iso_utc_now,
    normalize_role,
    parse_datetime_maybe,
    round_half_up,
    safe_json_load,
    safe_json_string,
)


_log = logging.getLogger("promotion")

CANDIDATE_STATUSES = {"draft", "submitted", "in_review", "approved", "rejected", "withdrawn"}
EDITABLE_STATUSES = {"draft", "submitted"}
WITHDRAWABLE_STATUSES = {"submitted", "in_review"}

STANDARD_WORKFLOW = "Standard Promotion Workflow"
FINANCE_WORKFLOW = "Finance Required Workflow"

DEFAULT_WORKFLOWS = [
    {
        "name": STANDARD_WORKFLOW,
        "description": "Manager, HR business partner and director sign-off.",
        "isDefault": True,
        "steps": [
            {"order": 1, "name": "Manager Approval", "role": "manager"},
            {"order": 2, "name": "HRBP Review", "role": "hrbp"},
            {"order": 3, "name": "Director Approval", "role": "director"},
        ],
    },
    {
        "name": FINANCE_WORKFLOW,
        "description": "Used when the promotion carries a compensation adjustment.",
        "isDefault": False,
        "steps": [
            {"order": 1, "name": "Manager Approval", "role": "manager"},
            {"order": 2, "name": "HRBP Review", "role": "hrbp"},
            {"order": 3, "name": "Finance Approval", "role": "finance"},
            {"order": 4, "name": "Director Approval", "role": "director"},
        ],
    },
]


# ---------------------------------------------------------------------------
# Workflow templates
# ---------------------------------------------------------------------------


def normalize_steps(steps: Any) -> list[dict[str, Any]]:
    if not isinstance(steps, list) or not steps:
        raise ApiError("BAD_REQUEST", "steps must be a non-empty list")

    out = []
    for i, s in enumerate(steps):
        if not isinstance(s, dict):
            raise ApiError("BAD_REQUEST", "Each step must be an object")
        role = str(s.get("role") or "").strip().lower()
        if not role:
            raise ApiError("BAD_REQUEST", f"Step {i + 1} is missing role")
        try:
            order = int(s.get("order") if s.get("order") is not None else i + 1)
        except Exception:
            raise ApiError("BAD_REQUEST", f"Step {i + 1} has an invalid order")
        name = str(s.get("name") or "").strip() or f"{role.replace('_', ' ').title()} Approval"
        out.append({"order": order, "name": name, "role": role})

    orders = [s["order"] for s in out]
    if len(set(orders)) != len(orders):
        raise ApiError("BAD_REQUEST", "Step orders must be unique")
    return sorted(out, key=lambda s: s["order"])


def seed_default_workflows(db) -> None:
    now = iso_utc_now()
    existing = {str(n or "") for n in db.execute(select(PromotionWorkflow.name)).scalars().all()}
    for wf in DEFAULT_WORKFLOWS:
        if wf["name"] in existing:
            continue
        db.add(
            PromotionWorkflow(
                name=wf["name"],
                description=wf["description"],
                steps_json=safe_json_string(wf["steps"], "[]"),
                is_default=bool(wf["isDefault"]),
                is_active=True,
                created_at=now,
                updated_at=now,
            )
        )


def upsert_workflow(
    db,
    *,
    name: str,
    steps: Any,
    actor: AuthContext,
    description: str = "",
    is_default: bool = False,
    is_active: bool = True,
) -> tuple[PromotionWorkflow, bool]:
    name = str(name or "").strip()
    if not name:
        raise ApiError("BAD_REQUEST", "Missing name")
    clean = normalize_steps(steps)

    now = iso_utc_now()
    wf = db.execute(select(PromotionWorkflow).where(PromotionWorkflow.name == name).with_for_update(of=PromotionWorkflow)).scalars().first()
    created = wf is None
    before = None
    if created:
        wf = PromotionWorkflow(name=name, created_at=now)
        db.add(wf)
    else:
        before = {"steps": safe_json_load(wf.steps_json, []), "isDefault": bool(wf.is_default), "isActive": bool(wf.is_active)}

    wf.description = str(description or "")
    wf.steps_json = safe_json_string(clean, "[]")
    wf.is_default = bool(is_default)
    wf.is_active = bool(is_active)
    wf.updated_at = now
    db.flush()

    if wf.is_default:
        others = db.execute(select(PromotionWorkflow).where(PromotionWorkflow.id != wf.id).where(PromotionWorkflow.is_default.is_(True))).scalars().all()
        for o in others:
            o.is_default = False
            o.updated_at = now

    append_audit(
        db,
        entityType="PROMOTION_WORKFLOW",
        entityId=str(wf.id),
        action="PROMOTION_WORKFLOW_UPSERT",
        stageTag="PROMOTION_WORKFLOW_UPSERT",
        actor=actor,
        at=now,
        before=before,
        after={"name": name, "steps": clean, "isDefault": bool(wf.is_default), "isActive": bool(wf.is_active)},
    )
    return wf, created


def _workflow_by_name(db, name: str) -> Optional[PromotionWorkflow]:
    return (
        db.execute(select(PromotionWorkflow).where(PromotionWorkflow.name == name).where(PromotionWorkflow.is_active.is_(True)))
        .scalars()
        .first()
    )


def select_workflow(db, *, workflow_id: Any = None, has_comp_adjustment: bool = False) -> PromotionWorkflow:
    if workflow_id not in (None, ""):
        try:
            wid = int(workflow_id)
        except Exception:
            raise ApiError("BAD_REQUEST", "Invalid workflowId")
        wf = db.execute(select(PromotionWorkflow).where(PromotionWorkflow.id == wid)).scalar_one_or_none()
        if not wf:
            raise ApiError("NOT_FOUND", "Promotion workflow not found")
        if not wf.is_active:
            raise ApiError("CONFLICT", "Promotion workflow is inactive", http_status=409)
        return wf

    if has_comp_adjustment:
        wf = _workflow_by_name(db, FINANCE_WORKFLOW)
        if wf:
            return wf

    wf = (
        db.execute(
            select(PromotionWorkflow)
            .where(PromotionWorkflow.is_default.is_(True))
            .where(PromotionWorkflow.is_active.is_(True))
            .order_by(PromotionWorkflow.id.asc())
        )
        .scalars()
        .first()
    ) or _workflow_by_name(db, STANDARD_WORKFLOW)
    if not wf:
        raise ApiError("BAD_REQUEST", "No promotion workflow configured")
    return wf


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


def _new_promotion_id(db) -> str:
    year = datetime.now(timezone.utc).strftime("%Y")
    prefix = f"PROMO-{year}-"
    existing = [str(x or "") for x in db.execute(select(PromotionCandidate.id).where(PromotionCandidate.id.like(f"{prefix}%"))).scalars().all()]
    return next_prefixed_id(db, counter_key=f"PROMO_{year}", prefix=prefix, pad=5, existing_ids=existing)


def _comp_adjustment(raw: Any) -> Optional[dict[str, Any]]:
    if raw in (None, "", {}):
        return None
    if not isinstance(raw, dict):
        raise ApiError("BAD_REQUEST", "compAdjustment must be an object")
    return raw


def lock_candidate(db, *, promotion_id: str) -> PromotionCandidate:
    pid = str(promotion_id or "").strip()
    if not pid:
        raise ApiError("BAD_REQUEST", "Missing promotionId")
    row = db.execute(select(PromotionCandidate).where(PromotionCandidate.id == pid).with_for_update(of=PromotionCandidate)).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Promotion not found")
    return row


def create_promotion(
    db,
    *,
    employee_id: str,
    proposed_role: str,
    actor: AuthContext,
    justification: str = "",
    comp_adjustment: Any = None,
    workflow_id: Any = None,
) -> PromotionCandidate:
    emp = db.execute(select(Employee).where(Employee.employeeId == str(employee_id or "").strip())).scalar_one_or_none()
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")

    proposed_role = str(proposed_role or "").strip()
    if not proposed_role:
        raise ApiError("BAD_REQUEST", "Missing proposedRole")
    if proposed_role == str(emp.currentRole or "").strip():
        raise ApiError("BAD_REQUEST", "proposedRole must differ from the current role")

    open_row = (
        db.execute(
            select(PromotionCandidate.id)
            .where(PromotionCandidate.employee_id == emp.employeeId)
            .where(PromotionCandidate.status.in_(["draft", "submitted", "in_review"]))
        )
        .scalars()
        .first()
    )
    if open_row:
        raise ApiError("CONFLICT", f"Employee already has an open promotion ({open_row})", http_status=409)

    comp = _comp_adjustment(comp_adjustment)
    wf = select_workflow(db, workflow_id=workflow_id, has_comp_adjustment=comp is not None)

    now = iso_utc_now()
    row = PromotionCandidate(
        id=_new_promotion_id(db),
        employee_id=emp.employeeId,
        current_role=str(emp.currentRole or ""),
        proposed_role=proposed_role,
        justification=str(justification or ""),
        comp_adjustment_json=safe_json_string(comp, "") if comp else "",
        workflow_id=wf.id,
        status="draft",
        created_at=now,
        created_by=str(actor.userId or ""),
        updated_at=now,
        updated_by=str(actor.userId or ""),
    )
    db.add(row)

    append_audit(
        db,
        entityType="PROMOTION",
        entityId=row.id,
        action="PROMOTION_CREATE",
        stageTag="PROMOTION_CREATE",
        toState="draft",
        actor=actor,
        at=now,
        after={"employeeId": emp.employeeId, "proposedRole": proposed_role, "workflow": wf.name},
    )
    return row


def can_edit(candidate: PromotionCandidate) -> bool:
    return candidate.status in EDITABLE_STATUSES


def update_promotion(db, *, promotion_id: str, changes: dict[str, Any], actor: AuthContext) -> PromotionCandidate:
    row = lock_candidate(db, promotion_id=promotion_id)
    if not can_edit(row):
        raise ApiError("CONFLICT", f"Promotion cannot be edited in status {row.status}", http_status=409)

    before = {"proposedRole": row.proposed_role, "justification": row.justification, "compAdjustment": safe_json_load(row.comp_adjustment_json, {})}

    if "proposedRole" in changes:
        proposed = str(changes.get("proposedRole") or "").strip()
        if not proposed:
            raise ApiError("BAD_REQUEST", "proposedRole cannot be empty")
        row.proposed_role = proposed
    if "justification" in changes:
        row.justification = str(changes.get("justification") or "")
    if "compAdjustment" in changes:
        comp = _comp_adjustment(changes.get("compAdjustment"))
        row.comp_adjustment_json = safe_json_string(comp, "") if comp else ""
    if "workflowId" in changes:
        if row.status != "draft":
            raise ApiError("CONFLICT", "Workflow can only change while draft", http_status=409)
        row.workflow_id = select_workflow(db, workflow_id=changes.get("workflowId")).id

    now = iso_utc_now()
    row.updated_at = now
    row.updated_by = str(actor.userId or "")
    append_audit(
        db,
        entityType="PROMOTION",
        entityId=row.id,
        action="PROMOTION_UPDATE",
        stageTag="PROMOTION_UPDATE",
        actor=actor,
        at=now,
        before=before,
        after={"proposedRole": row.proposed_role, "justification": row.justification, "compAdjustment": safe_json_load(row.comp_adjustment_json, {})},
    )
    return row


# ---------------------------------------------------------------------------
# Approver resolution
# ---------------------------------------------------------------------------


def _active_user(db, user_id: str) -> Optional[User]:
    if not user_id:
        return None
    return db.execute(select(User).where(User.userId == user_id).where(User.status == "ACTIVE")).scalar_one_or_none()


def super_admin_user_id(db, cfg: Any = None) -> str:
    explicit = str(getattr(cfg, "SUPER_ADMIN_USER_ID", "") or "").strip()
    if explicit and _active_user(db, explicit):
        return explicit
    first_admin = (
        db.execute(select(User.userId).where(User.role == "ADMIN").where(User.status == "ACTIVE").order_by(User.userId.asc()))
        .scalars()
        .first()
    )
    return str(first_admin or "")


def resolve_approver(db, *, candidate: PromotionCandidate, role: str, cfg: Any = None) -> str:
    role_l = str(role or "").strip().lower()

    if role_l == "manager":
        emp = db.execute(select(Employee).where(Employee.employeeId == candidate.employee_id)).scalar_one_or_none()
        manager_id = str(emp.managerId or "").strip() if emp else ""
        if manager_id:
            mgr = db.execute(select(Employee).where(Employee.employeeId == manager_id)).scalar_one_or_none()
            if mgr and _active_user(db, str(mgr.userId or "").strip()):
                return str(mgr.userId).strip()
        return super_admin_user_id(db, cfg)

    role_code = normalize_role(role_l)
    match = (
        db.execute(select(User.userId).where(User.role == role_code).where(User.status == "ACTIVE").order_by(User.userId.asc()))
        .scalars()
        .first()
    )
    if match:
        return str(match)
    return super_admin_user_id(db, cfg)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def _approvals(db, promotion_id: str) -> list[PromotionApproval]:
    return list(
        db.execute(select(PromotionApproval).where(PromotionApproval.promotion_id == promotion_id).order_by(PromotionApproval.step_order.asc()))
        .scalars()
        .all()
    )


def submit_promotion(db, *, promotion_id: str, actor: AuthContext, cfg: Any = None) -> PromotionCandidate:
    row = lock_candidate(db, promotion_id=promotion_id)
    if row.status != "draft":
        raise ApiError("BAD_REQUEST", f"Only draft promotions can be submitted (is {row.status})")

    wf = db.execute(select(PromotionWorkflow).where(PromotionWorkflow.id == row.workflow_id)).scalar_one_or_none()
    if not wf:
        raise ApiError("NOT_FOUND", "Promotion workflow not found")

    now = iso_utc_now()
    row.status = "submitted"
    row.submitted_at = now
    row.updated_at = now
    row.updated_by = str(actor.userId or "")

    step_order = 0
    created: list[PromotionApproval] = []
    for step in sorted(safe_json_load(wf.steps_json, []), key=lambda s: int(s.get("order") or 0)):
        approver_id = resolve_approver(db, candidate=row, role=str(step.get("role") or ""), cfg=cfg)
        if not approver_id:
            _log.warning("promotion=%s step=%s role=%s has no approver; skipped", row.id, step.get("name"), step.get("role"))
            continue
        step_order += 1
        approval = PromotionApproval(
            promotion_id=row.id,
            step_order=step_order,
            step_name=str(step.get("name") or ""),
            approver_role=str(step.get("role") or ""),
            approver_id=approver_id,
            decision="pending",
            created_at=now,
        )
        db.add(approval)
        created.append(approval)
    db.flush()

    for a in created:
        append_audit(
            db,
            entityType="PROMOTION_APPROVAL",
            entityId=str(a.id),
            action="PROMOTION_APPROVAL_CREATE",
            stageTag="PROMOTION_SUBMIT",
            toState="pending",
            actor=actor,
            at=now,
            meta={"promotionId": row.id, "stepOrder": a.step_order, "role": a.approver_role, "approverId": a.approver_id},
        )
        enqueue_after_commit(
            db,
            cfg,
            "promotions.notify_approver",
            promotion_id=row.id,
            approval_id=a.id,
            approver_id=a.approver_id,
        )

    if created:
        row.status = "in_review"

    append_audit(
        db,
        entityType="PROMOTION",
        entityId=row.id,
        action="PROMOTION_SUBMIT",
        stageTag="PROMOTION_SUBMIT",
        fromState="draft",
        toState=row.status,
        actor=actor,
        at=now,
        meta={"workflow": wf.name, "approvals": len(created)},
    )
    _log.info("promotion=%s submitted status=%s approvals=%s", row.id, row.status, len(created))
    return row


def _lock_approval(db, approval_id: Any) -> PromotionApproval:
    try:
        aid = int(approval_id)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing approvalId")
    row = db.execute(select(PromotionApproval).where(PromotionApproval.id == aid).with_for_update(of=PromotionApproval)).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Approval not found")
    return row


def _assert_decider(approval: PromotionApproval, actor: AuthContext) -> None:
    if normalize_role(actor.role) == "ADMIN":
        return
    if str(actor.userId or "") != str(approval.approver_id or ""):
        raise ApiError("FORBIDDEN", "Only the assigned approver can decide this step")


def _open_decision(db, approval_id: Any, actor: AuthContext) -> tuple[PromotionApproval, PromotionCandidate]:
    approval = _lock_approval(db, approval_id)
    candidate = lock_candidate(db, promotion_id=approval.promotion_id)
    if approval.decision != "pending":
        raise ApiError("CONFLICT", f"Approval step already {approval.decision}", http_status=409)
    if candidate.status != "in_review":
        raise ApiError("CONFLICT", f"Promotion is not in review (is {candidate.status})", http_status=409)
    _assert_decider(approval, actor)
    return approval, candidate


def approve_step(db, *, approval_id: Any, actor: AuthContext, note: str = "", cfg: Any = None) -> PromotionCandidate:
    approval, candidate = _open_decision(db, approval_id, actor)

    now = iso_utc_now()
    approval.decision = "approved"
    approval.decision_note = str(note or "")
    approval.decided_at = now
    db.flush()

    append_audit(
        db,
        entityType="PROMOTION_APPROVAL",
        entityId=str(approval.id),
        action="PROMOTION_APPROVE",
        stageTag="PROMOTION_APPROVE",
        fromState="pending",
        toState="approved",
        remark=approval.decision_note,
        actor=actor,
        at=now,
        meta={"promotionId": candidate.id, "stepOrder": approval.step_order},
    )

    # Completion is decided by what is left pending, not by which step was decided last.
    pending = int(
        db.execute(
            select(func.count(PromotionApproval.id))
            .where(PromotionApproval.promotion_id == candidate.id)
            .where(PromotionApproval.decision == "pending")
        ).scalar_one()
        or 0
    )
    if pending == 0:
        candidate.status = "approved"
        candidate.approved_at = now
        candidate.updated_at = now
        candidate.updated_by = str(actor.userId or "")
        append_audit(
            db,
            entityType="PROMOTION",
            entityId=candidate.id,
            action="PROMOTION_APPROVED",
            stageTag="PROMOTION_APPROVED",
            fromState="in_review",
            toState="approved",
            actor=actor,
            at=now,
        )
        process_approved_promotion(db, candidate, actor=actor)
        enqueue_after_commit(db, cfg, "promotions.notify_outcome", promotion_id=candidate.id, outcome="approved")
        _log.info("promotion=%s approved", candidate.id)
    return candidate


def reject_step(db, *, approval_id: Any, actor: AuthContext, reason: str, cfg: Any = None) -> PromotionCandidate:
    reason = str(reason or "").strip()
    if not reason:
        raise ApiError("BAD_REQUEST", "Rejection reason is required")
    approval, candidate = _open_decision(db, approval_id, actor)

    now = iso_utc_now()
    approval.decision = "rejected"
    approval.decision_note = reason
    approval.decided_at = now

    candidate.status = "rejected"
    candidate.rejected_at = now
    candidate.rejection_reason = reason
    candidate.updated_at = now
    candidate.updated_by = str(actor.userId or "")

    append_audit(
        db,
        entityType="PROMOTION_APPROVAL",
        entityId=str(approval.id),
        action="PROMOTION_REJECT",
        stageTag="PROMOTION_REJECT",
        fromState="pending",
        toState="rejected",
        remark=reason,
        actor=actor,
        at=now,
        meta={"promotionId": candidate.id, "stepOrder": approval.step_order},
    )
    append_audit(
        db,
        entityType="PROMOTION",
        entityId=candidate.id,
        action="PROMOTION_REJECTED",
        stageTag="PROMOTION_REJECTED",
        fromState="in_review",
        toState="rejected",
        remark=reason,
        actor=actor,
        at=now,
    )
    enqueue_after_commit(db, cfg, "promotions.notify_outcome", promotion_id=candidate.id, outcome="rejected")
    _log.info("promotion=%s rejected at step=%s", candidate.id, approval.step_order)
    return candidate


def withdraw_promotion(db, *, promotion_id: str, actor: AuthContext, reason: str = "") -> PromotionCandidate:
    row = lock_candidate(db, promotion_id=promotion_id)
    if row.status not in WITHDRAWABLE_STATUSES:
        raise ApiError("CONFLICT", f"Promotion cannot be withdrawn from status {row.status}", http_status=409)

    now = iso_utc_now()
    prev = row.status
    row.status = "withdrawn"
    row.withdrawn_at = now
    row.withdrawal_reason = str(reason or "")
    row.updated_at = now
    row.updated_by = str(actor.userId or "")
    append_audit(
        db,
        entityType="PROMOTION",
        entityId=row.id,
        action="PROMOTION_WITHDRAW",
        stageTag="PROMOTION_WITHDRAW",
        fromState=prev,
        toState="withdrawn",
        remark=row.withdrawal_reason,
        actor=actor,
        at=now,
    )
    return row


def process_approved_promotion(db, candidate: PromotionCandidate, *, actor: AuthContext) -> dict[str, Any]:
    now = iso_utc_now()
    role_change = change_role(
        db,
        employee_id=candidate.employee_id,
        new_role=candidate.proposed_role,
        actor=actor,
        remark=f"Promotion {candidate.id}",
        effective_at=now,
    )

    comp = safe_json_load(candidate.comp_adjustment_json, {})
    if comp:
        append_audit(
            db,
            entityType="EMPLOYEE",
            entityId=candidate.employee_id,
            action="COMPENSATION_CHANGE",
            stageTag="PROMOTION_APPROVED",
            actor=actor,
            at=now,
            after=comp,
            meta={"promotionId": candidate.id},
        )

    pips = (
        db.execute(select(Pip).where(Pip.employee_id == candidate.employee_id).where(Pip.status == "active").with_for_update(of=Pip))
        .scalars()
        .all()
    )
    for p in pips:
        p.status = "completed"
        p.completion_notes = "Promotion approved"
        p.updated_at = now
        p.updated_by = str(actor.userId or "")
        append_audit(
            db,
            entityType="PIP",
            entityId=p.id,
            action="PIP_STATUS_SET",
            stageTag="PROMOTION_APPROVED",
            fromState="active",
            toState="completed",
            remark=p.completion_notes,
            actor=actor,
            at=now,
        )

    removed = db.execute(
        delete(SuccessionCandidate)
        .where(SuccessionCandidate.employee_id == candidate.employee_id)
        .where(SuccessionCandidate.target_role == candidate.proposed_role)
    ).rowcount

    return {"roleChange": role_change, "pipsClosed": len(pips), "successionRemoved": int(removed or 0)}


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------


def progress_percentage(approvals: list[PromotionApproval]) -> int:
    total = len(approvals)
    if total == 0:
        return 0
    decided = sum(1 for a in approvals if a.decision != "pending")
    return round_half_up(decided * 100 / total)


def next_approval(candidate: PromotionCandidate, approvals: list[PromotionApproval]) -> Optional[PromotionApproval]:
    """First undecided step in order; None once the candidate has left in_review."""

    if candidate.status != "in_review":
        return None
    for a in sorted(approvals, key=lambda x: int(x.step_order or 0)):
        if a.decision == "pending":
            return a
    return None


def serialize_candidate(db, candidate: PromotionCandidate) -> dict[str, Any]:
    approvals = _approvals(db, candidate.id)
    wf = db.execute(select(PromotionWorkflow).where(PromotionWorkflow.id == candidate.workflow_id)).scalar_one_or_none()
    nxt = next_approval(candidate, approvals)
    return {
        "promotionId": candidate.id,
        "employeeId": candidate.employee_id,
        "currentRole": candidate.current_role,
        "proposedRole": candidate.proposed_role,
        "justification": candidate.justification,
        "compAdjustment": safe_json_load(candidate.comp_adjustment_json, {}) or None,
        "workflowId": candidate.workflow_id,
        "workflowName": wf.name if wf else "",
        "status": candidate.status,
        "canEdit": can_edit(candidate),
        "submittedAt": candidate.submitted_at,
        "approvedAt": candidate.approved_at,
        "rejectedAt": candidate.rejected_at,
        "withdrawnAt": candidate.withdrawn_at,
        "rejectionReason": candidate.rejection_reason,
        "withdrawalReason": candidate.withdrawal_reason,
        "progressPct": progress_percentage(approvals),
        "nextApprover": (
            {"approvalId": nxt.id, "approverId": nxt.approver_id, "stepName": nxt.step_name, "approverRole": nxt.approver_role}
            if nxt
            else None
        ),
        "approvals": [
            {
                "approvalId": a.id,
                "stepOrder": a.step_order,
                "stepName": a.step_name,
                "approverRole": a.approver_role,
                "approverId": a.approver_id,
                "decision": a.decision,
                "decisionNote": a.decision_note,
                "decidedAt": a.decided_at,
            }
            for a in approvals
        ],
    }


def pending_for_approver(db, *, approver_id: str) -> list[PromotionCandidate]:
    """Candidates in review that hold an undecided step assigned to this user, oldest submission first."""

    if not str(approver_id or "").strip():
        return []
    return list(
        db.execute(
            select(PromotionCandidate)
            .join(PromotionApproval, PromotionApproval.promotion_id == PromotionCandidate.id)
            .where(PromotionCandidate.status == "in_review")
            .where(PromotionApproval.approver_id == str(approver_id))
            .where(PromotionApproval.decision == "pending")
            .order_by(PromotionCandidate.submitted_at.asc(), PromotionCandidate.id.asc())
        )
        .scalars()
        .unique()
        .all()
    )


def _user_names(db, user_ids: set[str]) -> dict[str, str]:
    ids = {u for u in user_ids if u}
    if not ids:
        return {}
    rows = db.execute(select(User.userId, User.fullName, User.email).where(User.userId.in_(ids))).all()
    return {str(uid): str(name or email or "") for uid, name, email in rows}


def timeline(db, candidate: PromotionCandidate) -> list[dict[str, Any]]:
    approvals = _approvals(db, candidate.id)
    names = _user_names(db, {candidate.created_by} | {str(a.approver_id or "") for a in approvals})

    events: list[dict[str, Any]] = []

    def add(kind: str, at: str, *, actor_id: str = "", title: str = "", note: str = "") -> None:
        if not str(at or "").strip():
            return
        events.append(
            {
                "type": kind,
                "title": title,
                "date": at,
                "actorId": actor_id,
                "actorName": names.get(actor_id, ""),
                "note": note,
            }
        )

    add("created", candidate.created_at, actor_id=str(candidate.created_by or ""), title="Promotion created")
    add("submitted", candidate.submitted_at, title="Submitted for approval")
    for a in approvals:
        if a.decision == "pending":
            continue
        add(a.decision, a.decided_at, actor_id=str(a.approver_id or ""), title=a.step_name, note=a.decision_note or "")
    add("completed", candidate.approved_at, title="Promotion approved")
    add("rejected_final", candidate.rejected_at, title="Promotion rejected", note=candidate.rejection_reason or "")
    add("withdrawn", candidate.withdrawn_at, title="Promotion withdrawn", note=candidate.withdrawal_reason or "")

    # Stable sort keeps the creation order for events sharing a timestamp.
    events.sort(key=lambda e: str(e["date"]))
    return events


def _days_between(start: str, end: str) -> Optional[float]:
    s = parse_datetime_maybe(start)
    e = parse_datetime_maybe(end)
    if not s or not e:
        return None
    return (e - s).total_seconds() / 86400


def metrics(db, *, date_from: str = "", date_to: str = "") -> dict[str, Any]:
    q = select(PromotionCandidate)
    if date_from:
        q = q.where(PromotionCandidate.created_at >= date_from)
    if date_to:
        # Date-only upper bounds include the whole day.
        q = q.where(PromotionCandidate.created_at <= (date_to + "T23:59:59.999Z" if len(date_to) == 10 else date_to))
    rows = db.execute(q).scalars().all()

    counts: dict[str, int] = {}
    for r in rows:
        counts[str(r.status)] = counts.get(str(r.status), 0) + 1

    durations = [
        d for d in (_days_between(r.submitted_at, r.approved_at) for r in rows if r.status == "approved") if d is not None
    ]
    average = round_half_up(sum(durations) / len(durations), 2) if durations else None

    emp_ids = {r.employee_id for r in rows}
    departments: dict[str, str] = {}
    if emp_ids:
        for emp_id, dept in db.execute(select(Employee.employeeId, Employee.department).where(Employee.employeeId.in_(emp_ids))).all():
            departments[str(emp_id)] = str(dept or "")
    by_department: dict[str, int] = {}
    for r in rows:
        dept = departments.get(r.employee_id, "") or "Unassigned"
        by_department[dept] = by_department.get(dept, 0) + 1

    return {
        "total": len(rows),
        "approved": counts.get("approved", 0),
        "rejected": counts.get("rejected", 0),
        "inReview": counts.get("in_review", 0),
        "withdrawn": counts.get("withdrawn", 0),
        "draft": counts.get("draft", 0),
        "submitted": counts.get("submitted", 0),
        "averageReviewTimeDays": average,
        "byDepartment": [{"department": k, "count": v} for k, v in sorted(by_department.items())],
    }
