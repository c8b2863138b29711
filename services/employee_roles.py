from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import append_audit
from models import Employee, RoleHistory
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe


def lock_employee(db, employee_id: str) -> Employee:
    emp = (
        db.execute(select(Employee).where(Employee.employeeId == employee_id).with_for_update(of=Employee))
        .scalars()
        .first()
    )
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")
    return emp


def change_role(db, *, employee_id: str, new_role: str, actor: AuthContext, remark: str = "", effective_at: str = "") -> dict[str, Any]:
    """Close the open role_history row, open a new one, and move Employee.currentRole."""

    new_role = str(new_role or "").strip()
    if not new_role:
        raise ApiError("BAD_REQUEST", "Missing newRole")

    emp = lock_employee(db, employee_id)
    now = iso_utc_now()
    effective_at = effective_at or now

    prev_role = str(emp.currentRole or "").strip()
    if prev_role == new_role:
        return {"employeeId": emp.employeeId, "currentRole": prev_role, "changed": False}

    open_row = (
        db.execute(
            select(RoleHistory)
            .where(RoleHistory.employee_id == emp.employeeId)
            .where(RoleHistory.end_at == "")
            .order_by(RoleHistory.start_at.desc())
            .with_for_update(of=RoleHistory)
        )
        .scalars()
        .first()
    )
    if open_row:
        start_dt = parse_datetime_maybe(open_row.start_at) if str(open_row.start_at or "").strip() else None
        eff_dt = parse_datetime_maybe(effective_at)
        if start_dt and eff_dt and eff_dt < start_dt:
            raise ApiError("BAD_REQUEST", "effectiveAt cannot be before current role start")
        open_row.end_at = effective_at

    db.add(
        RoleHistory(
            employee_id=emp.employeeId,
            role=new_role,
            start_at=effective_at,
            end_at="",
            changed_by=str(actor.userId or actor.email or ""),
            remark=remark,
        )
    )
    emp.currentRole = new_role
    emp.updatedAt = now
    emp.updatedBy = str(actor.userId or "")

    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=emp.employeeId,
        action="EMPLOYEE_ROLE_CHANGE",
        stageTag="EMPLOYEE_ROLE_CHANGE",
        actor=actor,
        at=now,
        remark=remark or new_role,
        before={"currentRole": prev_role},
        after={"currentRole": new_role, "effectiveAt": effective_at},
    )
    return {"employeeId": emp.employeeId, "currentRole": new_role, "effectiveAt": effective_at, "changed": True}


def serialize_role_history(db, emp: Employee) -> list[dict[str, Any]]:
    rows = (
        db.execute(select(RoleHistory).where(RoleHistory.employee_id == emp.employeeId).order_by(RoleHistory.start_at.asc(), RoleHistory.id.asc()))
        .scalars()
        .all()
    )
    if rows:
        return [
            {
                "role": str(r.role or ""),
                "startAt": str(r.start_at or ""),
                "endAt": str(r.end_at or ""),
                "changedBy": str(r.changed_by or ""),
                "remark": str(r.remark or ""),
            }
            for r in rows
        ]

    role = str(emp.currentRole or "").strip()
    joined_at = str(emp.joinedAt or "").strip()
    if not role and not joined_at:
        return []
    return [{"role": role, "startAt": joined_at, "endAt": "", "changedBy": "", "remark": "Joined"}]
