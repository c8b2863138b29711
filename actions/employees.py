from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import append_audit, assert_employee_access, require_auth
from auth import revoke_user_sessions
from models import Employee, RoleHistory
from services.employee_roles import change_role, serialize_role_history
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe


EMPLOYEE_STATUSES = {"ACTIVE", "INACTIVE", "EXITED"}


def _serialize_employee(emp: Employee) -> dict[str, Any]:
    return {
        "employeeId": emp.employeeId,
        "userId": emp.userId or "",
        "employeeName": emp.employeeName or "",
        "email": emp.email or "",
        "department": emp.department or "",
        "managerId": emp.managerId or "",
        "currentRole": emp.currentRole or "",
        "status": emp.status or "",
        "joinedAt": emp.joinedAt or "",
    }


def employee_upsert(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    employee_id = str((data or {}).get("employeeId") or "").strip()
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")

    manager_id = str((data or {}).get("managerId") or "").strip()
    if manager_id == employee_id:
        raise ApiError("BAD_REQUEST", "An employee cannot manage themselves")
    if manager_id and not db.execute(select(Employee.employeeId).where(Employee.employeeId == manager_id)).first():
        raise ApiError("NOT_FOUND", "Manager not found")

    status = str((data or {}).get("status") or "ACTIVE").strip().upper()
    if status not in EMPLOYEE_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid status: {status}")

    joined_raw = (data or {}).get("joinedAt") or ""
    joined_at = ""
    if joined_raw:
        dt = parse_datetime_maybe(joined_raw, app_timezone=getattr(cfg, "APP_TIMEZONE", "UTC"))
        if not dt:
            raise ApiError("BAD_REQUEST", "Invalid joinedAt")
        joined_at = dt.date().isoformat()

    now = iso_utc_now()
    emp = db.execute(select(Employee).where(Employee.employeeId == employee_id).with_for_update(of=Employee)).scalars().first()
    created = emp is None
    before = None if created else _serialize_employee(emp)
    new_role = str((data or {}).get("currentRole") or "").strip()

    if created:
        emp = Employee(employeeId=employee_id, createdAt=now, createdBy=str(auth.userId or ""), currentRole=new_role)
        db.add(emp)
        if new_role:
            db.add(
                RoleHistory(
                    employee_id=employee_id,
                    role=new_role,
                    start_at=joined_at or now,
                    end_at="",
                    changed_by=str(auth.userId or ""),
                    remark="Joined",
                )
            )

    for field, key in [("employeeName", "employeeName"), ("email", "email"), ("department", "department"), ("userId", "userId")]:
        if key in (data or {}):
            setattr(emp, field, str((data or {}).get(key) or "").strip())
    if "managerId" in (data or {}):
        emp.managerId = manager_id
    if joined_at:
        emp.joinedAt = joined_at
    prev_status = str(emp.status or "")
    emp.status = status
    emp.updatedAt = now
    emp.updatedBy = str(auth.userId or "")
    db.flush()

    role_change = None
    if not created and new_role and new_role != str(emp.currentRole or ""):
        role_change = change_role(db, employee_id=employee_id, new_role=new_role, actor=auth, remark="Employee update")

    revoked = 0
    if status != "ACTIVE" and prev_status == "ACTIVE" and emp.userId:
        revoked = revoke_user_sessions(db, user_id=emp.userId, revoked_by=str(auth.userId or ""))

    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=employee_id,
        action="EMPLOYEE_UPSERT",
        stageTag="EMPLOYEE_CREATE" if created else "EMPLOYEE_UPDATE",
        actor=auth,
        at=now,
        before=before,
        after=_serialize_employee(emp),
        meta={"sessionsRevoked": revoked} if revoked else None,
    )
    return {"employee": _serialize_employee(emp), "created": created, "roleChange": role_change}


def employee_get(data, auth: AuthContext | None, db, cfg):
    employee_id = str((data or {}).get("employeeId") or "").strip()
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    assert_employee_access(db, auth, employee_id)

    emp = db.execute(select(Employee).where(Employee.employeeId == employee_id)).scalar_one_or_none()
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")

    reports = (
        db.execute(select(Employee.employeeId).where(Employee.managerId == employee_id).order_by(Employee.employeeId.asc()))
        .scalars()
        .all()
    )
    out = _serialize_employee(emp)
    out["roleHistory"] = serialize_role_history(db, emp)
    out["directReports"] = list(reports)
    return out
