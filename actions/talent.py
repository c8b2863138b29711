from __future__ import annotations

from sqlalchemy import select

from actions.helpers import assert_employee_access, require_auth
from models import Pip, SuccessionCandidate
from services import talent
from utils import ApiError, AuthContext


def pip_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    employee_id = str(d.get("employeeId") or "").strip()
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    assert_employee_access(db, auth, employee_id)

    row = talent.create_pip(
        db,
        employee_id=employee_id,
        reason=str(d.get("reason") or ""),
        start_date=d.get("startDate"),
        end_date=d.get("endDate"),
        actor=auth,
    )
    return talent.serialize_pip(row)


def pip_status_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    pip_id = str(d.get("pipId") or "").strip()
    if not pip_id:
        raise ApiError("BAD_REQUEST", "Missing pipId")
    owner = db.execute(select(Pip.employee_id).where(Pip.id == pip_id)).scalars().first()
    if owner is None:
        raise ApiError("NOT_FOUND", "PIP not found")
    assert_employee_access(db, auth, owner)

    row = talent.set_pip_status(db, pip_id=pip_id, status=d.get("status"), notes=str(d.get("notes") or ""), actor=auth)
    return talent.serialize_pip(row)


def succession_candidate_add(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    row, created = talent.add_succession_candidate(
        db,
        employee_id=d.get("employeeId"),
        target_role=d.get("targetRole"),
        readiness=d.get("readiness"),
        notes=str(d.get("notes") or ""),
        actor=auth,
    )
    out = talent.serialize_succession(row)
    out["created"] = created
    return out


def succession_list(data, auth: AuthContext | None, db, cfg):
    require_auth(auth)
    q = select(SuccessionCandidate)
    target_role = str((data or {}).get("targetRole") or "").strip()
    if target_role:
        q = q.where(SuccessionCandidate.target_role == target_role)
    employee_id = str((data or {}).get("employeeId") or "").strip()
    if employee_id:
        q = q.where(SuccessionCandidate.employee_id == employee_id)
    rows = db.execute(q.order_by(SuccessionCandidate.target_role.asc(), SuccessionCandidate.id.asc())).scalars().all()
    return {"items": [talent.serialize_succession(r) for r in rows], "total": len(rows)}
