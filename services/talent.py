from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from actions.helpers import append_audit, next_prefixed_id
from models import Employee, Pip, SuccessionCandidate
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe


PIP_STATUSES = {"active", "paused", "completed", "cancelled"}
READINESS_LEVELS = {"ready_now", "3-6m", "6-12m", "12-24m"}
READINESS_LABELS = {
    "ready_now": "Ready Now",
    "3-6m": "Ready in 3-6 Months",
    "6-12m": "Ready in 6-12 Months",
    "12-24m": "Ready in 12-24 Months",
}


def _employee_exists(db, employee_id: str) -> str:
    eid = str(employee_id or "").strip()
    if not eid:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    if not db.execute(select(Employee.employeeId).where(Employee.employeeId == eid)).first():
        raise ApiError("NOT_FOUND", "Employee not found")
    return eid


def _date_or_empty(raw: Any, field: str) -> str:
    if raw in (None, ""):
        return ""
    dt = parse_datetime_maybe(raw)
    if not dt:
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    return dt.date().isoformat()


def create_pip(db, *, employee_id: str, reason: str, actor: AuthContext, start_date: Any = None, end_date: Any = None) -> Pip:
    eid = _employee_exists(db, employee_id)
    reason = str(reason or "").strip()
    if not reason:
        raise ApiError("BAD_REQUEST", "Missing reason")

    start = _date_or_empty(start_date, "startDate") or datetime.now(timezone.utc).date().isoformat()
    end = _date_or_empty(end_date, "endDate")
    if end and end < start:
        raise ApiError("BAD_REQUEST", "endDate must be on or after startDate")

    year = datetime.now(timezone.utc).strftime("%Y")
    prefix = f"PIP-{year}-"
    existing = [str(x or "") for x in db.execute(select(Pip.id).where(Pip.id.like(f"{prefix}%"))).scalars().all()]
    now = iso_utc_now()
    row = Pip(
        id=next_prefixed_id(db, counter_key=f"PIP_{year}", prefix=prefix, pad=5, existing_ids=existing),
        employee_id=eid,
        reason=reason,
        status="active",
        start_date=start,
        end_date=end,
        created_at=now,
        created_by=str(actor.userId or ""),
        updated_at=now,
        updated_by=str(actor.userId or ""),
    )
    db.add(row)
    append_audit(
        db,
        entityType="PIP",
        entityId=row.id,
        action="PIP_CREATE",
        stageTag="PIP_CREATE",
        toState="active",
        actor=actor,
        at=now,
        meta={"employeeId": eid, "startDate": start, "endDate": end},
    )
    return row


def set_pip_status(db, *, pip_id: str, status: str, actor: AuthContext, notes: str = "") -> Pip:
    status = str(status or "").strip().lower()
    if status not in PIP_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid status: {status}")

    row = db.execute(select(Pip).where(Pip.id == str(pip_id or "").strip()).with_for_update(of=Pip)).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "PIP not found")
    if row.status in {"completed", "cancelled"}:
        raise ApiError("CONFLICT", f"PIP is already {row.status}", http_status=409)
    if row.status == status:
        return row

    now = iso_utc_now()
    prev = row.status
    row.status = status
    if notes:
        row.completion_notes = str(notes)
    row.updated_at = now
    row.updated_by = str(actor.userId or "")
    append_audit(
        db,
        entityType="PIP",
        entityId=row.id,
        action="PIP_STATUS_SET",
        stageTag="PIP_STATUS_SET",
        fromState=prev,
        toState=status,
        remark=str(notes or ""),
        actor=actor,
        at=now,
    )
    return row


def add_succession_candidate(
    db, *, employee_id: str, target_role: str, readiness: str, actor: AuthContext, notes: str = ""
) -> tuple[SuccessionCandidate, bool]:
    eid = _employee_exists(db, employee_id)
    target_role = str(target_role or "").strip()
    if not target_role:
        raise ApiError("BAD_REQUEST", "Missing targetRole")
    readiness = str(readiness or "").strip().lower()
    if readiness not in READINESS_LEVELS:
        raise ApiError("BAD_REQUEST", f"Invalid readiness: {readiness}")

    now = iso_utc_now()
    row = (
        db.execute(
            select(SuccessionCandidate)
            .where(SuccessionCandidate.employee_id == eid)
            .where(SuccessionCandidate.target_role == target_role)
            .with_for_update(of=SuccessionCandidate)
        )
        .scalars()
        .first()
    )
    created = row is None
    if created:
        row = SuccessionCandidate(employee_id=eid, target_role=target_role, created_at=now, created_by=str(actor.userId or ""))
        db.add(row)
    row.readiness = readiness
    row.notes = str(notes or "")
    db.flush()

    append_audit(
        db,
        entityType="SUCCESSION",
        entityId=str(row.id),
        action="SUCCESSION_CANDIDATE_ADD",
        stageTag="SUCCESSION_CANDIDATE_ADD",
        actor=actor,
        at=now,
        after={"employeeId": eid, "targetRole": target_role, "readiness": readiness},
    )
    return row, created


def serialize_pip(p: Pip) -> dict[str, Any]:
    return {
        "pipId": p.id,
        "employeeId": p.employee_id,
        "reason": p.reason,
        "status": p.status,
        "startDate": p.start_date,
        "endDate": p.end_date,
        "completionNotes": p.completion_notes,
    }


def serialize_succession(s: SuccessionCandidate) -> dict[str, Any]:
    return {
        "id": s.id,
        "employeeId": s.employee_id,
        "targetRole": s.target_role,
        "readiness": s.readiness,
        "readinessLabel": READINESS_LABELS.get(s.readiness, s.readiness),
        "notes": s.notes,
    }
