from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select

from actions.helpers import append_audit, next_prefixed_id, setting_int
from models import Employee, Review, ReviewCycle, ReviewScore
from utils import (
    ApiError,
    AuthContext,
    iso_utc_now,
    parse_datetime_maybe,
    round_half_up,
    safe_json_load,
    safe_json_string,
    today_iso_date,
)


_log = logging.getLogger("reviews")

CYCLE_STATUSES = {"draft", "active", "completed", "archived"}
CYCLE_FREQUENCIES = {"annual", "semi_annual", "quarterly", "monthly", "ad_hoc"}

# assignment code -> reviewer type stored on ReviewScore
ASSIGNMENT_TYPES = {
    "self_review": "self",
    "manager_review": "manager",
    "peer_review": "peer",
    "direct_report": "direct_report",
}


def slugify(value: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", str(value or "").strip().lower()).strip("-")
    return s or "cycle"


def _unique_slug(db, base: str) -> str:
    slug = base
    n = 2
    while db.execute(select(ReviewCycle.id).where(ReviewCycle.slug == slug)).first():
        slug = f"{base}-{n}"
        n += 1
    return slug


def _new_cycle_id(db) -> str:
    year = datetime.now(timezone.utc).strftime("%Y")
    prefix = f"CYC-{year}-"
    existing = [str(x or "") for x in db.execute(select(ReviewCycle.id).where(ReviewCycle.id.like(f"{prefix}%"))).scalars().all()]
    return next_prefixed_id(db, counter_key=f"CYCLE_{year}", prefix=prefix, pad=5, existing_ids=existing)


def _iso_date(raw: Any, field: str) -> str:
    dt = parse_datetime_maybe(raw)
    if not dt:
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    return dt.date().isoformat()


def create_cycle(
    db,
    *,
    name: str,
    period_start: Any,
    period_end: Any,
    frequency: str,
    competencies: Any,
    assignments: Any,
    actor: AuthContext,
    description: str = "",
    eligibility: Any = None,
) -> ReviewCycle:
    name = str(name or "").strip()
    if not name:
        raise ApiError("BAD_REQUEST", "Missing name")

    start = _iso_date(period_start, "periodStart")
    end = _iso_date(period_end, "periodEnd")
    if end < start:
        raise ApiError("BAD_REQUEST", "periodEnd must be on or after periodStart")

    freq = str(frequency or "annual").strip().lower()
    if freq not in CYCLE_FREQUENCIES:
        raise ApiError("BAD_REQUEST", f"Invalid frequency: {frequency}")

    if not isinstance(competencies, list) or not [c for c in competencies if str(c or "").strip()]:
        raise ApiError("BAD_REQUEST", "competencies must be a non-empty list")
    comps = []
    for c in competencies:
        c2 = str(c or "").strip()
        if c2 and c2 not in comps:
            comps.append(c2)

    if not isinstance(assignments, list) or not assignments:
        raise ApiError("BAD_REQUEST", "assignments must be a non-empty list")
    assigns = []
    for a in assignments:
        a2 = str(a or "").strip().lower()
        if a2 not in ASSIGNMENT_TYPES:
            raise ApiError("BAD_REQUEST", f"Invalid assignment type: {a}")
        if a2 not in assigns:
            assigns.append(a2)

    if eligibility is not None and not isinstance(eligibility, dict):
        raise ApiError("BAD_REQUEST", "eligibility must be an object")

    now = iso_utc_now()
    cycle = ReviewCycle(
        id=_new_cycle_id(db),
        name=name,
        slug=_unique_slug(db, slugify(name)),
        description=str(description or ""),
        period_start=start,
        period_end=end,
        frequency=freq,
        competencies_json=safe_json_string(comps, "[]"),
        assignments_json=safe_json_string(assigns, "[]"),
        eligibility_json=safe_json_string(eligibility or {}, "{}"),
        status="draft",
        created_at=now,
        created_by=str(actor.userId or ""),
        updated_at=now,
        updated_by=str(actor.userId or ""),
    )
    db.add(cycle)

    append_audit(
        db,
        entityType="REVIEW_CYCLE",
        entityId=cycle.id,
        action="REVIEW_CYCLE_CREATE",
        stageTag="REVIEW_CYCLE_CREATE",
        toState="draft",
        actor=actor,
        at=now,
        after={"name": name, "periodStart": start, "periodEnd": end, "assignments": assigns},
    )
    return cycle


def lock_cycle(db, *, cycle_id: str) -> ReviewCycle:
    cid = str(cycle_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing cycleId")
    cycle = db.execute(select(ReviewCycle).where(ReviewCycle.id == cid).with_for_update(of=ReviewCycle)).scalars().first()
    if not cycle:
        raise ApiError("NOT_FOUND", "Review cycle not found")
    return cycle


def eligible_employees(db, cycle: ReviewCycle) -> list[Employee]:
    criteria = safe_json_load(cycle.eligibility_json, {})
    departments = {str(d or "").strip() for d in (criteria.get("departments") or []) if str(d or "").strip()}
    excluded = {str(x or "").strip() for x in (criteria.get("excludedEmployeeIds") or [])}
    included = {str(x or "").strip() for x in (criteria.get("includedEmployeeIds") or []) if str(x or "").strip()}

    rows = db.execute(select(Employee).order_by(Employee.employeeId.asc())).scalars().all()
    out: list[Employee] = []
    for e in rows:
        if e.employeeId in included:
            out.append(e)
            continue
        if str(e.status or "").upper() != "ACTIVE":
            continue
        if e.employeeId in excluded:
            continue
        if departments and str(e.department or "") not in departments:
            continue
        out.append(e)
    return out


def _select_peers(db, employee: Employee, *, limit: int) -> list[str]:
    if limit <= 0:
        return []

    # The reviewee's manager and direct reports already review under their own type.
    base = (
        select(Employee.employeeId)
        .where(Employee.status == "ACTIVE")
        .where(Employee.employeeId != employee.employeeId)
        .where(Employee.employeeId != str(employee.managerId or ""))
        .where(Employee.managerId != employee.employeeId)
        .where(Employee.department == str(employee.department or ""))
        .order_by(Employee.employeeId.asc())
    )
    peers = list(db.execute(base.where(Employee.managerId == str(employee.managerId or "")).limit(limit)).scalars().all())
    if len(peers) < limit:
        more_q = base
        if peers:
            more_q = more_q.where(Employee.employeeId.notin_(peers))
        peers.extend(db.execute(more_q.limit(limit - len(peers))).scalars().all())
    return peers


def determine_reviewers(db, cycle: ReviewCycle, employee: Employee) -> list[tuple[str, str]]:
    """Resolve (reviewer_employee_id, reviewer_type) pairs for one reviewee."""

    assigns = safe_json_load(cycle.assignments_json, [])
    out: list[tuple[str, str]] = []

    if "self_review" in assigns:
        out.append((employee.employeeId, "self"))

    if "manager_review" in assigns and str(employee.managerId or "").strip():
        out.append((str(employee.managerId).strip(), "manager"))

    if "peer_review" in assigns:
        limit = setting_int(db, "REVIEW_PEER_COUNT", 3)
        for pid in _select_peers(db, employee, limit=limit):
            out.append((pid, "peer"))

    if "direct_report" in assigns:
        reports = (
            db.execute(
                select(Employee.employeeId)
                .where(Employee.status == "ACTIVE")
                .where(Employee.managerId == employee.employeeId)
                .order_by(Employee.employeeId.asc())
            )
            .scalars()
            .all()
        )
        for rid in reports:
            out.append((rid, "direct_report"))

    return out


def launch_cycle(db, *, cycle_id: str, actor: AuthContext) -> dict[str, Any]:
    cycle = lock_cycle(db, cycle_id=cycle_id)
    if cycle.status != "draft":
        raise ApiError("CONFLICT", f"Cycle cannot be launched from status {cycle.status}", http_status=409)

    employees = eligible_employees(db, cycle)
    if not employees:
        raise ApiError("BAD_REQUEST", "No eligible employees found for this cycle")

    now = iso_utc_now()
    created = 0
    skipped: list[str] = []
    for emp in employees:
        existing = (
            db.execute(select(Review.id).where(Review.cycle_id == cycle.id).where(Review.employee_id == emp.employeeId))
            .scalars()
            .first()
        )
        if existing:
            skipped.append(emp.employeeId)
            continue

        reviewers = determine_reviewers(db, cycle, emp)
        review = Review(
            cycle_id=cycle.id,
            employee_id=emp.employeeId,
            manager_id=str(emp.managerId or ""),
            due_date=cycle.period_end,
            total_reviewers=len(reviewers),
            completed_reviewers=0,
            progress=0,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        db.add(review)
        db.flush()
        for reviewer_id, rtype in reviewers:
            db.add(
                ReviewScore(
                    review_id=review.id,
                    reviewer_id=reviewer_id,
                    type=rtype,
                    scores_json="{}",
                    status="pending",
                    created_at=now,
                    updated_at=now,
                )
            )
        created += 1

    db.flush()
    update_completion_stats(db, cycle)
    cycle.status = "active"
    cycle.launched_at = now
    cycle.updated_at = now
    cycle.updated_by = str(actor.userId or "")

    append_audit(
        db,
        entityType="REVIEW_CYCLE",
        entityId=cycle.id,
        action="REVIEW_CYCLE_LAUNCH",
        stageTag="REVIEW_CYCLE_LAUNCH",
        fromState="draft",
        toState="active",
        actor=actor,
        at=now,
        meta={"reviewsCreated": created, "eligible": len(employees), "skipped": skipped},
    )
    _log.info("cycle=%s launched reviews=%s eligible=%s", cycle.id, created, len(employees))
    return {"cycleId": cycle.id, "reviewsCreated": created, "totalEligible": len(employees), "skipped": skipped}


def _transition_cycle(db, *, cycle_id: str, from_status: str, to_status: str, action: str, actor: AuthContext) -> ReviewCycle:
    cycle = lock_cycle(db, cycle_id=cycle_id)
    if cycle.status != from_status:
        raise ApiError("CONFLICT", f"Cycle must be {from_status} (is {cycle.status})", http_status=409)

    now = iso_utc_now()
    cycle.status = to_status
    if to_status == "completed":
        cycle.completed_at = now
        update_completion_stats(db, cycle)
    cycle.updated_at = now
    cycle.updated_by = str(actor.userId or "")
    append_audit(
        db,
        entityType="REVIEW_CYCLE",
        entityId=cycle.id,
        action=action,
        stageTag=action,
        fromState=from_status,
        toState=to_status,
        actor=actor,
        at=now,
    )
    return cycle


def close_cycle(db, *, cycle_id: str, actor: AuthContext) -> ReviewCycle:
    return _transition_cycle(db, cycle_id=cycle_id, from_status="active", to_status="completed", action="REVIEW_CYCLE_CLOSE", actor=actor)


def archive_cycle(db, *, cycle_id: str, actor: AuthContext) -> ReviewCycle:
    return _transition_cycle(db, cycle_id=cycle_id, from_status="completed", to_status="archived", action="REVIEW_CYCLE_ARCHIVE", actor=actor)


def update_completion_stats(db, cycle: ReviewCycle) -> ReviewCycle:
    total = int(db.execute(select(func.count(Review.id)).where(Review.cycle_id == cycle.id)).scalar_one() or 0)
    done = int(
        db.execute(select(func.count(Review.id)).where(Review.cycle_id == cycle.id).where(Review.status == "completed")).scalar_one()
        or 0
    )
    cycle.employee_count = total
    cycle.completed_count = done
    cycle.completion_rate = round_half_up(done * 100 / total, 2) if total > 0 else 0.0
    return cycle


def refresh_cycle_stats(db, *, cycle_id: str) -> ReviewCycle:
    return update_completion_stats(db, lock_cycle(db, cycle_id=cycle_id))


REVIEWER_INBOX_SORTS = {"created_at", "due_date"}


def assignments_for_reviewer(
    db,
    *,
    reviewer_id: str,
    status: str = "",
    reviewer_type: str = "",
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> list[tuple[ReviewScore, Review]]:
    """ReviewScore rows assigned to one reviewer, with their review, optionally filtered."""

    q = select(ReviewScore, Review).join(Review, Review.id == ReviewScore.review_id).where(ReviewScore.reviewer_id == reviewer_id)
    if status:
        q = q.where(ReviewScore.status == status)
    if reviewer_type:
        q = q.where(ReviewScore.type == reviewer_type)

    if sort_by not in REVIEWER_INBOX_SORTS:
        raise ApiError("BAD_REQUEST", f"Invalid sortBy: {sort_by}")
    col = Review.due_date if sort_by == "due_date" else ReviewScore.created_at
    ordered = col.asc() if str(sort_order or "").lower() == "asc" else col.desc()
    q = q.order_by(ordered, ReviewScore.id.asc())
    return [(s, r) for s, r in db.execute(q).all()]


def sweep_overdue_reviews(db, *, actor: AuthContext, today: str = "") -> list[int]:
    today = today or today_iso_date()
    rows = (
        db.execute(
            select(Review)
            .join(ReviewCycle, ReviewCycle.id == Review.cycle_id)
            .where(ReviewCycle.status == "active")
            .where(Review.status.in_(["pending", "in_progress"]))
            .where(Review.due_date != "")
            .where(Review.due_date < today)
            .with_for_update(of=Review)
        )
        .scalars()
        .all()
    )
    now = iso_utc_now()
    marked: list[int] = []
    for r in rows:
        prev = r.status
        r.status = "overdue"
        r.updated_at = now
        marked.append(r.id)
        append_audit(
            db,
            entityType="REVIEW",
            entityId=str(r.id),
            action="REVIEW_MARK_OVERDUE",
            stageTag="REVIEW_OVERDUE_SWEEP",
            fromState=prev,
            toState="overdue",
            actor=actor,
            at=now,
            meta={"dueDate": r.due_date, "today": today},
        )
    return marked
