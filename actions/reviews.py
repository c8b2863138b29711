from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import actor_employee_id, append_audit, assert_employee_access, require_auth
from auth import is_privileged
from models import Employee, Review, ReviewCycle, ReviewScore
from services import review_cycles, review_scoring
from services.review_scoring import POTENTIAL_STATUS_LABELS, REVIEWER_TYPE_LABELS
from utils import ApiError, AuthContext, iso_utc_now, safe_json_load


def _serialize_cycle(c: ReviewCycle) -> dict[str, Any]:
    return {
        "cycleId": c.id,
        "name": c.name,
        "slug": c.slug,
        "description": c.description,
        "periodStart": c.period_start,
        "periodEnd": c.period_end,
        "frequency": c.frequency,
        "competencies": safe_json_load(c.competencies_json, []),
        "assignments": safe_json_load(c.assignments_json, []),
        "eligibility": safe_json_load(c.eligibility_json, {}),
        "status": c.status,
        "employeeCount": int(c.employee_count or 0),
        "completedCount": int(c.completed_count or 0),
        "completionRate": float(c.completion_rate or 0),
        "launchedAt": c.launched_at,
        "completedAt": c.completed_at,
    }


def _serialize_score(s: ReviewScore) -> dict[str, Any]:
    return {
        "scoreId": s.id,
        "reviewerId": s.reviewer_id,
        "type": s.type,
        "typeLabel": REVIEWER_TYPE_LABELS.get(s.type, s.type),
        "scores": safe_json_load(s.scores_json, {}),
        "averageScore": s.average_score,
        "comments": s.comments,
        "status": s.status,
        "startedAt": s.started_at,
        "completedAt": s.completed_at,
    }


def _serialize_review(db, r: Review, *, with_scores: bool = True) -> dict[str, Any]:
    out = {
        "reviewId": r.id,
        "cycleId": r.cycle_id,
        "employeeId": r.employee_id,
        "managerId": r.manager_id,
        "dueDate": r.due_date,
        "totalReviewers": int(r.total_reviewers or 0),
        "completedReviewers": int(r.completed_reviewers or 0),
        "progress": int(r.progress or 0),
        "status": r.status,
        "finalScore": r.final_score,
        "potentialStatus": r.potential_status or "",
        "potentialStatusLabel": POTENTIAL_STATUS_LABELS.get(r.potential_status or "", ""),
        "completedAt": r.completed_at,
    }
    if with_scores:
        rows = db.execute(select(ReviewScore).where(ReviewScore.review_id == r.id).order_by(ReviewScore.id.asc())).scalars().all()
        out["scores"] = [_serialize_score(s) for s in rows]
    return out


def review_cycle_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    cycle = review_cycles.create_cycle(
        db,
        name=d.get("name"),
        period_start=d.get("periodStart"),
        period_end=d.get("periodEnd"),
        frequency=d.get("frequency") or "annual",
        competencies=d.get("competencies"),
        assignments=d.get("assignments"),
        description=str(d.get("description") or ""),
        eligibility=d.get("eligibility"),
        actor=auth,
    )
    return _serialize_cycle(cycle)


def review_cycle_launch(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return review_cycles.launch_cycle(db, cycle_id=(data or {}).get("cycleId"), actor=auth)


def review_cycle_close(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return _serialize_cycle(review_cycles.close_cycle(db, cycle_id=(data or {}).get("cycleId"), actor=auth))


def review_cycle_archive(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return _serialize_cycle(review_cycles.archive_cycle(db, cycle_id=(data or {}).get("cycleId"), actor=auth))


def review_cycle_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cycle = review_cycles.refresh_cycle_stats(db, cycle_id=(data or {}).get("cycleId"))
    return _serialize_cycle(cycle)


def review_overdue_sweep(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    marked = review_cycles.sweep_overdue_reviews(db, actor=auth, today=str((data or {}).get("today") or "").strip())
    return {"marked": marked, "count": len(marked)}


def _load_review(db, review_id: Any) -> Review:
    try:
        rid = int(review_id)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing reviewId")
    r = db.execute(select(Review).where(Review.id == rid)).scalar_one_or_none()
    if not r:
        raise ApiError("NOT_FOUND", "Review not found")
    return r


def review_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    r = _load_review(db, (data or {}).get("reviewId"))

    if not is_privileged(auth):
        me = actor_employee_id(db, auth)
        is_reviewer = bool(
            me
            and db.execute(select(ReviewScore.id).where(ReviewScore.review_id == r.id).where(ReviewScore.reviewer_id == me)).first()
        )
        if not is_reviewer:
            assert_employee_access(db, auth, r.employee_id)

    out = _serialize_review(db, r)
    cycle = db.execute(select(ReviewCycle).where(ReviewCycle.id == r.cycle_id)).scalar_one_or_none()
    out["cycle"] = _serialize_cycle(cycle) if cycle else None
    emp = db.execute(select(Employee).where(Employee.employeeId == r.employee_id)).scalar_one_or_none()
    out["employeeName"] = emp.employeeName if emp else ""
    return out


def _reviewer_for(db, auth: AuthContext, data: dict) -> str:
    reviewer_id = str((data or {}).get("reviewerId") or "").strip()
    me = actor_employee_id(db, auth)
    if not reviewer_id:
        reviewer_id = me
    if not reviewer_id:
        raise ApiError("BAD_REQUEST", "Missing reviewerId")
    if reviewer_id != me and not is_privileged(auth):
        raise ApiError("FORBIDDEN", "Scores can only be submitted by the assigned reviewer")
    return reviewer_id


def review_assignments_mine(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    me = actor_employee_id(db, auth)
    if not me:
        return {"items": [], "total": 0}

    d = data or {}
    rows = review_cycles.assignments_for_reviewer(
        db,
        reviewer_id=me,
        status=str(d.get("status") or "").strip().lower(),
        reviewer_type=str(d.get("type") or "").strip().lower(),
        sort_by=str(d.get("sortBy") or "created_at").strip().lower(),
        sort_order=str(d.get("sortOrder") or "desc"),
    )
    items = []
    for score, review in rows:
        item = _serialize_score(score)
        item["review"] = _serialize_review(db, review, with_scores=False)
        items.append(item)
    return {"items": items, "total": len(items)}


def review_score_start(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    reviewer_id = _reviewer_for(db, auth, data)
    score = review_scoring.start_score(
        db,
        review_id=(data or {}).get("reviewId"),
        reviewer_id=reviewer_id,
        reviewer_type=str((data or {}).get("type") or "").strip().lower(),
        actor=auth,
    )
    return _serialize_score(score)


def review_score_submit(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    reviewer_id = _reviewer_for(db, auth, data)
    potential = str((data or {}).get("potentialStatus") or "").strip().lower()
    if potential:
        if potential not in POTENTIAL_STATUS_LABELS:
            raise ApiError("BAD_REQUEST", f"Invalid potentialStatus: {potential}")
        if str((data or {}).get("type") or "").strip().lower() != "manager":
            raise ApiError("BAD_REQUEST", "potentialStatus can only be set with a manager review")

    score, review = review_scoring.submit_score(
        db,
        review_id=(data or {}).get("reviewId"),
        reviewer_id=reviewer_id,
        reviewer_type=(data or {}).get("type"),
        competency_scores=(data or {}).get("scores"),
        comments=str((data or {}).get("comments") or ""),
        actor=auth,
    )
    if potential:
        review.potential_status = potential
    return {"score": _serialize_score(score), "review": _serialize_review(db, review, with_scores=False)}


def review_recompute(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    review = review_scoring.lock_review(db, review_id=(data or {}).get("reviewId"))
    now = iso_utc_now()
    change = review_scoring.recompute_review(db, review, now=now)
    append_audit(
        db,
        entityType="REVIEW",
        entityId=str(review.id),
        action="REVIEW_RECOMPUTE",
        stageTag="REVIEW_RECOMPUTE",
        fromState=change["before"]["status"],
        toState=change["after"]["status"],
        actor=auth,
        at=now,
        before=change["before"],
        after=change["after"],
    )
    return _serialize_review(db, review, with_scores=False)
