from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, select

from actions.helpers import append_audit
from models import Review, ReviewScore
from services import review_cycles
from utils import ApiError, AuthContext, iso_utc_now, round_half_up, safe_json_load, safe_json_string


_log = logging.getLogger("reviews")

# Weight applies per submission, not once per reviewer type.
REVIEWER_TYPE_WEIGHTS: dict[str, float] = {
    "manager": 0.50,
    "self": 0.20,
    "peer": 0.20,
    "direct_report": 0.10,
}
DEFAULT_REVIEWER_WEIGHT = 0.25

REVIEWER_TYPES = set(REVIEWER_TYPE_WEIGHTS)
REVIEWER_TYPE_LABELS = {
    "self": "Self Review",
    "manager": "Manager Review",
    "peer": "Peer Review",
    "direct_report": "Direct Report Review",
}
POTENTIAL_STATUS_LABELS = {
    "developing": "Developing",
    "solid": "Solid Performer",
    "ready": "Ready for Promotion",
    "high_potential": "High Potential",
}

SCORE_MIN = 1
SCORE_MAX = 5


def reviewer_weight(reviewer_type: str) -> float:
    return REVIEWER_TYPE_WEIGHTS.get(str(reviewer_type or "").strip().lower(), DEFAULT_REVIEWER_WEIGHT)


def validate_competency_scores(scores: Any) -> dict[str, float]:
    if not isinstance(scores, dict) or not scores:
        raise ApiError("BAD_REQUEST", "scores must be a non-empty object of competency -> score")
    out: dict[str, float] = {}
    for name, raw in scores.items():
        key = str(name or "").strip()
        if not key:
            raise ApiError("BAD_REQUEST", "Competency name cannot be empty")
        if isinstance(raw, bool):
            raise ApiError("BAD_REQUEST", f"Invalid score for {key}")
        try:
            val = float(raw)
        except Exception:
            raise ApiError("BAD_REQUEST", f"Invalid score for {key}")
        if val < SCORE_MIN or val > SCORE_MAX:
            raise ApiError("BAD_REQUEST", f"Score for {key} must be between {SCORE_MIN} and {SCORE_MAX}")
        out[key] = val
    return out


def mean_of_scores(scores: dict[str, float]) -> Optional[float]:
    vals = [float(v) for v in (scores or {}).values()]
    if not vals:
        return None
    return round_half_up(sum(vals) / len(vals), 2)


def lock_review(db, *, review_id: Any) -> Review:
    try:
        rid = int(review_id)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing reviewId")

    review = db.execute(select(Review).where(Review.id == rid).with_for_update(of=Review)).scalars().first()
    if not review:
        raise ApiError("NOT_FOUND", "Review not found")
    return review


def calculate_final_score(db, review: Review) -> Optional[float]:
    """Σ(average × weight) / Σ(weight) over completed submissions; None when nothing is completed."""

    rows = (
        db.execute(
            select(ReviewScore)
            .where(ReviewScore.review_id == review.id)
            .where(ReviewScore.status == "completed")
        )
        .scalars()
        .all()
    )

    weighted = 0.0
    weight_used = 0.0
    for s in rows:
        if s.average_score is None:
            continue
        w = reviewer_weight(s.type)
        weighted += float(s.average_score) * w
        weight_used += w

    if weight_used <= 0:
        return None
    return round_half_up(weighted / weight_used, 2)


def recompute_review(db, review: Review, *, now: str = "") -> dict[str, Any]:
    """
    Refresh completed_reviewers/progress/status for a review the caller already holds locked.

    Status moves pending/overdue -> in_progress on partial progress and to completed at 100;
    a completed review never moves back.
    """

    now = now or iso_utc_now()
    before = {"progress": int(review.progress or 0), "status": str(review.status or "")}

    completed = int(
        db.execute(
            select(func.count(ReviewScore.id))
            .where(ReviewScore.review_id == review.id)
            .where(ReviewScore.status == "completed")
        ).scalar_one()
        or 0
    )
    total = int(review.total_reviewers or 0)

    review.completed_reviewers = completed
    review.progress = round_half_up(completed * 100 / total) if total > 0 else 0

    status = str(review.status or "pending")
    if review.progress >= 100:
        if status != "completed":
            review.status = "completed"
            review.completed_at = now
            db.flush()
            review_cycles.refresh_cycle_stats(db, cycle_id=review.cycle_id)
        review.final_score = calculate_final_score(db, review)
    elif review.progress > 0 and status in {"pending", "overdue"}:
        review.status = "in_progress"

    review.updated_at = now
    after = {"progress": int(review.progress), "status": str(review.status)}
    if before != after:
        _log.info("review=%s progress=%s status=%s", review.id, review.progress, review.status)
    return {"before": before, "after": after}


def _find_assignment(db, *, review_id: int, reviewer_id: str, reviewer_type: str) -> Optional[ReviewScore]:
    return (
        db.execute(
            select(ReviewScore)
            .where(ReviewScore.review_id == review_id)
            .where(ReviewScore.reviewer_id == reviewer_id)
            .where(ReviewScore.type == reviewer_type)
            .with_for_update(of=ReviewScore)
        )
        .scalars()
        .first()
    )


def start_score(db, *, review_id: Any, reviewer_id: str, reviewer_type: str, actor: AuthContext) -> ReviewScore:
    review = lock_review(db, review_id=review_id)
    score = _find_assignment(db, review_id=review.id, reviewer_id=reviewer_id, reviewer_type=reviewer_type)
    if not score:
        raise ApiError("NOT_FOUND", "Reviewer is not assigned to this review")
    if score.status != "pending":
        return score

    now = iso_utc_now()
    score.status = "in_progress"
    score.started_at = now
    score.updated_at = now
    recompute_review(db, review, now=now)

    append_audit(
        db,
        entityType="REVIEW_SCORE",
        entityId=str(score.id),
        action="REVIEW_SCORE_START",
        stageTag="REVIEW_SCORE_START",
        fromState="pending",
        toState="in_progress",
        actor=actor,
        at=now,
        meta={"reviewId": review.id, "reviewerId": reviewer_id, "type": reviewer_type},
    )
    return score


def submit_score(
    db,
    *,
    review_id: Any,
    reviewer_id: str,
    reviewer_type: str,
    competency_scores: Any,
    actor: AuthContext,
    comments: str = "",
) -> tuple[ReviewScore, Review]:
    rtype = str(reviewer_type or "").strip().lower()
    if rtype not in REVIEWER_TYPES:
        raise ApiError("BAD_REQUEST", f"Invalid reviewer type: {reviewer_type}")
    scores = validate_competency_scores(competency_scores)

    # Lock the review first: concurrent submissions serialize on it before recompute.
    review = lock_review(db, review_id=review_id)
    score = _find_assignment(db, review_id=review.id, reviewer_id=reviewer_id, reviewer_type=rtype)
    if not score:
        raise ApiError("NOT_FOUND", "Reviewer is not assigned to this review")

    now = iso_utc_now()
    prev_status = str(score.status or "pending")
    prev_scores = safe_json_load(score.scores_json, {})

    score.scores_json = safe_json_string(scores, "{}")
    score.average_score = mean_of_scores(scores)
    score.comments = str(comments or score.comments or "")
    score.status = "completed"
    if not score.started_at:
        score.started_at = now
    if prev_status != "completed":
        score.completed_at = now
    score.updated_at = now

    db.flush()
    progress = recompute_review(db, review, now=now)

    append_audit(
        db,
        entityType="REVIEW_SCORE",
        entityId=str(score.id),
        action="REVIEW_SCORE_SUBMIT",
        stageTag="REVIEW_SCORE_SUBMIT",
        fromState=prev_status,
        toState="completed",
        actor=actor,
        at=now,
        before={"scores": prev_scores} if prev_scores else None,
        after={"scores": scores, "averageScore": score.average_score},
        meta={"reviewId": review.id, "reviewerId": reviewer_id, "type": rtype, "review": progress["after"]},
    )
    return score, review
