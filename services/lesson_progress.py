from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select

from actions.helpers import append_audit
from models import CourseLesson, Enrollment, LessonProgress
from services import enrollments as enrollment_svc
from utils import ApiError, AuthContext, iso_utc_now, round_half_up


_log = logging.getLogger("lms")

LESSON_TYPES = {"video", "audio", "pdf", "external_link", "quiz"}
MEDIA_TYPES = {"video", "audio"}
AUTO_COMPLETE_RATIO = 0.9


def lesson_for_enrollment(db, enrollment: Enrollment, lesson_id: Any) -> CourseLesson:
    try:
        lid = int(lesson_id)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing lessonId")
    lesson = db.execute(select(CourseLesson).where(CourseLesson.id == lid)).scalar_one_or_none()
    if not lesson or lesson.course_id != enrollment.course_id:
        raise ApiError("NOT_FOUND", "Lesson not found")
    return lesson


def _require_open(enrollment: Enrollment) -> None:
    if enrollment.status == "expired":
        raise ApiError("CONFLICT", "Enrollment is expired", http_status=409)


def get_or_create_progress(db, *, enrollment: Enrollment, lesson: CourseLesson) -> LessonProgress:
    row = (
        db.execute(
            select(LessonProgress)
            .where(LessonProgress.enrollment_id == enrollment.id)
            .where(LessonProgress.lesson_id == lesson.id)
            .with_for_update(of=LessonProgress)
        )
        .scalars()
        .first()
    )
    if row:
        return row
    now = iso_utc_now()
    row = LessonProgress(
        enrollment_id=enrollment.id,
        lesson_id=lesson.id,
        status="not_started",
        seconds_consumed=0,
        last_position_sec=0,
        updated_at=now,
    )
    db.add(row)
    db.flush()
    return row


def _start(db, progress: LessonProgress, enrollment: Enrollment, *, now: str) -> bool:
    if progress.status != "not_started":
        return False
    progress.status = "in_progress"
    progress.started_at = now
    progress.updated_at = now
    enrollment_svc.start_enrollment(db, enrollment, now=now)
    return True


def start_lesson(db, *, enrollment: Enrollment, lesson: CourseLesson, actor: AuthContext) -> LessonProgress:
    _require_open(enrollment)
    progress = get_or_create_progress(db, enrollment=enrollment, lesson=lesson)
    now = iso_utc_now()
    if _start(db, progress, enrollment, now=now):
        append_audit(
            db,
            entityType="LESSON_PROGRESS",
            entityId=str(progress.id),
            action="LESSON_START",
            stageTag="LESSON_START",
            fromState="not_started",
            toState="in_progress",
            actor=actor,
            at=now,
            meta={"enrollmentId": enrollment.id, "lessonId": lesson.id},
        )
    return progress


def _non_negative_int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    try:
        n = int(float(value))
    except Exception:
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    if n < 0:
        raise ApiError("BAD_REQUEST", f"{field} must be >= 0")
    return n


def update_progress(
    db,
    *,
    enrollment: Enrollment,
    lesson: CourseLesson,
    actor: AuthContext,
    position_sec: Any = None,
    consumed_sec: Any = None,
    progress_pct: Any = None,
    cfg: Any = None,
) -> dict[str, Any]:
    _require_open(enrollment)

    position = _non_negative_int(position_sec, "positionSec")
    consumed = _non_negative_int(consumed_sec, "consumedSec")
    if progress_pct is not None and progress_pct != "":
        pct = _non_negative_int(progress_pct, "progressPct")
        if pct is None or pct > 100:
            raise ApiError("BAD_REQUEST", "progressPct must be between 0 and 100")
        if position is None:
            position = round_half_up(int(lesson.duration_est_min or 0) * 60 * pct / 100)

    progress = get_or_create_progress(db, enrollment=enrollment, lesson=lesson)
    now = iso_utc_now()
    _start(db, progress, enrollment, now=now)

    if position is not None:
        progress.last_position_sec = position
    if consumed is not None:
        progress.seconds_consumed = consumed
    progress.updated_at = now

    auto = check_and_auto_complete(db, enrollment=enrollment, lesson=lesson, progress=progress, actor=actor, cfg=cfg)
    return {"progress": progress, "autoCompleted": auto}


def mark_viewed(db, *, enrollment: Enrollment, lesson: CourseLesson, actor: AuthContext) -> LessonProgress:
    """Passive content: record the view and start the lesson; completion stays explicit."""

    _require_open(enrollment)
    progress = get_or_create_progress(db, enrollment=enrollment, lesson=lesson)
    now = iso_utc_now()
    _start(db, progress, enrollment, now=now)
    progress.viewed_at = now
    progress.updated_at = now
    return progress


def _refresh_lesson_stats(db, lesson: CourseLesson) -> None:
    locked = db.execute(select(CourseLesson).where(CourseLesson.id == lesson.id).with_for_update(of=CourseLesson)).scalars().first()
    locked.completions_count = int(locked.completions_count or 0) + 1

    secs = [
        int(s or 0)
        for s in db.execute(
            select(LessonProgress.seconds_consumed)
            .where(LessonProgress.lesson_id == lesson.id)
            .where(LessonProgress.status == "completed")
            .where(LessonProgress.seconds_consumed > 0)
        )
        .scalars()
        .all()
    ]
    locked.avg_completion_time_min = round_half_up(sum(secs) / len(secs) / 60, 2) if secs else None


def complete_lesson(
    db,
    *,
    enrollment: Enrollment,
    lesson: CourseLesson,
    actor: AuthContext,
    cfg: Any = None,
) -> tuple[LessonProgress, bool]:
    """Complete one lesson and cascade to course progress. Returns (progress, changed)."""

    _require_open(enrollment)
    progress = get_or_create_progress(db, enrollment=enrollment, lesson=lesson)
    if progress.status == "completed":
        return progress, False

    now = iso_utc_now()
    prev = progress.status
    _start(db, progress, enrollment, now=now)
    progress.status = "completed"
    progress.completed_at = now
    progress.updated_at = now
    db.flush()

    _refresh_lesson_stats(db, lesson)
    append_audit(
        db,
        entityType="LESSON_PROGRESS",
        entityId=str(progress.id),
        action="LESSON_COMPLETE",
        stageTag="LESSON_COMPLETE",
        fromState=prev,
        toState="completed",
        actor=actor,
        at=now,
        meta={"enrollmentId": enrollment.id, "lessonId": lesson.id, "secondsConsumed": int(progress.seconds_consumed or 0)},
    )
    _log.info("lesson=%s completed enrollment=%s", lesson.id, enrollment.id)

    enrollment_svc.update_course_progress(db, enrollment, actor=actor, cfg=cfg)
    return progress, True


def should_auto_complete(lesson: CourseLesson, progress: LessonProgress) -> bool:
    if str(lesson.type or "") not in MEDIA_TYPES:
        return False
    duration_sec = int(lesson.duration_est_min or 0) * 60
    if duration_sec <= 0:
        return False
    return int(progress.last_position_sec or 0) / duration_sec >= AUTO_COMPLETE_RATIO


def check_and_auto_complete(
    db,
    *,
    enrollment: Enrollment,
    lesson: CourseLesson,
    progress: LessonProgress,
    actor: AuthContext,
    cfg: Any = None,
) -> bool:
    if progress.status == "completed" or not should_auto_complete(lesson, progress):
        return False
    _, changed = complete_lesson(db, enrollment=enrollment, lesson=lesson, actor=actor, cfg=cfg)
    return changed


def serialize_progress(progress: LessonProgress) -> dict[str, Any]:
    return {
        "enrollmentId": progress.enrollment_id,
        "lessonId": progress.lesson_id,
        "status": progress.status,
        "secondsConsumed": int(progress.seconds_consumed or 0),
        "lastPositionSec": int(progress.last_position_sec or 0),
        "viewedAt": progress.viewed_at or "",
        "startedAt": progress.started_at or "",
        "completedAt": progress.completed_at or "",
    }
