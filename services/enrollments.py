from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, select

from actions.helpers import append_audit
from models import (
    Course,
    CourseLesson,
    Enrollment,
    LearningPath,
    LearningPathCourse,
    LessonProgress,
    PathEnrollment,
    QuizAttempt,
)
from services.certificates import certificate_enabled, generate_for_course, generate_for_learning_path
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe, round_half_up, safe_json_load, safe_json_string


_log = logging.getLogger("lms")

ENROLLMENT_SOURCES = {"path", "self_enroll", "manager_assign", "pip", "succession"}


def _pct(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, round_half_up(done * 100 / total))


# ---------------------------------------------------------------------------
# Course enrollments
# ---------------------------------------------------------------------------


def lock_enrollment(db, *, enrollment_id: Any) -> Enrollment:
    try:
        eid = int(enrollment_id)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing enrollmentId")
    row = db.execute(select(Enrollment).where(Enrollment.id == eid).with_for_update(of=Enrollment)).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Enrollment not found")
    return row


def active_lessons(db, course_id: int) -> list[CourseLesson]:
    return list(
        db.execute(
            select(CourseLesson)
            .where(CourseLesson.course_id == course_id)
            .where(CourseLesson.status == "active")
            .order_by(CourseLesson.order_index.asc(), CourseLesson.id.asc())
        )
        .scalars()
        .all()
    )


def enroll_in_course(
    db,
    *,
    employee_id: str,
    course_id: int,
    actor: AuthContext,
    source: str = "self_enroll",
    metadata: Optional[dict[str, Any]] = None,
) -> tuple[Enrollment, bool]:
    src = str(source or "self_enroll").strip().lower()
    if src not in ENROLLMENT_SOURCES:
        raise ApiError("BAD_REQUEST", f"Invalid source: {source}")

    course = db.execute(select(Course).where(Course.id == int(course_id))).scalar_one_or_none()
    if not course:
        raise ApiError("NOT_FOUND", "Course not found")

    existing = (
        db.execute(select(Enrollment).where(Enrollment.employee_id == employee_id).where(Enrollment.course_id == course.id))
        .scalars()
        .first()
    )
    if existing:
        return existing, False

    # Path enrollments follow the path definition; only direct enrollment needs a live course.
    if src != "path" and str(course.status or "") != "active":
        raise ApiError("CONFLICT", "Course is not active", http_status=409)

    now = iso_utc_now()
    row = Enrollment(
        employee_id=employee_id,
        course_id=course.id,
        source=src,
        status="not_started",
        progress_pct=0,
        metadata_json=safe_json_string(metadata or {}, "{}"),
        enrolled_at=now,
        updated_at=now,
    )
    db.add(row)
    db.flush()

    append_audit(
        db,
        entityType="ENROLLMENT",
        entityId=str(row.id),
        action="ENROLLMENT_CREATE",
        stageTag="ENROLLMENT_CREATE",
        toState="not_started",
        actor=actor,
        at=now,
        meta={"employeeId": employee_id, "courseId": course.id, "source": src},
    )
    return row, True


def start_enrollment(db, enrollment: Enrollment, *, now: str = "") -> bool:
    if enrollment.status != "not_started":
        return False
    now = now or iso_utc_now()
    enrollment.status = "in_progress"
    enrollment.started_at = now
    enrollment.updated_at = now
    return True


def update_course_progress(db, enrollment: Enrollment, *, actor: AuthContext, cfg: Any = None) -> dict[str, Any]:
    lessons = active_lessons(db, enrollment.course_id)
    total = len(lessons)
    if total == 0:
        return {"progressPct": int(enrollment.progress_pct or 0), "completed": enrollment.status == "completed"}

    lesson_ids = [l.id for l in lessons]
    done = int(
        db.execute(
            select(func.count(LessonProgress.id))
            .where(LessonProgress.enrollment_id == enrollment.id)
            .where(LessonProgress.lesson_id.in_(lesson_ids))
            .where(LessonProgress.status == "completed")
        ).scalar_one()
        or 0
    )

    now = iso_utc_now()
    pct = _pct(done, total)
    if enrollment.status != "completed":
        enrollment.progress_pct = pct
        enrollment.updated_at = now
        if pct > 0 and enrollment.status == "not_started":
            start_enrollment(db, enrollment, now=now)

    if pct >= 100 and enrollment.status != "completed":
        complete_enrollment(db, enrollment, actor=actor, cfg=cfg)

    return {"progressPct": int(enrollment.progress_pct or 0), "completed": enrollment.status == "completed"}


def complete_enrollment(db, enrollment: Enrollment, *, actor: AuthContext, cfg: Any = None) -> Optional[str]:
    """Mark completed, issue the course certificate when enabled, then refresh dependent paths."""

    if enrollment.status == "completed":
        return None

    now = iso_utc_now()
    prev = enrollment.status
    enrollment.status = "completed"
    enrollment.completed_at = now
    enrollment.progress_pct = 100
    enrollment.updated_at = now
    if not enrollment.started_at:
        enrollment.started_at = now

    append_audit(
        db,
        entityType="ENROLLMENT",
        entityId=str(enrollment.id),
        action="ENROLLMENT_COMPLETE",
        stageTag="COURSE_COMPLETED",
        fromState=prev,
        toState="completed",
        actor=actor,
        at=now,
        meta={"employeeId": enrollment.employee_id, "courseId": enrollment.course_id},
    )
    _log.info("enrollment=%s completed employee=%s course=%s", enrollment.id, enrollment.employee_id, enrollment.course_id)

    certificate_id = None
    course = db.execute(select(Course).where(Course.id == enrollment.course_id)).scalar_one_or_none()
    if course and certificate_enabled(safe_json_load(course.metadata_json, {})):
        cert, _created = generate_for_course(db, employee_id=enrollment.employee_id, course_id=course.id, cfg=cfg)
        certificate_id = cert.certificate_id

    db.flush()
    refresh_paths_for_course(db, employee_id=enrollment.employee_id, course_id=enrollment.course_id, actor=actor, cfg=cfg)
    return certificate_id


def abandon_enrollment(db, enrollment: Enrollment, *, actor: AuthContext) -> Enrollment:
    if enrollment.status == "completed":
        raise ApiError("CONFLICT", "Completed enrollments cannot be abandoned", http_status=409)
    if enrollment.status == "expired":
        return enrollment

    now = iso_utc_now()
    prev = enrollment.status
    enrollment.status = "expired"
    enrollment.expired_at = now
    enrollment.updated_at = now
    append_audit(
        db,
        entityType="ENROLLMENT",
        entityId=str(enrollment.id),
        action="ENROLLMENT_ABANDON",
        stageTag="COURSE_ABANDONED",
        fromState=prev,
        toState="expired",
        actor=actor,
        at=now,
    )
    return enrollment


def best_attempt(db, *, lesson_id: int, enrollment_id: int) -> Optional[QuizAttempt]:
    return (
        db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.lesson_id == lesson_id)
            .where(QuizAttempt.enrollment_id == enrollment_id)
            .where(QuizAttempt.submitted_at != "")
            .order_by(QuizAttempt.score.desc(), QuizAttempt.submitted_at.desc(), QuizAttempt.attempt_no.desc())
        )
        .scalars()
        .first()
    )


def has_passed_all_quizzes(db, enrollment: Enrollment) -> bool:
    for lesson in active_lessons(db, enrollment.course_id):
        if lesson.type != "quiz":
            continue
        best = best_attempt(db, lesson_id=lesson.id, enrollment_id=enrollment.id)
        if not best or not bool(best.is_passed):
            return False
    return True


def next_lesson(db, enrollment: Enrollment) -> Optional[CourseLesson]:
    done = set(
        db.execute(
            select(LessonProgress.lesson_id)
            .where(LessonProgress.enrollment_id == enrollment.id)
            .where(LessonProgress.status == "completed")
        )
        .scalars()
        .all()
    )
    for lesson in active_lessons(db, enrollment.course_id):
        if lesson.id not in done:
            return lesson
    return None


# ---------------------------------------------------------------------------
# Learning path enrollments
# ---------------------------------------------------------------------------


def path_courses(db, path_id: int) -> list[LearningPathCourse]:
    return list(
        db.execute(
            select(LearningPathCourse)
            .where(LearningPathCourse.path_id == path_id)
            .order_by(LearningPathCourse.order_index.asc(), LearningPathCourse.id.asc())
        )
        .scalars()
        .all()
    )


def lock_path_enrollment(db, *, path_enrollment_id: Any) -> PathEnrollment:
    try:
        pid = int(path_enrollment_id)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing pathEnrollmentId")
    row = db.execute(select(PathEnrollment).where(PathEnrollment.id == pid).with_for_update(of=PathEnrollment)).scalars().first()
    if not row:
        raise ApiError("NOT_FOUND", "Path enrollment not found")
    return row


def enroll_in_next_courses(db, pe: PathEnrollment, *, actor: AuthContext) -> list[Enrollment]:
    """Create an Enrollment (source=path) for every path course the employee is not yet enrolled in."""

    created: list[Enrollment] = []
    for pc in path_courses(db, pe.path_id):
        existing = (
            db.execute(select(Enrollment.id).where(Enrollment.employee_id == pe.employee_id).where(Enrollment.course_id == pc.course_id))
            .scalars()
            .first()
        )
        if existing:
            continue
        row, _ = enroll_in_course(
            db,
            employee_id=pe.employee_id,
            course_id=pc.course_id,
            actor=actor,
            source="path",
            metadata={"path_id": pe.path_id, "path_enrollment_id": pe.id},
        )
        created.append(row)
    return created


def enroll_in_path(
    db,
    *,
    employee_id: str,
    path_id: int,
    actor: AuthContext,
    due_date: Any = None,
    cfg: Any = None,
) -> tuple[PathEnrollment, bool]:
    path = db.execute(select(LearningPath).where(LearningPath.id == int(path_id))).scalar_one_or_none()
    if not path:
        raise ApiError("NOT_FOUND", "Learning path not found")

    existing = (
        db.execute(select(PathEnrollment).where(PathEnrollment.employee_id == employee_id).where(PathEnrollment.path_id == path.id))
        .scalars()
        .first()
    )
    if existing:
        return existing, False

    if path.status != "published":
        raise ApiError("CONFLICT", "Learning path is not published", http_status=409)

    due = ""
    if due_date:
        dt = parse_datetime_maybe(due_date)
        if not dt:
            raise ApiError("BAD_REQUEST", "Invalid dueDate")
        due = dt.date().isoformat()

    now = iso_utc_now()
    pe = PathEnrollment(
        employee_id=employee_id,
        path_id=path.id,
        status="assigned",
        progress_pct=0,
        completed_courses=0,
        total_courses=len(path_courses(db, path.id)),
        due_date=due,
        assigned_by=str(actor.userId or ""),
        assigned_at=now,
        updated_at=now,
    )
    db.add(pe)
    db.flush()

    append_audit(
        db,
        entityType="PATH_ENROLLMENT",
        entityId=str(pe.id),
        action="PATH_ENROLLMENT_CREATE",
        stageTag="PATH_ENROLLMENT_CREATE",
        toState="assigned",
        actor=actor,
        at=now,
        meta={"employeeId": employee_id, "pathId": path.id, "dueDate": due},
    )

    enroll_in_next_courses(db, pe, actor=actor)
    update_path_progress(db, pe, actor=actor, cfg=cfg)
    return pe, True


def _course_enrollments(db, pe: PathEnrollment) -> dict[int, Enrollment]:
    course_ids = [pc.course_id for pc in path_courses(db, pe.path_id)]
    if not course_ids:
        return {}
    rows = (
        db.execute(select(Enrollment).where(Enrollment.employee_id == pe.employee_id).where(Enrollment.course_id.in_(course_ids)))
        .scalars()
        .all()
    )
    return {r.course_id: r for r in rows}


def update_path_progress(db, pe: PathEnrollment, *, actor: AuthContext, cfg: Any = None) -> dict[str, Any]:
    courses = path_courses(db, pe.path_id)
    by_course = _course_enrollments(db, pe)

    total = len(courses)
    done = sum(1 for pc in courses if by_course.get(pc.course_id) is not None and by_course[pc.course_id].status == "completed")

    now = iso_utc_now()
    if pe.status in {"completed", "abandoned"}:
        return {"progressPct": int(pe.progress_pct or 0), "status": pe.status}

    pe.total_courses = total
    pe.completed_courses = done
    pe.progress_pct = _pct(done, total)
    pe.updated_at = now

    if pe.status == "assigned" and done > 0:
        pe.status = "in_progress"
        pe.started_at = now
        append_audit(
            db,
            entityType="PATH_ENROLLMENT",
            entityId=str(pe.id),
            action="PATH_ENROLLMENT_START",
            stageTag="PATH_STARTED",
            fromState="assigned",
            toState="in_progress",
            actor=actor,
            at=now,
        )

    if total > 0 and pe.progress_pct >= 100 and pe.status != "completed":
        prev = pe.status
        pe.status = "completed"
        pe.completed_at = now
        pe.progress_pct = 100
        append_audit(
            db,
            entityType="PATH_ENROLLMENT",
            entityId=str(pe.id),
            action="PATH_ENROLLMENT_COMPLETE",
            stageTag="PATH_COMPLETED",
            fromState=prev,
            toState="completed",
            actor=actor,
            at=now,
            meta={"employeeId": pe.employee_id, "pathId": pe.path_id},
        )
        _log.info("path_enrollment=%s completed employee=%s path=%s", pe.id, pe.employee_id, pe.path_id)

        path = db.execute(select(LearningPath).where(LearningPath.id == pe.path_id)).scalar_one_or_none()
        if path and certificate_enabled(safe_json_load(path.metadata_json, {})):
            generate_for_learning_path(db, employee_id=pe.employee_id, path_id=path.id, cfg=cfg)

    return {"progressPct": int(pe.progress_pct or 0), "status": pe.status}


def refresh_paths_for_course(db, *, employee_id: str, course_id: int, actor: AuthContext, cfg: Any = None) -> None:
    rows = (
        db.execute(
            select(PathEnrollment)
            .join(LearningPathCourse, LearningPathCourse.path_id == PathEnrollment.path_id)
            .where(PathEnrollment.employee_id == employee_id)
            .where(LearningPathCourse.course_id == course_id)
            .where(PathEnrollment.status.in_(["assigned", "in_progress"]))
            .with_for_update(of=PathEnrollment)
        )
        .scalars()
        .all()
    )
    for pe in rows:
        update_path_progress(db, pe, actor=actor, cfg=cfg)


def abandon_path(db, pe: PathEnrollment, *, actor: AuthContext) -> PathEnrollment:
    if pe.status == "abandoned":
        return pe
    if pe.status not in {"assigned", "in_progress"}:
        raise ApiError("CONFLICT", f"Path enrollment cannot be abandoned from {pe.status}", http_status=409)

    now = iso_utc_now()
    prev = pe.status
    pe.status = "abandoned"
    pe.abandoned_at = now
    pe.updated_at = now
    append_audit(
        db,
        entityType="PATH_ENROLLMENT",
        entityId=str(pe.id),
        action="PATH_ENROLLMENT_ABANDON",
        stageTag="PATH_ABANDONED",
        fromState=prev,
        toState="abandoned",
        actor=actor,
        at=now,
    )
    return pe


def next_course(db, pe: PathEnrollment) -> Optional[int]:
    by_course = _course_enrollments(db, pe)
    for pc in path_courses(db, pe.path_id):
        e = by_course.get(pc.course_id)
        if e is None or e.status != "completed":
            return pc.course_id
    return None


def course_enrollment_status(db, pe: PathEnrollment) -> list[dict[str, Any]]:
    by_course = _course_enrollments(db, pe)
    out = []
    for pc in path_courses(db, pe.path_id):
        e = by_course.get(pc.course_id)
        out.append(
            {
                "courseId": pc.course_id,
                "orderIndex": int(pc.order_index or 0),
                "enrollmentId": e.id if e else None,
                "status": e.status if e else "not_enrolled",
                "progressPct": int(e.progress_pct or 0) if e else 0,
            }
        )
    return out
