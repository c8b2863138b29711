from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import actor_employee_id, assert_employee_access, require_auth
from models import Certificate, Course, Enrollment, LearningPath, PathEnrollment
from services import catalog, certificates, enrollments, lesson_progress, quiz_grading
from utils import ApiError, AuthContext, safe_json_load, to_int_or_none


def _target_employee(db, auth: AuthContext, data: dict) -> str:
    employee_id = str((data or {}).get("employeeId") or "").strip() or actor_employee_id(db, auth)
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    assert_employee_access(db, auth, employee_id)
    return employee_id


def _required_int(data: dict, key: str) -> int:
    value = to_int_or_none((data or {}).get(key))
    if value is None:
        raise ApiError("BAD_REQUEST", f"Missing {key}")
    return value


def _serialize_enrollment(e: Enrollment) -> dict[str, Any]:
    return {
        "enrollmentId": e.id,
        "employeeId": e.employee_id,
        "courseId": e.course_id,
        "source": e.source,
        "status": e.status,
        "progressPct": int(e.progress_pct or 0),
        "metadata": safe_json_load(e.metadata_json, {}),
        "enrolledAt": e.enrolled_at,
        "startedAt": e.started_at,
        "completedAt": e.completed_at,
        "expiredAt": e.expired_at,
    }


def _serialize_path_enrollment(pe: PathEnrollment) -> dict[str, Any]:
    return {
        "pathEnrollmentId": pe.id,
        "employeeId": pe.employee_id,
        "pathId": pe.path_id,
        "status": pe.status,
        "progressPct": int(pe.progress_pct or 0),
        "completedCourses": int(pe.completed_courses or 0),
        "totalCourses": int(pe.total_courses or 0),
        "dueDate": pe.due_date,
        "assignedAt": pe.assigned_at,
        "startedAt": pe.started_at,
        "completedAt": pe.completed_at,
        "abandonedAt": pe.abandoned_at,
    }


def _load_enrollment(db, auth: AuthContext, data: dict) -> Enrollment:
    enrollment = enrollments.lock_enrollment(db, enrollment_id=(data or {}).get("enrollmentId"))
    assert_employee_access(db, auth, enrollment.employee_id)
    return enrollment


def _load_path_enrollment(db, auth: AuthContext, data: dict) -> PathEnrollment:
    pe = enrollments.lock_path_enrollment(db, path_enrollment_id=(data or {}).get("pathEnrollmentId"))
    assert_employee_access(db, auth, pe.employee_id)
    return pe


# ---- catalog ----


def course_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    course = catalog.create_course(
        db,
        title=d.get("title"),
        description=str(d.get("description") or ""),
        status=d.get("status") or "active",
        metadata=d.get("metadata"),
        lessons=d.get("lessons"),
        actor=auth,
    )
    return catalog.serialize_course(db, course)


def learning_path_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    path = catalog.create_learning_path(
        db,
        name=d.get("name"),
        course_ids=d.get("courseIds"),
        description=str(d.get("description") or ""),
        metadata=d.get("metadata"),
        actor=auth,
    )
    return catalog.serialize_path(db, path)


def learning_path_publish(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    path = catalog.publish_learning_path(db, path_id=(data or {}).get("pathId"), actor=auth)
    return catalog.serialize_path(db, path)


# ---- course enrollments ----


def enrollment_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    employee_id = _target_employee(db, auth, data)
    source = str((data or {}).get("source") or "").strip().lower()
    if not source:
        source = "self_enroll" if employee_id == actor_employee_id(db, auth) else "manager_assign"
    if source == "path":
        raise ApiError("BAD_REQUEST", "Path enrollments are created through PATH_ENROLLMENT_CREATE")

    row, created = enrollments.enroll_in_course(
        db,
        employee_id=employee_id,
        course_id=_required_int(data, "courseId"),
        source=source,
        actor=auth,
    )
    return {"enrollment": _serialize_enrollment(row), "created": created}


def enrollment_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    eid = _required_int(data, "enrollmentId")
    enrollment = db.execute(select(Enrollment).where(Enrollment.id == eid)).scalar_one_or_none()
    if not enrollment:
        raise ApiError("NOT_FOUND", "Enrollment not found")
    assert_employee_access(db, auth, enrollment.employee_id)

    course = db.execute(select(Course).where(Course.id == enrollment.course_id)).scalar_one_or_none()
    nxt = enrollments.next_lesson(db, enrollment)
    out = _serialize_enrollment(enrollment)
    out["courseTitle"] = course.title if course else ""
    out["nextLessonId"] = nxt.id if nxt else None
    out["hasPassedAllQuizzes"] = enrollments.has_passed_all_quizzes(db, enrollment)
    return out


def enrollment_abandon(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    enrollment = _load_enrollment(db, auth, data)
    return _serialize_enrollment(enrollments.abandon_enrollment(db, enrollment, actor=auth))


# ---- learning path enrollments ----


def path_enrollment_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    employee_id = _target_employee(db, auth, data)
    pe, created = enrollments.enroll_in_path(
        db,
        employee_id=employee_id,
        path_id=_required_int(data, "pathId"),
        due_date=(data or {}).get("dueDate"),
        actor=auth,
        cfg=cfg,
    )
    out = _serialize_path_enrollment(pe)
    out["courses"] = enrollments.course_enrollment_status(db, pe)
    return {"pathEnrollment": out, "created": created}


def path_enrollment_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    peid = _required_int(data, "pathEnrollmentId")
    pe = db.execute(select(PathEnrollment).where(PathEnrollment.id == peid)).scalar_one_or_none()
    if not pe:
        raise ApiError("NOT_FOUND", "Path enrollment not found")
    assert_employee_access(db, auth, pe.employee_id)

    path = db.execute(select(LearningPath).where(LearningPath.id == pe.path_id)).scalar_one_or_none()
    out = _serialize_path_enrollment(pe)
    out["pathName"] = path.name if path else ""
    out["nextCourseId"] = enrollments.next_course(db, pe)
    out["courses"] = enrollments.course_enrollment_status(db, pe)
    return out


def path_enrollment_abandon(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    pe = _load_path_enrollment(db, auth, data)
    return _serialize_path_enrollment(enrollments.abandon_path(db, pe, actor=auth))


# ---- lessons ----


def _enrollment_and_lesson(db, auth: AuthContext, data: dict):
    enrollment = _load_enrollment(db, auth, data)
    lesson = lesson_progress.lesson_for_enrollment(db, enrollment, (data or {}).get("lessonId"))
    return enrollment, lesson


def lesson_start(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    enrollment, lesson = _enrollment_and_lesson(db, auth, data)
    progress = lesson_progress.start_lesson(db, enrollment=enrollment, lesson=lesson, actor=auth)
    return {"progress": lesson_progress.serialize_progress(progress), "enrollment": _serialize_enrollment(enrollment)}


def lesson_progress_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    enrollment, lesson = _enrollment_and_lesson(db, auth, data)
    d = data or {}
    res = lesson_progress.update_progress(
        db,
        enrollment=enrollment,
        lesson=lesson,
        position_sec=d.get("positionSec"),
        consumed_sec=d.get("consumedSec"),
        progress_pct=d.get("progressPct"),
        actor=auth,
        cfg=cfg,
    )
    return {
        "progress": lesson_progress.serialize_progress(res["progress"]),
        "autoCompleted": res["autoCompleted"],
        "enrollment": _serialize_enrollment(enrollment),
    }


def lesson_view(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    enrollment, lesson = _enrollment_and_lesson(db, auth, data)
    progress = lesson_progress.mark_viewed(db, enrollment=enrollment, lesson=lesson, actor=auth)
    return {"progress": lesson_progress.serialize_progress(progress), "contentUrl": lesson.content_url}


def lesson_complete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    enrollment, lesson = _enrollment_and_lesson(db, auth, data)
    if lesson.type == "quiz":
        raise ApiError("BAD_REQUEST", "Quiz lessons are completed by passing the quiz")
    progress, changed = lesson_progress.complete_lesson(db, enrollment=enrollment, lesson=lesson, actor=auth, cfg=cfg)
    return {
        "progress": lesson_progress.serialize_progress(progress),
        "changed": changed,
        "enrollment": _serialize_enrollment(enrollment),
    }


# ---- quizzes ----


def quiz_attempt_start(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    _load_enrollment(db, auth, data)
    return quiz_grading.start_attempt(
        db,
        enrollment_id=(data or {}).get("enrollmentId"),
        lesson_id=(data or {}).get("lessonId"),
        actor=auth,
    )


def quiz_attempt_submit(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    _load_enrollment(db, auth, data)
    return quiz_grading.submit_attempt(
        db,
        enrollment_id=(data or {}).get("enrollmentId"),
        lesson_id=(data or {}).get("lessonId"),
        attempt_no=(data or {}).get("attemptNo"),
        answers=(data or {}).get("answers"),
        actor=auth,
        cfg=cfg,
    )


def quiz_attempts_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    enrollment, lesson = _enrollment_and_lesson(db, auth, data)
    return quiz_grading.list_attempts(db, enrollment=enrollment, lesson=lesson)


# ---- certificates ----


def certificate_issue(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    d = data or {}
    employee_id = str(d.get("employeeId") or "").strip()
    if not employee_id:
        raise ApiError("BAD_REQUEST", "Missing employeeId")
    course_id = to_int_or_none(d.get("courseId"))
    path_id = to_int_or_none(d.get("pathId"))
    if bool(course_id) == bool(path_id):
        raise ApiError("BAD_REQUEST", "Provide exactly one of courseId or pathId")

    if course_id:
        cert, created = certificates.generate_for_course(db, employee_id=employee_id, course_id=course_id, cfg=cfg)
    else:
        cert, created = certificates.generate_for_learning_path(db, employee_id=employee_id, path_id=path_id, cfg=cfg)
    return {"certificate": certificates.serialize_certificate(cert), "created": created}


def certificates_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    employee_id = _target_employee(db, auth, data)
    rows = (
        db.execute(select(Certificate).where(Certificate.employee_id == employee_id).order_by(Certificate.issued_date.desc(), Certificate.id.desc()))
        .scalars()
        .all()
    )
    return {"items": [certificates.serialize_certificate(c) for c in rows], "total": len(rows)}


def certificate_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    certificate_id = str((data or {}).get("certificateId") or "").strip()
    if not certificate_id:
        raise ApiError("BAD_REQUEST", "Missing certificateId")
    cert = db.execute(select(Certificate).where(Certificate.certificate_id == certificate_id)).scalar_one_or_none()
    if not cert:
        raise ApiError("NOT_FOUND", "Certificate not found")
    assert_employee_access(db, auth, cert.employee_id)
    return certificates.serialize_certificate(cert)
