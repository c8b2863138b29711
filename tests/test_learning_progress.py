from __future__ import annotations

import json
from datetime import date

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select

from db import SessionLocal
from models import AuditLog, Certificate, CourseLesson, Employee, LessonProgress, User
from services import enrollments
from services.enrollments import _pct
from services.certificates import generate_for_course
from utils import iso_utc_now


def _seed_user(*, user_id: str, email: str, role: str) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName="Test User",
                role=role,
                status="ACTIVE",
                lastLoginAt="",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def _seed_employee(*, employee_id: str, user_id: str) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            Employee(
                employeeId=employee_id,
                userId=user_id,
                employeeName="Quinn Learner",
                email=f"{employee_id.lower()}@example.com",
                department="Engineering",
                currentRole="Engineer",
                status="ACTIVE",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _login(client, *, email: str) -> str:
    res = _api(client, {"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": f"TEST:{email}"}})
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    return body["data"]["sessionToken"]


def _ok(res) -> dict:
    body = res.get_json()
    assert body["ok"] is True, body
    return body["data"]


def _tokens(client) -> tuple[str, str]:
    _seed_user(user_id="USR-ADMIN", email="admin@example.com", role="ADMIN")
    _seed_user(user_id="USR-EMP", email="learner@example.com", role="EMPLOYEE")
    _seed_employee(employee_id="EMP-0001", user_id="USR-EMP")
    return _login(client, email="admin@example.com"), _login(client, email="learner@example.com")


def _course(client, token: str, title: str, *, metadata: dict | None = None, lessons: int = 1) -> dict:
    return _ok(
        _api(
            client,
            {
                "action": "COURSE_CREATE",
                "token": token,
                "data": {
                    "title": title,
                    "metadata": metadata or {},
                    "lessons": [{"title": f"{title} part {i + 1}", "type": "video", "durationEstMin": 10} for i in range(lessons)],
                },
            },
        )
    )


def _enroll(client, token: str, course_id: int) -> int:
    out = _ok(_api(client, {"action": "ENROLLMENT_CREATE", "token": token, "data": {"courseId": course_id}}))
    return out["enrollment"]["enrollmentId"]


def _complete(client, token: str, enrollment_id: int, lesson_id: int) -> dict:
    return _ok(_api(client, {"action": "LESSON_COMPLETE", "token": token, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))


def test_completing_a_lesson_twice_changes_nothing(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    course = _course(client, admin, "Onboarding", lessons=2)
    enrollment_id = _enroll(client, learner, course["courseId"])
    lesson_id = course["lessons"][0]["lessonId"]

    first = _complete(client, learner, enrollment_id, lesson_id)
    assert first["changed"] is True
    assert first["progress"]["status"] == "completed"
    assert first["enrollment"]["progressPct"] == 50
    assert first["enrollment"]["status"] == "in_progress"

    second = _complete(client, learner, enrollment_id, lesson_id)
    assert second["changed"] is False
    assert second["progress"]["completedAt"] == first["progress"]["completedAt"]
    assert second["enrollment"]["progressPct"] == 50

    with SessionLocal() as db:
        lesson = db.execute(select(CourseLesson).where(CourseLesson.id == lesson_id)).scalar_one()
        assert lesson.completions_count == 1
        events = db.execute(
            select(func.count(AuditLog.logId)).where(AuditLog.entityType == "LESSON_PROGRESS").where(AuditLog.action == "LESSON_COMPLETE")
        ).scalar_one()
        assert events == 1


def test_media_lesson_auto_completes_near_the_end(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    course = _course(client, admin, "Video Course", lessons=1)
    enrollment_id = _enroll(client, learner, course["courseId"])
    lesson_id = course["lessons"][0]["lessonId"]

    out = _ok(
        _api(
            client,
            {
                "action": "LESSON_PROGRESS_UPDATE",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "positionSec": 300, "consumedSec": 300},
            },
        )
    )
    assert out["autoCompleted"] is False
    assert out["progress"]["status"] == "in_progress"

    out = _ok(
        _api(
            client,
            {
                "action": "LESSON_PROGRESS_UPDATE",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "positionSec": 545, "consumedSec": 560},
            },
        )
    )
    assert out["autoCompleted"] is True
    assert out["enrollment"]["status"] == "completed"
    assert out["enrollment"]["progressPct"] == 100


def test_progress_pct_outside_range_is_rejected(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    course = _course(client, admin, "Range Check", lessons=1)
    enrollment_id = _enroll(client, learner, course["courseId"])

    res = _api(
        client,
        {
            "action": "LESSON_PROGRESS_UPDATE",
            "token": learner,
            "data": {"enrollmentId": enrollment_id, "lessonId": course["lessons"][0]["lessonId"], "progressPct": 140},
        },
    )
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_path_progress_moves_in_thirds(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    courses = [_course(client, admin, name) for name in ("Course One", "Course Two", "Course Three")]

    path = _ok(
        _api(
            client,
            {
                "action": "LEARNING_PATH_CREATE",
                "token": admin,
                "data": {
                    "name": "New Manager Path",
                    "courseIds": [c["courseId"] for c in courses],
                    "metadata": {"certificate_enabled": True},
                },
            },
        )
    )
    assert path["status"] == "draft"
    assert path["slug"] == "new-manager-path"

    published = _ok(_api(client, {"action": "LEARNING_PATH_PUBLISH", "token": admin, "data": {"pathId": path["pathId"]}}))
    assert published["status"] == "published"

    res = _api(client, {"action": "LEARNING_PATH_PUBLISH", "token": admin, "data": {"pathId": path["pathId"]}})
    assert res.status_code == 409

    created = _ok(
        _api(
            client,
            {
                "action": "PATH_ENROLLMENT_CREATE",
                "token": admin,
                "data": {"employeeId": "EMP-0001", "pathId": path["pathId"], "dueDate": "2030-06-30"},
            },
        )
    )
    pe = created["pathEnrollment"]
    assert pe["progressPct"] == 0
    assert pe["status"] == "assigned"
    assert pe["totalCourses"] == 3
    assert pe["dueDate"] == "2030-06-30"
    assert all(c["enrollmentId"] for c in pe["courses"])

    seen = [pe["progressPct"]]
    for course, status in zip(courses, pe["courses"]):
        _complete(client, learner, status["enrollmentId"], course["lessons"][0]["lessonId"])
        current = _ok(_api(client, {"action": "PATH_ENROLLMENT_GET", "token": learner, "data": {"pathEnrollmentId": pe["pathEnrollmentId"]}}))
        seen.append(current["progressPct"])

    assert seen == [0, 33, 67, 100]
    assert current["status"] == "completed"
    assert current["nextCourseId"] is None

    certs = _ok(_api(client, {"action": "CERTIFICATES_LIST", "token": learner, "data": {}}))
    assert certs["total"] == 1
    assert certs["items"][0]["type"] == "learning_path"
    assert certs["items"][0]["pathId"] == path["pathId"]


def test_course_certificate_is_issued_once(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    course = _course(
        client,
        admin,
        "Compliance 101",
        metadata={"certificate_enabled": True, "certificate": {"validity_months": 12}},
    )
    enrollment_id = _enroll(client, learner, course["courseId"])
    _complete(client, learner, enrollment_id, course["lessons"][0]["lessonId"])

    certs = _ok(_api(client, {"action": "CERTIFICATES_LIST", "token": learner, "data": {}}))
    assert certs["total"] == 1
    issued = certs["items"][0]
    assert issued["type"] == "course"
    assert issued["isExpired"] is False
    assert issued["expiryDate"] == (date.fromisoformat(issued["issuedDate"]) + relativedelta(months=12)).isoformat()

    again = _ok(
        _api(client, {"action": "CERTIFICATE_ISSUE", "token": admin, "data": {"employeeId": "EMP-0001", "courseId": course["courseId"]}})
    )
    assert again["created"] is False
    assert again["certificate"]["certificateId"] == issued["certificateId"]

    with SessionLocal() as db:
        first, created_first = generate_for_course(db, employee_id="EMP-0001", course_id=course["courseId"])
        second, created_second = generate_for_course(db, employee_id="EMP-0001", course_id=course["courseId"])
        assert not created_first and not created_second
        assert first.certificate_id == second.certificate_id == issued["certificateId"]
        rows = db.execute(select(func.count(Certificate.id)).where(Certificate.employee_id == "EMP-0001")).scalar_one()
        assert rows == 1


def test_abandoned_enrollment_blocks_progress(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    course = _course(client, admin, "Optional Extras", lessons=1)
    enrollment_id = _enroll(client, learner, course["courseId"])

    abandoned = _ok(_api(client, {"action": "ENROLLMENT_ABANDON", "token": learner, "data": {"enrollmentId": enrollment_id}}))
    assert abandoned["status"] == "expired"

    res = _api(client, {"action": "LESSON_COMPLETE", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": course["lessons"][0]["lessonId"]}})
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "CONFLICT"


def test_percentages_round_half_up():
    assert _pct(1, 8) == 13
    assert _pct(5, 8) == 63
    assert _pct(1, 3) == 33
    assert _pct(9, 8) == 100
    assert _pct(1, 0) == 0


def test_path_enrolls_draft_courses_so_it_can_complete(app_client):
    _app, client = app_client
    admin, learner = _tokens(client)
    live = _course(client, admin, "Live Course")
    draft = _ok(
        _api(
            client,
            {
                "action": "COURSE_CREATE",
                "token": admin,
                "data": {"title": "Draft Course", "status": "draft", "lessons": [{"title": "Draft part 1", "type": "video", "durationEstMin": 5}]},
            },
        )
    )
    assert draft["status"] == "draft"

    res = _api(client, {"action": "ENROLLMENT_CREATE", "token": learner, "data": {"courseId": draft["courseId"]}})
    assert res.status_code == 409

    res = _api(client, {"action": "ENROLLMENT_CREATE", "token": learner, "data": {"courseId": draft["courseId"], "source": "path"}})
    assert res.status_code == 400

    path = _ok(
        _api(
            client,
            {"action": "LEARNING_PATH_CREATE", "token": admin, "data": {"name": "Mixed Path", "courseIds": [live["courseId"], draft["courseId"]]}},
        )
    )
    _ok(_api(client, {"action": "LEARNING_PATH_PUBLISH", "token": admin, "data": {"pathId": path["pathId"]}}))
    pe = _ok(
        _api(client, {"action": "PATH_ENROLLMENT_CREATE", "token": admin, "data": {"employeeId": "EMP-0001", "pathId": path["pathId"]}})
    )["pathEnrollment"]
    assert pe["totalCourses"] == 2
    assert all(c["enrollmentId"] for c in pe["courses"])

    for course, status in zip([live, draft], pe["courses"]):
        _complete(client, learner, status["enrollmentId"], course["lessons"][0]["lessonId"])

    current = _ok(_api(client, {"action": "PATH_ENROLLMENT_GET", "token": learner, "data": {"pathEnrollmentId": pe["pathEnrollmentId"]}}))
    assert current["progressPct"] == 100
    assert current["status"] == "completed"


def test_failure_inside_completion_rolls_back_the_lesson(app_client, monkeypatch):
    _app, client = app_client
    admin, learner = _tokens(client)
    course = _course(client, admin, "Rollback Course", lessons=2)
    enrollment_id = _enroll(client, learner, course["courseId"])
    lesson_id = course["lessons"][0]["lessonId"]

    def _boom(*_args, **_kwargs):
        raise RuntimeError("progress store unavailable")

    original = enrollments.update_course_progress
    monkeypatch.setattr(enrollments, "update_course_progress", _boom)
    res = _api(client, {"action": "LESSON_COMPLETE", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}})
    assert res.status_code == 500
    assert res.get_json()["error"]["code"] == "INTERNAL"

    with SessionLocal() as db:
        rows = db.execute(
            select(LessonProgress).where(LessonProgress.enrollment_id == enrollment_id).where(LessonProgress.lesson_id == lesson_id)
        ).scalars().all()
        assert all(r.status != "completed" for r in rows)
        lesson = db.execute(select(CourseLesson).where(CourseLesson.id == lesson_id)).scalar_one()
        assert lesson.completions_count == 0

    monkeypatch.setattr(enrollments, "update_course_progress", original)
    out = _complete(client, learner, enrollment_id, lesson_id)
    assert out["changed"] is True
    assert out["enrollment"]["progressPct"] == 50
