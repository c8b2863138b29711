from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from db import SessionLocal
from models import Employee, LessonQuiz, QuizAttempt, User
from services import quiz_grading
from services.quiz_grading import TIME_LIMIT_EXCEEDED, calculate_score, grade_letter
from utils import iso_utc_now, to_iso_utc


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


def _setup(client) -> tuple[str, int, int, int]:
    _seed_user(user_id="USR-ADMIN", email="admin@example.com", role="ADMIN")
    _seed_user(user_id="USR-EMP", email="learner@example.com", role="EMPLOYEE")
    _seed_employee(employee_id="EMP-0001", user_id="USR-EMP")
    admin = _login(client, email="admin@example.com")

    course = _ok(
        _api(
            client,
            {
                "action": "COURSE_CREATE",
                "token": admin,
                "data": {
                    "title": "Security Basics",
                    "lessons": [
                        {"title": "Welcome", "type": "video", "durationEstMin": 10, "contentUrl": "https://cdn.example.com/welcome.mp4"},
                        {
                            "title": "Knowledge Check",
                            "type": "quiz",
                            "quiz": {
                                "passingScore": 80,
                                "attemptsAllowed": 3,
                                "questions": [
                                    {
                                        "prompt": "Pick A",
                                        "type": "single",
                                        "options": [{"label": "A", "isCorrect": True}, {"label": "X"}],
                                    },
                                    {
                                        "prompt": "Pick B and C",
                                        "type": "multi",
                                        "options": [
                                            {"label": "B", "isCorrect": True},
                                            {"label": "C", "isCorrect": True},
                                            {"label": "D"},
                                        ],
                                    },
                                ],
                            },
                        },
                    ],
                },
            },
        )
    )
    quiz_lesson_id = course["lessons"][1]["lessonId"]
    assert course["lessons"][1]["quizId"]

    learner = _login(client, email="learner@example.com")
    enrollment = _ok(_api(client, {"action": "ENROLLMENT_CREATE", "token": learner, "data": {"courseId": course["courseId"]}}))
    assert enrollment["created"] is True
    assert enrollment["enrollment"]["source"] == "self_enroll"
    return learner, course["courseId"], enrollment["enrollment"]["enrollmentId"], quiz_lesson_id


def _option_ids(questions: list[dict]) -> dict[str, int]:
    return {o["label"]: o["optionId"] for q in questions for o in q["options"]}


def _question_ids(questions: list[dict]) -> dict[str, int]:
    return {q["prompt"]: q["questionId"] for q in questions}


def test_grading_single_and_multi_choice():
    questions = [
        {"id": 1, "weight": 1, "correct": {"10"}},
        {"id": 2, "weight": 1, "correct": {"20", "21"}},
    ]

    full = calculate_score(80, questions, {"1": "10", "2": ["20", "21"]})
    assert full["score"] == 100
    assert full["passed"] is True

    partial = calculate_score(80, questions, {"1": "10", "2": ["20"]})
    assert partial["score"] == 50
    assert partial["passed"] is False
    assert [q["isCorrect"] for q in partial["perQuestion"]] == [True, False]

    # A superset of the correct options is still wrong.
    over = calculate_score(80, questions, {"1": "10", "2": ["20", "21", "22"]})
    assert over["score"] == 50


def test_grading_with_no_questions_scores_zero():
    out = calculate_score(0, [], {})
    assert out["score"] == 0
    assert out["totalWeight"] == 0


def test_grade_letters():
    assert grade_letter(95) == "A"
    assert grade_letter(80) == "B"
    assert grade_letter(59) == "F"


def test_attempt_numbers_increase_until_limit(app_client):
    _app, client = app_client
    learner, _course_id, enrollment_id, lesson_id = _setup(client)

    numbers = []
    for _ in range(3):
        started = _ok(_api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
        numbers.append(started["attemptNo"])
        for q in started["questions"]:
            assert all("isCorrect" not in o for o in q["options"])
    assert numbers == [1, 2, 3]
    assert started["attemptsRemaining"] == 0

    res = _api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}})
    assert res.status_code == 409
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "CONFLICT"


def test_failed_then_passed_attempt_completes_quiz_lesson(app_client):
    _app, client = app_client
    learner, _course_id, enrollment_id, lesson_id = _setup(client)

    started = _ok(_api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
    opts = _option_ids(started["questions"])
    qids = _question_ids(started["questions"])

    partial = {str(qids["Pick A"]): opts["A"], str(qids["Pick B and C"]): [opts["B"]]}
    first = _ok(
        _api(
            client,
            {
                "action": "QUIZ_ATTEMPT_SUBMIT",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "attemptNo": 1, "answers": partial},
            },
        )
    )
    assert first["score"] == 50
    assert first["isPassed"] is False
    assert first["canRetry"] is True
    assert first["lessonCompleted"] is False

    started = _ok(_api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
    assert started["attemptNo"] == 2
    full = {str(qids["Pick A"]): opts["A"], str(qids["Pick B and C"]): [opts["C"], opts["B"]]}
    second = _ok(
        _api(
            client,
            {
                "action": "QUIZ_ATTEMPT_SUBMIT",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "attemptNo": 2, "answers": full},
            },
        )
    )
    assert second["score"] == 100
    assert second["isPassed"] is True
    assert second["lessonCompleted"] is True

    # Resubmitting returns the stored result without regrading.
    again = _ok(
        _api(
            client,
            {
                "action": "QUIZ_ATTEMPT_SUBMIT",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "attemptNo": 1, "answers": full},
            },
        )
    )
    assert again["alreadySubmitted"] is True
    assert again["score"] == 50

    listing = _ok(_api(client, {"action": "QUIZ_ATTEMPTS_LIST", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
    assert [a["attemptNo"] for a in listing["items"]] == [1, 2]
    assert listing["bestAttempt"]["attemptNo"] == 2

    enrollment = _ok(_api(client, {"action": "ENROLLMENT_GET", "token": learner, "data": {"enrollmentId": enrollment_id}}))
    assert enrollment["progressPct"] == 50
    assert enrollment["status"] == "in_progress"
    assert enrollment["hasPassedAllQuizzes"] is True


def test_quiz_lesson_cannot_be_completed_directly(app_client):
    _app, client = app_client
    learner, _course_id, enrollment_id, lesson_id = _setup(client)

    res = _api(client, {"action": "LESSON_COMPLETE", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_half_point_score_rounds_up_to_pass():
    questions = [
        {"id": 1, "weight": 1, "correct": {"a"}},
        {"id": 2, "weight": 7, "correct": {"b"}},
    ]
    out = calculate_score(13, questions, {"1": "a", "2": "x"})
    assert out["score"] == 13
    assert out["passed"] is True


def _set_quiz(lesson_id: int, **fields) -> None:
    with SessionLocal() as db:
        quiz = db.execute(select(LessonQuiz).where(LessonQuiz.lesson_id == lesson_id)).scalar_one()
        for k, v in fields.items():
            setattr(quiz, k, v)
        db.commit()


def _age_attempt(enrollment_id: int, lesson_id: int, attempt_no: int, *, minutes: int) -> None:
    with SessionLocal() as db:
        attempt = db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.enrollment_id == enrollment_id)
            .where(QuizAttempt.lesson_id == lesson_id)
            .where(QuizAttempt.attempt_no == attempt_no)
        ).scalar_one()
        attempt.started_at = to_iso_utc(datetime.now(timezone.utc) - timedelta(minutes=minutes))
        db.commit()


def _full_answers(questions: list[dict]) -> dict:
    opts = _option_ids(questions)
    qids = _question_ids(questions)
    return {str(qids["Pick A"]): opts["A"], str(qids["Pick B and C"]): [opts["B"], opts["C"]]}


def test_submission_past_time_limit_scores_zero(app_client):
    _app, client = app_client
    learner, _course_id, enrollment_id, lesson_id = _setup(client)
    _set_quiz(lesson_id, time_limit_minutes=1)

    started = _ok(_api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
    assert started["timeRemainingSeconds"] <= 60
    _age_attempt(enrollment_id, lesson_id, 1, minutes=10)

    out = _ok(
        _api(
            client,
            {
                "action": "QUIZ_ATTEMPT_SUBMIT",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "attemptNo": 1, "answers": _full_answers(started["questions"])},
            },
        )
    )
    assert out["status"] == "timed_out"
    assert out["reason"] == TIME_LIMIT_EXCEEDED
    assert out["score"] == 0
    assert out["isPassed"] is False
    assert out["lessonCompleted"] is False
    assert out["canRetry"] is True


def test_time_limit_can_be_switched_off(app_client, monkeypatch):
    app, client = app_client
    monkeypatch.setattr(app.config["CFG"], "QUIZ_ENFORCE_TIME_LIMIT", False)
    learner, _course_id, enrollment_id, lesson_id = _setup(client)
    _set_quiz(lesson_id, time_limit_minutes=1)

    started = _ok(_api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
    _age_attempt(enrollment_id, lesson_id, 1, minutes=10)

    out = _ok(
        _api(
            client,
            {
                "action": "QUIZ_ATTEMPT_SUBMIT",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "attemptNo": 1, "answers": _full_answers(started["questions"])},
            },
        )
    )
    assert out["status"] == "submitted"
    assert out["reason"] == ""
    assert out["score"] == 100
    assert out["timeTakenSeconds"] >= 600


def test_shuffled_presentation_grades_by_option_id(app_client, monkeypatch):
    _app, client = app_client
    learner, _course_id, enrollment_id, lesson_id = _setup(client)
    _set_quiz(lesson_id, randomize_questions=True, randomize_options=True)
    monkeypatch.setattr(quiz_grading.random, "sample", lambda seq, k: list(reversed(seq))[:k])
    monkeypatch.setattr(quiz_grading.random, "shuffle", lambda seq: seq.reverse())

    started = _ok(_api(client, {"action": "QUIZ_ATTEMPT_START", "token": learner, "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id}}))
    assert [q["prompt"] for q in started["questions"]] == ["Pick B and C", "Pick A"]
    assert [o["label"] for o in started["questions"][0]["options"]] == ["D", "C", "B"]

    out = _ok(
        _api(
            client,
            {
                "action": "QUIZ_ATTEMPT_SUBMIT",
                "token": learner,
                "data": {"enrollmentId": enrollment_id, "lessonId": lesson_id, "attemptNo": 1, "answers": _full_answers(started["questions"])},
            },
        )
    )
    assert out["score"] == 100
    assert out["isPassed"] is True
