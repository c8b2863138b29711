from __future__ import annotations

import logging
import random
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from actions.helpers import append_audit
from models import CourseLesson, Enrollment, LessonQuiz, QuizAttempt, QuizOption, QuizQuestion
from services import lesson_progress
from services.enrollments import best_attempt, lock_enrollment
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe, round_half_up, safe_json_load, safe_json_string


_log = logging.getLogger("lms")

QUESTION_TYPES = {"single", "multi"}
TIME_LIMIT_EXCEEDED = "TIME_LIMIT_EXCEEDED"
# Network slack between the client's timer hitting zero and the submit arriving.
TIME_LIMIT_GRACE_SECONDS = 5

GRADE_THRESHOLDS = [(90, "A"), (80, "B"), (70, "C"), (60, "D")]


def grade_letter(score: int) -> str:
    for floor, letter in GRADE_THRESHOLDS:
        if score >= floor:
            return letter
    return "F"


def _normalize_answer(raw: Any) -> set[str]:
    if raw is None or raw == "":
        return set()
    if isinstance(raw, (list, tuple, set)):
        return {str(x).strip() for x in raw if str(x).strip()}
    return {str(raw).strip()}


def calculate_score(passing_score: int, questions: list[dict[str, Any]], answers: dict[str, Any]) -> dict[str, Any]:
    """
    Grade one submission.

    `questions` items: {"id", "weight", "correct": set of option ids}. `answers` maps question id
    to the selected option id(s). A question counts only on exact set equality with the correct
    options; there is no partial credit.
    """

    answers = answers or {}
    earned = 0.0
    total = 0.0
    per_question = []
    for q in questions:
        qid = str(q["id"])
        weight = float(q.get("weight") or 0)
        correct = {str(x) for x in q.get("correct") or set()}
        selected = _normalize_answer(answers.get(qid))
        is_correct = not (selected ^ correct)

        total += weight
        if is_correct:
            earned += weight
        per_question.append(
            {
                "questionId": q["id"],
                "selected": sorted(selected),
                "correctOptions": sorted(correct),
                "isCorrect": is_correct,
                "weight": weight,
            }
        )

    score = round_half_up(100 * earned / total) if total > 0 else 0
    return {
        "score": score,
        "passed": score >= int(passing_score or 0),
        "earnedWeight": earned,
        "totalWeight": total,
        "perQuestion": per_question,
    }


def quiz_for_lesson(db, lesson: CourseLesson) -> LessonQuiz:
    if lesson.type != "quiz":
        raise ApiError("BAD_REQUEST", "Lesson is not a quiz")
    quiz = db.execute(select(LessonQuiz).where(LessonQuiz.lesson_id == lesson.id)).scalar_one_or_none()
    if not quiz:
        raise ApiError("NOT_FOUND", "Quiz not found")
    return quiz


def _questions(db, quiz_id: int) -> list[QuizQuestion]:
    return list(
        db.execute(
            select(QuizQuestion)
            .where(QuizQuestion.quiz_id == quiz_id)
            .order_by(QuizQuestion.order_index.asc(), QuizQuestion.id.asc())
        )
        .scalars()
        .all()
    )


def _options_by_question(db, question_ids: list[int]) -> dict[int, list[QuizOption]]:
    out: dict[int, list[QuizOption]] = {qid: [] for qid in question_ids}
    if not question_ids:
        return out
    rows = (
        db.execute(
            select(QuizOption)
            .where(QuizOption.question_id.in_(question_ids))
            .order_by(QuizOption.order_index.asc(), QuizOption.id.asc())
        )
        .scalars()
        .all()
    )
    for o in rows:
        out.setdefault(o.question_id, []).append(o)
    return out


def question_defs(db, quiz_id: int) -> list[dict[str, Any]]:
    qs = _questions(db, quiz_id)
    opts = _options_by_question(db, [q.id for q in qs])
    return [
        {
            "id": q.id,
            "weight": float(q.weight or 0),
            "correct": {str(o.id) for o in opts.get(q.id, []) if o.is_correct},
        }
        for q in qs
    ]


def attempt_count(db, *, lesson_id: int, enrollment_id: int) -> int:
    return int(
        db.execute(
            select(func.count(QuizAttempt.id))
            .where(QuizAttempt.lesson_id == lesson_id)
            .where(QuizAttempt.enrollment_id == enrollment_id)
        ).scalar_one()
        or 0
    )


def can_user_attempt(db, quiz: LessonQuiz, enrollment: Enrollment) -> bool:
    if quiz.attempts_allowed is None:
        return True
    return attempt_count(db, lesson_id=quiz.lesson_id, enrollment_id=enrollment.id) < int(quiz.attempts_allowed)


def attempts_remaining(db, quiz: LessonQuiz, enrollment: Enrollment) -> Optional[int]:
    if quiz.attempts_allowed is None:
        return None
    used = attempt_count(db, lesson_id=quiz.lesson_id, enrollment_id=enrollment.id)
    return max(0, int(quiz.attempts_allowed) - used)


def next_attempt_number(db, *, lesson_id: int, enrollment_id: int) -> int:
    current = db.execute(
        select(func.max(QuizAttempt.attempt_no))
        .where(QuizAttempt.lesson_id == lesson_id)
        .where(QuizAttempt.enrollment_id == enrollment_id)
    ).scalar_one()
    return int(current or 0) + 1


def time_remaining_seconds(quiz: LessonQuiz, attempt: QuizAttempt, *, now: Optional[datetime] = None) -> Optional[int]:
    if not quiz.time_limit_minutes:
        return None
    started = parse_datetime_maybe(attempt.started_at)
    if not started:
        return int(quiz.time_limit_minutes) * 60
    now = now or datetime.now(timezone.utc)
    elapsed = int((now - started).total_seconds())
    return max(0, int(quiz.time_limit_minutes) * 60 - elapsed)


def presentation(db, quiz: LessonQuiz) -> list[dict[str, Any]]:
    """Questions and options as shown to the learner; correct flags are never included."""

    qs = _questions(db, quiz.id)
    opts = _options_by_question(db, [q.id for q in qs])
    if quiz.randomize_questions:
        qs = random.sample(qs, len(qs))

    out = []
    for q in qs:
        options = list(opts.get(q.id, []))
        if quiz.randomize_options:
            random.shuffle(options)
        out.append(
            {
                "questionId": q.id,
                "prompt": q.prompt,
                "type": q.type,
                "weight": float(q.weight or 0),
                "options": [{"optionId": o.id, "label": o.label} for o in options],
            }
        )
    return out


def start_attempt(db, *, enrollment_id: Any, lesson_id: Any, actor: AuthContext) -> dict[str, Any]:
    # Locking the enrollment serializes attempt creation for this learner.
    enrollment = lock_enrollment(db, enrollment_id=enrollment_id)
    if enrollment.status == "expired":
        raise ApiError("CONFLICT", "Enrollment is expired", http_status=409)
    lesson = lesson_progress.lesson_for_enrollment(db, enrollment, lesson_id)
    quiz = quiz_for_lesson(db, lesson)

    if not can_user_attempt(db, quiz, enrollment):
        raise ApiError("CONFLICT", "No attempts remaining for this quiz", http_status=409)

    now = iso_utc_now()
    attempt = QuizAttempt(
        lesson_id=lesson.id,
        enrollment_id=enrollment.id,
        quiz_id=quiz.id,
        attempt_no=next_attempt_number(db, lesson_id=lesson.id, enrollment_id=enrollment.id),
        status="in_progress",
        answers_json="{}",
        results_json="[]",
        score=0,
        is_passed=False,
        started_at=now,
    )
    try:
        with db.begin_nested():
            db.add(attempt)
    except IntegrityError:
        raise ApiError("CONFLICT", "Another attempt was started at the same time; retry", http_status=409)

    lesson_progress.start_lesson(db, enrollment=enrollment, lesson=lesson, actor=actor)

    append_audit(
        db,
        entityType="QUIZ_ATTEMPT",
        entityId=str(attempt.id),
        action="QUIZ_ATTEMPT_START",
        stageTag="QUIZ_ATTEMPT_START",
        toState="in_progress",
        actor=actor,
        at=now,
        meta={"lessonId": lesson.id, "enrollmentId": enrollment.id, "attemptNo": attempt.attempt_no},
    )

    return {
        "attemptId": attempt.id,
        "attemptNo": attempt.attempt_no,
        "lessonId": lesson.id,
        "quizId": quiz.id,
        "title": quiz.title,
        "passingScore": int(quiz.passing_score or 0),
        "timeLimitMinutes": quiz.time_limit_minutes,
        "timeRemainingSeconds": time_remaining_seconds(quiz, attempt),
        "attemptsRemaining": attempts_remaining(db, quiz, enrollment),
        "questions": presentation(db, quiz),
    }


def _lock_attempt(db, *, lesson_id: int, enrollment_id: int, attempt_no: Any) -> QuizAttempt:
    try:
        no = int(attempt_no)
    except Exception:
        raise ApiError("BAD_REQUEST", "Missing attemptNo")
    row = (
        db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.lesson_id == lesson_id)
            .where(QuizAttempt.enrollment_id == enrollment_id)
            .where(QuizAttempt.attempt_no == no)
            .with_for_update(of=QuizAttempt)
        )
        .scalars()
        .first()
    )
    if not row:
        raise ApiError("NOT_FOUND", "Quiz attempt not found")
    return row


def serialize_attempt(attempt: QuizAttempt, *, include_results: bool = True) -> dict[str, Any]:
    out = {
        "attemptId": attempt.id,
        "attemptNo": attempt.attempt_no,
        "status": attempt.status,
        "score": int(attempt.score or 0),
        "isPassed": bool(attempt.is_passed),
        "grade": grade_letter(int(attempt.score or 0)),
        "startedAt": attempt.started_at or "",
        "submittedAt": attempt.submitted_at or "",
        "timeTakenSeconds": int(attempt.time_taken_seconds or 0),
    }
    if include_results:
        out["results"] = safe_json_load(attempt.results_json, [])
    return out


def submit_attempt(
    db,
    *,
    enrollment_id: Any,
    lesson_id: Any,
    attempt_no: Any,
    answers: Any,
    actor: AuthContext,
    cfg: Any = None,
) -> dict[str, Any]:
    if answers is None:
        answers = {}
    if not isinstance(answers, dict):
        raise ApiError("BAD_REQUEST", "answers must be an object of questionId -> optionId(s)")

    enrollment = lock_enrollment(db, enrollment_id=enrollment_id)
    lesson = lesson_progress.lesson_for_enrollment(db, enrollment, lesson_id)
    quiz = quiz_for_lesson(db, lesson)
    attempt = _lock_attempt(db, lesson_id=lesson.id, enrollment_id=enrollment.id, attempt_no=attempt_no)
    show = bool(quiz.show_results_immediately)

    if attempt.status != "in_progress":
        out = serialize_attempt(attempt, include_results=show)
        out["alreadySubmitted"] = True
        return out

    now_dt = datetime.now(timezone.utc)
    now = iso_utc_now()
    started = parse_datetime_maybe(attempt.started_at)
    taken = max(0, int((now_dt - started).total_seconds())) if started else 0

    enforce = bool(getattr(cfg, "QUIZ_ENFORCE_TIME_LIMIT", True))
    limit_sec = int(quiz.time_limit_minutes or 0) * 60
    timed_out = enforce and limit_sec > 0 and taken > limit_sec + TIME_LIMIT_GRACE_SECONDS

    attempt.answers_json = safe_json_string({str(k): v for k, v in answers.items()}, "{}")
    attempt.submitted_at = now
    attempt.time_taken_seconds = taken

    reason = ""
    if timed_out:
        attempt.status = "timed_out"
        attempt.score = 0
        attempt.is_passed = False
        attempt.results_json = "[]"
        reason = TIME_LIMIT_EXCEEDED
    else:
        graded = calculate_score(int(quiz.passing_score or 0), question_defs(db, quiz.id), answers)
        attempt.status = "submitted"
        attempt.score = int(graded["score"])
        attempt.is_passed = bool(graded["passed"])
        attempt.results_json = safe_json_string(graded["perQuestion"], "[]")

    db.flush()
    append_audit(
        db,
        entityType="QUIZ_ATTEMPT",
        entityId=str(attempt.id),
        action="QUIZ_ATTEMPT_SUBMIT",
        stageTag="QUIZ_ATTEMPT_SUBMIT",
        fromState="in_progress",
        toState=attempt.status,
        remark=reason,
        actor=actor,
        at=now,
        meta={"lessonId": lesson.id, "enrollmentId": enrollment.id, "score": attempt.score, "passed": bool(attempt.is_passed)},
    )
    _log.info(
        "quiz attempt=%s lesson=%s enrollment=%s score=%s passed=%s",
        attempt.id,
        lesson.id,
        enrollment.id,
        attempt.score,
        bool(attempt.is_passed),
    )

    lesson_completed = False
    if attempt.is_passed:
        _, lesson_completed = lesson_progress.complete_lesson(db, enrollment=enrollment, lesson=lesson, actor=actor, cfg=cfg)

    remaining = attempts_remaining(db, quiz, enrollment)
    out = serialize_attempt(attempt, include_results=show)
    out.update(
        {
            "alreadySubmitted": False,
            "reason": reason,
            "passingScore": int(quiz.passing_score or 0),
            "lessonCompleted": lesson_completed,
            "canRetry": (not attempt.is_passed) and can_user_attempt(db, quiz, enrollment),
            "attemptsRemaining": remaining,
        }
    )
    return out


def list_attempts(db, *, enrollment: Enrollment, lesson: CourseLesson) -> dict[str, Any]:
    quiz = quiz_for_lesson(db, lesson)
    rows = (
        db.execute(
            select(QuizAttempt)
            .where(QuizAttempt.lesson_id == lesson.id)
            .where(QuizAttempt.enrollment_id == enrollment.id)
            .order_by(QuizAttempt.attempt_no.asc())
        )
        .scalars()
        .all()
    )
    best = best_attempt(db, lesson_id=lesson.id, enrollment_id=enrollment.id)
    show = bool(quiz.show_results_immediately)
    return {
        "items": [serialize_attempt(a, include_results=show) for a in rows],
        "bestAttempt": serialize_attempt(best, include_results=show) if best else None,
        "attemptsRemaining": attempts_remaining(db, quiz, enrollment),
        "canAttempt": can_user_attempt(db, quiz, enrollment),
    }
