from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import append_audit
from models import Course, CourseLesson, LearningPath, LearningPathCourse, LessonQuiz, QuizOption, QuizQuestion
from services.lesson_progress import LESSON_TYPES
from services.quiz_grading import QUESTION_TYPES
from services.review_cycles import slugify
from utils import ApiError, AuthContext, iso_utc_now, safe_json_load, safe_json_string, to_bool


COURSE_STATUSES = {"draft", "active", "archived"}
LESSON_STATUSES = {"active", "draft", "archived"}


def _int_or(value: Any, default: Any, field: str) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ApiError("BAD_REQUEST", f"Invalid {field}")
    try:
        return int(value)
    except Exception:
        raise ApiError("BAD_REQUEST", f"Invalid {field}")


def _metadata(raw: Any) -> dict[str, Any]:
    if raw in (None, ""):
        return {}
    if not isinstance(raw, dict):
        raise ApiError("BAD_REQUEST", "metadata must be an object")
    cert = raw.get("certificate")
    if cert is not None and not isinstance(cert, dict):
        raise ApiError("BAD_REQUEST", "metadata.certificate must be an object")
    if isinstance(cert, dict) and cert.get("validity_months") not in (None, ""):
        if _int_or(cert.get("validity_months"), 0, "validity_months") <= 0:
            raise ApiError("BAD_REQUEST", "validity_months must be > 0")
    return raw


def _validate_question(q: Any, idx: int) -> dict[str, Any]:
    if not isinstance(q, dict):
        raise ApiError("BAD_REQUEST", f"Question {idx} must be an object")
    prompt = str(q.get("prompt") or "").strip()
    if not prompt:
        raise ApiError("BAD_REQUEST", f"Question {idx} is missing prompt")
    qtype = str(q.get("type") or "single").strip().lower()
    if qtype not in QUESTION_TYPES:
        raise ApiError("BAD_REQUEST", f"Question {idx} has invalid type: {qtype}")
    try:
        weight = float(q.get("weight") if q.get("weight") is not None else 1)
    except Exception:
        raise ApiError("BAD_REQUEST", f"Question {idx} has invalid weight")
    if weight <= 0:
        raise ApiError("BAD_REQUEST", f"Question {idx} weight must be > 0")

    options = q.get("options")
    if not isinstance(options, list) or len(options) < 2:
        raise ApiError("BAD_REQUEST", f"Question {idx} needs at least two options")
    clean_opts = []
    for o in options:
        if not isinstance(o, dict) or not str(o.get("label") or "").strip():
            raise ApiError("BAD_REQUEST", f"Question {idx} has an option without label")
        clean_opts.append({"label": str(o["label"]).strip(), "isCorrect": to_bool(o.get("isCorrect"))})

    n_correct = sum(1 for o in clean_opts if o["isCorrect"])
    if qtype == "single" and n_correct != 1:
        raise ApiError("BAD_REQUEST", f"Question {idx} (single) needs exactly one correct option")
    if qtype == "multi" and n_correct < 1:
        raise ApiError("BAD_REQUEST", f"Question {idx} (multi) needs at least one correct option")

    return {"prompt": prompt, "type": qtype, "weight": weight, "explanation": str(q.get("explanation") or ""), "options": clean_opts}


def _add_quiz(db, lesson: CourseLesson, quiz: Any) -> LessonQuiz:
    if not isinstance(quiz, dict):
        raise ApiError("BAD_REQUEST", f"Quiz lesson '{lesson.title}' needs a quiz definition")
    questions = quiz.get("questions")
    if not isinstance(questions, list) or not questions:
        raise ApiError("BAD_REQUEST", f"Quiz for '{lesson.title}' needs at least one question")
    clean = [_validate_question(q, i + 1) for i, q in enumerate(questions)]

    passing = _int_or(quiz.get("passingScore"), 80, "passingScore")
    if passing < 0 or passing > 100:
        raise ApiError("BAD_REQUEST", "passingScore must be between 0 and 100")
    attempts = _int_or(quiz.get("attemptsAllowed"), None, "attemptsAllowed")
    if attempts is not None and attempts < 1:
        raise ApiError("BAD_REQUEST", "attemptsAllowed must be >= 1")
    time_limit = _int_or(quiz.get("timeLimitMinutes"), None, "timeLimitMinutes")
    if time_limit is not None and time_limit < 1:
        raise ApiError("BAD_REQUEST", "timeLimitMinutes must be >= 1")

    row = LessonQuiz(
        lesson_id=lesson.id,
        title=str(quiz.get("title") or lesson.title),
        passing_score=passing,
        attempts_allowed=attempts,
        time_limit_minutes=time_limit,
        randomize_questions=to_bool(quiz.get("randomizeQuestions")),
        randomize_options=to_bool(quiz.get("randomizeOptions")),
        show_results_immediately=to_bool(quiz.get("showResultsImmediately"), True),
        created_at=iso_utc_now(),
    )
    db.add(row)
    db.flush()

    for qi, q in enumerate(clean):
        qrow = QuizQuestion(quiz_id=row.id, prompt=q["prompt"], type=q["type"], weight=q["weight"], order_index=qi, explanation=q["explanation"])
        db.add(qrow)
        db.flush()
        for oi, o in enumerate(q["options"]):
            db.add(QuizOption(question_id=qrow.id, label=o["label"], is_correct=o["isCorrect"], order_index=oi))
    return row


def create_course(
    db,
    *,
    title: str,
    actor: AuthContext,
    description: str = "",
    status: str = "active",
    metadata: Any = None,
    lessons: Any = None,
) -> Course:
    title = str(title or "").strip()
    if not title:
        raise ApiError("BAD_REQUEST", "Missing title")
    status = str(status or "active").strip().lower()
    if status not in COURSE_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid status: {status}")
    meta = _metadata(metadata)
    lessons = lessons or []
    if not isinstance(lessons, list):
        raise ApiError("BAD_REQUEST", "lessons must be a list")

    now = iso_utc_now()
    course = Course(
        title=title,
        description=str(description or ""),
        status=status,
        metadata_json=safe_json_string(meta, "{}"),
        created_at=now,
        created_by=str(actor.userId or ""),
        updated_at=now,
    )
    db.add(course)
    db.flush()

    for i, raw in enumerate(lessons):
        if not isinstance(raw, dict):
            raise ApiError("BAD_REQUEST", f"Lesson {i + 1} must be an object")
        ltitle = str(raw.get("title") or "").strip()
        if not ltitle:
            raise ApiError("BAD_REQUEST", f"Lesson {i + 1} is missing title")
        ltype = str(raw.get("type") or "video").strip().lower()
        if ltype not in LESSON_TYPES:
            raise ApiError("BAD_REQUEST", f"Lesson {i + 1} has invalid type: {ltype}")
        lstatus = str(raw.get("status") or "active").strip().lower()
        if lstatus not in LESSON_STATUSES:
            raise ApiError("BAD_REQUEST", f"Lesson {i + 1} has invalid status: {lstatus}")
        duration = _int_or(raw.get("durationEstMin"), 0, "durationEstMin")
        if duration < 0:
            raise ApiError("BAD_REQUEST", "durationEstMin must be >= 0")

        lesson = CourseLesson(
            course_id=course.id,
            title=ltitle,
            type=ltype,
            status=lstatus,
            content_url=str(raw.get("contentUrl") or ""),
            duration_est_min=duration,
            order_index=_int_or(raw.get("orderIndex"), i, "orderIndex"),
            is_required=to_bool(raw.get("isRequired"), True),
            completions_count=0,
            created_at=now,
        )
        db.add(lesson)
        db.flush()
        if ltype == "quiz":
            _add_quiz(db, lesson, raw.get("quiz"))

    append_audit(
        db,
        entityType="COURSE",
        entityId=str(course.id),
        action="COURSE_CREATE",
        stageTag="COURSE_CREATE",
        toState=status,
        actor=actor,
        at=now,
        after={"title": title, "lessons": len(lessons)},
    )
    return course


def serialize_course(db, course: Course) -> dict[str, Any]:
    lessons = (
        db.execute(select(CourseLesson).where(CourseLesson.course_id == course.id).order_by(CourseLesson.order_index.asc(), CourseLesson.id.asc()))
        .scalars()
        .all()
    )
    quizzes = {
        q.lesson_id: q
        for q in db.execute(select(LessonQuiz).where(LessonQuiz.lesson_id.in_([l.id for l in lessons] or [0]))).scalars().all()
    }
    return {
        "courseId": course.id,
        "title": course.title,
        "description": course.description,
        "status": course.status,
        "metadata": safe_json_load(course.metadata_json, {}),
        "lessons": [
            {
                "lessonId": l.id,
                "title": l.title,
                "type": l.type,
                "status": l.status,
                "contentUrl": l.content_url,
                "durationEstMin": int(l.duration_est_min or 0),
                "orderIndex": int(l.order_index or 0),
                "isRequired": bool(l.is_required),
                "completionsCount": int(l.completions_count or 0),
                "avgCompletionTimeMin": l.avg_completion_time_min,
                "quizId": quizzes[l.id].id if l.id in quizzes else None,
            }
            for l in lessons
        ],
    }


def _unique_path_slug(db, base: str) -> str:
    slug = base
    n = 2
    while db.execute(select(LearningPath.id).where(LearningPath.slug == slug)).first():
        slug = f"{base}-{n}"
        n += 1
    return slug


def create_learning_path(db, *, name: str, course_ids: Any, actor: AuthContext, description: str = "", metadata: Any = None) -> LearningPath:
    name = str(name or "").strip()
    if not name:
        raise ApiError("BAD_REQUEST", "Missing name")
    meta = _metadata(metadata)
    if course_ids is None:
        course_ids = []
    if not isinstance(course_ids, list):
        raise ApiError("BAD_REQUEST", "courseIds must be a list")

    ids: list[int] = []
    for raw in course_ids:
        cid = _int_or(raw, None, "courseId")
        if cid is None or cid in ids:
            continue
        if not db.execute(select(Course.id).where(Course.id == cid)).first():
            raise ApiError("NOT_FOUND", f"Course not found: {cid}")
        ids.append(cid)

    now = iso_utc_now()
    path = LearningPath(
        name=name,
        slug=_unique_path_slug(db, slugify(name)),
        description=str(description or ""),
        status="draft",
        metadata_json=safe_json_string(meta, "{}"),
        created_at=now,
        created_by=str(actor.userId or ""),
        updated_at=now,
    )
    db.add(path)
    db.flush()
    for i, cid in enumerate(ids):
        db.add(LearningPathCourse(path_id=path.id, course_id=cid, order_index=i, is_required=True))

    append_audit(
        db,
        entityType="LEARNING_PATH",
        entityId=str(path.id),
        action="LEARNING_PATH_CREATE",
        stageTag="LEARNING_PATH_CREATE",
        toState="draft",
        actor=actor,
        at=now,
        after={"name": name, "courseIds": ids},
    )
    return path


def publish_learning_path(db, *, path_id: Any, actor: AuthContext) -> LearningPath:
    pid = _int_or(path_id, None, "pathId")
    if pid is None:
        raise ApiError("BAD_REQUEST", "Missing pathId")
    path = db.execute(select(LearningPath).where(LearningPath.id == pid).with_for_update(of=LearningPath)).scalars().first()
    if not path:
        raise ApiError("NOT_FOUND", "Learning path not found")
    if path.status == "published":
        raise ApiError("CONFLICT", "Learning path is already published", http_status=409)
    if path.status == "archived":
        raise ApiError("CONFLICT", "Archived learning paths cannot be published", http_status=409)
    if not db.execute(select(LearningPathCourse.id).where(LearningPathCourse.path_id == path.id)).first():
        raise ApiError("BAD_REQUEST", "A learning path needs at least one course before publishing")

    now = iso_utc_now()
    path.status = "published"
    path.published_at = now
    path.published_by = str(actor.userId or "")
    path.updated_at = now
    append_audit(
        db,
        entityType="LEARNING_PATH",
        entityId=str(path.id),
        action="LEARNING_PATH_PUBLISH",
        stageTag="LEARNING_PATH_PUBLISH",
        fromState="draft",
        toState="published",
        actor=actor,
        at=now,
    )
    return path


def serialize_path(db, path: LearningPath) -> dict[str, Any]:
    courses = (
        db.execute(select(LearningPathCourse).where(LearningPathCourse.path_id == path.id).order_by(LearningPathCourse.order_index.asc()))
        .scalars()
        .all()
    )
    return {
        "pathId": path.id,
        "name": path.name,
        "slug": path.slug,
        "description": path.description,
        "status": path.status,
        "metadata": safe_json_load(path.metadata_json, {}),
        "publishedAt": path.published_at,
        "courseIds": [c.course_id for c in courses],
    }
