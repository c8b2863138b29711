from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Integer, String, Text, UniqueConstraint

from db import Base


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False, default="")
    scope = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="")
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    userStatus = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    beforeJson = Column(Text, nullable=False, default="")
    afterJson = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")


class Employee(Base):
    __tablename__ = "employees"

    employeeId = Column(String, primary_key=True)
    # Login identity; matches users.userId for employees who can sign in.
    userId = Column(String, nullable=False, default="", index=True)
    employeeName = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="", index=True)
    department = Column(String, nullable=False, default="", index=True)
    managerId = Column(String, nullable=False, default="", index=True)  # employeeId of the manager
    currentRole = Column(Text, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    joinedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class RoleHistory(Base):
    __tablename__ = "role_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    role = Column(String, nullable=False, default="", index=True)
    start_at = Column(Text, nullable=False, default="", index=True)
    end_at = Column(Text, nullable=False, default="", index=True)
    changed_by = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")


# ---------------------------------------------------------------------------
# Performance reviews
# ---------------------------------------------------------------------------


class ReviewCycle(Base):
    __tablename__ = "review_cycles"

    id = Column(String, primary_key=True)  # CYC-YYYY-xxxxx
    name = Column(Text, nullable=False, default="")
    slug = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=False, default="")
    period_start = Column(String, nullable=False, default="")
    period_end = Column(String, nullable=False, default="", index=True)
    frequency = Column(String, nullable=False, default="annual")
    competencies_json = Column(Text, nullable=False, default="[]")
    assignments_json = Column(Text, nullable=False, default="[]")
    eligibility_json = Column(Text, nullable=False, default="{}")
    status = Column(String, nullable=False, default="draft", index=True)  # draft/active/completed/archived
    employee_count = Column(Integer, nullable=False, default=0)
    completed_count = Column(Integer, nullable=False, default=0)
    completion_rate = Column(Float, nullable=False, default=0.0)
    launched_at = Column(Text, nullable=False, default="")
    completed_at = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")
    updated_by = Column(String, nullable=False, default="")


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("cycle_id", "employee_id", name="uq_reviews_cycle_employee"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_id = Column(String, nullable=False, index=True)
    employee_id = Column(String, nullable=False, index=True)
    manager_id = Column(String, nullable=False, default="", index=True)
    due_date = Column(String, nullable=False, default="", index=True)
    total_reviewers = Column(Integer, nullable=False, default=0)
    completed_reviewers = Column(Integer, nullable=False, default=0)
    progress = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="pending", index=True)  # pending/in_progress/completed/overdue
    final_score = Column(Float, nullable=True)
    potential_status = Column(String, nullable=False, default="")
    completed_at = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class ReviewScore(Base):
    """One reviewer's submission for one review. average_score is always derived from scores_json."""

    __tablename__ = "review_scores"
    __table_args__ = (UniqueConstraint("review_id", "reviewer_id", "type", name="uq_review_scores_review_reviewer_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    review_id = Column(Integer, nullable=False, index=True)
    reviewer_id = Column(String, nullable=False, index=True)  # employeeId
    type = Column(String, nullable=False, default="", index=True)  # self/manager/peer/direct_report
    scores_json = Column(Text, nullable=False, default="{}")
    average_score = Column(Float, nullable=True)
    comments = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="pending", index=True)  # pending/in_progress/completed
    started_at = Column(Text, nullable=False, default="")
    completed_at = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


# ---------------------------------------------------------------------------
# Promotions and talent records
# ---------------------------------------------------------------------------


class PromotionWorkflow(Base):
    __tablename__ = "promotion_workflows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    steps_json = Column(Text, nullable=False, default="[]")  # [{"order", "name", "role"}]
    is_default = Column(Boolean, nullable=False, default=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class PromotionCandidate(Base):
    __tablename__ = "promotion_candidates"

    id = Column(String, primary_key=True)  # PROMO-YYYY-xxxxx
    employee_id = Column(String, nullable=False, index=True)
    current_role = Column(Text, nullable=False, default="")
    proposed_role = Column(Text, nullable=False, default="")
    justification = Column(Text, nullable=False, default="")
    comp_adjustment_json = Column(Text, nullable=False, default="")
    workflow_id = Column(Integer, nullable=False, default=0, index=True)
    status = Column(String, nullable=False, default="draft", index=True)
    submitted_at = Column(Text, nullable=False, default="")
    approved_at = Column(Text, nullable=False, default="")
    rejected_at = Column(Text, nullable=False, default="")
    withdrawn_at = Column(Text, nullable=False, default="")
    rejection_reason = Column(Text, nullable=False, default="")
    withdrawal_reason = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="", index=True)
    created_by = Column(String, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")
    updated_by = Column(String, nullable=False, default="")


class PromotionApproval(Base):
    __tablename__ = "promotion_approvals"
    __table_args__ = (UniqueConstraint("promotion_id", "step_order", name="uq_promotion_approvals_promo_step"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    promotion_id = Column(String, nullable=False, index=True)
    step_order = Column(Integer, nullable=False, default=1)
    step_name = Column(Text, nullable=False, default="")
    approver_role = Column(String, nullable=False, default="")
    approver_id = Column(String, nullable=False, default="", index=True)  # users.userId
    decision = Column(String, nullable=False, default="pending", index=True)  # pending/approved/rejected
    decision_note = Column(Text, nullable=False, default="")
    decided_at = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")


class Pip(Base):
    __tablename__ = "pips"

    id = Column(String, primary_key=True)  # PIP-YYYY-xxxxx
    employee_id = Column(String, nullable=False, index=True)
    reason = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="active", index=True)  # active/paused/completed/cancelled
    start_date = Column(String, nullable=False, default="")
    end_date = Column(String, nullable=False, default="")
    completion_notes = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")
    updated_by = Column(String, nullable=False, default="")


class SuccessionCandidate(Base):
    __tablename__ = "succession_candidates"
    __table_args__ = (UniqueConstraint("employee_id", "target_role", name="uq_succession_employee_role"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    target_role = Column(String, nullable=False, default="", index=True)
    readiness = Column(String, nullable=False, default="")  # ready_now/3-6m/6-12m/12-24m
    notes = Column(Text, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False, default="")


# ---------------------------------------------------------------------------
# Learning (courses, paths, quizzes, certificates)
# ---------------------------------------------------------------------------


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="active", index=True)  # draft/active/archived
    metadata_json = Column(Text, nullable=False, default="{}")
    created_at = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class CourseLesson(Base):
    __tablename__ = "course_lessons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    course_id = Column(Integer, nullable=False, index=True)
    title = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False, default="video")  # video/audio/pdf/external_link/quiz
    status = Column(String, nullable=False, default="active", index=True)  # active/draft/archived
    content_url = Column(Text, nullable=False, default="")
    duration_est_min = Column(Integer, nullable=False, default=0)
    order_index = Column(Integer, nullable=False, default=0)
    is_required = Column(Boolean, nullable=False, default=True)
    completions_count = Column(Integer, nullable=False, default=0)
    avg_completion_time_min = Column(Float, nullable=True)
    created_at = Column(Text, nullable=False, default="")


class LessonQuiz(Base):
    __tablename__ = "lesson_quizzes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, nullable=False, unique=True, index=True)
    title = Column(Text, nullable=False, default="")
    passing_score = Column(Integer, nullable=False, default=80)
    attempts_allowed = Column(Integer, nullable=True)  # NULL means unlimited
    time_limit_minutes = Column(Integer, nullable=True)
    randomize_questions = Column(Boolean, nullable=False, default=False)
    randomize_options = Column(Boolean, nullable=False, default=False)
    show_results_immediately = Column(Boolean, nullable=False, default=True)
    created_at = Column(Text, nullable=False, default="")


class QuizQuestion(Base):
    __tablename__ = "quiz_questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quiz_id = Column(Integer, nullable=False, index=True)
    prompt = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False, default="single")  # single/multi
    weight = Column(Float, nullable=False, default=1.0)
    order_index = Column(Integer, nullable=False, default=0)
    explanation = Column(Text, nullable=False, default="")


class QuizOption(Base):
    __tablename__ = "quiz_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question_id = Column(Integer, nullable=False, index=True)
    label = Column(Text, nullable=False, default="")
    is_correct = Column(Boolean, nullable=False, default=False)
    order_index = Column(Integer, nullable=False, default=0)


class QuizAttempt(Base):
    __tablename__ = "quiz_attempts"
    __table_args__ = (
        UniqueConstraint("lesson_id", "enrollment_id", "attempt_no", name="uq_quiz_attempts_lesson_enrollment_no"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    lesson_id = Column(Integer, nullable=False, index=True)
    enrollment_id = Column(Integer, nullable=False, index=True)
    quiz_id = Column(Integer, nullable=False, index=True)
    attempt_no = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="in_progress", index=True)  # in_progress/submitted/timed_out
    answers_json = Column(Text, nullable=False, default="{}")
    results_json = Column(Text, nullable=False, default="[]")
    score = Column(Integer, nullable=False, default=0)
    is_passed = Column(Boolean, nullable=False, default=False, index=True)
    started_at = Column(Text, nullable=False, default="")
    submitted_at = Column(Text, nullable=False, default="", index=True)
    time_taken_seconds = Column(Integer, nullable=False, default=0)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("employee_id", "course_id", name="uq_enrollments_employee_course"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    source = Column(String, nullable=False, default="self_enroll")  # path/self_enroll/manager_assign/pip/succession
    status = Column(String, nullable=False, default="not_started", index=True)  # not_started/in_progress/completed/expired
    progress_pct = Column(Integer, nullable=False, default=0)
    metadata_json = Column(Text, nullable=False, default="{}")
    enrolled_at = Column(Text, nullable=False, default="")
    started_at = Column(Text, nullable=False, default="")
    completed_at = Column(Text, nullable=False, default="")
    expired_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class LessonProgress(Base):
    __tablename__ = "lesson_progress"
    __table_args__ = (UniqueConstraint("enrollment_id", "lesson_id", name="uq_lesson_progress_enrollment_lesson"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    enrollment_id = Column(Integer, nullable=False, index=True)
    lesson_id = Column(Integer, nullable=False, index=True)
    status = Column(String, nullable=False, default="not_started", index=True)  # not_started/in_progress/completed
    seconds_consumed = Column(Integer, nullable=False, default=0)
    last_position_sec = Column(Integer, nullable=False, default=0)
    viewed_at = Column(Text, nullable=False, default="")
    started_at = Column(Text, nullable=False, default="")
    completed_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class LearningPath(Base):
    __tablename__ = "learning_paths"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False, default="")
    slug = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="draft", index=True)  # draft/published/archived
    metadata_json = Column(Text, nullable=False, default="{}")
    published_at = Column(Text, nullable=False, default="")
    published_by = Column(String, nullable=False, default="")
    created_at = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class LearningPathCourse(Base):
    __tablename__ = "learning_path_courses"
    __table_args__ = (UniqueConstraint("path_id", "course_id", name="uq_learning_path_courses_path_course"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    path_id = Column(Integer, nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    order_index = Column(Integer, nullable=False, default=0)
    is_required = Column(Boolean, nullable=False, default=True)


class PathEnrollment(Base):
    __tablename__ = "path_enrollments"
    __table_args__ = (UniqueConstraint("employee_id", "path_id", name="uq_path_enrollments_employee_path"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    employee_id = Column(String, nullable=False, index=True)
    path_id = Column(Integer, nullable=False, index=True)
    status = Column(String, nullable=False, default="assigned", index=True)  # assigned/in_progress/completed/abandoned
    progress_pct = Column(Integer, nullable=False, default=0)
    completed_courses = Column(Integer, nullable=False, default=0)
    total_courses = Column(Integer, nullable=False, default=0)
    due_date = Column(String, nullable=False, default="")
    assigned_by = Column(String, nullable=False, default="")
    assigned_at = Column(Text, nullable=False, default="")
    started_at = Column(Text, nullable=False, default="")
    completed_at = Column(Text, nullable=False, default="")
    abandoned_at = Column(Text, nullable=False, default="")
    updated_at = Column(Text, nullable=False, default="")


class Certificate(Base):
    """
    Issued completion certificate.

    course_id / path_id use 0 (not NULL) for "not applicable" so the composite unique
    constraint also holds for the unused column.
    """

    __tablename__ = "certificates"
    __table_args__ = (
        UniqueConstraint("employee_id", "type", "course_id", "path_id", name="uq_certificates_employee_type_target"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    certificate_id = Column(String, nullable=False, unique=True, index=True)
    employee_id = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, default="course")  # course/learning_path
    course_id = Column(Integer, nullable=False, default=0)
    path_id = Column(Integer, nullable=False, default=0)
    title = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    issued_date = Column(String, nullable=False, default="")
    expiry_date = Column(String, nullable=False, default="")
    metadata_json = Column(Text, nullable=False, default="{}")
    created_at = Column(Text, nullable=False, default="")
