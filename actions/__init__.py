from __future__ import annotations

from functools import lru_cache
from typing import Any, Callable

from utils import ApiError, AuthContext


Handler = Callable[[dict, "AuthContext | None", Any, Any], Any]


@lru_cache(maxsize=1)
def _handlers() -> dict[str, Handler]:
    # Imported lazily: the engine services import actions.helpers, and the action
    # modules import the services.
    from actions import auth_actions, employees, lms, promotions, reviews, talent

    return {
        "LOGIN_EXCHANGE": auth_actions.login_exchange,
        "SESSION_VALIDATE": auth_actions.session_validate,
        "GET_ME": auth_actions.get_me,
        "MY_PERMISSIONS_GET": auth_actions.my_permissions_get,
        "EMPLOYEE_UPSERT": employees.employee_upsert,
        "EMPLOYEE_GET": employees.employee_get,
        "REVIEW_CYCLE_CREATE": reviews.review_cycle_create,
        "REVIEW_CYCLE_LAUNCH": reviews.review_cycle_launch,
        "REVIEW_CYCLE_CLOSE": reviews.review_cycle_close,
        "REVIEW_CYCLE_ARCHIVE": reviews.review_cycle_archive,
        "REVIEW_OVERDUE_SWEEP": reviews.review_overdue_sweep,
        "REVIEW_GET": reviews.review_get,
        "REVIEW_SCORE_START": reviews.review_score_start,
        "REVIEW_SCORE_SUBMIT": reviews.review_score_submit,
        "REVIEW_ASSIGNMENTS_MINE": reviews.review_assignments_mine,
        "REVIEW_CYCLE_GET": reviews.review_cycle_get,
        "REVIEW_RECOMPUTE": reviews.review_recompute,
        "COURSE_CREATE": lms.course_create,
        "LEARNING_PATH_CREATE": lms.learning_path_create,
        "LEARNING_PATH_PUBLISH": lms.learning_path_publish,
        "ENROLLMENT_CREATE": lms.enrollment_create,
        "ENROLLMENT_GET": lms.enrollment_get,
        "ENROLLMENT_ABANDON": lms.enrollment_abandon,
        "PATH_ENROLLMENT_CREATE": lms.path_enrollment_create,
        "PATH_ENROLLMENT_GET": lms.path_enrollment_get,
        "PATH_ENROLLMENT_ABANDON": lms.path_enrollment_abandon,
        "LESSON_START": lms.lesson_start,
        "LESSON_PROGRESS_UPDATE": lms.lesson_progress_update,
        "LESSON_VIEW": lms.lesson_view,
        "LESSON_COMPLETE": lms.lesson_complete,
        "QUIZ_ATTEMPT_START": lms.quiz_attempt_start,
        "QUIZ_ATTEMPT_SUBMIT": lms.quiz_attempt_submit,
        "QUIZ_ATTEMPTS_LIST": lms.quiz_attempts_list,
        "CERTIFICATE_ISSUE": lms.certificate_issue,
        "CERTIFICATES_LIST": lms.certificates_list,
        "CERTIFICATE_GET": lms.certificate_get,
        "PROMOTION_WORKFLOW_UPSERT": promotions.promotion_workflow_upsert,
        "PROMOTION_CREATE": promotions.promotion_create,
        "PROMOTION_UPDATE": promotions.promotion_update,
        "PROMOTION_SUBMIT": promotions.promotion_submit,
        "PROMOTION_APPROVE": promotions.promotion_approve,
        "PROMOTION_REJECT": promotions.promotion_reject,
        "PROMOTION_WITHDRAW": promotions.promotion_withdraw,
        "PROMOTION_GET": promotions.promotion_get,
        "PROMOTION_TIMELINE": promotions.promotion_timeline,
        "PROMOTION_APPROVALS_PENDING": promotions.promotion_approvals_pending,
        "PROMOTION_METRICS": promotions.promotion_metrics,
        "PIP_CREATE": talent.pip_create,
        "PIP_STATUS_SET": talent.pip_status_set,
        "SUCCESSION_CANDIDATE_ADD": talent.succession_candidate_add,
        "SUCCESSION_LIST": talent.succession_list,
    }


def dispatch(action: str, data: dict, auth: AuthContext | None, db, cfg):
    action_u = str(action or "").upper().strip()
    fn = _handlers().get(action_u)
    if fn is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    return fn(data or {}, auth, db, cfg)
