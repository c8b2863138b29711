from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit
from auth import issue_session_token, permissions_for_role, verify_google_id_token
from models import Employee, User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _employee_for_user(db, user_id: str):
    uid = str(user_id or "").strip()
    if not uid:
        return None
    return db.execute(select(Employee).where(Employee.userId == uid)).scalars().first()


def login_exchange(data, auth: AuthContext | None, db, cfg):
    google_user = verify_google_id_token(
        (data or {}).get("idToken"),
        google_client_id=cfg.GOOGLE_CLIENT_ID,
        allow_test_tokens=bool(cfg.AUTH_ALLOW_TEST_TOKENS),
    )
    email = str(google_user.get("email") or "").strip().lower()

    user = _find_user_by_email(db, email)
    if not user:
        raise ApiError("AUTH_INVALID", "User not found in Users")
    if str(user.status or "").upper() != "ACTIVE":
        raise ApiError("AUTH_INVALID", "User is disabled")

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        user_status=str(user.status or ""),
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )

    actor = AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role), expiresAt=ses["expiresAt"])
    append_audit(db, entityType="AUTH", entityId=str(user.userId), action="LOGIN_EXCHANGE", stageTag="AUTH_LOGIN", actor=actor)

    emp = _employee_for_user(db, user.userId)
    return {
        "sessionToken": ses["sessionToken"],
        "expiresAt": ses["expiresAt"],
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or str(google_user.get("fullName") or ""),
            "role": normalize_role(user.role),
            "employeeId": emp.employeeId if emp else "",
        },
    }


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": normalize_role(auth.role)},
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")

    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")

    emp = _employee_for_user(db, user.userId)
    return {
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or user.userId,
            "role": normalize_role(user.role),
            "employeeId": emp.employeeId if emp else "",
            "department": emp.department if emp else "",
            "currentRole": emp.currentRole if emp else "",
        }
    }


def my_permissions_get(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return permissions_for_role(db, auth.role)
