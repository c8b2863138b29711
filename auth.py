from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from sqlalchemy import select

from cache_layer import RBAC_PREFIX, cache_get, cache_set
from models import Permission, Role, Session as DbSession, User
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_roles_csv, sha256_hex


PUBLIC_ACTIONS = {
    "LOGIN_EXCHANGE",
}

ROLE_CODES = ["ADMIN", "HR", "HRBP", "DIRECTOR", "FINANCE", "MANAGER", "EMPLOYEE"]

_ALL = list(ROLE_CODES)
_PEOPLE_ADMIN = ["ADMIN", "HR"]
_TALENT = ["ADMIN", "HR", "HRBP", "DIRECTOR"]
_PROMOTION_SPONSORS = ["ADMIN", "HR", "HRBP", "MANAGER"]
_APPROVERS = ["ADMIN", "HR", "HRBP", "DIRECTOR", "FINANCE", "MANAGER"]

STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "LOGIN_EXCHANGE": ["PUBLIC"],
    "SESSION_VALIDATE": _ALL,
    "GET_ME": _ALL,
    "MY_PERMISSIONS_GET": _ALL,
    # Employees
    "EMPLOYEE_UPSERT": _PEOPLE_ADMIN,
    "EMPLOYEE_GET": _ALL,
    # Reviews
    "REVIEW_CYCLE_CREATE": _PEOPLE_ADMIN,
    "REVIEW_CYCLE_LAUNCH": _PEOPLE_ADMIN,
    "REVIEW_CYCLE_CLOSE": _PEOPLE_ADMIN,
    "REVIEW_CYCLE_ARCHIVE": _PEOPLE_ADMIN,
    "REVIEW_OVERDUE_SWEEP": _PEOPLE_ADMIN,
    "REVIEW_RECOMPUTE": _PEOPLE_ADMIN,
    "REVIEW_GET": _ALL,
    "REVIEW_SCORE_START": _ALL,
    "REVIEW_SCORE_SUBMIT": _ALL,
    "REVIEW_ASSIGNMENTS_MINE": _ALL,
    "REVIEW_CYCLE_GET": _PEOPLE_ADMIN,
    # LMS
    "COURSE_CREATE": _PEOPLE_ADMIN,
    "LEARNING_PATH_CREATE": _PEOPLE_ADMIN,
    "LEARNING_PATH_PUBLISH": _PEOPLE_ADMIN,
    "ENROLLMENT_CREATE": _ALL,
    "ENROLLMENT_GET": _ALL,
    "ENROLLMENT_ABANDON": _ALL,
    "PATH_ENROLLMENT_CREATE": _ALL,
    "PATH_ENROLLMENT_GET": _ALL,
    "PATH_ENROLLMENT_ABANDON": _ALL,
    "LESSON_START": _ALL,
    "LESSON_PROGRESS_UPDATE": _ALL,
    "LESSON_VIEW": _ALL,
    "LESSON_COMPLETE": _ALL,
    "QUIZ_ATTEMPT_START": _ALL,
    "QUIZ_ATTEMPT_SUBMIT": _ALL,
    "QUIZ_ATTEMPTS_LIST": _ALL,
    "CERTIFICATE_ISSUE": _PEOPLE_ADMIN,
    "CERTIFICATES_LIST": _ALL,
    "CERTIFICATE_GET": _ALL,
    # Promotions
    "PROMOTION_WORKFLOW_UPSERT": _PEOPLE_ADMIN,
    "PROMOTION_CREATE": _PROMOTION_SPONSORS,
    "PROMOTION_UPDATE": _PROMOTION_SPONSORS,
    "PROMOTION_SUBMIT": _PROMOTION_SPONSORS,
    "PROMOTION_WITHDRAW": _PROMOTION_SPONSORS,
    "PROMOTION_APPROVE": _APPROVERS,
    "PROMOTION_REJECT": _APPROVERS,
    "PROMOTION_GET": _APPROVERS,
    "PROMOTION_TIMELINE": _APPROVERS,
    "PROMOTION_APPROVALS_PENDING": _APPROVERS,
    "PROMOTION_METRICS": _TALENT,
    # Talent records
    "PIP_CREATE": _PROMOTION_SPONSORS,
    "PIP_STATUS_SET": _PROMOTION_SPONSORS,
    "SUCCESSION_CANDIDATE_ADD": _TALENT,
    "SUCCESSION_LIST": _TALENT,
}

# Actions whose callers may act on any employee's records; other roles are scoped to themselves
# (and, for managers, their direct reports).
PRIVILEGED_ROLES = {"ADMIN", "HR"}


_RBAC_ROLES_INDEX_KEY = f"{RBAC_PREFIX}ROLES_INDEX"
_RBAC_RULE_PREFIX = f"{RBAC_PREFIX}RULE:"
_RBAC_PERMS_FOR_ROLE_PREFIX = f"{RBAC_PREFIX}PERMS_FOR_ROLE:"

_INVALID = AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def verify_google_id_token(id_token: str, google_client_id: str, allow_test_tokens: bool = False) -> dict[str, Any]:
    if not google_client_id:
        raise ApiError("INTERNAL", "Missing GOOGLE_CLIENT_ID")
    if not id_token or not isinstance(id_token, str):
        raise ApiError("BAD_REQUEST", "Missing idToken")

    if allow_test_tokens and id_token.startswith("TEST:"):
        email = id_token.split(":", 1)[1].strip().lower()
        if not email:
            raise ApiError("AUTH_INVALID", "Invalid test token")
        return {"email": email, "fullName": "Test User", "sub": "TEST", "exp": 0}

    try:
        req = google_requests.Request()
        payload = google_id_token.verify_oauth2_token(id_token, req, audience=google_client_id)
    except Exception:
        raise ApiError("AUTH_INVALID", "Invalid Google ID token")

    if payload.get("aud") != google_client_id:
        raise ApiError("AUTH_INVALID", "Google token audience mismatch")
    if str(payload.get("email_verified", "")).lower() != "true":
        raise ApiError("AUTH_INVALID", "Google email not verified")

    return {
        "email": str(payload.get("email", "")).lower(),
        "fullName": payload.get("name", "") or "",
        "sub": payload.get("sub", "") or "",
        "exp": payload.get("exp", 0) or 0,
    }


def _parse_iso_utc_maybe(value: str) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except Exception:
        return None


def issue_session_token(db, *, user_id: str, email: str, role: str, user_status: str = "", session_ttl_minutes: int) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=session_ttl_minutes)

    issued_at = iso_utc_now()
    expires_at = expires.replace(microsecond=(expires.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            userStatus=str(user_status or "").upper().strip(),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
            revokedBy="",
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _INVALID

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _INVALID

    exp_dt = _parse_iso_utc_maybe(ses.expiresAt)
    if exp_dt and exp_dt < datetime.now(timezone.utc):
        return _INVALID

    user_id = str(ses.userId or "").strip()
    usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
    if not usr:
        return _INVALID
    if str(usr.status or "").upper().strip() != "ACTIVE":
        raise ApiError("FORBIDDEN", "User is disabled", http_status=403)

    # Write lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except Exception:
        interval_s = 300
    last_dt = _parse_iso_utc_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(ses.email or ""),
        # The user row is authoritative: a role change applies to live sessions.
        role=normalize_role(usr.role),
        expiresAt=str(ses.expiresAt or ""),
    )


def revoke_user_sessions(db, *, user_id: str, revoked_by: str) -> int:
    uid = str(user_id or "").strip()
    if not uid:
        return 0
    now = iso_utc_now()
    rows = db.execute(select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == "")).scalars().all()
    for s in rows:
        s.revokedAt = now
        s.revokedBy = str(revoked_by or "")
    return len(rows)


def get_permission_rule(db, perm_type: str, perm_key: str) -> Optional[dict[str, Any]]:
    perm_type_u = str(perm_type or "").upper().strip()
    perm_key_u = str(perm_key or "").upper().strip()
    if not perm_type_u or not perm_key_u:
        return None

    cache_key = f"{_RBAC_RULE_PREFIX}{perm_type_u}:{perm_key_u}"
    cached = cache_get(cache_key)
    if cached is False:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(Permission).where(Permission.permType == perm_type_u).where(Permission.permKey == perm_key_u))
        .scalars()
        .first()
    )
    if not row:
        cache_set(cache_key, False)
        return None
    out = {"enabled": bool(row.enabled), "roles": parse_roles_csv(row.rolesCsv or "")}
    cache_set(cache_key, out)
    return out


def _roles_index(db) -> dict[str, dict[str, Any]]:
    cached = cache_get(_RBAC_ROLES_INDEX_KEY)
    if isinstance(cached, dict):
        return cached

    rows = db.execute(select(Role)).scalars().all()
    out: dict[str, dict[str, Any]] = {}
    if not rows:
        for rc in ROLE_CODES:
            out[rc] = {"roleCode": rc, "roleName": rc, "status": "ACTIVE"}
    for r in rows:
        code = normalize_role(r.roleCode)
        if code:
            out[code] = {"roleCode": code, "roleName": str(r.roleName or code), "status": str(r.status or "ACTIVE").upper()}
    cache_set(_RBAC_ROLES_INDEX_KEY, out)
    return out


def is_role_active(db, role: str) -> bool:
    it = _roles_index(db).get(normalize_role(role))
    return bool(it) and str(it.get("status", "")).upper() == "ACTIVE"


def assert_permission(db, role: str, action: str) -> None:
    role_u = normalize_role(role)
    action_u = str(action or "").upper().strip()

    if is_public_action(action_u):
        return

    allowed_static = STATIC_RBAC_PERMISSIONS.get(action_u)
    rule = get_permission_rule(db, "ACTION", action_u)
    has_dyn = bool(rule and rule.get("enabled") is True)

    if not allowed_static and not has_dyn:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")

    if not role_u or role_u == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if not is_role_active(db, role_u):
        raise ApiError("FORBIDDEN", f"Inactive or unknown role: {role_u}")

    # Session actions work for every ACTIVE role.
    if action_u in {"SESSION_VALIDATE", "GET_ME", "MY_PERMISSIONS_GET"}:
        return

    roles = (rule.get("roles") or []) if has_dyn else (allowed_static or [])
    if "PUBLIC" not in roles and role_u not in roles:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_u}")


def permissions_for_role(db, role: str) -> dict[str, Any]:
    role_u = normalize_role(role)
    if not role_u:
        raise ApiError("AUTH_INVALID", "Login required")

    cache_key = f"{_RBAC_PERMS_FOR_ROLE_PREFIX}{role_u}"
    cached = cache_get(cache_key)
    if isinstance(cached, dict):
        return cached

    action_keys: list[str] = []
    overridden: set[str] = set()
    rows = db.execute(select(Permission).where(Permission.permType == "ACTION").where(Permission.enabled.is_(True))).scalars().all()
    for row in rows:
        key = str(row.permKey or "").upper().strip()
        if not key:
            continue
        overridden.add(key)
        roles = parse_roles_csv(row.rolesCsv or "")
        if role_u in roles or "PUBLIC" in roles:
            action_keys.append(key)

    for key, static_roles in STATIC_RBAC_PERMISSIONS.items():
        if key in overridden:
            continue
        if "PUBLIC" in static_roles or role_u in static_roles:
            action_keys.append(key)

    out = {"role": role_u, "actionKeys": sorted(set(action_keys))}
    cache_set(cache_key, out)
    return out


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"


def is_privileged(auth: Optional[AuthContext]) -> bool:
    return role_or_public(auth) in PRIVILEGED_ROLES
