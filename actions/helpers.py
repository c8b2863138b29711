from __future__ import annotations

import os
import re
from typing import Any, Iterable, Optional

from sqlalchemy import select

from models import AuditLog, Employee, IdCounter, Setting
from utils import ApiError, AuthContext, iso_utc_now, normalize_role, safe_json_string


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    before: Any = None,
    after: Any = None,
    meta: Any = None,
    correlationId: str = "",
) -> AuditLog:
    """
    Append one row to the audit log inside the caller's transaction.

    The API route owns commit/rollback, so a failed request leaves no audit trail
    for the mutations it attempted (only the API_ERROR row written separately).
    """

    row = AuditLog(
        logId=f"LOG-{os.urandom(16).hex()}",
        entityType=str(entityType or "").upper(),
        entityId=str(entityId or ""),
        action=str(action or "").upper(),
        fromState=str(fromState or ""),
        toState=str(toState or ""),
        stageTag=str(stageTag or ""),
        remark=str(remark or ""),
        actorUserId=str(actor.userId) if actor else "SYSTEM",
        actorRole=str(actor.role) if actor else "SYSTEM",
        actorEmail=str(getattr(actor, "email", "") or "") if actor else "",
        at=at or iso_utc_now(),
        correlationId=str(correlationId or ""),
        beforeJson=safe_json_string(before, "") if before is not None else "",
        afterJson=safe_json_string(after, "") if after is not None else "",
        metaJson=safe_json_string(meta, "{}") if meta is not None else "",
    )
    db.add(row)
    return row


def _max_suffix(existing_ids: Iterable[str], prefix: str) -> int:
    best = 0
    pat = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    for raw in existing_ids or []:
        m = pat.match(str(raw or "").strip())
        if m:
            best = max(best, int(m.group(1)))
    return best


def next_prefixed_id(db, *, counter_key: str, prefix: str, pad: int = 5, existing_ids: Iterable[str] | None = None) -> str:
    """Allocate the next `<prefix><n>` id from a locked counter row (seeded from existing ids)."""

    key = str(counter_key or "").strip().upper()
    row = db.execute(select(IdCounter).where(IdCounter.key == key).with_for_update(of=IdCounter)).scalars().first()
    if not row:
        row = IdCounter(key=key, nextValue=_max_suffix(existing_ids or [], prefix) + 1)
        db.add(row)
        db.flush()

    value = int(row.nextValue or 1)
    row.nextValue = value + 1
    return f"{prefix}{str(value).zfill(int(pad))}"


def setting_int(db, key: str, default: int) -> int:
    k = str(key or "").strip()
    if not k:
        return int(default)
    row = db.execute(select(Setting).where(Setting.key == k)).scalar_one_or_none()
    raw = str(getattr(row, "value", "") or "").strip() if row else ""
    if not raw:
        return int(default)
    try:
        return int(float(raw))
    except Exception:
        return int(default)


def require_auth(auth: Optional[AuthContext]) -> AuthContext:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth


def actor_employee_id(db, auth: Optional[AuthContext]) -> str:
    """employeeId linked to the logged-in user, or "" when the user has no employee record."""

    if not auth or not auth.userId:
        return ""
    emp_id = db.execute(select(Employee.employeeId).where(Employee.userId == str(auth.userId))).scalars().first()
    return str(emp_id or "")


def assert_employee_access(db, auth: Optional[AuthContext], employee_id: str, *, allow_manager: bool = True) -> None:
    auth = require_auth(auth)
    if normalize_role(auth.role) in {"ADMIN", "HR"}:
        return

    own = actor_employee_id(db, auth)
    if own and own == str(employee_id or ""):
        return

    if allow_manager and own:
        manager_id = db.execute(select(Employee.managerId).where(Employee.employeeId == str(employee_id or ""))).scalars().first()
        if manager_id and str(manager_id) == own:
            return

    raise ApiError("FORBIDDEN", "Not allowed for this employee")
