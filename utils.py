from __future__ import annotations

import hashlib
import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from flask import jsonify


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL")
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 400))


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str


SYSTEM_ACTOR = AuthContext(valid=True, userId="SYSTEM", email="SYSTEM", role="ADMIN", expiresAt="")


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    dt = dt.replace(microsecond=(dt.microsecond // 1000) * 1000)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any, *, app_timezone: str = "UTC") -> Optional[datetime]:
    """
    Parse an ISO date/datetime string into an aware datetime.

    Naive values are interpreted in `app_timezone`. Returns None when the value is
    empty or not parseable.
    """

    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except Exception:
            return None
    if dt.tzinfo is None:
        try:
            tz = ZoneInfo(app_timezone or "UTC")
        except Exception:
            tz = timezone.utc
        dt = dt.replace(tzinfo=tz)
    return dt


def today_iso_date() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def normalize_role(role: Any) -> str:
    return str(role or "").strip().upper()


def parse_roles_csv(value: str) -> list[str]:
    out: list[str] = []
    for part in str(value or "").split(","):
        r = normalize_role(part)
        if r and r not in out:
            out.append(r)
    return out


def safe_json_string(obj: Any, fallback: str = "{}") -> str:
    try:
        return json.dumps(obj, separators=(",", ":"), default=str)
    except Exception:
        return fallback


def safe_json_load(raw: Any, default: Any):
    s = str(raw or "").strip()
    if not s:
        return default
    try:
        val = json.loads(s)
    except Exception:
        return default
    if default is not None and not isinstance(val, type(default)):
        return default
    return val


def new_uuid() -> str:
    return str(uuid.uuid4())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def now_monotonic() -> float:
    return time.monotonic()


def ok(data: Any):
    return jsonify({"ok": True, "data": data}), 200


def err(code: str, message: str, http_status: int = 400):
    return jsonify({"ok": False, "error": {"code": code, "message": message}}), http_status


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(s)
    except Exception:
        raise ApiError("BAD_REQUEST", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "Body must be a JSON object")
    return body


_REDACT_KEYS = {"idtoken", "token", "sessiontoken", "password", "authorization"}


def redact_for_audit(value: Any) -> Any:
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if str(k or "").lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(value, list):
        return [redact_for_audit(v) for v in value[:50]]
    if isinstance(value, str) and len(value) > 500:
        return value[:500] + "..."
    return value


def round_half_up(value: Any, ndigits: int = 0) -> Any:
    """Round halves away from zero (12.5 -> 13); builtin round() goes to the even neighbour."""
    q = Decimal(1).scaleb(-int(ndigits))
    d = Decimal(str(value)).quantize(q, rounding=ROUND_HALF_UP)
    return int(d) if int(ndigits) <= 0 else float(d)


def to_int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except Exception:
        raise ApiError("BAD_REQUEST", f"Invalid integer: {value}")


def to_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


class SimpleRateLimiter:
    """Sliding-window limiter keyed by caller; limits are "<count>/<seconds>"."""

    def __init__(self):
        self._hits: dict[str, deque] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _parse(limit: str) -> tuple[int, int]:
        count_s, _, window_s = str(limit or "").partition("/")
        try:
            return max(1, int(count_s)), max(1, int(window_s))
        except Exception:
            return 60, 60

    def check(self, key: str, limit: str) -> None:
        count, window = self._parse(limit)
        now = now_monotonic()
        with self._lock:
            q = self._hits.setdefault(key, deque())
            while q and now - q[0] > window:
                q.popleft()
            if len(q) >= count:
                raise ApiError("RATE_LIMITED", "Too many requests", http_status=429)
            q.append(now)
