from __future__ import annotations

import logging

from sqlalchemy import inspect, select, text
from sqlalchemy.orm import Session

from models import Employee, Review, RoleHistory
from utils import iso_utc_now


_log = logging.getLogger("schema")

OPEN_PROMOTION_STATUSES = ("draft", "submitted", "in_review")


def _quoted(name: str) -> str:
    escaped = str(name).replace('"', '""')
    return f'"{escaped}"'


def _ensure_column(engine, *, table: str, column: str, ddl_type: str, default_sql: str = "''") -> None:
    insp = inspect(engine)
    cols = {c.get("name") for c in insp.get_columns(table)}
    if column in cols:
        return
    ddl = f"ALTER TABLE {_quoted(table)} ADD COLUMN {_quoted(column)} {ddl_type} DEFAULT {default_sql}"
    with engine.begin() as conn:
        conn.execute(text(ddl))
    _log.info("Added column %s.%s", table, column)


def _ensure_index(engine, *, name: str, table: str, column: str) -> None:
    ddl = f"CREATE INDEX IF NOT EXISTS {_quoted(name)} ON {_quoted(table)}({_quoted(column)})"
    with engine.begin() as conn:
        conn.execute(text(ddl))


def _ensure_ddl(engine, ddl: str) -> None:
    with engine.begin() as conn:
        conn.execute(text(ddl))


def ensure_schema(engine) -> None:
    """
    Lightweight, idempotent schema evolution (no Alembic).

    `create_all` only creates missing tables; columns added after a table first shipped
    are added here, followed by deterministic backfills.
    """

    # Reviews: calibration output added after the first release.
    _ensure_column(engine, table="reviews", column="potential_status", ddl_type="TEXT")
    _ensure_index(engine, name="ix_reviews_status_due_date", table="reviews", column="due_date")

    # Review cycles: completion statistics.
    _ensure_column(engine, table="review_cycles", column="completed_count", ddl_type="INTEGER", default_sql="0")
    _ensure_column(engine, table="review_cycles", column="completion_rate", ddl_type="FLOAT", default_sql="0")

    # Lessons: running completion statistics.
    _ensure_column(engine, table="course_lessons", column="completions_count", ddl_type="INTEGER", default_sql="0")
    _ensure_column(engine, table="course_lessons", column="avg_completion_time_min", ddl_type="FLOAT", default_sql="NULL")

    # Quiz attempts: timing.
    _ensure_column(engine, table="quiz_attempts", column="time_taken_seconds", ddl_type="INTEGER", default_sql="0")

    # Certificates: expiry.
    _ensure_column(engine, table="certificates", column="expiry_date", ddl_type="TEXT")
    _ensure_index(engine, name="ix_certificates_expiry_date", table="certificates", column="expiry_date")

    # At most one open promotion per employee.
    statuses = ", ".join(f"'{s}'" for s in OPEN_PROMOTION_STATUSES)
    _ensure_ddl(
        engine,
        ddl=(
            f"CREATE UNIQUE INDEX IF NOT EXISTS {_quoted('uq_promotion_candidates_open_employee')} "
            f"ON {_quoted('promotion_candidates')}({_quoted('employee_id')}) "
            f"WHERE {_quoted('status')} IN ({statuses})"
        ),
    )

    _backfill_role_history(engine)
    _backfill_review_completion(engine)


def _backfill_role_history(engine) -> None:
    """
    Open a role_history row for employees that have a currentRole but no history yet.
    """

    insp = inspect(engine)
    existing_tables = set(insp.get_table_names())
    if "employees" not in existing_tables or "role_history" not in existing_tables:
        return

    with Session(engine) as db:
        with_history = set(db.execute(select(RoleHistory.employee_id).distinct()).scalars().all())
        rows = db.execute(select(Employee).where(Employee.currentRole != "")).scalars().all()
        created = 0
        for e in rows:
            if e.employeeId in with_history:
                continue
            db.add(
                RoleHistory(
                    employee_id=e.employeeId,
                    role=e.currentRole,
                    start_at=e.joinedAt or e.createdAt or iso_utc_now(),
                    end_at="",
                    changed_by="SYSTEM",
                    remark="Backfill",
                )
            )
            created += 1
        if created:
            db.commit()
            _log.info("Role history backfill complete created=%s", created)


def _backfill_review_completion(engine) -> None:
    """
    Reviews whose reviewers all completed before progress was stored: mark them completed.
    """

    insp = inspect(engine)
    if "reviews" not in set(insp.get_table_names()):
        return

    with Session(engine) as db:
        rows = (
            db.execute(
                select(Review)
                .where(Review.total_reviewers > 0)
                .where(Review.completed_reviewers >= Review.total_reviewers)
                .where(Review.status != "completed")
            )
            .scalars()
            .all()
        )
        if not rows:
            return
        now = iso_utc_now()
        for r in rows:
            r.progress = 100
            r.status = "completed"
            r.completed_at = r.completed_at or now
            r.updated_at = now
        db.commit()
        _log.info("Review completion backfill complete updated=%s", len(rows))
