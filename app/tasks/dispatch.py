"""
Post-commit hand-off of side effects to Celery.

Engine code calls `enqueue_after_commit(db, cfg, task_name, **kwargs)` while it still holds the
request transaction. The job is only sent once that transaction commits; a rollback drops it.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event

from db import SessionLocal


_log = logging.getLogger("tasks")
_PENDING_KEY = "pending_jobs"


def enqueue_after_commit(db, cfg: Any, task_name: str, **kwargs) -> None:
    if not bool(getattr(cfg, "CELERY_ENABLED", False)):
        _log.info("async disabled, skipping task=%s args=%s", task_name, kwargs)
        return
    db.info.setdefault(_PENDING_KEY, []).append((task_name, kwargs))


def send_now(task_name: str, kwargs: dict[str, Any]) -> None:
    from app.tasks import celery_app

    try:
        celery_app.send_task(task_name, kwargs=kwargs)
        _log.info("queued task=%s", task_name)
    except Exception:
        # The request already committed; a broker outage must not turn it into an error.
        _log.exception("failed to queue task=%s", task_name)


@event.listens_for(SessionLocal, "after_commit")
def _flush_pending_jobs(session) -> None:
    jobs = session.info.pop(_PENDING_KEY, None) or []
    for task_name, kwargs in jobs:
        send_now(task_name, kwargs)


@event.listens_for(SessionLocal, "after_rollback")
def _drop_pending_jobs(session) -> None:
    session.info.pop(_PENDING_KEY, None)
