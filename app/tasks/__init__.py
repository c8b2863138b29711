"""
Celery worker for post-commit side effects (approver notifications, certificate PDFs).

Run a worker with:
    celery -A app.tasks.celery_app worker -Q notifications,certificates --loglevel=INFO
"""
from __future__ import annotations

import os

from celery import Celery


TASK_QUEUES = {
    "promotions.*": {"queue": "notifications"},
    "certificates.*": {"queue": "certificates"},
}


def make_celery() -> Celery:
    broker = os.getenv("REDIS_URL", "") or "redis://localhost:6379/0"

    app = Celery(
        "perf_engine",
        broker=broker,
        backend=os.getenv("CELERY_RESULT_BACKEND", "") or broker,
        include=["app.tasks.notifications"],
    )
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        task_routes=TASK_QUEUES,
        timezone=os.getenv("APP_TIMEZONE", "UTC") or "UTC",
        enable_utc=True,
        result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "3600")),
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "2")),
    )
    return app


celery_app = make_celery()
