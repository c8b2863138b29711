"""
Post-commit side effects: approver / outcome notifications and certificate PDFs.

Tasks open their own database session; the web request that queued them has already committed.
"""
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any

import requests
from sqlalchemy import select

from app.tasks import celery_app
from config import Config
from db import SessionLocal, init_engine
from models import Certificate, Employee, PromotionApproval, PromotionCandidate, User
from services.certificates import render_certificate_pdf

_log = logging.getLogger("tasks")
_cfg: Config | None = None


def _worker_config() -> Config:
    global _cfg
    if _cfg is None:
        _cfg = Config()
        init_engine(_cfg.DATABASE_URL, pool_size=_cfg.DB_POOL_SIZE, max_overflow=_cfg.DB_MAX_OVERFLOW, pool_recycle=_cfg.DB_POOL_RECYCLE_SEC)
    return _cfg


def deliver(cfg: Config, payload: dict[str, Any], *, timeout: int = 10) -> bool:
    """POST a notification to the configured webhook. Without a webhook the message is only logged."""

    url = str(cfg.NOTIFY_WEBHOOK_URL or "").strip()
    if not url:
        _log.info("notification (no webhook) kind=%s to=%s", payload.get("kind"), payload.get("to"))
        return False
    resp = requests.post(url, json=payload, headers={"Content-Type": "application/json"}, timeout=timeout)
    resp.raise_for_status()
    return True


def _user_email(db, user_id: str) -> str:
    u = db.execute(select(User).where(User.userId == str(user_id or ""))).scalar_one_or_none()
    return str(u.email or "") if u else ""


@celery_app.task(name="promotions.notify_approver", bind=True, autoretry_for=(requests.RequestException,), retry_backoff=True, max_retries=5)
def notify_approver(self, promotion_id: str, approval_id: int, approver_id: str):
    cfg = _worker_config()
    with SessionLocal() as db:
        approval = db.execute(select(PromotionApproval).where(PromotionApproval.id == int(approval_id))).scalar_one_or_none()
        candidate = db.execute(select(PromotionCandidate).where(PromotionCandidate.id == promotion_id)).scalar_one_or_none()
        if not approval or not candidate or approval.decision != "pending":
            _log.info("skip approver notification promotion=%s approval=%s", promotion_id, approval_id)
            return {"sent": False}

        emp = db.execute(select(Employee).where(Employee.employeeId == candidate.employee_id)).scalar_one_or_none()
        payload = {
            "kind": "PROMOTION_APPROVAL_REQUESTED",
            "to": _user_email(db, approver_id),
            "promotionId": candidate.id,
            "approvalId": approval.id,
            "stepName": approval.step_name,
            "employeeName": emp.employeeName if emp else candidate.employee_id,
            "proposedRole": candidate.proposed_role,
            "sentAt": datetime.now(timezone.utc).isoformat(),
        }
    return {"sent": deliver(cfg, payload), "taskId": self.request.id}


@celery_app.task(name="promotions.notify_outcome", bind=True, autoretry_for=(requests.RequestException,), retry_backoff=True, max_retries=5)
def notify_outcome(self, promotion_id: str, outcome: str):
    cfg = _worker_config()
    with SessionLocal() as db:
        candidate = db.execute(select(PromotionCandidate).where(PromotionCandidate.id == promotion_id)).scalar_one_or_none()
        if not candidate:
            return {"sent": False}
        payload = {
            "kind": f"PROMOTION_{str(outcome or '').upper()}",
            "to": _user_email(db, candidate.created_by),
            "promotionId": candidate.id,
            "employeeId": candidate.employee_id,
            "proposedRole": candidate.proposed_role,
            "reason": candidate.rejection_reason,
            "sentAt": datetime.now(timezone.utc).isoformat(),
        }
    return {"sent": deliver(cfg, payload), "taskId": self.request.id}


@celery_app.task(name="certificates.render_pdf", bind=True, max_retries=3, default_retry_delay=30)
def render_pdf(self, certificate_id: str):
    cfg = _worker_config()
    with SessionLocal() as db:
        cert = db.execute(select(Certificate).where(Certificate.certificate_id == certificate_id)).scalar_one_or_none()
        if not cert:
            _log.warning("certificate %s not found, nothing to render", certificate_id)
            return {"rendered": False}
        emp = db.execute(select(Employee).where(Employee.employeeId == cert.employee_id)).scalar_one_or_none()
        pdf = render_certificate_pdf(cert, employee_name=emp.employeeName if emp else "")

    os.makedirs(cfg.CERTIFICATE_OUTPUT_DIR, exist_ok=True)
    path = os.path.join(cfg.CERTIFICATE_OUTPUT_DIR, f"{certificate_id}.pdf")
    with open(path, "wb") as fh:
        fh.write(pdf)
    _log.info("certificate rendered id=%s bytes=%s", certificate_id, len(pdf))
    return {"rendered": True, "path": path, "taskId": self.request.id}
