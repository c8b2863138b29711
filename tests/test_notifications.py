from __future__ import annotations

import os
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from db import SessionLocal
from models import Certificate, Employee
from services.certificates import render_certificate_pdf
from utils import iso_utc_now


def _certificate(**overrides) -> Certificate:
    fields = dict(
        certificate_id="ABCDEF123456",
        employee_id="EMP-0001",
        type="course",
        course_id=1,
        path_id=0,
        title="Certificate of Completion - Security <Basics>",
        description="This certifies that Quinn Learner has successfully completed the course: Security <Basics>",
        issued_date="2025-04-01",
        expiry_date="2026-04-01",
        metadata_json='{"employee_name": "Quinn Learner"}',
        created_at=iso_utc_now(),
    )
    fields.update(overrides)
    return Certificate(**fields)


def test_certificate_pdf_renders():
    pdf = render_certificate_pdf(_certificate(), employee_name="Quinn Learner")
    assert pdf.startswith(b"%PDF")
    assert len(pdf) > 1000


def test_deliver_without_webhook_only_logs():
    from app.tasks.notifications import deliver

    with patch("app.tasks.notifications.requests.post") as post:
        assert deliver(SimpleNamespace(NOTIFY_WEBHOOK_URL=""), {"kind": "PROMOTION_APPROVED", "to": "a@example.com"}) is False
        post.assert_not_called()


def test_deliver_posts_to_webhook():
    from app.tasks.notifications import deliver

    resp = MagicMock()
    with patch("app.tasks.notifications.requests.post", return_value=resp) as post:
        sent = deliver(SimpleNamespace(NOTIFY_WEBHOOK_URL="https://hooks.example.com/hr"), {"kind": "PROMOTION_REJECTED"})
    assert sent is True
    post.assert_called_once()
    assert post.call_args.kwargs["json"] == {"kind": "PROMOTION_REJECTED"}
    resp.raise_for_status.assert_called_once()


def test_render_pdf_task_writes_file(app_client, monkeypatch):
    import app.tasks.notifications as notifications

    _app, _client = app_client
    monkeypatch.setattr(notifications, "_cfg", None)
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(Employee(employeeId="EMP-0001", employeeName="Quinn Learner", status="ACTIVE", createdAt=now, updatedAt=now))
        db.add(_certificate())
        db.commit()

    out = notifications.render_pdf("ABCDEF123456")
    assert out["rendered"] is True
    assert os.path.exists(out["path"])
    with open(out["path"], "rb") as fh:
        assert fh.read(4) == b"%PDF"

    assert notifications.render_pdf("MISSING00000") == {"rendered": False}
