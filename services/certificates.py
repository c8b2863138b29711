from __future__ import annotations

import logging
import secrets
import string
from datetime import date, datetime, timezone
from typing import Any, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.tasks.dispatch import enqueue_after_commit
from models import Certificate, Course, Employee, LearningPath, PathEnrollment
from utils import ApiError, iso_utc_now, safe_json_load, safe_json_string


_log = logging.getLogger("lms")

CERTIFICATE_TYPES = {"course", "learning_path"}
_ID_ALPHABET = string.ascii_uppercase + string.digits


def new_certificate_id() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(12))


def certificate_enabled(metadata: dict[str, Any]) -> bool:
    return bool((metadata or {}).get("certificate_enabled"))


def _expiry_date(issued: date, cert_cfg: dict[str, Any]) -> str:
    raw = (cert_cfg or {}).get("validity_months")
    if raw in (None, ""):
        return ""
    try:
        months = int(raw)
    except Exception:
        return ""
    if months <= 0:
        return ""
    return (issued + relativedelta(months=months)).isoformat()


def is_expired(cert: Certificate, *, today: Optional[date] = None) -> bool:
    exp = str(cert.expiry_date or "").strip()
    if not exp:
        return False
    today = today or datetime.now(timezone.utc).date()
    return exp < today.isoformat()


def _existing(db, *, employee_id: str, cert_type: str, course_id: int, path_id: int) -> Optional[Certificate]:
    return (
        db.execute(
            select(Certificate)
            .where(Certificate.employee_id == employee_id)
            .where(Certificate.type == cert_type)
            .where(Certificate.course_id == course_id)
            .where(Certificate.path_id == path_id)
        )
        .scalars()
        .first()
    )


def _insert_once(db, row: Certificate) -> tuple[Certificate, bool]:
    # Unique (employee, type, course, path) is the backstop when two completions race.
    try:
        with db.begin_nested():
            db.add(row)
        return row, True
    except IntegrityError:
        found = _existing(db, employee_id=row.employee_id, cert_type=row.type, course_id=row.course_id, path_id=row.path_id)
        if not found:
            raise
        return found, False


def _employee(db, employee_id: str) -> Employee:
    emp = db.execute(select(Employee).where(Employee.employeeId == employee_id)).scalar_one_or_none()
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found")
    return emp


def generate_for_course(db, *, employee_id: str, course_id: int, cfg: Any = None) -> tuple[Certificate, bool]:
    """Return (certificate, created). An existing certificate is returned unchanged."""

    course = db.execute(select(Course).where(Course.id == int(course_id))).scalar_one_or_none()
    if not course:
        raise ApiError("NOT_FOUND", "Course not found")
    emp = _employee(db, employee_id)

    found = _existing(db, employee_id=emp.employeeId, cert_type="course", course_id=course.id, path_id=0)
    if found:
        return found, False

    meta = safe_json_load(course.metadata_json, {})
    cert_cfg = meta.get("certificate") if isinstance(meta.get("certificate"), dict) else {}
    issued = datetime.now(timezone.utc).date()

    row = Certificate(
        certificate_id=new_certificate_id(),
        employee_id=emp.employeeId,
        type="course",
        course_id=course.id,
        path_id=0,
        title=str(cert_cfg.get("title") or f"Certificate of Completion - {course.title}"),
        description=str(
            cert_cfg.get("description")
            or f"This certifies that {emp.employeeName} has successfully completed the course: {course.title}"
        ),
        issued_date=issued.isoformat(),
        expiry_date=_expiry_date(issued, cert_cfg),
        metadata_json=safe_json_string(
            {"course_title": course.title, "employee_name": emp.employeeName, "completion_date": issued.isoformat()},
            "{}",
        ),
        created_at=iso_utc_now(),
    )
    cert, created = _insert_once(db, row)
    if created:
        _log.info("certificate issued id=%s employee=%s course=%s", cert.certificate_id, emp.employeeId, course.id)
        enqueue_after_commit(db, cfg, "certificates.render_pdf", certificate_id=cert.certificate_id)
    return cert, created


def generate_for_learning_path(db, *, employee_id: str, path_id: int, cfg: Any = None) -> tuple[Certificate, bool]:
    path = db.execute(select(LearningPath).where(LearningPath.id == int(path_id))).scalar_one_or_none()
    if not path:
        raise ApiError("NOT_FOUND", "Learning path not found")
    emp = _employee(db, employee_id)

    found = _existing(db, employee_id=emp.employeeId, cert_type="learning_path", course_id=0, path_id=path.id)
    if found:
        return found, False

    meta = safe_json_load(path.metadata_json, {})
    cert_cfg = meta.get("certificate") if isinstance(meta.get("certificate"), dict) else {}
    issued = datetime.now(timezone.utc).date()
    pe = (
        db.execute(select(PathEnrollment).where(PathEnrollment.employee_id == emp.employeeId).where(PathEnrollment.path_id == path.id))
        .scalars()
        .first()
    )

    row = Certificate(
        certificate_id=new_certificate_id(),
        employee_id=emp.employeeId,
        type="learning_path",
        course_id=0,
        path_id=path.id,
        title=str(cert_cfg.get("title") or f"Certificate of Completion - {path.name}"),
        description=str(
            cert_cfg.get("description")
            or f"This certifies that {emp.employeeName} has successfully completed the learning path: {path.name}"
        ),
        issued_date=issued.isoformat(),
        expiry_date=_expiry_date(issued, cert_cfg),
        metadata_json=safe_json_string(
            {
                "path_title": path.name,
                "employee_name": emp.employeeName,
                "completion_date": issued.isoformat(),
                "total_courses": int(pe.total_courses or 0) if pe else 0,
            },
            "{}",
        ),
        created_at=iso_utc_now(),
    )
    cert, created = _insert_once(db, row)
    if created:
        _log.info("certificate issued id=%s employee=%s path=%s", cert.certificate_id, emp.employeeId, path.id)
        enqueue_after_commit(db, cfg, "certificates.render_pdf", certificate_id=cert.certificate_id)
    return cert, created


def serialize_certificate(cert: Certificate) -> dict[str, Any]:
    return {
        "certificateId": cert.certificate_id,
        "employeeId": cert.employee_id,
        "type": cert.type,
        "courseId": int(cert.course_id or 0) or None,
        "pathId": int(cert.path_id or 0) or None,
        "title": cert.title,
        "description": cert.description,
        "issuedDate": cert.issued_date,
        "expiryDate": cert.expiry_date or None,
        "isExpired": is_expired(cert),
        "metadata": safe_json_load(cert.metadata_json, {}),
    }


def render_certificate_pdf(cert: Certificate, *, employee_name: str = "") -> bytes:
    """Single landscape page: title, recipient, description, issue and expiry dates."""

    import io
    from xml.sax.saxutils import escape

    from reportlab.lib import colors as rl_colors
    from reportlab.lib.enums import TA_CENTER
    from reportlab.lib.pagesizes import A4, landscape
    from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
    from reportlab.lib.units import cm
    from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=landscape(A4),
        leftMargin=2.5 * cm,
        rightMargin=2.5 * cm,
        topMargin=2.5 * cm,
        bottomMargin=2.5 * cm,
        title=cert.title,
    )

    styles = getSampleStyleSheet()
    title = ParagraphStyle("CertTitle", parent=styles["Title"], alignment=TA_CENTER, fontSize=26, leading=32)
    name = ParagraphStyle("CertName", parent=styles["Heading1"], alignment=TA_CENTER, fontSize=22, leading=28, spaceBefore=18)
    body = ParagraphStyle("CertBody", parent=styles["Normal"], alignment=TA_CENTER, fontSize=12, leading=18)
    small = ParagraphStyle("CertSmall", parent=styles["Normal"], alignment=TA_CENTER, fontSize=9, leading=12, textColor=rl_colors.grey)

    meta = safe_json_load(cert.metadata_json, {})
    recipient = employee_name or str(meta.get("employee_name") or cert.employee_id)

    story = [
        Paragraph(escape(cert.title), title),
        HRFlowable(width="60%", color=rl_colors.HexColor("#5C2D91"), thickness=2, spaceBefore=6, spaceAfter=12),
        Paragraph(escape(recipient), name),
        Spacer(1, 0.6 * cm),
        Paragraph(escape(cert.description), body),
        Spacer(1, 1.2 * cm),
        Paragraph(f"Issued {cert.issued_date}", body),
    ]
    if cert.expiry_date:
        story.append(Paragraph(f"Valid until {cert.expiry_date}", body))
    story.extend([Spacer(1, 1.5 * cm), Paragraph(f"Certificate ID: {cert.certificate_id}", small)])

    doc.build(story)
    return buf.getvalue()
