from __future__ import annotations

import json

from db import SessionLocal
from models import Employee, User
from utils import iso_utc_now


def _seed_user(*, user_id: str, email: str, role: str, status: str = "ACTIVE") -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName="Test User",
                role=role,
                status=status,
                lastLoginAt="",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def _seed_employee(*, employee_id: str, user_id: str = "", manager_id: str = "") -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            Employee(
                employeeId=employee_id,
                userId=user_id,
                employeeName=f"Employee {employee_id}",
                email=f"{employee_id.lower()}@example.com",
                department="Engineering",
                managerId=manager_id,
                currentRole="Engineer",
                status="ACTIVE",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def _api(client, payload: dict):
    return client.post("/api", data=json.dumps(payload), content_type="text/plain; charset=utf-8")


def _login(client, *, email: str) -> str:
    res = _api(client, {"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": f"TEST:{email}"}})
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    return body["data"]["sessionToken"]


def _ok(res) -> dict:
    body = res.get_json()
    assert body["ok"] is True, body
    return body["data"]


def _course(client, token: str, *, certificate: bool = False) -> dict:
    return _ok(
        _api(
            client,
            {
                "action": "COURSE_CREATE",
                "token": token,
                "data": {
                    "title": "Data Privacy",
                    "metadata": {"certificate_enabled": certificate},
                    "lessons": [{"title": "Handbook", "type": "pdf", "contentUrl": "https://cdn.example.com/privacy.pdf"}],
                },
            },
        )
    )


def test_employee_cannot_create_courses(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-EMP", email="employee@example.com", role="EMPLOYEE")
    token = _login(client, email="employee@example.com")

    res = _api(client, {"action": "COURSE_CREATE", "token": token, "data": {"title": "Sneaky"}})
    assert res.status_code == 403
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "FORBIDDEN"


def test_missing_session_is_auth_invalid(app_client):
    _app, client = app_client
    res = _api(client, {"action": "GET_ME", "token": "not-a-real-token", "data": {}})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"


def test_unknown_action_is_bad_request(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-ADMIN", email="admin@example.com", role="ADMIN")
    token = _login(client, email="admin@example.com")

    res = _api(client, {"action": "DROP_EVERYTHING", "token": token, "data": {}})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_disabled_user_cannot_log_in(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-OFF", email="off@example.com", role="EMPLOYEE", status="DISABLED")

    res = _api(client, {"action": "LOGIN_EXCHANGE", "token": None, "data": {"idToken": "TEST:off@example.com"}})
    body = res.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "AUTH_INVALID"


def test_my_permissions_reflect_role(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-EMP", email="employee@example.com", role="EMPLOYEE")
    token = _login(client, email="employee@example.com")

    perms = _ok(_api(client, {"action": "MY_PERMISSIONS_GET", "token": token, "data": {}}))
    assert perms["role"] == "EMPLOYEE"
    allowed = set(perms["actionKeys"])
    assert "LESSON_COMPLETE" in allowed
    assert "COURSE_CREATE" not in allowed


def test_employee_cannot_read_a_colleague_enrollment(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-ADMIN", email="admin@example.com", role="ADMIN")
    _seed_user(user_id="USR-A", email="a@example.com", role="EMPLOYEE")
    _seed_user(user_id="USR-B", email="b@example.com", role="EMPLOYEE")
    _seed_employee(employee_id="EMP-A", user_id="USR-A")
    _seed_employee(employee_id="EMP-B", user_id="USR-B")
    admin = _login(client, email="admin@example.com")
    course = _course(client, admin)

    token_a = _login(client, email="a@example.com")
    enrollment = _ok(_api(client, {"action": "ENROLLMENT_CREATE", "token": token_a, "data": {"courseId": course["courseId"]}}))

    token_b = _login(client, email="b@example.com")
    res = _api(client, {"action": "ENROLLMENT_GET", "token": token_b, "data": {"enrollmentId": enrollment["enrollment"]["enrollmentId"]}})
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"


def test_rest_lesson_complete_and_certificate_lookup(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-ADMIN", email="admin@example.com", role="ADMIN")
    _seed_user(user_id="USR-EMP", email="employee@example.com", role="EMPLOYEE")
    _seed_employee(employee_id="EMP-0001", user_id="USR-EMP")
    admin = _login(client, email="admin@example.com")
    course = _course(client, admin, certificate=True)
    lesson_id = course["lessons"][0]["lessonId"]

    token = _login(client, email="employee@example.com")
    enrollment_id = _ok(_api(client, {"action": "ENROLLMENT_CREATE", "token": token, "data": {"courseId": course["courseId"]}}))["enrollment"][
        "enrollmentId"
    ]

    res = client.post(
        f"/api/lessons/{lesson_id}/complete",
        json={"enrollmentId": enrollment_id},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is True
    assert body["data"]["changed"] is True
    assert body["data"]["enrollment"]["status"] == "completed"

    certs = _ok(_api(client, {"action": "CERTIFICATES_LIST", "token": token, "data": {}}))
    certificate_id = certs["items"][0]["certificateId"]

    res = client.get(f"/api/certificates/{certificate_id}", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["courseId"] == course["courseId"]

    res = client.get("/api/certificates/NOPE", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 404


def test_rest_routes_require_a_session(app_client):
    _app, client = app_client
    res = client.post("/api/lessons/1/complete", json={"enrollmentId": 1})
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "AUTH_INVALID"


def test_rest_decide_rejects_unknown_decision(app_client):
    _app, client = app_client
    res = client.post("/api/promotion-approvals/1/decide", json={"decision": "maybe"})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_pip_and_succession_records(app_client):
    _app, client = app_client
    _seed_user(user_id="USR-HR", email="hr@example.com", role="HR")
    _seed_user(user_id="USR-MGR", email="manager@example.com", role="MANAGER")
    _seed_employee(employee_id="EMP-MGR", user_id="USR-MGR")
    _seed_employee(employee_id="EMP-0001", manager_id="EMP-MGR")
    _seed_employee(employee_id="EMP-0002")
    hr = _login(client, email="hr@example.com")
    manager = _login(client, email="manager@example.com")

    pip = _ok(
        _api(
            client,
            {
                "action": "PIP_CREATE",
                "token": manager,
                "data": {"employeeId": "EMP-0001", "reason": "Quality issues", "startDate": "2025-03-01", "endDate": "2025-05-31"},
            },
        )
    )
    assert pip["status"] == "active"

    res = _api(client, {"action": "PIP_CREATE", "token": manager, "data": {"employeeId": "EMP-0002", "reason": "Not my report"}})
    assert res.status_code == 403

    paused = _ok(_api(client, {"action": "PIP_STATUS_SET", "token": manager, "data": {"pipId": pip["pipId"], "status": "paused"}}))
    assert paused["status"] == "paused"

    added = _ok(
        _api(
            client,
            {"action": "SUCCESSION_CANDIDATE_ADD", "token": hr, "data": {"employeeId": "EMP-0001", "targetRole": "Tech Lead", "readiness": "6-12m"}},
        )
    )
    assert added["created"] is True
    updated = _ok(
        _api(
            client,
            {"action": "SUCCESSION_CANDIDATE_ADD", "token": hr, "data": {"employeeId": "EMP-0001", "targetRole": "Tech Lead", "readiness": "ready_now"}},
        )
    )
    assert updated["created"] is False
    assert updated["id"] == added["id"]

    listing = _ok(_api(client, {"action": "SUCCESSION_LIST", "token": hr, "data": {"targetRole": "Tech Lead"}}))
    assert listing["total"] == 1
    assert listing["items"][0]["readiness"] == "ready_now"


def test_rest_routes_share_the_action_rate_limit(app_client, monkeypatch):
    app, client = app_client
    monkeypatch.setattr(app.config["CFG"], "RATE_LIMIT_DEFAULT", "2/60")

    for _ in range(2):
        res = client.post("/api/lessons/1/complete", json={"enrollmentId": 1})
        assert res.status_code == 401

    res = client.post("/api/lessons/1/complete", json={"enrollmentId": 1})
    assert res.status_code == 429
    assert res.get_json()["error"]["code"] == "RATE_LIMITED"

    # The JSON endpoint draws on the same per-action budget.
    res = _api(client, {"action": "LESSON_COMPLETE", "token": None, "data": {"enrollmentId": 1, "lessonId": 1}})
    assert res.status_code == 429

    # Other actions keep their own budget.
    res = client.get("/api/certificates/NOPE")
    assert res.status_code == 401


def test_rest_routes_honour_the_global_rate_limit(app_client, monkeypatch):
    app, client = app_client
    monkeypatch.setattr(app.config["CFG"], "RATE_LIMIT_GLOBAL", "1/60")

    assert client.get("/api/certificates/NOPE").status_code == 401
    res = client.post("/api/lessons/1/complete", json={"enrollmentId": 1})
    assert res.status_code == 429
    assert res.get_json()["error"]["code"] == "RATE_LIMITED"
