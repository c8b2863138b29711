from __future__ import annotations

import json

from sqlalchemy import select

from db import SessionLocal
from services.promotion_workflow import progress_percentage
from models import Employee, Pip, PromotionApproval, PromotionCandidate, RoleHistory, SuccessionCandidate, User
from utils import iso_utc_now


def _seed_user(*, user_id: str, email: str, role: str) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                email=email,
                fullName="Test User",
                role=role,
                status="ACTIVE",
                lastLoginAt="",
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
                updatedBy="TEST",
            )
        )
        db.commit()


def _seed_employee(*, employee_id: str, user_id: str = "", manager_id: str = "", current_role: str = "Engineer") -> None:
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
                currentRole=current_role,
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


def _seed_org(client) -> dict[str, str]:
    _seed_user(user_id="USR-ADMIN", email="admin@example.com", role="ADMIN")
    _seed_user(user_id="USR-MGR", email="manager@example.com", role="MANAGER")
    _seed_user(user_id="USR-HRBP", email="hrbp@example.com", role="HRBP")
    _seed_user(user_id="USR-DIR", email="director@example.com", role="DIRECTOR")
    _seed_employee(employee_id="EMP-MGR", user_id="USR-MGR", current_role="Engineering Manager")
    _seed_employee(employee_id="EMP-0001", manager_id="EMP-MGR")
    return {
        "admin": _login(client, email="admin@example.com"),
        "manager": _login(client, email="manager@example.com"),
        "hrbp": _login(client, email="hrbp@example.com"),
        "director": _login(client, email="director@example.com"),
    }


def _submitted(client, tokens: dict[str, str], **extra) -> dict:
    created = _ok(
        _api(
            client,
            {
                "action": "PROMOTION_CREATE",
                "token": tokens["manager"],
                "data": {"employeeId": "EMP-0001", "proposedRole": "Senior Engineer", "justification": "Led the billing rewrite", **extra},
            },
        )
    )
    assert created["status"] == "draft"
    assert created["currentRole"] == "Engineer"
    return _ok(_api(client, {"action": "PROMOTION_SUBMIT", "token": tokens["manager"], "data": {"promotionId": created["promotionId"]}}))


def _decide(client, token: str, action: str, approval_id: int, **data):
    return _api(client, {"action": action, "token": token, "data": {"approvalId": approval_id, **data}})


def test_out_of_order_approvals_complete_the_promotion(app_client):
    _app, client = app_client
    tokens = _seed_org(client)

    with SessionLocal() as db:
        db.add(Pip(id="PIP-2025-00001", employee_id="EMP-0001", reason="Missed deadlines", status="active", start_date="2025-01-01"))
        db.add(SuccessionCandidate(employee_id="EMP-0001", target_role="Senior Engineer", readiness="ready_now"))
        db.commit()

    promo = _submitted(client, tokens)
    assert promo["status"] == "in_review"
    assert promo["workflowName"] == "Standard Promotion Workflow"
    steps = {a["stepOrder"]: a for a in promo["approvals"]}
    assert [steps[i]["approverId"] for i in (1, 2, 3)] == ["USR-MGR", "USR-HRBP", "USR-DIR"]

    after = _ok(_decide(client, tokens["director"], "PROMOTION_APPROVE", steps[3]["approvalId"], note="Strong case"))
    assert after["status"] == "in_review"
    assert after["progressPct"] == 33

    after = _ok(_decide(client, tokens["manager"], "PROMOTION_APPROVE", steps[1]["approvalId"]))
    assert after["status"] == "in_review"
    assert after["progressPct"] == 67

    after = _ok(_decide(client, tokens["hrbp"], "PROMOTION_APPROVE", steps[2]["approvalId"]))
    assert after["status"] == "approved"
    assert after["progressPct"] == 100
    assert after["approvedAt"]
    assert all(a["decision"] == "approved" for a in after["approvals"])

    with SessionLocal() as db:
        emp = db.execute(select(Employee).where(Employee.employeeId == "EMP-0001")).scalar_one()
        assert emp.currentRole == "Senior Engineer"
        history = db.execute(select(RoleHistory).where(RoleHistory.employee_id == "EMP-0001").where(RoleHistory.end_at == "")).scalars().all()
        assert [h.role for h in history] == ["Senior Engineer"]
        pip = db.execute(select(Pip).where(Pip.id == "PIP-2025-00001")).scalar_one()
        assert pip.status == "completed"
        assert db.execute(select(SuccessionCandidate).where(SuccessionCandidate.employee_id == "EMP-0001")).first() is None


def test_rejection_ends_review_and_freezes_other_steps(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    steps = {a["stepOrder"]: a for a in promo["approvals"]}

    res = _decide(client, tokens["hrbp"], "PROMOTION_REJECT", steps[2]["approvalId"])
    assert res.status_code == 400

    after = _ok(_decide(client, tokens["hrbp"], "PROMOTION_REJECT", steps[2]["approvalId"], reason="Not ready yet"))
    assert after["status"] == "rejected"
    assert after["rejectionReason"] == "Not ready yet"
    decisions = {a["stepOrder"]: a["decision"] for a in after["approvals"]}
    assert decisions == {1: "pending", 2: "rejected", 3: "pending"}

    res = _decide(client, tokens["manager"], "PROMOTION_APPROVE", steps[1]["approvalId"])
    assert res.status_code == 409
    assert res.get_json()["error"]["code"] == "CONFLICT"

    with SessionLocal() as db:
        emp = db.execute(select(Employee).where(Employee.employeeId == "EMP-0001")).scalar_one()
        assert emp.currentRole == "Engineer"


def test_only_the_assigned_approver_can_decide(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    manager_step = next(a for a in promo["approvals"] if a["stepOrder"] == 1)

    res = _decide(client, tokens["hrbp"], "PROMOTION_APPROVE", manager_step["approvalId"])
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"

    # The approver can read the candidate without being its sponsor.
    seen = _ok(_api(client, {"action": "PROMOTION_GET", "token": tokens["director"], "data": {"promotionId": promo["promotionId"]}}))
    assert seen["approvals"][0]["decision"] == "pending"


def test_deciding_a_decided_step_conflicts(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    manager_step = next(a for a in promo["approvals"] if a["stepOrder"] == 1)

    _ok(_decide(client, tokens["manager"], "PROMOTION_APPROVE", manager_step["approvalId"]))
    res = _decide(client, tokens["manager"], "PROMOTION_APPROVE", manager_step["approvalId"])
    assert res.status_code == 409


def test_submitting_twice_is_rejected(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)

    res = _api(client, {"action": "PROMOTION_SUBMIT", "token": tokens["manager"], "data": {"promotionId": promo["promotionId"]}})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "BAD_REQUEST"


def test_withdraw_allows_a_new_candidate(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)

    res = _api(
        client,
        {"action": "PROMOTION_CREATE", "token": tokens["manager"], "data": {"employeeId": "EMP-0001", "proposedRole": "Staff Engineer"}},
    )
    assert res.status_code == 409

    withdrawn = _ok(
        _api(client, {"action": "PROMOTION_WITHDRAW", "token": tokens["manager"], "data": {"promotionId": promo["promotionId"], "reason": "Reorg"}})
    )
    assert withdrawn["status"] == "withdrawn"
    assert withdrawn["withdrawalReason"] == "Reorg"

    again = _ok(
        _api(
            client,
            {"action": "PROMOTION_CREATE", "token": tokens["manager"], "data": {"employeeId": "EMP-0001", "proposedRole": "Staff Engineer"}},
        )
    )
    assert again["status"] == "draft"


def test_comp_adjustment_uses_finance_workflow_with_admin_fallback(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens, compAdjustment={"baseSalaryIncreasePct": 8})

    assert promo["workflowName"] == "Finance Required Workflow"
    roles = {a["approverRole"]: a["approverId"] for a in promo["approvals"]}
    assert roles == {"manager": "USR-MGR", "hrbp": "USR-HRBP", "finance": "USR-ADMIN", "director": "USR-DIR"}


def test_manager_cannot_promote_outside_their_team(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    _seed_employee(employee_id="EMP-0099")

    res = _api(
        client,
        {"action": "PROMOTION_CREATE", "token": tokens["manager"], "data": {"employeeId": "EMP-0099", "proposedRole": "Senior Engineer"}},
    )
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"


def test_metrics_count_by_status(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    _submitted(client, tokens)

    metrics = _ok(_api(client, {"action": "PROMOTION_METRICS", "token": tokens["admin"], "data": {}}))
    assert metrics["total"] == 1
    assert metrics["inReview"] == 1
    assert metrics["byDepartment"] == [{"department": "Engineering", "count": 1}]
    assert metrics["averageReviewTimeDays"] is None


def test_metrics_average_review_time_and_date_window(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    for a in promo["approvals"]:
        approver = {1: "manager", 2: "hrbp", 3: "director"}[a["stepOrder"]]
        _ok(_decide(client, tokens[approver], "PROMOTION_APPROVE", a["approvalId"]))

    with SessionLocal() as db:
        row = db.execute(select(PromotionCandidate).where(PromotionCandidate.id == promo["promotionId"])).scalar_one()
        row.submitted_at = "2025-03-01T00:00:00.000Z"
        row.approved_at = "2025-03-04T12:00:00.000Z"
        db.commit()

    metrics = _ok(_api(client, {"action": "PROMOTION_METRICS", "token": tokens["admin"], "data": {}}))
    assert metrics["approved"] == 1
    assert metrics["averageReviewTimeDays"] == 3.5

    later = _ok(_api(client, {"action": "PROMOTION_METRICS", "token": tokens["admin"], "data": {"dateFrom": "2999-01-01"}}))
    assert later["total"] == 0
    assert later["byDepartment"] == []
    assert later["averageReviewTimeDays"] is None


def test_next_approver_follows_step_order(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    steps = {a["stepOrder"]: a for a in promo["approvals"]}
    assert promo["nextApprover"]["approverId"] == "USR-MGR"

    # A later step deciding first does not move the next approver.
    after = _ok(_decide(client, tokens["director"], "PROMOTION_APPROVE", steps[3]["approvalId"]))
    assert after["nextApprover"]["approverId"] == "USR-MGR"

    after = _ok(_decide(client, tokens["manager"], "PROMOTION_APPROVE", steps[1]["approvalId"]))
    assert after["nextApprover"]["approverId"] == "USR-HRBP"
    assert after["nextApprover"]["stepName"] == "HRBP Review"

    after = _ok(_decide(client, tokens["hrbp"], "PROMOTION_APPROVE", steps[2]["approvalId"]))
    assert after["status"] == "approved"
    assert after["nextApprover"] is None


def test_approver_inbox_lists_undecided_steps(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    manager_step = next(a for a in promo["approvals"] if a["stepOrder"] == 1)

    inbox = _ok(_api(client, {"action": "PROMOTION_APPROVALS_PENDING", "token": tokens["manager"], "data": {}}))
    assert inbox["total"] == 1
    assert inbox["items"][0]["promotionId"] == promo["promotionId"]

    _ok(_decide(client, tokens["manager"], "PROMOTION_APPROVE", manager_step["approvalId"]))
    inbox = _ok(_api(client, {"action": "PROMOTION_APPROVALS_PENDING", "token": tokens["manager"], "data": {}}))
    assert inbox == {"items": [], "total": 0}

    inbox = _ok(_api(client, {"action": "PROMOTION_APPROVALS_PENDING", "token": tokens["director"], "data": {}}))
    assert [i["promotionId"] for i in inbox["items"]] == [promo["promotionId"]]

    # A rejected candidate leaves every inbox.
    hrbp_step = next(a for a in promo["approvals"] if a["stepOrder"] == 2)
    _ok(_decide(client, tokens["hrbp"], "PROMOTION_REJECT", hrbp_step["approvalId"], reason="Not yet"))
    inbox = _ok(_api(client, {"action": "PROMOTION_APPROVALS_PENDING", "token": tokens["director"], "data": {}}))
    assert inbox["total"] == 0


def test_timeline_orders_lifecycle_events(app_client):
    _app, client = app_client
    tokens = _seed_org(client)
    promo = _submitted(client, tokens)
    steps = {a["stepOrder"]: a for a in promo["approvals"]}
    _ok(_decide(client, tokens["director"], "PROMOTION_APPROVE", steps[3]["approvalId"], note="Strong case"))
    _ok(_decide(client, tokens["manager"], "PROMOTION_APPROVE", steps[1]["approvalId"]))
    _ok(_decide(client, tokens["hrbp"], "PROMOTION_APPROVE", steps[2]["approvalId"]))

    out = _ok(_api(client, {"action": "PROMOTION_TIMELINE", "token": tokens["director"], "data": {"promotionId": promo["promotionId"]}}))
    events = out["events"]
    types = [e["type"] for e in events]
    assert types[:2] == ["created", "submitted"]
    assert types[2:5] == ["approved", "approved", "approved"]
    assert types[-1] == "completed"
    assert [e["date"] for e in events] == sorted(e["date"] for e in events)

    created = events[0]
    assert created["actorId"] == "USR-MGR"
    assert created["actorName"] == "Test User"
    director = next(e for e in events if e["actorId"] == "USR-DIR")
    assert director["note"] == "Strong case"
    assert director["title"] == "Director Approval"


def test_progress_rounds_half_up():
    rows = [PromotionApproval(decision="approved")] + [PromotionApproval(decision="pending") for _ in range(7)]
    assert progress_percentage(rows) == 13
    rows = [PromotionApproval(decision="approved") for _ in range(5)] + [PromotionApproval(decision="pending") for _ in range(3)]
    assert progress_percentage(rows) == 63
