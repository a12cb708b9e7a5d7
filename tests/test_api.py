from __future__ import annotations

import uuid

from fastapi.testclient import TestClient
from sqlalchemy import select

from tripledger.core.db import SessionLocal
from tripledger.core.security import create_access_token
from tripledger.modules.reports.models import Report


def _client() -> TestClient:
    from tripledger.main import create_app

    return TestClient(create_app())


def _login(client: TestClient, email: str) -> dict[str, str]:
    resp = client.post("/api/auth/token", data={"username": email, "password": "password123"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def test_health_endpoints():
    with _client() as client:
        assert client.get("/healthz").json() == {"status": "ok"}
        resp = client.get("/healthz/storage")
        assert resp.status_code == 200
        assert resp.json()["backend"] == "local"


def test_login_and_me(team):
    with _client() as client:
        headers = _login(client, "manager@acme.io")
        resp = client.get("/api/auth/me", headers=headers)
        assert resp.status_code == 200
        body = resp.json()
        assert body["email"] == "manager@acme.io"
        assert body["roles"] == ["manager"]
        assert body["organization_id"] == str(team.organization_id)

        perms = client.get("/api/auth/me/permissions", headers=headers).json()
        assert perms["can_approve_travel"] is True
        assert perms["can_manage_policy"] is False


def test_requests_without_valid_token_are_rejected(team):
    with _client() as client:
        assert client.get("/api/auth/me").status_code == 401
        bad = {"Authorization": "Bearer not-a-token"}
        assert client.get("/api/auth/me", headers=bad).status_code == 401
        wrong_pw = client.post(
            "/api/auth/token", data={"username": "manager@acme.io", "password": "nope-nope"}
        )
        assert wrong_pw.status_code == 401


def test_permission_guarded_endpoint(team):
    with _client() as client:
        token = create_access_token(subject=str(team.employee_id))
        resp = client.post(
            "/api/invitations",
            json={"role": "user"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 403


def test_travel_request_round_trip_over_http(team):
    with _client() as client:
        employee = _login(client, "employee@acme.io")
        manager = _login(client, "manager@acme.io")

        created = client.post(
            "/api/travel-requests",
            json={
                "destination_city": "Lisbon",
                "destination_country": "Portugal",
                "start_date": "2031-05-04",
                "end_date": "2031-05-07",
                "purpose": "Partner summit",
                "currency": "USD",
                "estimates": {"flights": "650", "accommodation_per_night": "180"},
            },
            headers=employee,
        )
        assert created.status_code == 200, created.text
        body = created.json()
        assert body["status"] == "draft"
        assert body["nights"] == 3
        assert body["days"] == 4
        request_id = body["id"]

        submitted = client.post(f"/api/travel-requests/{request_id}/submit", headers=employee)
        assert submitted.status_code == 200, submitted.text
        assert submitted.json()["status"] == "pending_approval"

        pending = client.get("/api/travel-requests/pending-approvals", headers=manager).json()
        assert [p["id"] for p in pending] == [request_id]

        decided = client.post(
            f"/api/travel-requests/{request_id}/decide",
            json={"decision": "approve", "comments": "Have a good trip"},
            headers=manager,
        )
        assert decided.status_code == 200, decided.text
        assert decided.json()["status"] == "approved"

        approved = client.get("/api/approved-travels", headers=employee).json()
        assert len(approved) == 1
        assert approved[0]["approval_number"].startswith("TA-")


def test_report_approval_link_is_public_and_single_use(team):
    with _client() as client:
        employee = _login(client, "employee@acme.io")
        report = client.post(
            "/api/reports",
            json={"trip_destination": "Lisbon", "currency": "USD"},
            headers=employee,
        ).json()
        expense = client.post(
            f"/api/reports/{report['id']}/expenses",
            json={
                "category": "food",
                "expense_date": "2031-05-05",
                "amount": "42.10",
                "currency": "USD",
            },
            headers=employee,
        )
        assert expense.status_code == 200, expense.text
        submitted = client.post(f"/api/reports/{report['id']}/submit", headers=employee)
        assert submitted.json()["status"] == "pending_approval"

        with SessionLocal() as session:
            token = session.scalar(
                select(Report.manager_approval_token).where(
                    Report.id == uuid.UUID(report["id"])
                )
            )

        view = client.get(f"/api/report-approvals/{token}")
        assert view.status_code == 200
        assert view.json()["employee_name"] == "Eli Employee"
        assert len(view.json()["expenses"]) == 1

        decided = client.post(f"/api/report-approvals/{token}", json={"approve": True})
        assert decided.status_code == 200
        assert decided.json()["status"] == "closed"

        again = client.post(f"/api/report-approvals/{token}", json={"approve": True})
        assert again.status_code == 404
