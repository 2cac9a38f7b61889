from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import select

from expenseflow.models import AuditLog
from expenseflow.schemas import AuditAction, UserRole
from conftest import TEST_PASSWORD


def expense_payload(amount="120.00", currency="USD"):
    return {
        "amount": amount,
        "currency": currency,
        "category": "Travel",
        "description": "Taxi to client office",
        "expense_date": date.today().isoformat(),
    }


@pytest.mark.asyncio
class TestAuthApi:
    """Registration and token endpoints"""

    async def test_register_company(self, client):
        """Registration returns tokens, the admin and the company"""
        response = await client.post("/companies/register", json={
            "company_name": "Globex",
            "country": "Germany",
            "default_currency": "EUR",
            "admin_first_name": "Hank",
            "admin_last_name": "Scorpio",
            "admin_email": "Hank@Globex.com",
            "password": TEST_PASSWORD,
        })
        assert response.status_code == 201
        data = response.json()
        assert data["token"]["token_type"] == "bearer"
        assert data["user"]["role"] == "admin"
        assert data["user"]["email"] == "hank@globex.com"
        assert data["company"]["default_currency"] == "EUR"

        headers = {"Authorization": f"Bearer {data['token']['access_token']}"}
        rules = await client.get("/rules/", headers=headers)
        assert rules.status_code == 200
        assert len(rules.json()) == 3

    async def test_register_duplicate_email(self, client, admin):
        response = await client.post("/companies/register", json={
            "company_name": "Initech",
            "country": "United States",
            "admin_first_name": "Bill",
            "admin_last_name": "Lumbergh",
            "admin_email": admin.email,
            "password": TEST_PASSWORD,
        })
        assert response.status_code == 400

    async def test_login_refresh_and_me(self, client, employee):
        """Login tokens work for /auth/me and can be refreshed"""
        response = await client.post("/auth/login", json={
            "email": employee.email.upper(),
            "password": TEST_PASSWORD,
        })
        assert response.status_code == 200
        tokens = response.json()

        me = await client.get("/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert me.status_code == 200
        assert me.json()["id"] == str(employee.id)

        refreshed = await client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        assert refreshed.json()["access_token"]

    async def test_access_token_cannot_refresh(self, client, employee, headers_for):
        token = headers_for(employee)["Authorization"].split(" ", 1)[1]
        response = await client.post("/auth/refresh", json={"refresh_token": token})
        assert response.status_code == 401

    async def test_wrong_password(self, client, employee):
        response = await client.post("/auth/login", json={"email": employee.email, "password": "nope-nope"})
        assert response.status_code == 401

    async def test_missing_token(self, client):
        response = await client.get("/auth/me")
        assert response.status_code in (401, 403)


@pytest.mark.asyncio
class TestUsersApi:
    """Admin user management"""

    async def test_admin_creates_employee(self, client, admin, manager, headers_for):
        response = await client.post("/users", headers=headers_for(admin), json={
            "email": "new.hire@acme.com",
            "first_name": "New",
            "last_name": "Hire",
            "password": TEST_PASSWORD,
            "manager_id": str(manager.id),
        })
        assert response.status_code == 201
        assert response.json()["manager_id"] == str(manager.id)

        listing = await client.get("/users", headers=headers_for(admin))
        assert "new.hire@acme.com" in [user["email"] for user in listing.json()]

    async def test_manager_from_other_company_is_rejected(self, client, admin, make_company, make_user, headers_for):
        foreign = await make_user(await make_company(name="Other"), role=UserRole.manager)
        response = await client.post("/users", headers=headers_for(admin), json={
            "email": "x@acme.com",
            "first_name": "X",
            "last_name": "Y",
            "password": TEST_PASSWORD,
            "manager_id": str(foreign.id),
        })
        assert response.status_code == 422

    async def test_employee_cannot_create_users(self, client, employee, headers_for):
        response = await client.get("/users", headers=headers_for(employee))
        assert response.status_code == 403

    async def test_deactivated_manager_reroutes_new_expenses(
        self, client, default_rules, admin, manager, employee, headers_for
    ):
        """New expenses follow deactivation and manager reassignment"""
        response = await client.put(f"/users/{manager.id}", headers=headers_for(admin), json={"is_active": False})
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        me = await client.get("/auth/me", headers=headers_for(manager))
        assert me.status_code == 401

        blocked = await client.post("/expenses/submit", headers=headers_for(employee), json=expense_payload())
        assert blocked.status_code == 422

        response = await client.put(
            f"/users/{employee.id}", headers=headers_for(admin), json={"manager_id": str(admin.id)}
        )
        assert response.status_code == 200
        assert response.json()["manager_id"] == str(admin.id)

        routed = await client.post("/expenses/submit", headers=headers_for(employee), json=expense_payload())
        assert routed.status_code == 201
        assert routed.json()["approval_workflow"]["steps"][0]["approver_id"] == str(admin.id)

    async def test_role_change_is_audited(self, client, db, admin, employee, headers_for):
        response = await client.put(f"/users/{employee.id}", headers=headers_for(admin), json={"role": "manager"})
        assert response.status_code == 200
        assert response.json()["role"] == "manager"

        entry = await db.scalar(
            select(AuditLog).where(AuditLog.resource_id == employee.id, AuditLog.action == AuditAction.update)
        )
        assert entry.old_values["role"] == "employee"
        assert entry.new_values["role"] == "manager"

    async def test_manager_can_be_cleared(self, client, admin, manager, employee, headers_for):
        response = await client.put(f"/users/{employee.id}", headers=headers_for(admin), json={"manager_id": None})
        assert response.status_code == 200
        assert response.json()["manager_id"] is None

    async def test_invalid_user_updates(self, client, admin, employee, make_company, make_user, headers_for):
        stranger = await make_user(await make_company(name="Other"))

        demote_self = await client.put(f"/users/{admin.id}", headers=headers_for(admin), json={"role": "employee"})
        assert demote_self.status_code == 422

        own_manager = await client.put(
            f"/users/{employee.id}", headers=headers_for(admin), json={"manager_id": str(employee.id)}
        )
        assert own_manager.status_code == 422

        foreign = await client.put(f"/users/{stranger.id}", headers=headers_for(admin), json={"is_active": False})
        assert foreign.status_code == 404

        not_admin = await client.put(f"/users/{employee.id}", headers=headers_for(employee), json={"role": "admin"})
        assert not_admin.status_code == 403


@pytest.mark.asyncio
class TestApprovalApi:
    """Submission and approval over HTTP"""

    async def test_submit_and_approve(self, client, default_rules, manager, employee, headers_for):
        """Manager approval finishes a mid-range expense"""
        response = await client.post("/expenses/submit", headers=headers_for(employee), json=expense_payload())
        assert response.status_code == 201
        expense = response.json()
        assert expense["status"] == "pending"
        assert expense["approval_workflow"]["total_steps"] == 1
        assert expense["approval_workflow"]["steps"][0]["approver_id"] == str(manager.id)

        pending = await client.get("/approvals/pending", headers=headers_for(manager))
        assert [item["id"] for item in pending.json()] == [expense["id"]]

        approved = await client.post(
            f"/approvals/{expense['id']}/approve",
            headers=headers_for(manager),
            json={"comments": "Fine", "expected_step": 0},
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert approved.json()["approval_workflow"]["current_step"] == 1

        again = await client.post(f"/approvals/{expense['id']}/reject", headers=headers_for(manager), json={})
        assert again.status_code == 409

    async def test_outsider_cannot_approve(self, client, default_rules, admin, employee, headers_for):
        expense = (await client.post(
            "/expenses/submit", headers=headers_for(employee), json=expense_payload()
        )).json()
        response = await client.post(f"/approvals/{expense['id']}/approve", headers=headers_for(admin), json={})
        assert response.status_code == 403

    async def test_no_approval_path(self, client, default_rules, company, make_user, headers_for):
        loner = await make_user(company)
        response = await client.post("/expenses/submit", headers=headers_for(loner), json=expense_payload("300.00"))
        assert response.status_code == 422

        mine = await client.get("/expenses/my-expenses", headers=headers_for(loner))
        assert mine.json() == []

    async def test_unknown_expense(self, client, manager, headers_for):
        response = await client.get(f"/expenses/{uuid4()}", headers=headers_for(manager))
        assert response.status_code == 404

    async def test_invalid_currency(self, client, default_rules, employee, headers_for):
        response = await client.post(
            "/expenses/submit", headers=headers_for(employee), json=expense_payload(currency="U$D")
        )
        assert response.status_code == 422

    async def test_draft_lifecycle(self, client, default_rules, employee, headers_for):
        draft = await client.post("/expenses/", headers=headers_for(employee), json=expense_payload("20.00"))
        assert draft.status_code == 201
        assert draft.json()["status"] == "draft"

        submitted = await client.post(f"/expenses/{draft.json()['id']}/submit", headers=headers_for(employee))
        assert submitted.status_code == 200
        assert submitted.json()["status"] == "approved"

        deleted = await client.delete(f"/expenses/{draft.json()['id']}", headers=headers_for(employee))
        assert deleted.status_code == 409

        history = await client.get(f"/expenses/{draft.json()['id']}/history", headers=headers_for(employee))
        assert history.status_code == 200
        assert {entry["action"] for entry in history.json()} == {"create", "submit"}

    async def test_null_draft_fields_keep_listings_valid(self, client, employee, headers_for):
        draft = await client.post("/expenses/", headers=headers_for(employee), json=expense_payload())
        expense_id = draft.json()["id"]

        updated = await client.put(
            f"/expenses/{expense_id}", headers=headers_for(employee),
            json={"tags": None, "is_recurring": None, "payment_method": None},
        )
        assert updated.status_code == 200
        assert updated.json()["tags"] == []
        assert updated.json()["is_recurring"] is False

        mine = await client.get("/expenses/my-expenses", headers=headers_for(employee))
        assert mine.status_code == 200
        assert [item["id"] for item in mine.json()] == [expense_id]


@pytest.mark.asyncio
class TestRulesApi:
    """Rule administration"""

    async def test_employee_cannot_manage_rules(self, client, default_rules, employee, headers_for):
        response = await client.get("/rules/", headers=headers_for(employee))
        assert response.status_code == 403

    async def test_create_and_deactivate_rule(self, client, default_rules, admin, manager, headers_for):
        response = await client.post("/rules/", headers=headers_for(admin), json={
            "name": "Travel",
            "priority": 10,
            "conditions": {"categories": ["Travel"]},
            "approval_flow": {
                "require_manager_approval": False,
                "steps": [{"name": "Ops", "approver_type": "specific_user", "approvers": [str(manager.id)]}],
            },
        })
        assert response.status_code == 201
        rule = response.json()
        assert rule["sequence"] == 3
        assert rule["approval_flow"]["steps"][0]["position"] == 0

        deleted = await client.delete(f"/rules/{rule['id']}", headers=headers_for(admin))
        assert deleted.status_code == 200
        assert deleted.json()["is_active"] is False

        active = await client.get("/rules/", headers=headers_for(admin))
        assert rule["id"] not in [item["id"] for item in active.json()]


@pytest.mark.asyncio
class TestMiscApi:

    async def test_currencies(self, client):
        response = await client.get("/currencies")
        assert response.status_code == 200
        codes = {item["currency"] for item in response.json()}
        assert {"USD", "EUR", "INR"} <= codes

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.json()["status"] == "healthy"
