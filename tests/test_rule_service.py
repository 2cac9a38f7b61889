from datetime import date
from decimal import Decimal

import pytest

from expenseflow.exceptions import NotFound, ValidationError
from expenseflow.schemas import (
    ApprovalFlowCreate, ApprovalRuleCreate, ApprovalRuleUpdate, ApproverType, ExpenseCategory,
    ExpenseStatus, ExpenseSubmit, StepTemplateBase, UserRole
)
from expenseflow.services.expense_service import expense_service
from expenseflow.services.rule_service import rule_repository


def submission(amount):
    return ExpenseSubmit(
        amount=Decimal(amount),
        currency="USD",
        category=ExpenseCategory.meals,
        description="Team lunch",
        expense_date=date.today(),
    )


@pytest.mark.asyncio
class TestDefaultRules:
    """Rule set created at company registration"""

    async def test_default_rule_set(self, default_rules, admin):
        assert [rule.name for rule in default_rules] == [
            "Small Expenses Auto-Approval",
            "Manager Approval Required",
            "High Value Expenses",
        ]
        assert [rule.priority for rule in default_rules] == [1, 2, 3]
        assert [rule.sequence for rule in default_rules] == [0, 1, 2]

        high_value = default_rules[2]
        assert high_value.amount_max is None
        assert high_value.employee_roles == ["employee", "manager"]
        assert high_value.steps[0].approver_type == ApproverType.specific_user
        assert high_value.steps[0].approvers == [str(admin.id)]
        assert high_value.steps[0].timeout_hours == 72

    async def test_small_expense_is_auto_approved(self, db, default_rules, employee):
        expense = await expense_service.submit(db, employee, submission("30.00"))
        assert expense.status == ExpenseStatus.approved
        assert expense.applied_rule_id == default_rules[0].id

    async def test_boundary_goes_to_higher_priority_rule(self, db, default_rules, manager, employee):
        expense = await expense_service.submit(db, employee, submission("50.00"))
        assert expense.applied_rule_id == default_rules[1].id
        assert [step.approver_id for step in expense.steps] == [manager.id]

    async def test_high_value_needs_manager_then_admin(self, db, default_rules, admin, manager, employee):
        expense = await expense_service.submit(db, employee, submission("750.00"))
        assert expense.applied_rule_id == default_rules[2].id
        assert [step.approver_id for step in expense.steps] == [manager.id, admin.id]
        assert [step.name for step in expense.steps] == ["Manager Approval", "Admin Approval"]

    async def test_manager_without_manager_goes_to_admin(self, db, default_rules, admin, manager):
        expense = await expense_service.submit(db, manager, submission("750.00"))
        assert [step.approver_id for step in expense.steps] == [admin.id]


@pytest.mark.asyncio
class TestRuleRepository:
    """Rule CRUD"""

    async def test_sequence_is_appended(self, db, company, default_rules):
        rule = await rule_repository.create_rule(db, company.id, ApprovalRuleCreate(name="Extra"))
        assert rule.sequence == 3

    async def test_unknown_approver_is_rejected(self, db, company, make_company, make_user):
        stranger = await make_user(await make_company(name="Other"), UserRole.admin)
        data = ApprovalRuleCreate(
            name="Foreign",
            approval_flow=ApprovalFlowCreate(steps=[
                StepTemplateBase(name="X", approver_type=ApproverType.specific_user, approvers=[stranger.id])
            ]),
        )
        with pytest.raises(ValidationError):
            await rule_repository.create_rule(db, company.id, data)

    async def test_update_replaces_steps_and_keeps_sequence(self, db, company, admin, manager, default_rules):
        rule = default_rules[2]
        updated = await rule_repository.update_rule(
            db, company.id, rule.id,
            ApprovalRuleUpdate(
                priority=9,
                approval_flow=ApprovalFlowCreate(steps=[
                    StepTemplateBase(name="Ops", approver_type=ApproverType.specific_user, approvers=[manager.id]),
                    StepTemplateBase(name="Admin", approver_type=ApproverType.specific_user, approvers=[admin.id]),
                ]),
            ),
        )
        await db.commit()

        assert updated.priority == 9
        assert updated.sequence == 2
        assert [step.name for step in updated.steps] == ["Ops", "Admin"]
        assert [step.position for step in updated.steps] == [0, 1]

    async def test_deactivated_rule_no_longer_applies(self, db, company, default_rules):
        await rule_repository.deactivate_rule(db, company.id, default_rules[0].id)
        await db.commit()

        rule = await rule_repository.find_applicable_rule(
            db, company.id, Decimal("10"), ExpenseCategory.meals, UserRole.employee
        )
        assert rule is None
        assert len(await rule_repository.find(db, company.id)) == 2
        assert len(await rule_repository.find(db, company.id, active_only=False)) == 3

    async def test_rule_of_other_company_is_not_found(self, db, default_rules, make_company):
        other = await make_company(name="Other")
        with pytest.raises(NotFound):
            await rule_repository.get_rule(db, other.id, default_rules[0].id)
