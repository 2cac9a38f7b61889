"""
Approval rule repository.
Stores a company's approval rules, resolves the one governing an expense and
bootstraps the default rule set for new companies.
"""

import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from expenseflow.exceptions import NotFound, ValidationError
from expenseflow.models import ApprovalRule, ApprovalRuleStep, Company, User
from expenseflow.schemas import (
    ApprovalFlowCreate, ApprovalRuleCreate, ApprovalRuleUpdate, ApproverType,
    AutoApprovalRules, RuleConditions, StepTemplateBase, UserRole
)
from expenseflow.services.rule_matcher import find_applicable_rule

logger = logging.getLogger(__name__)


def default_rule_definitions(admin_id: UUID) -> List[ApprovalRuleCreate]:
    """Rule set every new company starts with."""
    return [
        ApprovalRuleCreate(
            name="Small Expenses Auto-Approval",
            description="Automatically approve small expenses under 50",
            priority=1,
            conditions=RuleConditions(
                amount_min=Decimal("0"), amount_max=Decimal("50"),
                employee_roles=[UserRole.employee],
            ),
            auto_approval_rules=AutoApprovalRules(enabled=True, max_amount=Decimal("50")),
            approval_flow=ApprovalFlowCreate(require_manager_approval=False),
        ),
        ApprovalRuleCreate(
            name="Manager Approval Required",
            description="Expenses between 50 and 500 need manager approval",
            priority=2,
            conditions=RuleConditions(
                amount_min=Decimal("50"), amount_max=Decimal("500"),
                employee_roles=[UserRole.employee],
            ),
            approval_flow=ApprovalFlowCreate(require_manager_approval=True),
        ),
        ApprovalRuleCreate(
            name="High Value Expenses",
            description="Expenses above 500 need manager and admin approval",
            priority=3,
            conditions=RuleConditions(
                amount_min=Decimal("500"),
                employee_roles=[UserRole.employee, UserRole.manager],
            ),
            approval_flow=ApprovalFlowCreate(
                require_manager_approval=True,
                steps=[
                    StepTemplateBase(
                        name="Admin Approval",
                        approver_type=ApproverType.specific_user,
                        approvers=[admin_id],
                        timeout_hours=72,
                    )
                ],
            ),
        ),
    ]


class RuleRepository:
    """Service for managing a company's approval rules."""

    async def find(self, db: AsyncSession, company_id: UUID, active_only: bool = True) -> List[ApprovalRule]:
        """
        Get a company's rules in insertion order.

        Args:
            db: Database session
            company_id: Company ID
            active_only: Skip deactivated rules

        Returns:
            List[ApprovalRule]: Rules ordered by sequence
        """
        query = select(ApprovalRule).where(ApprovalRule.company_id == company_id)
        if active_only:
            query = query.where(ApprovalRule.is_active == True)
        result = await db.execute(query.order_by(ApprovalRule.sequence))
        return list(result.scalars().all())

    async def find_applicable_rule(
        self,
        db: AsyncSession,
        company_id: UUID,
        converted_amount: Decimal,
        category,
        employee_role,
    ) -> Optional[ApprovalRule]:
        """Resolve the rule governing an expense, or None."""
        rules = await self.find(db, company_id)
        rule = find_applicable_rule(rules, company_id, converted_amount, category, employee_role)
        if rule is None:
            logger.info(f"No approval rule matched in company {company_id} for amount {converted_amount}")
        else:
            logger.info(f"Approval rule '{rule.name}' ({rule.id}) applies")
        return rule

    async def get_rule(self, db: AsyncSession, company_id: UUID, rule_id: UUID) -> ApprovalRule:
        result = await db.execute(
            select(ApprovalRule).where(
                ApprovalRule.id == rule_id,
                ApprovalRule.company_id == company_id
            )
        )
        rule = result.scalar_one_or_none()
        if rule is None:
            raise NotFound("Approval rule not found")
        return rule

    async def _next_sequence(self, db: AsyncSession, company_id: UUID) -> int:
        result = await db.execute(
            select(func.max(ApprovalRule.sequence)).where(ApprovalRule.company_id == company_id)
        )
        current = result.scalar()
        return 0 if current is None else current + 1

    async def _check_users(self, db: AsyncSession, company_id: UUID, user_ids: List[UUID]) -> None:
        if not user_ids:
            return
        wanted = set(user_ids)
        result = await db.execute(
            select(User.id).where(User.id.in_(wanted), User.company_id == company_id)
        )
        found = set(result.scalars().all())
        missing = wanted - found
        if missing:
            raise ValidationError(
                f"Unknown approvers for this company: {', '.join(sorted(str(m) for m in missing))}"
            )

    async def _build_steps(self, db: AsyncSession, company_id: UUID,
                           templates: List[StepTemplateBase]) -> List[ApprovalRuleStep]:
        referenced = []
        for template in templates:
            referenced.extend(template.approvers)
            if template.escalate_to is not None:
                referenced.append(template.escalate_to)
            if template.approver_type == ApproverType.role_based and not template.approvers \
                    and template.required_role is None:
                raise ValidationError(f"Step '{template.name}' needs approvers or a required_role")
        await self._check_users(db, company_id, referenced)

        return [
            ApprovalRuleStep(
                position=position,
                name=template.name,
                approver_type=template.approver_type,
                approvers=[str(approver) for approver in template.approvers],
                required_role=template.required_role,
                is_optional=template.is_optional,
                timeout_hours=template.timeout_hours,
                escalate_to=template.escalate_to,
            )
            for position, template in enumerate(templates)
        ]

    def _apply_conditions(self, rule: ApprovalRule, conditions: RuleConditions) -> None:
        rule.amount_min = conditions.amount_min
        rule.amount_max = conditions.amount_max
        rule.categories = [category.value for category in conditions.categories]
        rule.employee_roles = [role.value for role in conditions.employee_roles]

    def _apply_auto_approval(self, rule: ApprovalRule, auto: AutoApprovalRules) -> None:
        rule.auto_approval_enabled = auto.enabled
        rule.auto_approval_max_amount = auto.max_amount
        rule.auto_approval_categories = [category.value for category in auto.categories]
        rule.trusted_employees = [str(employee) for employee in auto.trusted_employees]
        rule.recurring_only = auto.recurring_only

    async def _apply_flow(self, db: AsyncSession, rule: ApprovalRule, flow: ApprovalFlowCreate) -> None:
        rule.flow_type = flow.type
        rule.require_manager_approval = flow.require_manager_approval
        rule.conditional_rules = flow.conditional_rules
        steps = await self._build_steps(db, rule.company_id, flow.steps)
        if rule.steps:
            # Old templates must be gone before new ones reuse their positions.
            rule.steps = []
            await db.flush()
        rule.steps = steps

    async def create_rule(
        self,
        db: AsyncSession,
        company_id: UUID,
        rule_data: ApprovalRuleCreate,
        created_by: Optional[UUID] = None,
    ) -> ApprovalRule:
        """
        Create an approval rule at the end of the company's rule sequence.

        The caller commits.
        """
        rule = ApprovalRule(
            company_id=company_id,
            name=rule_data.name,
            description=rule_data.description,
            is_active=rule_data.is_active,
            priority=rule_data.priority,
            sequence=await self._next_sequence(db, company_id),
            created_by=created_by,
        )
        self._apply_conditions(rule, rule_data.conditions)
        self._apply_auto_approval(rule, rule_data.auto_approval_rules)
        await self._apply_flow(db, rule, rule_data.approval_flow)

        db.add(rule)
        await db.flush()
        logger.info(f"Created approval rule '{rule.name}' ({rule.id}) for company {company_id}")
        return rule

    async def update_rule(
        self,
        db: AsyncSession,
        company_id: UUID,
        rule_id: UUID,
        rule_data: ApprovalRuleUpdate,
    ) -> ApprovalRule:
        """Update an approval rule. Its sequence never changes."""
        rule = await self.get_rule(db, company_id, rule_id)

        if rule_data.name is not None:
            rule.name = rule_data.name
        if rule_data.description is not None:
            rule.description = rule_data.description
        if rule_data.is_active is not None:
            rule.is_active = rule_data.is_active
        if rule_data.priority is not None:
            rule.priority = rule_data.priority
        if rule_data.conditions is not None:
            self._apply_conditions(rule, rule_data.conditions)
        if rule_data.auto_approval_rules is not None:
            self._apply_auto_approval(rule, rule_data.auto_approval_rules)
        if rule_data.approval_flow is not None:
            await self._apply_flow(db, rule, rule_data.approval_flow)

        await db.flush()
        logger.info(f"Updated approval rule {rule.id}")
        return rule

    async def deactivate_rule(self, db: AsyncSession, company_id: UUID, rule_id: UUID) -> ApprovalRule:
        """Deactivate a rule; expenses that reference it keep their workflow."""
        rule = await self.get_rule(db, company_id, rule_id)
        rule.is_active = False
        await db.flush()
        logger.info(f"Deactivated approval rule {rule.id}")
        return rule

    async def create_default_rules(self, db: AsyncSession, company: Company, admin: User) -> List[ApprovalRule]:
        """Create the default rule set for a newly registered company."""
        rules = []
        for definition in default_rule_definitions(admin.id):
            rules.append(await self.create_rule(db, company.id, definition, created_by=admin.id))
        logger.info(f"Created {len(rules)} default approval rules for company {company.id}")
        return rules


# Global rule repository instance
rule_repository = RuleRepository()
