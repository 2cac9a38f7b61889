"""
Workflow builder.

Turns the resolved approval rule (or the absence of one) into either an
auto-approval or an ordered list of approval steps. Pure: the caller resolves
the employee's manager and role membership beforehand.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from expenseflow.exceptions import NoApprovalPath
from expenseflow.schemas import ApproverType

logger = logging.getLogger(__name__)

DEFAULT_NO_MANAGER_LIMIT = Decimal("50")


@dataclass
class StepPlan:
    """A workflow step before it is persisted."""
    step_number: int
    approver_type: ApproverType
    approver_id: Optional[UUID]
    approver_group: List[UUID] = field(default_factory=list)
    name: Optional[str] = None
    is_optional: bool = False
    timeout_hours: Optional[int] = None
    escalate_to: Optional[UUID] = None


@dataclass
class WorkflowPlan:
    """Outcome of building a workflow for an expense."""
    auto_approve: bool
    steps: List[StepPlan] = field(default_factory=list)
    rule_id: Optional[UUID] = None

    @property
    def total_steps(self) -> int:
        return len(self.steps)


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def can_auto_approve(rule: Any, expense: Any, employee: Any) -> bool:
    """Check the rule's auto-approval conditions against an expense."""
    if not rule.auto_approval_enabled:
        return False

    amount = Decimal(str(expense.converted_amount))
    if amount > Decimal(str(rule.auto_approval_max_amount or 0)):
        return False

    categories = rule.auto_approval_categories or []
    if categories and _value(expense.category) not in categories:
        return False

    trusted = {str(employee_id) for employee_id in (rule.trusted_employees or [])}
    if trusted and str(employee.id) not in trusted:
        return False

    if rule.recurring_only and not expense.is_recurring:
        return False

    return True


def _resolve_approvers(
    template: Any,
    manager_id: Optional[UUID],
    role_members: Mapping[str, List[UUID]],
) -> List[UUID]:
    approvers = [_as_uuid(approver) for approver in (template.approvers or [])]
    if approvers:
        return approvers

    if _value(template.approver_type) == ApproverType.manager.value and manager_id:
        return [manager_id]
    if template.required_role is not None:
        return list(role_members.get(_value(template.required_role), []))
    return []


def _rule_steps(
    rule: Any,
    manager_id: Optional[UUID],
    role_members: Mapping[str, List[UUID]],
) -> List[StepPlan]:
    steps: List[StepPlan] = []

    if rule.require_manager_approval and manager_id:
        steps.append(StepPlan(
            step_number=0,
            approver_type=ApproverType.manager,
            approver_id=manager_id,
            approver_group=[manager_id],
            name="Manager Approval",
        ))

    for template in rule.steps:
        approvers = _resolve_approvers(template, manager_id, role_members)
        if not approvers:
            if template.is_optional:
                logger.info(f"Omitting optional step '{template.name}' of rule {rule.id}: no approver")
                continue
            raise NoApprovalPath(f"No approver available for step '{template.name}'")

        steps.append(StepPlan(
            step_number=len(steps),
            approver_type=ApproverType(_value(template.approver_type)),
            approver_id=approvers[0],
            approver_group=approvers,
            name=template.name,
            is_optional=template.is_optional,
            timeout_hours=template.timeout_hours,
            escalate_to=template.escalate_to,
        ))

    return steps


def _default_plan(expense: Any, manager_id: Optional[UUID], no_manager_limit: Decimal) -> WorkflowPlan:
    if manager_id:
        return WorkflowPlan(
            auto_approve=False,
            steps=[StepPlan(
                step_number=0,
                approver_type=ApproverType.manager,
                approver_id=manager_id,
                approver_group=[manager_id],
                name="Manager Approval",
            )],
        )

    if Decimal(str(expense.converted_amount)) <= no_manager_limit:
        return WorkflowPlan(auto_approve=True)

    raise NoApprovalPath()


def build_workflow(
    rule: Optional[Any],
    expense: Any,
    employee: Any,
    manager_id: Optional[UUID] = None,
    role_members: Optional[Mapping[str, List[UUID]]] = None,
    no_manager_limit: Decimal = DEFAULT_NO_MANAGER_LIMIT,
) -> WorkflowPlan:
    """
    Build the approval workflow for an expense.

    Args:
        rule: Resolved approval rule, or None when no rule matched
        expense: Object exposing converted_amount, category and is_recurring
        employee: Submitting user (only its id is read)
        manager_id: Active manager of the employee, if any
        role_members: Active user ids per role value, for role-based templates
        no_manager_limit: Auto-approval ceiling when nobody can approve

    Returns:
        WorkflowPlan: Auto-approval or the ordered steps

    Raises:
        NoApprovalPath: No approver exists and the amount exceeds the ceiling,
            or a required step cannot be assigned
    """
    role_members: Dict[str, List[UUID]] = dict(role_members or {})

    if rule is not None:
        if can_auto_approve(rule, expense, employee):
            return WorkflowPlan(auto_approve=True, rule_id=rule.id)

        steps = _rule_steps(rule, manager_id, role_members)
        if steps:
            return WorkflowPlan(auto_approve=False, steps=steps, rule_id=rule.id)

        logger.info(f"Rule {rule.id} produced no steps, applying default policy")

    return _default_plan(expense, manager_id, Decimal(str(no_manager_limit)))
