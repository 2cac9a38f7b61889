"""
Approval workflow state machine.

Expense states:  draft -> submitted -> pending -> approved | rejected,
                 approved -> paid
Step states:     pending -> approved | rejected | skipped

Every function here mutates an in-memory Expense and raises a domain error
without touching anything when the transition is illegal. Persistence and
locking are the caller's job (see expense_service).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Union
from uuid import UUID

from expenseflow.exceptions import InvalidState, NotAuthorized
from expenseflow.models import Expense, ExpenseApprovalStep, ExpenseComment
from expenseflow.schemas import (
    ApproverType, Decision, ExpenseStatus, ReimbursementMethod, StepStatus,
    GROUP_APPROVER_TYPES, TERMINAL_EXPENSE_STATUSES
)
from expenseflow.services.workflow_builder import WorkflowPlan
from expenseflow.utils import utcnow, as_utc

logger = logging.getLogger(__name__)

UserId = Union[UUID, str]


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


def _as_uuid(value: UserId) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _status(expense: Expense) -> ExpenseStatus:
    return ExpenseStatus(_value(expense.status))


def _step_status(step: ExpenseApprovalStep) -> StepStatus:
    return StepStatus(_value(step.status))


def get_current_step(expense: Expense) -> Optional[ExpenseApprovalStep]:
    """Return the active step, or None once the workflow has run out of steps."""
    if expense.current_step < expense.total_steps:
        return expense.steps[expense.current_step]
    return None


def is_authorized(step: ExpenseApprovalStep, user_id: UserId) -> bool:
    """Check whether a user may decide on a step."""
    user_id = _as_uuid(user_id)
    if ApproverType(_value(step.approver_type)) in GROUP_APPROVER_TYPES:
        return str(user_id) in {str(member) for member in (step.approver_group or [])}
    return step.approver_id is not None and _as_uuid(step.approver_id) == user_id


def apply_plan(expense: Expense, plan: WorkflowPlan, now: Optional[datetime] = None) -> Expense:
    """
    Attach a built workflow to a submitted expense.

    Moves the expense to approved (auto-approval) or pending and activates the
    first step.
    """
    now = now or utcnow()
    if _status(expense) not in (ExpenseStatus.draft, ExpenseStatus.submitted):
        raise InvalidState(f"Expense is already {_status(expense).value}")

    expense.applied_rule_id = plan.rule_id
    expense.steps = [
        ExpenseApprovalStep(
            step_number=index,
            name=step.name,
            approver_type=step.approver_type,
            approver_id=step.approver_id,
            approver_group=[str(member) for member in step.approver_group],
            is_optional=step.is_optional,
            timeout_hours=step.timeout_hours,
            escalate_to=step.escalate_to,
            status=StepStatus.pending,
        )
        for index, step in enumerate(plan.steps)
    ]
    expense.current_step = 0
    expense.total_steps = len(expense.steps)
    expense.submitted_at = now

    if plan.auto_approve or not expense.steps:
        expense.status = ExpenseStatus.approved
    else:
        expense.steps[0].activated_at = now
        expense.status = ExpenseStatus.pending

    return expense


def _require_under_review(expense: Expense) -> None:
    status = _status(expense)
    if status in TERMINAL_EXPENSE_STATUSES:
        raise InvalidState(f"Expense has already been {status.value}")
    if status != ExpenseStatus.pending:
        raise InvalidState(f"Expense is {status.value} and not awaiting approval")


def _active_step_for(expense: Expense, user_id: UUID) -> ExpenseApprovalStep:
    step = get_current_step(expense)
    if step is None:
        raise NotAuthorized("Approval workflow is already complete")
    if _step_status(step) != StepStatus.pending:
        raise InvalidState("Current step has already been resolved")

    if not is_authorized(step, user_id):
        decided_earlier = any(
            previous.approved_by is not None and _as_uuid(previous.approved_by) == user_id
            for previous in expense.steps[:expense.current_step]
        )
        if decided_earlier:
            raise InvalidState("You have already recorded a decision on this expense")
        raise NotAuthorized()

    return step


def _stamp(step: ExpenseApprovalStep, status: StepStatus, user_id: UUID,
           comments: Optional[str], now: datetime) -> None:
    step.status = status
    step.approved_by = user_id
    step.approved_at = now
    step.comments = comments


def _advance(expense: Expense, now: datetime) -> None:
    expense.current_step += 1
    if expense.current_step >= expense.total_steps:
        expense.status = ExpenseStatus.approved
    else:
        expense.steps[expense.current_step].activated_at = now


def add_comment(expense: Expense, user_id: UserId, message: str,
                now: Optional[datetime] = None) -> ExpenseComment:
    """Append an entry to the expense's comment log."""
    comment = ExpenseComment(user_id=_as_uuid(user_id), message=message, created_at=now or utcnow())
    expense.comments.append(comment)
    return comment


def record_decision(
    expense: Expense,
    acting_user_id: UserId,
    decision: Union[Decision, str],
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
    expected_step: Optional[int] = None,
) -> ExpenseApprovalStep:
    """
    Record an approve/reject decision on the current step.

    Args:
        expense: Expense under review
        acting_user_id: User making the decision
        decision: approve or reject
        comments: Optional comment, also appended to the comment log
        now: Decision timestamp
        expected_step: Step index the caller believes is current

    Returns:
        ExpenseApprovalStep: The step that was decided

    Raises:
        InvalidState: Expense not under review, step already resolved, or
            expected_step is stale
        NotAuthorized: Acting user is not the approver of the current step
    """
    now = now or utcnow()
    decision = Decision(_value(decision))
    user_id = _as_uuid(acting_user_id)

    _require_under_review(expense)
    if expected_step is not None and expected_step != expense.current_step:
        raise InvalidState(
            f"Expense is at step {expense.current_step}, not step {expected_step}"
        )

    step = _active_step_for(expense, user_id)

    if decision == Decision.reject:
        _stamp(step, StepStatus.rejected, user_id, comments, now)
        expense.status = ExpenseStatus.rejected
    else:
        _stamp(step, StepStatus.approved, user_id, comments, now)
        _advance(expense, now)

    if comments:
        add_comment(expense, user_id, comments, now)

    expense.updated_at = now
    logger.info(
        f"Expense {expense.id} step {step.step_number} {step.status.value} by {user_id}; "
        f"expense now {_status(expense).value}"
    )
    return step


def skip_step(
    expense: Expense,
    acting_user_id: UserId,
    comments: Optional[str] = None,
    now: Optional[datetime] = None,
    expected_step: Optional[int] = None,
) -> ExpenseApprovalStep:
    """Skip the current step if it is optional, advancing like an approval."""
    now = now or utcnow()
    user_id = _as_uuid(acting_user_id)

    _require_under_review(expense)
    if expected_step is not None and expected_step != expense.current_step:
        raise InvalidState(
            f"Expense is at step {expense.current_step}, not step {expected_step}"
        )

    step = get_current_step(expense)
    if step is None or _step_status(step) != StepStatus.pending:
        raise InvalidState("There is no pending step to skip")
    if not step.is_optional:
        raise InvalidState("Only optional steps can be skipped")

    _stamp(step, StepStatus.skipped, user_id, comments, now)
    _advance(expense, now)
    if comments:
        add_comment(expense, user_id, comments, now)

    expense.updated_at = now
    logger.info(f"Expense {expense.id} step {step.step_number} skipped by {user_id}")
    return step


def is_overdue(step: ExpenseApprovalStep, now: datetime) -> bool:
    """Check whether a step has been active longer than its timeout."""
    if not step.timeout_hours or step.activated_at is None:
        return False
    return as_utc(now) >= as_utc(step.activated_at) + timedelta(hours=step.timeout_hours)


def escalate_step(expense: Expense, now: Optional[datetime] = None) -> Optional[ExpenseApprovalStep]:
    """
    Re-target the current step to its escalation user once it times out.

    Returns the escalated step, or None when nothing was due. A step escalates
    at most once.
    """
    now = now or utcnow()
    if _status(expense) != ExpenseStatus.pending:
        return None

    step = get_current_step(expense)
    if (
        step is None
        or _step_status(step) != StepStatus.pending
        or step.escalate_to is None
        or step.escalated_at is not None
        or not is_overdue(step, now)
    ):
        return None

    previous = step.approver_id
    step.approver_id = step.escalate_to
    step.approver_group = [str(step.escalate_to)]
    step.escalated_at = now
    expense.updated_at = now

    logger.info(
        f"Expense {expense.id} step {step.step_number} escalated from {previous} to {step.escalate_to}"
    )
    return step


def mark_paid(
    expense: Expense,
    method: Union[ReimbursementMethod, str] = ReimbursementMethod.bank_transfer,
    now: Optional[datetime] = None,
) -> Expense:
    """Move an approved expense to paid."""
    now = now or utcnow()
    if _status(expense) != ExpenseStatus.approved:
        raise InvalidState(f"Only approved expenses can be paid, expense is {_status(expense).value}")

    expense.status = ExpenseStatus.paid
    expense.reimbursed_at = now
    expense.reimbursement_method = ReimbursementMethod(_value(method))
    expense.updated_at = now
    return expense
