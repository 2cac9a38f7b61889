"""
Expense intake and decision service for ExpenseFlow.

Orchestrates currency conversion, rule resolution, workflow building and the
workflow engine, and persists each operation in a single transaction.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import String, and_, cast, or_, select
from sqlalchemy.orm.exc import StaleDataError

from expenseflow.config import settings
from expenseflow.exceptions import ExpenseFlowError, InvalidState, NotAuthorized, NotFound, ValidationError
from expenseflow.models import Expense, ExpenseApprovalStep, User
from expenseflow.schemas import (
    AuditAction, Decision, ExpenseStatus, ExpenseSubmit, ExpenseUpdate,
    ReimbursementMethod, StepStatus, UserRole, GROUP_APPROVER_TYPES
)
from expenseflow.services import workflow_engine
from expenseflow.services.audit_service import AuditService, audit_service
from expenseflow.services.currency_service import CurrencyService, currency_service
from expenseflow.services.directory_service import (
    CompanyDirectory, UserDirectory, company_directory, user_directory
)
from expenseflow.services.rule_service import RuleRepository, rule_repository
from expenseflow.services.workflow_builder import WorkflowPlan, build_workflow
from expenseflow.utils import utcnow

logger = logging.getLogger(__name__)

# Nullable expense fields a draft update may reset to null
CLEARABLE_DRAFT_FIELDS = frozenset({"merchant_name", "receipt_url", "recurring_frequency"})


def _snapshot(expense: Expense) -> Dict[str, Any]:
    """JSON-safe view of the fields the audit trail tracks."""
    return {
        "status": expense.status.value if expense.status else None,
        "amount": str(expense.amount),
        "currency": expense.currency,
        "converted_amount": str(expense.converted_amount),
        "current_step": expense.current_step,
        "total_steps": expense.total_steps,
        "applied_rule_id": str(expense.applied_rule_id) if expense.applied_rule_id else None,
    }


class ExpenseService:
    """Service for submitting expenses and driving their approval workflow."""

    def __init__(
        self,
        currency: CurrencyService = currency_service,
        rules: RuleRepository = rule_repository,
        users: UserDirectory = user_directory,
        companies: CompanyDirectory = company_directory,
        audit: AuditService = audit_service,
        no_manager_limit: Optional[Decimal] = None,
    ):
        self.currency = currency
        self.rules = rules
        self.users = users
        self.companies = companies
        self.audit = audit
        if no_manager_limit is None:
            no_manager_limit = Decimal(str(settings.no_manager_auto_approval_limit))
        self.no_manager_limit = no_manager_limit

    @asynccontextmanager
    async def _atomic(self, db: AsyncSession, operation: str):
        """Commit on success; roll back and re-raise on any failure."""
        try:
            yield
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.warning(f"Concurrent modification during {operation}")
            raise InvalidState("Expense was changed by another request, reload and retry")
        except ExpenseFlowError:
            await db.rollback()
            raise
        except Exception as e:
            logger.error(f"Error during {operation}: {e}")
            await db.rollback()
            raise

    # Intake

    def _check_currency(self, currency: str) -> str:
        currency = (currency or "").upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code: {currency!r}")
        return currency

    async def _convert(self, db: AsyncSession, expense: Expense) -> None:
        company_currency = await self.companies.get_default_currency(db, expense.company_id)
        # Assigning the rate re-derives converted_amount on the model.
        expense.exchange_rate = self.currency.get_exchange_rate(expense.currency, company_currency)

    async def _plan(self, db: AsyncSession, expense: Expense, employee: User) -> WorkflowPlan:
        rule = await self.rules.find_applicable_rule(
            db, employee.company_id, expense.converted_amount, expense.category, employee.role
        )
        manager = await self.users.get_manager(db, employee)

        roles = []
        if rule is not None:
            roles = [step.required_role for step in rule.steps if step.required_role and not step.approvers]
        role_members = await self.users.get_role_members(db, employee.company_id, roles)

        return build_workflow(
            rule,
            expense,
            employee,
            manager_id=manager.id if manager else None,
            role_members=role_members,
            no_manager_limit=self.no_manager_limit,
        )

    def _new_expense(self, employee: User, data: ExpenseSubmit, status: ExpenseStatus) -> Expense:
        expense = Expense(
            id=uuid4(),
            company_id=employee.company_id,
            employee_id=employee.id,
            currency=self._check_currency(data.currency),
            category=data.category,
            description=data.description,
            expense_date=data.expense_date,
            merchant_name=data.merchant_name,
            payment_method=data.payment_method,
            receipt_url=data.receipt_url,
            is_recurring=data.is_recurring,
            recurring_frequency=data.recurring_frequency,
            tags=list(data.tags),
            status=status,
            current_step=0,
            total_steps=0,
            steps=[],
            comments=[],
        )
        expense.amount = data.amount
        return expense

    async def _route(self, db: AsyncSession, expense: Expense, employee: User, now: datetime) -> None:
        expense.status = ExpenseStatus.submitted
        await self._convert(db, expense)
        plan = await self._plan(db, expense, employee)
        workflow_engine.apply_plan(expense, plan, now)
        logger.info(
            f"Expense {expense.id} routed: status={expense.status.value}, "
            f"steps={expense.total_steps}, rule={plan.rule_id}"
        )

    async def submit(self, db: AsyncSession, employee: User, data: ExpenseSubmit) -> Expense:
        """
        Submit a new expense.

        Converts the amount into the company currency, resolves the governing
        rule, builds the workflow and persists the expense, all in one
        transaction.

        Args:
            db: Database session
            employee: Submitting user
            data: Validated submission fields

        Returns:
            Expense: Persisted expense, approved or pending

        Raises:
            ValidationError: Malformed submission
            NoApprovalPath: Nobody can approve and the amount is above the
                auto-approval ceiling
        """
        now = utcnow()
        async with self._atomic(db, "expense submission"):
            expense = self._new_expense(employee, data, ExpenseStatus.submitted)
            await self._route(db, expense, employee, now)
            db.add(expense)
            await db.flush()
            await self.audit.log_action(
                db, employee.company_id, employee.id, AuditAction.submit,
                "expense", expense.id, new_values=_snapshot(expense)
            )

        return expense

    async def create_draft(self, db: AsyncSession, employee: User, data: ExpenseSubmit) -> Expense:
        """Save an expense as a draft without routing it."""
        async with self._atomic(db, "draft creation"):
            expense = self._new_expense(employee, data, ExpenseStatus.draft)
            await self._convert(db, expense)
            db.add(expense)
            await db.flush()
            await self.audit.log_action(
                db, employee.company_id, employee.id, AuditAction.create,
                "expense", expense.id, new_values=_snapshot(expense)
            )

        logger.info(f"Created draft expense {expense.id} for user {employee.id}")
        return expense

    async def _load_own_draft(self, db: AsyncSession, expense_id: UUID, employee: User) -> Expense:
        expense = await self._load_for_update(db, expense_id, employee.company_id)
        if expense.employee_id != employee.id:
            raise NotAuthorized("Only the submitter can modify this expense")
        if expense.status != ExpenseStatus.draft:
            raise InvalidState(f"Only draft expenses can be changed, expense is {expense.status.value}")
        return expense

    async def update_draft(self, db: AsyncSession, expense_id: UUID, employee: User,
                           data: ExpenseUpdate) -> Expense:
        """Update a draft, re-converting when the amount or currency changes."""
        async with self._atomic(db, "draft update"):
            expense = await self._load_own_draft(db, expense_id, employee)
            old_values = _snapshot(expense)

            # Null only clears optional columns; elsewhere it means "unchanged".
            changes = {
                field: value
                for field, value in data.model_dump(exclude_unset=True).items()
                if value is not None or field in CLEARABLE_DRAFT_FIELDS
            }
            if "currency" in changes:
                changes["currency"] = self._check_currency(changes["currency"])
            for field, value in changes.items():
                setattr(expense, field, value)

            if "currency" in changes:
                await self._convert(db, expense)
            expense.updated_at = utcnow()

            await db.flush()
            await self.audit.log_action(
                db, employee.company_id, employee.id, AuditAction.update,
                "expense", expense.id, old_values=old_values, new_values=_snapshot(expense)
            )

        return expense

    async def delete_draft(self, db: AsyncSession, expense_id: UUID, employee: User) -> None:
        """Delete a draft expense."""
        async with self._atomic(db, "draft deletion"):
            expense = await self._load_own_draft(db, expense_id, employee)
            old_values = _snapshot(expense)
            await db.delete(expense)
            await db.flush()
            await self.audit.log_action(
                db, employee.company_id, employee.id, AuditAction.delete,
                "expense", expense_id, old_values=old_values
            )

        logger.info(f"Deleted draft expense {expense_id}")

    async def submit_draft(self, db: AsyncSession, expense_id: UUID, employee: User) -> Expense:
        """Route a stored draft through the same pipeline as a new submission."""
        now = utcnow()
        async with self._atomic(db, "draft submission"):
            expense = await self._load_own_draft(db, expense_id, employee)
            await self._route(db, expense, employee, now)
            expense.updated_at = now
            await db.flush()
            await self.audit.log_action(
                db, employee.company_id, employee.id, AuditAction.submit,
                "expense", expense.id, new_values=_snapshot(expense)
            )

        return expense

    # Decisions

    async def _load_for_update(self, db: AsyncSession, expense_id: UUID, company_id: UUID) -> Expense:
        result = await db.execute(
            select(Expense)
            .where(Expense.id == expense_id, Expense.company_id == company_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        expense = result.scalar_one_or_none()
        if expense is None:
            raise NotFound("Expense not found")
        return expense

    async def decide(
        self,
        db: AsyncSession,
        expense_id: UUID,
        actor: User,
        decision: Decision,
        comments: Optional[str] = None,
        expected_step: Optional[int] = None,
    ) -> Expense:
        """
        Record an approve/reject decision on an expense's current step.

        The expense row is locked for the duration of the transaction and its
        version column rejects a concurrent writer.

        Raises:
            NotFound: Unknown expense
            NotAuthorized: Actor is not the current step's approver
            InvalidState: Expense or step no longer accepts this decision
        """
        async with self._atomic(db, f"{decision.value} decision"):
            expense = await self._load_for_update(db, expense_id, actor.company_id)
            old_values = _snapshot(expense)
            step = workflow_engine.record_decision(
                expense, actor.id, decision, comments, utcnow(), expected_step
            )
            await db.flush()
            await self.audit.log_action(
                db, actor.company_id, actor.id, AuditAction(decision.value),
                "expense", expense.id, old_values=old_values,
                new_values={**_snapshot(expense), "step_number": step.step_number, "comments": comments}
            )

        return expense

    async def skip(
        self,
        db: AsyncSession,
        expense_id: UUID,
        admin: User,
        comments: Optional[str] = None,
        expected_step: Optional[int] = None,
    ) -> Expense:
        """Skip the current optional step (admins only)."""
        if admin.role != UserRole.admin:
            raise NotAuthorized("Only admins can skip approval steps")

        async with self._atomic(db, "step skip"):
            expense = await self._load_for_update(db, expense_id, admin.company_id)
            old_values = _snapshot(expense)
            step = workflow_engine.skip_step(expense, admin.id, comments, utcnow(), expected_step)
            await db.flush()
            await self.audit.log_action(
                db, admin.company_id, admin.id, AuditAction.skip,
                "expense", expense.id, old_values=old_values,
                new_values={**_snapshot(expense), "step_number": step.step_number}
            )

        return expense

    async def mark_paid(
        self,
        db: AsyncSession,
        expense_id: UUID,
        admin: User,
        method: ReimbursementMethod = ReimbursementMethod.bank_transfer,
    ) -> Expense:
        """Record the reimbursement of an approved expense."""
        async with self._atomic(db, "payment"):
            expense = await self._load_for_update(db, expense_id, admin.company_id)
            old_values = _snapshot(expense)
            workflow_engine.mark_paid(expense, method, utcnow())
            await db.flush()
            await self.audit.log_action(
                db, admin.company_id, admin.id, AuditAction.pay,
                "expense", expense.id, old_values=old_values,
                new_values={**_snapshot(expense), "reimbursement_method": method.value}
            )

        logger.info(f"Expense {expense.id} marked as paid by {admin.id}")
        return expense

    # Comments and reads

    def _can_view(self, expense: Expense, user: User) -> bool:
        if user.role == UserRole.admin or expense.employee_id == user.id:
            return True
        return any(
            step.approver_id == user.id or str(user.id) in (step.approver_group or [])
            for step in expense.steps
        )

    async def add_comment(self, db: AsyncSession, expense_id: UUID, user: User, message: str) -> Expense:
        """Append a comment to an expense's comment log."""
        now = utcnow()
        async with self._atomic(db, "comment"):
            expense = await self._load_for_update(db, expense_id, user.company_id)
            if not self._can_view(expense, user):
                raise NotAuthorized("Access denied")
            workflow_engine.add_comment(expense, user.id, message, now)
            expense.updated_at = now
            await db.flush()
            await self.audit.log_action(
                db, user.company_id, user.id, AuditAction.comment,
                "expense", expense.id, new_values={"message": message}
            )

        return expense

    async def get_expense(self, db: AsyncSession, expense_id: UUID, user: User) -> Expense:
        result = await db.execute(
            select(Expense).where(Expense.id == expense_id, Expense.company_id == user.company_id)
        )
        expense = result.scalar_one_or_none()
        if expense is None:
            raise NotFound("Expense not found")
        if not self._can_view(expense, user):
            raise NotAuthorized("Access denied")
        return expense

    async def list_my_expenses(self, db: AsyncSession, user: User,
                               status: Optional[ExpenseStatus] = None) -> List[Expense]:
        query = select(Expense).where(Expense.employee_id == user.id)
        if status is not None:
            query = query.where(Expense.status == status)
        result = await db.execute(query.order_by(Expense.created_at.desc()))
        return list(result.scalars().all())

    async def list_company_expenses(self, db: AsyncSession, company_id: UUID,
                                    status: Optional[ExpenseStatus] = None) -> List[Expense]:
        query = select(Expense).where(Expense.company_id == company_id)
        if status is not None:
            query = query.where(Expense.status == status)
        result = await db.execute(query.order_by(Expense.created_at.desc()))
        return list(result.scalars().all())

    async def list_pending_for_approver(self, db: AsyncSession, user: User) -> List[Expense]:
        """
        Get expenses whose current step the user can act on.

        Only the current step counts: an expense waiting on an earlier
        approver does not show up yet.
        """
        result = await db.execute(
            select(Expense)
            .join(
                ExpenseApprovalStep,
                and_(
                    ExpenseApprovalStep.expense_id == Expense.id,
                    ExpenseApprovalStep.step_number == Expense.current_step,
                )
            )
            .where(
                Expense.company_id == user.company_id,
                Expense.status == ExpenseStatus.pending,
                ExpenseApprovalStep.status == StepStatus.pending,
                or_(
                    and_(
                        ExpenseApprovalStep.approver_type.not_in(list(GROUP_APPROVER_TYPES)),
                        ExpenseApprovalStep.approver_id == user.id,
                    ),
                    and_(
                        ExpenseApprovalStep.approver_type.in_(list(GROUP_APPROVER_TYPES)),
                        # approver_group is a JSON array of quoted user ids
                        cast(ExpenseApprovalStep.approver_group, String).like(f'%"{user.id}"%'),
                    ),
                )
            )
            .order_by(Expense.submitted_at)
        )
        return list(result.scalars().all())

    # Escalation

    async def escalate_overdue_steps(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """
        Escalate every current step that has outlived its timeout.

        Each expense is handled in its own transaction; one that changed
        underneath is left for the next run.

        Returns:
            int: Number of escalated steps
        """
        now = now or utcnow()
        result = await db.execute(select(Expense.id).where(Expense.status == ExpenseStatus.pending))
        expense_ids = list(result.scalars().all())

        escalated = 0
        for expense_id in expense_ids:
            step = None
            try:
                async with self._atomic(db, "escalation"):
                    expense = await db.scalar(
                        select(Expense)
                        .where(Expense.id == expense_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    )
                    if expense is None:
                        continue
                    step = workflow_engine.escalate_step(expense, now)
                    if step is None:
                        continue
                    await db.flush()
                    await self.audit.log_action(
                        db, expense.company_id, None, AuditAction.escalate,
                        "expense", expense.id,
                        new_values={"step_number": step.step_number, "escalate_to": str(step.escalate_to)}
                    )
            except InvalidState:
                logger.warning(f"Skipping escalation of expense {expense_id}, it changed concurrently")
                continue
            if step is not None:
                escalated += 1

        logger.info(f"Escalated {escalated} overdue approval steps")
        return escalated


# Global expense service instance
expense_service = ExpenseService()
