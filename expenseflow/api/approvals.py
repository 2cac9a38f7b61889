"""
Approval API endpoints for ExpenseFlow.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.database import get_db
from expenseflow.models import User
from expenseflow.schemas import Decision, DecisionRequest, Expense as ExpenseSchema
from expenseflow.auth import get_current_user, require_admin
from expenseflow.services.expense_service import expense_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/approvals", tags=["Approvals"])


@router.get("/pending", response_model=List[ExpenseSchema])
async def get_pending_approvals(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get expenses waiting on the current user's decision."""
    return await expense_service.list_pending_for_approver(db, current_user)


@router.post("/{expense_id}/approve", response_model=ExpenseSchema)
async def approve_expense(
    expense_id: UUID,
    decision: DecisionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Approve the current step of an expense."""
    return await expense_service.decide(
        db, expense_id, current_user, Decision.approve, decision.comments, decision.expected_step
    )


@router.post("/{expense_id}/reject", response_model=ExpenseSchema)
async def reject_expense(
    expense_id: UUID,
    decision: DecisionRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Reject an expense at its current step."""
    return await expense_service.decide(
        db, expense_id, current_user, Decision.reject, decision.comments, decision.expected_step
    )


@router.post("/{expense_id}/skip", response_model=ExpenseSchema)
async def skip_step(
    expense_id: UUID,
    decision: DecisionRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Skip the current optional step of an expense (admin only)."""
    return await expense_service.skip(
        db, expense_id, current_user, decision.comments, decision.expected_step
    )
