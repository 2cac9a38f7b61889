"""
Expense API endpoints for ExpenseFlow.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.database import get_db
from expenseflow.models import User
from expenseflow.schemas import (
    AuditEntry, CommentCreate, Expense as ExpenseSchema, ExpenseStatus, ExpenseSubmit,
    ExpenseUpdate, PaymentRequest
)
from expenseflow.auth import get_current_user, require_admin
from expenseflow.services.audit_service import audit_service
from expenseflow.services.expense_service import expense_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/expenses", tags=["Expenses"])


@router.post("/submit", response_model=ExpenseSchema, status_code=status.HTTP_201_CREATED)
async def submit_expense(
    expense_data: ExpenseSubmit,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Submit a new expense for approval."""
    expense = await expense_service.submit(db, current_user, expense_data)
    logger.info(f"User {current_user.id} submitted expense {expense.id}")
    return expense


@router.post("/", response_model=ExpenseSchema, status_code=status.HTTP_201_CREATED)
async def create_draft(
    expense_data: ExpenseSubmit,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Save an expense as a draft."""
    return await expense_service.create_draft(db, current_user, expense_data)


@router.get("/my-expenses", response_model=List[ExpenseSchema])
async def get_my_expenses(
    status_filter: Optional[ExpenseStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get expenses submitted by the current user."""
    return await expense_service.list_my_expenses(db, current_user, status_filter)


@router.get("/", response_model=List[ExpenseSchema])
async def get_company_expenses(
    status_filter: Optional[ExpenseStatus] = Query(None, alias="status"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Get all expenses of the company (admin only)."""
    return await expense_service.list_company_expenses(db, current_user.company_id, status_filter)


@router.get("/{expense_id}", response_model=ExpenseSchema)
async def get_expense(
    expense_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get an expense with its workflow and comments."""
    return await expense_service.get_expense(db, expense_id, current_user)


@router.put("/{expense_id}", response_model=ExpenseSchema)
async def update_draft(
    expense_id: UUID,
    expense_data: ExpenseUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Update a draft expense."""
    return await expense_service.update_draft(db, expense_id, current_user, expense_data)


@router.delete("/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_draft(
    expense_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Delete a draft expense."""
    await expense_service.delete_draft(db, expense_id, current_user)


@router.post("/{expense_id}/submit", response_model=ExpenseSchema)
async def submit_draft(
    expense_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Submit a stored draft for approval."""
    return await expense_service.submit_draft(db, expense_id, current_user)


@router.post("/{expense_id}/comments", response_model=ExpenseSchema)
async def add_comment(
    expense_id: UUID,
    comment: CommentCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Add a comment to an expense."""
    return await expense_service.add_comment(db, expense_id, current_user, comment.message)


@router.post("/{expense_id}/pay", response_model=ExpenseSchema)
async def mark_paid(
    expense_id: UUID,
    payment: PaymentRequest,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Mark an approved expense as reimbursed (admin only)."""
    return await expense_service.mark_paid(db, expense_id, current_user, payment.reimbursement_method)


@router.get("/{expense_id}/history", response_model=List[AuditEntry])
async def get_expense_history(
    expense_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get the audit trail of an expense, newest first."""
    expense = await expense_service.get_expense(db, expense_id, current_user)
    return await audit_service.get_resource_history(db, "expense", expense.id)
