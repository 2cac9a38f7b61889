"""
Approval rule API endpoints for ExpenseFlow (admin only).
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.database import get_db
from expenseflow.models import User
from expenseflow.schemas import (
    ApprovalRule as ApprovalRuleSchema, ApprovalRuleCreate, ApprovalRuleUpdate, AuditAction
)
from expenseflow.auth import require_admin
from expenseflow.services.audit_service import audit_service
from expenseflow.services.rule_service import rule_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rules", tags=["Approval Rules"])


@router.get("/", response_model=List[ApprovalRuleSchema])
async def get_rules(
    include_inactive: bool = Query(False),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Get the company's approval rules in insertion order."""
    return await rule_repository.find(db, current_user.company_id, active_only=not include_inactive)


@router.post("/", response_model=ApprovalRuleSchema, status_code=status.HTTP_201_CREATED)
async def create_rule(
    rule_data: ApprovalRuleCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Create an approval rule."""
    try:
        rule = await rule_repository.create_rule(db, current_user.company_id, rule_data, created_by=current_user.id)
        await audit_service.log_action(
            db, current_user.company_id, current_user.id, AuditAction.create, "approval_rule", rule.id,
            new_values=rule_data.model_dump(mode="json")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return rule


@router.get("/{rule_id}", response_model=ApprovalRuleSchema)
async def get_rule(
    rule_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Get an approval rule."""
    return await rule_repository.get_rule(db, current_user.company_id, rule_id)


@router.put("/{rule_id}", response_model=ApprovalRuleSchema)
async def update_rule(
    rule_id: UUID,
    rule_data: ApprovalRuleUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Update an approval rule."""
    try:
        rule = await rule_repository.update_rule(db, current_user.company_id, rule_id, rule_data)
        await audit_service.log_action(
            db, current_user.company_id, current_user.id, AuditAction.update, "approval_rule", rule.id,
            new_values=rule_data.model_dump(mode="json", exclude_unset=True)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return rule


@router.delete("/{rule_id}", response_model=ApprovalRuleSchema)
async def deactivate_rule(
    rule_id: UUID,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Deactivate an approval rule. Expenses already routed by it are unaffected."""
    try:
        rule = await rule_repository.deactivate_rule(db, current_user.company_id, rule_id)
        await audit_service.log_action(
            db, current_user.company_id, current_user.id, AuditAction.delete, "approval_rule", rule.id,
            new_values={"is_active": False}
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return rule
