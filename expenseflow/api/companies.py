"""
Company registration and user management API endpoints for ExpenseFlow.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, HTTPException, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from expenseflow.database import get_db
from expenseflow.exceptions import NotFound, ValidationError
from expenseflow.models import Company, User
from expenseflow.schemas import (
    AuditAction, CompanyRegister, Company as CompanySchema, RegistrationResponse,
    User as UserSchema, UserCreate, UserRole, UserUpdate
)
from expenseflow.auth import auth_manager, get_current_user, require_admin
from expenseflow.services.audit_service import audit_service
from expenseflow.services.currency_service import currency_service
from expenseflow.services.directory_service import company_directory, user_directory
from expenseflow.services.rule_service import rule_repository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Companies"])


async def _ensure_email_free(email: str, db: AsyncSession) -> None:
    result = await db.execute(select(User.id).where(User.email == email.lower()))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User with this email already exists"
        )


@router.post("/companies/register", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
async def register_company(
    registration: CompanyRegister,
    db: AsyncSession = Depends(get_db)
):
    """Register a company with its first admin and the default approval rules."""
    await _ensure_email_free(registration.admin_email, db)
    if not currency_service.is_supported(registration.default_currency):
        logger.warning(f"Company registered with unlisted currency {registration.default_currency}")

    try:
        company = Company(
            name=registration.company_name,
            country=registration.country,
            default_currency=registration.default_currency,
        )
        db.add(company)
        await db.flush()

        admin = User(
            company_id=company.id,
            email=registration.admin_email.lower(),
            password_hash=auth_manager.get_password_hash(registration.password),
            first_name=registration.admin_first_name,
            last_name=registration.admin_last_name,
            role=UserRole.admin,
        )
        db.add(admin)
        await db.flush()

        await rule_repository.create_default_rules(db, company, admin)
        await audit_service.log_action(
            db, company.id, admin.id, AuditAction.create, "company", company.id,
            new_values={"name": company.name, "default_currency": company.default_currency}
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Error registering company: {e}")
        await db.rollback()
        raise

    logger.info(f"Registered company {company.name} ({company.id})")
    return RegistrationResponse(
        token=auth_manager.create_token_pair(admin),
        user=UserSchema.model_validate(admin),
        company=CompanySchema.model_validate(company),
    )


@router.get("/companies/current", response_model=CompanySchema)
async def get_current_company(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Get current user's company."""
    return await company_directory.get_company(db, current_user.company_id)


@router.post("/users", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Register an employee or manager in the admin's company (admin only)."""
    await _ensure_email_free(user_data.email, db)
    if user_data.manager_id is not None:
        manager = await db.get(User, user_data.manager_id)
        if manager is None or manager.company_id != current_user.company_id:
            raise ValidationError("Manager must be a user of the same company")

    try:
        user = User(
            company_id=current_user.company_id,
            email=user_data.email.lower(),
            password_hash=auth_manager.get_password_hash(user_data.password),
            first_name=user_data.first_name,
            last_name=user_data.last_name,
            role=user_data.role,
            department=user_data.department,
            employee_code=user_data.employee_code,
            manager_id=user_data.manager_id,
            approval_limit=user_data.approval_limit,
        )
        db.add(user)
        await db.flush()

        await audit_service.log_action(
            db, current_user.company_id, current_user.id, AuditAction.create, "user", user.id,
            new_values={
                "email": user.email,
                "role": user.role.value,
                "manager_id": str(user.manager_id) if user.manager_id else None
            }
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Error creating user: {e}")
        await db.rollback()
        raise

    logger.info(f"Created user: {user.email}")
    return user


@router.get("/users", response_model=List[UserSchema])
async def get_users(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Get users of the admin's company."""
    return await user_directory.list_users(db, current_user.company_id)


def _user_snapshot(user: User) -> dict:
    return {
        "role": user.role.value,
        "manager_id": str(user.manager_id) if user.manager_id else None,
        "is_active": user.is_active,
    }


@router.put("/users/{user_id}", response_model=UserSchema)
async def update_user(
    user_id: UUID,
    user_data: UserUpdate,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """
    Change a user's role, manager or active flag (admin only).

    Only expenses submitted afterwards are routed with the new assignments;
    existing workflows keep the approvers they were built with.
    """
    user = await db.get(User, user_id)
    if user is None or user.company_id != current_user.company_id:
        raise NotFound("User not found")

    changes = {
        field: value
        for field, value in user_data.model_dump(exclude_unset=True).items()
        if value is not None or field in ("manager_id", "department", "employee_code")
    }

    if user.id == current_user.id and (
        changes.get("is_active") is False
        or changes.get("role", UserRole.admin) != UserRole.admin
    ):
        raise ValidationError("Admins cannot deactivate or demote themselves")

    if changes.get("manager_id") is not None:
        if changes["manager_id"] == user.id:
            raise ValidationError("A user cannot be their own manager")
        manager = await db.get(User, changes["manager_id"])
        if manager is None or manager.company_id != current_user.company_id:
            raise ValidationError("Manager must be a user of the same company")

    try:
        old_values = _user_snapshot(user)
        for field, value in changes.items():
            setattr(user, field, value)
        await db.flush()

        await audit_service.log_action(
            db, current_user.company_id, current_user.id, AuditAction.update, "user", user.id,
            old_values=old_values, new_values=_user_snapshot(user)
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Error updating user {user_id}: {e}")
        await db.rollback()
        raise

    logger.info(f"Updated user {user.email}: {changes}")
    return user
