"""
Authentication API endpoints for ExpenseFlow.
"""

import logging

from fastapi import APIRouter, HTTPException, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from expenseflow.database import get_db
from expenseflow.models import User
from expenseflow.schemas import AuditAction, LoginRequest, RefreshRequest, Token, User as UserSchema
from expenseflow.auth import auth_manager, authenticate_user, get_current_user, get_user_by_token_subject
from expenseflow.services.audit_service import audit_service
from expenseflow.utils import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/login", response_model=Token)
async def login(
    login_data: LoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """Authenticate user and return JWT tokens."""
    user = await authenticate_user(login_data.email, login_data.password, db)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    try:
        user.last_login = utcnow()
        await audit_service.log_action(
            db, user.company_id, user.id, AuditAction.login, "user", user.id
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Login error: {e}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Login failed"
        )

    return auth_manager.create_token_pair(user)


@router.post("/refresh", response_model=Token)
async def refresh_token(
    refresh_data: RefreshRequest,
    db: AsyncSession = Depends(get_db)
):
    """Refresh access token using refresh token."""
    payload = auth_manager.verify_token(refresh_data.refresh_token, "refresh")
    user = await get_user_by_token_subject(payload.get("sub"), db)
    return auth_manager.create_token_pair(user)


@router.get("/me", response_model=UserSchema)
async def get_me(current_user: User = Depends(get_current_user)):
    """Get the authenticated user."""
    return current_user
