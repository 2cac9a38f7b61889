"""
Authentication and authorization utilities for ExpenseFlow.
Handles JWT tokens, password hashing, and role-based access control.
"""

from datetime import timedelta
from typing import Optional, Dict, Any
from uuid import UUID

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from expenseflow.config import settings
from expenseflow.database import get_db
from expenseflow.models import User
from expenseflow.schemas import UserRole
from expenseflow.utils import utcnow

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# JWT token security
security = HTTPBearer()


class AuthManager:
    """Authentication manager for handling user authentication and authorization."""

    def __init__(self):
        self.secret_key = settings.secret_key
        self.algorithm = settings.algorithm
        self.access_token_expire_minutes = settings.access_token_expire_minutes
        self.refresh_token_expire_days = settings.refresh_token_expire_days

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        """
        Verify a plain password against its hash.

        Args:
            plain_password: The plain text password
            hashed_password: The hashed password

        Returns:
            bool: True if password matches, False otherwise
        """
        return pwd_context.verify(plain_password, hashed_password)

    def get_password_hash(self, password: str) -> str:
        return pwd_context.hash(password)

    def _encode(self, data: Dict[str, Any], expires_delta: timedelta, token_type: str) -> str:
        to_encode = data.copy()
        to_encode.update({"exp": utcnow() + expires_delta, "type": token_type})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def create_access_token(self, data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """
        Create a JWT access token.

        Args:
            data: Data to encode in the token
            expires_delta: Token expiration time

        Returns:
            str: JWT access token
        """
        return self._encode(
            data, expires_delta or timedelta(minutes=self.access_token_expire_minutes), "access"
        )

    def create_refresh_token(self, data: Dict[str, Any]) -> str:
        return self._encode(data, timedelta(days=self.refresh_token_expire_days), "refresh")

    def verify_token(self, token: str, token_type: str = "access") -> Dict[str, Any]:
        """
        Verify and decode a JWT token.

        Raises:
            HTTPException: If token is invalid, expired or of the wrong type
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if payload.get("type") != token_type:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token type",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return payload

    def create_token_pair(self, user: User) -> Dict[str, Any]:
        """
        Create both access and refresh tokens for a user.

        Args:
            user: Authenticated user

        Returns:
            Dict[str, Any]: Token pair with access and refresh tokens
        """
        token_data = {
            "sub": str(user.id),
            "company_id": str(user.company_id),
            "role": user.role.value,
        }

        return {
            "access_token": self.create_access_token(token_data),
            "refresh_token": self.create_refresh_token(token_data),
            "token_type": "bearer",
            "expires_in": self.access_token_expire_minutes * 60
        }


# Global auth manager instance
auth_manager = AuthManager()


async def get_user_by_token_subject(user_id: Optional[str], db: AsyncSession) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if user_id is None:
        raise credentials_exception

    try:
        user_uuid = UUID(user_id)
    except ValueError:
        raise credentials_exception

    result = await db.execute(
        select(User).where(User.id == user_uuid, User.is_active == True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise credentials_exception
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Get the current authenticated user.

    Args:
        credentials: HTTP authorization credentials
        db: Database session

    Returns:
        User: Current authenticated, active user

    Raises:
        HTTPException: If user is not authenticated or not found
    """
    payload = auth_manager.verify_token(credentials.credentials)
    return await get_user_by_token_subject(payload.get("sub"), db)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Require admin role."""
    if current_user.role != UserRole.admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
    """
    Authenticate a user with email and password.

    Args:
        email: User email
        password: User password
        db: Database session

    Returns:
        Optional[User]: User if authentication successful, None otherwise
    """
    result = await db.execute(
        select(User).where(User.email == email.lower(), User.is_active == True)
    )
    user = result.scalar_one_or_none()

    if not user:
        return None

    if not auth_manager.verify_password(password, user.password_hash):
        return None

    return user
