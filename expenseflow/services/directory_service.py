"""
User and company lookups used by the approval workflow.
"""

import logging
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from expenseflow.exceptions import NotFound
from expenseflow.models import Company, User
from expenseflow.schemas import UserRole

logger = logging.getLogger(__name__)


class UserDirectory:
    """Read access to users of a company."""

    async def get_manager(self, db: AsyncSession, employee: User) -> Optional[User]:
        """
        Get the employee's manager if it can approve.

        A manager who is inactive or belongs to another company counts as no
        manager at all.
        """
        if employee.manager_id is None:
            return None

        result = await db.execute(
            select(User).where(
                User.id == employee.manager_id,
                User.company_id == employee.company_id,
                User.is_active == True
            )
        )
        manager = result.scalar_one_or_none()
        if manager is None:
            logger.info(f"Manager {employee.manager_id} of user {employee.id} is not an eligible approver")
        return manager

    async def get_users_by_role(self, db: AsyncSession, company_id: UUID, role: UserRole) -> List[User]:
        """Get active users of a company holding a role."""
        result = await db.execute(
            select(User)
            .where(
                User.company_id == company_id,
                User.role == role,
                User.is_active == True
            )
            .order_by(User.created_at, User.email)
        )
        return list(result.scalars().all())

    async def get_role_members(self, db: AsyncSession, company_id: UUID,
                               roles: List[UserRole]) -> Dict[str, List[UUID]]:
        """Map each requested role value to its active members' ids."""
        members: Dict[str, List[UUID]] = {}
        for role in set(roles):
            users = await self.get_users_by_role(db, company_id, role)
            members[role.value] = [user.id for user in users]
        return members

    async def list_users(self, db: AsyncSession, company_id: UUID) -> List[User]:
        result = await db.execute(
            select(User).where(User.company_id == company_id).order_by(User.created_at, User.email)
        )
        return list(result.scalars().all())


class CompanyDirectory:
    """Read access to companies."""

    async def get_company(self, db: AsyncSession, company_id: UUID) -> Company:
        result = await db.execute(
            select(Company).where(Company.id == company_id, Company.is_active == True)
        )
        company = result.scalar_one_or_none()
        if company is None:
            raise NotFound("Company not found")
        return company

    async def get_default_currency(self, db: AsyncSession, company_id: UUID) -> str:
        company = await self.get_company(db, company_id)
        return company.default_currency


# Global directory instances
user_directory = UserDirectory()
company_directory = CompanyDirectory()
