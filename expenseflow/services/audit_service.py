"""
Audit logging service for ExpenseFlow.
Records workflow and administrative actions inside the caller's transaction.
"""

import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, func, desc, delete

from expenseflow.config import settings
from expenseflow.models import AuditLog
from expenseflow.schemas import AuditAction
from expenseflow.utils import utcnow

logger = logging.getLogger(__name__)


class AuditService:
    """Service for managing audit logs."""

    def __init__(self, retention_days: Optional[int] = None):
        self.retention_days = retention_days or settings.audit_log_retention_days

    async def log_action(
        self,
        db: AsyncSession,
        company_id: Optional[UUID],
        user_id: Optional[UUID],
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[UUID] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        """
        Log an audit action.

        The entry is flushed but not committed, so it lands or disappears
        together with the change it describes.

        Args:
            db: Database session
            company_id: Company ID (optional)
            user_id: User ID (optional)
            action: Type of action performed
            resource_type: Type of resource affected
            resource_id: ID of the resource affected
            old_values: Previous values (for updates)
            new_values: New values (for creates/updates)

        Returns:
            AuditLog: Created audit log entry
        """
        audit_log = AuditLog(
            company_id=company_id,
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            old_values=old_values or {},
            new_values=new_values or {},
        )
        db.add(audit_log)
        await db.flush()

        logger.debug(f"Logged audit action: {action.value} on {resource_type} {resource_id}")
        return audit_log

    async def get_resource_history(
        self,
        db: AsyncSession,
        resource_type: str,
        resource_id: UUID,
        limit: int = 100,
    ) -> List[AuditLog]:
        """Get history for a specific resource, newest first."""
        result = await db.execute(
            select(AuditLog)
            .where(
                and_(
                    AuditLog.resource_type == resource_type,
                    AuditLog.resource_id == resource_id
                )
            )
            .order_by(desc(AuditLog.created_at))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def cleanup_old_logs(
        self,
        db: AsyncSession,
        days_old: Optional[int] = None
    ) -> int:
        """
        Clean up old audit logs based on retention policy.

        Args:
            db: Database session
            days_old: Number of days old (defaults to retention_days)

        Returns:
            int: Number of logs deleted
        """
        if days_old is None:
            days_old = self.retention_days

        cutoff_date = utcnow() - timedelta(days=days_old)

        try:
            count_result = await db.execute(
                select(func.count(AuditLog.id)).where(AuditLog.created_at < cutoff_date)
            )
            count = count_result.scalar() or 0

            if count > 0:
                await db.execute(delete(AuditLog).where(AuditLog.created_at < cutoff_date))
                await db.commit()
        except Exception as e:
            logger.error(f"Error cleaning up old audit logs: {e}")
            await db.rollback()
            raise

        logger.info(f"Cleaned up {count} old audit logs")
        return count


# Global audit service instance
audit_service = AuditService()
