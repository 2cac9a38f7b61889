"""
Cleanup and maintenance background tasks.
"""

import logging
from typing import Optional

from expenseflow.celery_app import celery_app, run_with_session
from expenseflow.services.audit_service import audit_service

logger = logging.getLogger(__name__)


@celery_app.task(name='expenseflow.tasks.cleanup_tasks.cleanup_old_audit_logs')
def cleanup_old_audit_logs(days_old: Optional[int] = None):
    """
    Clean up old audit logs.

    Args:
        days_old: Delete audit logs older than this many days (defaults to the
            configured retention window)
    """
    days_old = days_old or audit_service.retention_days
    try:
        logger.info(f"Starting cleanup of audit logs older than {days_old} days")

        async def cleanup(db):
            return await audit_service.cleanup_old_logs(db, days_old=days_old)

        deleted_count = run_with_session(cleanup)

        logger.info(f"Audit log cleanup completed. {deleted_count} logs deleted.")
        return {
            'status': 'success',
            'deleted_count': deleted_count,
            'days_old': days_old
        }

    except Exception as e:
        logger.error(f"Audit log cleanup failed: {e}")
        return {
            'status': 'error',
            'message': str(e)
        }
