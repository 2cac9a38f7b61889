"""
Approval workflow background tasks.
"""

import logging

from expenseflow.celery_app import celery_app, run_with_session
from expenseflow.services.expense_service import expense_service

logger = logging.getLogger(__name__)


@celery_app.task(name='expenseflow.tasks.workflow_tasks.escalate_overdue_approvals')
def escalate_overdue_approvals():
    """Re-target approval steps that have outlived their timeout."""
    try:
        logger.info("Starting escalation of overdue approval steps")
        escalated = run_with_session(expense_service.escalate_overdue_steps)
        return {
            'status': 'success',
            'escalated_count': escalated
        }
    except Exception as e:
        logger.error(f"Escalation of overdue approvals failed: {e}")
        return {
            'status': 'error',
            'message': str(e)
        }
