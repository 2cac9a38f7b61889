"""
Celery application for ExpenseFlow background tasks.
Runs approval escalation and audit log retention on a beat schedule.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from celery import Celery
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from expenseflow.config import settings

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    'expenseflow',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        'expenseflow.tasks.workflow_tasks',
        'expenseflow.tasks.cleanup_tasks'
    ]
)

# Configure Celery
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

# Configure periodic tasks
celery_app.conf.beat_schedule = {
    'escalate-overdue-approvals': {
        'task': 'expenseflow.tasks.workflow_tasks.escalate_overdue_approvals',
        'schedule': settings.escalation_check_minutes * 60,
    },
    'cleanup-old-audit-logs': {
        'task': 'expenseflow.tasks.cleanup_tasks.cleanup_old_audit_logs',
        'schedule': crontab(hour=3, minute=0),  # Daily at 3 AM
    },
}


def run_with_session(work: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
    """
    Run an async unit of work from a synchronous task.

    Each call gets its own event loop, so the engine is created per call
    without pooling and disposed afterwards.
    """
    async def runner():
        engine = create_async_engine(settings.database_url, poolclass=NullPool)
        session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        try:
            async with session_factory() as db:
                return await work(db)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


if __name__ == '__main__':
    celery_app.start()
