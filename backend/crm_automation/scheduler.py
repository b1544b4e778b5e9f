import logging

from celery.schedules import crontab

from crm_automation import config
from crm_automation.celery_config import celery_app
from crm_automation.tasks import cleanup_execution_logs_task, poll_due_enrollments_task

logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    logger.info("Setting up periodic tasks...")

    sender.add_periodic_task(
        config.POLL_INTERVAL_SECONDS,
        poll_due_enrollments_task.s(),
        name="poll-due-enrollments",
    )

    # Execution log retention daily at 3 AM
    sender.add_periodic_task(
        crontab(hour=3, minute=0),
        cleanup_execution_logs_task.s(),
        name="cleanup-execution-logs",
    )

    logger.info("Periodic tasks configured successfully")
