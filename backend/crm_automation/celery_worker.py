import asyncio
import logging

from celery.signals import worker_process_init

from crm_automation.celery_config import celery_app
from crm_automation.db.init import close_db, init_db
from crm_automation import scheduler  # noqa: F401  registers the periodic tasks

# Entry point for `celery -A crm_automation.celery_worker worker|beat`.

logger = logging.getLogger(__name__)


@worker_process_init.connect
def on_worker_init(**kwargs):
    """Check the database is reachable before the worker process accepts tasks."""
    logger.info("Celery worker process initializing...")

    async def check():
        await init_db()
        await close_db()

    try:
        asyncio.run(check())
        logger.info("Database connection verified for Celery worker.")
    except Exception as e:
        logger.error(f"Failed to initialize database for Celery worker: {e}", exc_info=True)
        raise


celery = celery_app
