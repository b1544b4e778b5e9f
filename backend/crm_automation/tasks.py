import asyncio
import logging
from typing import Any, Dict

from crm_automation import config
from crm_automation.celery_config import celery_app
from crm_automation.db.init import close_db, init_db
from crm_automation.dependencies import get_engine
from crm_automation.models.events import EntityEvent

logger = logging.getLogger(__name__)


def _run_with_engine(work):
    """Each task runs on a fresh event loop, so the database client is opened and closed with it."""

    async def run():
        await init_db()
        try:
            return await work(get_engine())
        finally:
            await close_db()

    return asyncio.run(run())


@celery_app.task(name="crm_automation.tasks.handle_entity_event_task", acks_late=True, max_retries=3)
def handle_entity_event_task(event: Dict[str, Any]):
    """Match an entity-lifecycle event against active automations."""
    try:
        logger.info(f"=== HANDLE_ENTITY_EVENT_TASK STARTED ===")
        logger.info(f"Event: {event.get('event_type')} {event.get('entity_type')}:{event.get('entity_id')}")
        parsed = EntityEvent.model_validate(event)
        summary = _run_with_engine(lambda engine: engine.handle_event(parsed))
        logger.info(f"=== HANDLE_ENTITY_EVENT_TASK COMPLETED === {summary}")
        return summary
    except Exception as e:
        logger.error(f"=== HANDLE_ENTITY_EVENT_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="crm_automation.tasks.poll_due_enrollments_task", acks_late=True)
def poll_due_enrollments_task():
    """Claim every due enrollment and fan each one out to its own worker task."""
    try:
        logger.info(f"=== POLL_DUE_ENROLLMENTS_TASK STARTED ===")
        claimed = _run_with_engine(lambda engine: engine.claim_due())
        for enrollment_id, token in claimed:
            process_enrollment_task.delay(enrollment_id, token)
        logger.info(f"=== POLL_DUE_ENROLLMENTS_TASK COMPLETED === dispatched {len(claimed)} enrollment(s)")
        return len(claimed)
    except Exception as e:
        logger.error(f"=== POLL_DUE_ENROLLMENTS_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="crm_automation.tasks.process_enrollment_task", acks_late=True)
def process_enrollment_task(enrollment_id: str, claim_token: str):
    """Advance one claimed enrollment by one step; a lost claim makes this a no-op."""
    try:
        logger.info(f"=== PROCESS_ENROLLMENT_TASK STARTED === enrollment {enrollment_id}")
        result = _run_with_engine(lambda engine: engine.process_enrollment(enrollment_id, claim_token=claim_token))
        logger.info(f"=== PROCESS_ENROLLMENT_TASK COMPLETED === enrollment {enrollment_id}: {result}")
        return result
    except Exception as e:
        # The claim expires on its own and the next poll retries from the last committed state
        logger.error(f"=== PROCESS_ENROLLMENT_TASK FAILED === enrollment {enrollment_id}")
        logger.error(f"Error: {e}", exc_info=True)
        raise


@celery_app.task(name="crm_automation.tasks.cleanup_execution_logs_task")
def cleanup_execution_logs_task():
    """Delete execution log entries older than LOG_RETENTION_DAYS, when retention is configured."""
    if config.LOG_RETENTION_DAYS is None:
        logger.info("[CLEANUP] LOG_RETENTION_DAYS not set, keeping all execution logs")
        return 0
    try:
        logger.info(f"=== CLEANUP_EXECUTION_LOGS_TASK STARTED ===")
        deleted = _run_with_engine(lambda engine: engine.cleanup_logs(config.LOG_RETENTION_DAYS))
        logger.info(f"=== CLEANUP_EXECUTION_LOGS_TASK COMPLETED === deleted {deleted}")
        return deleted
    except Exception as e:
        logger.error(f"=== CLEANUP_EXECUTION_LOGS_TASK FAILED ===")
        logger.error(f"Error: {e}", exc_info=True)
        raise
