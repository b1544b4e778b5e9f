import logging

from fastapi import APIRouter, Depends

from crm_automation.api.errors import http_error
from crm_automation.dependencies import get_engine
from crm_automation.models.events import EntityEvent
from crm_automation.services.engine import AutomationEngine
from crm_automation.services.trigger_matcher import check_event

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/events")
async def ingest_event(event: EntityEvent, background: bool = False, engine: AutomationEngine = Depends(get_engine)):
    """
    Ingest an entity-lifecycle event from the CRUD layer. By default the event is
    matched inline and the result returned; with background=true it is queued
    for a Celery worker.
    """
    logger.info(f"[EVENTS] {event.event_type} for {event.entity_type}:{event.entity_id} (background={background})")
    try:
        if background:
            from crm_automation.tasks import handle_entity_event_task

            check_event(event)
            task = handle_entity_event_task.delay(event.model_dump(mode="json"))
            return {"queued": True, "task_id": task.id}
        return await engine.handle_event(event)
    except Exception as e:
        raise http_error(e)
