from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from crm_automation.api.errors import http_error
from crm_automation.dependencies import get_engine
from crm_automation.models.automation import EntityType
from crm_automation.models.enrollment import Enrollment, EnrollmentStatus
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.services.engine import AutomationEngine

router = APIRouter()


@router.get("/enrollments", response_model=List[Enrollment])
async def list_enrollments(automation_id: Optional[str] = None, entity_type: Optional[EntityType] = None,
                           entity_id: Optional[str] = None, status: Optional[EnrollmentStatus] = None,
                           limit: int = Query(50, ge=1, le=500), engine: AutomationEngine = Depends(get_engine)):
    return await engine.list_enrollments(automation_id=automation_id, entity_type=entity_type,
                                         entity_id=entity_id, status=status, limit=limit)


@router.get("/enrollments/{enrollment_id}", response_model=Enrollment)
async def get_enrollment(enrollment_id: str, engine: AutomationEngine = Depends(get_engine)):
    try:
        return await engine.get_enrollment(enrollment_id)
    except Exception as e:
        raise http_error(e)


@router.get("/enrollments/{enrollment_id}/logs", response_model=List[ExecutionLogEntry])
async def enrollment_logs(enrollment_id: str, limit: int = Query(100, ge=1, le=1000),
                          engine: AutomationEngine = Depends(get_engine)):
    try:
        await engine.get_enrollment(enrollment_id)
        return await engine.list_logs(enrollment_id=enrollment_id, limit=limit)
    except Exception as e:
        raise http_error(e)


@router.get("/entities/{entity_type}/{entity_id}/logs", response_model=List[ExecutionLogEntry])
async def entity_logs(entity_type: EntityType, entity_id: str, limit: int = Query(100, ge=1, le=1000),
                      engine: AutomationEngine = Depends(get_engine)):
    return await engine.list_logs(entity_type=entity_type, entity_id=entity_id, limit=limit)
