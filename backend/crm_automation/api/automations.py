import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from crm_automation.api.errors import http_error
from crm_automation.dependencies import get_engine
from crm_automation.models.automation import (
    Action,
    Automation,
    Condition,
    EntityType,
    SafetyConfig,
    Step,
    Trigger,
)
from crm_automation.models.enrollment import Enrollment
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.services.engine import AutomationEngine

logger = logging.getLogger(__name__)
router = APIRouter()


# Request schema: the author-editable part of an automation
class AutomationRequest(BaseModel):
    name: str
    description: Optional[str] = None
    trigger: Trigger
    conditions: List[Condition] = Field(default_factory=list)
    is_active: bool = True
    is_multi_step: bool = True
    steps: List[Step] = Field(default_factory=list)
    actions: List[Action] = Field(default_factory=list)
    exit_criteria: List[Condition] = Field(default_factory=list)
    max_duration_days: Optional[int] = None
    safety_exit_enabled: bool = True
    safety_config: SafetyConfig = Field(default_factory=SafetyConfig)

    def to_automation(self) -> Automation:
        return Automation(**self.model_dump())


class ToggleRequest(BaseModel):
    # Omitted flips the current state
    is_active: Optional[bool] = None


class EntityRef(BaseModel):
    entity_type: EntityType
    entity_id: str


class EnrollRequest(BaseModel):
    entity_type: EntityType
    entity_ids: List[str] = Field(..., min_length=1)


class EnrollmentSummary(BaseModel):
    counts: Dict[str, int]
    enrollments: List[Enrollment]


@router.post("/automations", response_model=Automation, status_code=201)
async def create_automation(request: AutomationRequest, engine: AutomationEngine = Depends(get_engine)):
    logger.info(f"Automation creation endpoint called: '{request.name}' on {request.trigger.type}")
    try:
        return await engine.create_automation(request.to_automation())
    except Exception as e:
        raise http_error(e)


@router.get("/automations", response_model=List[Automation])
async def list_automations(active_only: bool = False, engine: AutomationEngine = Depends(get_engine)):
    return await engine.list_automations(active_only=active_only)


@router.get("/automations/{automation_id}", response_model=Automation)
async def get_automation(automation_id: str, engine: AutomationEngine = Depends(get_engine)):
    try:
        return await engine.get_automation(automation_id)
    except Exception as e:
        raise http_error(e)


@router.put("/automations/{automation_id}", response_model=Automation)
async def update_automation(automation_id: str, request: AutomationRequest,
                            engine: AutomationEngine = Depends(get_engine)):
    logger.info(f"Automation update endpoint called for {automation_id}")
    try:
        return await engine.update_automation(automation_id, request.to_automation())
    except Exception as e:
        raise http_error(e)


@router.patch("/automations/{automation_id}/toggle", response_model=Automation)
async def toggle_automation(automation_id: str, request: Optional[ToggleRequest] = None,
                            engine: AutomationEngine = Depends(get_engine)):
    try:
        return await engine.toggle_automation(automation_id, request.is_active if request else None)
    except Exception as e:
        raise http_error(e)


@router.delete("/automations/{automation_id}")
async def delete_automation(automation_id: str, engine: AutomationEngine = Depends(get_engine)):
    try:
        await engine.delete_automation(automation_id)
        return {"message": "Automation deleted", "automation_id": automation_id}
    except Exception as e:
        raise http_error(e)


@router.post("/automations/{automation_id}/test")
async def test_automation(automation_id: str, request: EntityRef, engine: AutomationEngine = Depends(get_engine)):
    """
    Force one pass of the automation for a single entity, enrolling it first if it
    has no active enrollment. Due times and trigger conditions are ignored.
    """
    logger.info(f"=== TEST RUN === automation {automation_id} on {request.entity_type}:{request.entity_id}")
    try:
        return await engine.run_test(automation_id, request.entity_type, request.entity_id)
    except Exception as e:
        raise http_error(e)


@router.post("/automations/{automation_id}/enroll")
async def enroll_entities(automation_id: str, request: EnrollRequest, engine: AutomationEngine = Depends(get_engine)):
    try:
        return await engine.enroll(automation_id, request.entity_type, request.entity_ids)
    except Exception as e:
        raise http_error(e)


@router.get("/automations/{automation_id}/preview-enrollment")
async def preview_enrollment(automation_id: str, limit: int = Query(20, ge=1, le=100),
                             engine: AutomationEngine = Depends(get_engine)):
    """Entities that would be enrolled right now, with a count and the first `limit`."""
    try:
        return await engine.preview_enrollment(automation_id, limit=limit)
    except Exception as e:
        raise http_error(e)


@router.post("/automations/{automation_id}/unenroll", response_model=Enrollment)
async def unenroll_entity(automation_id: str, request: EntityRef, engine: AutomationEngine = Depends(get_engine)):
    try:
        return await engine.unenroll(automation_id, request.entity_type, request.entity_id)
    except Exception as e:
        raise http_error(e)


@router.get("/automations/{automation_id}/enrollments", response_model=EnrollmentSummary)
async def automation_enrollments(automation_id: str, limit: int = Query(50, ge=1, le=500),
                                 engine: AutomationEngine = Depends(get_engine)):
    try:
        return await engine.enrollment_summary(automation_id, limit=limit)
    except Exception as e:
        raise http_error(e)


@router.get("/automations/{automation_id}/logs", response_model=List[ExecutionLogEntry])
async def automation_logs(automation_id: str, limit: int = Query(100, ge=1, le=1000),
                          engine: AutomationEngine = Depends(get_engine)):
    try:
        await engine.get_automation(automation_id)
        return await engine.list_logs(automation_id=automation_id, limit=limit)
    except Exception as e:
        raise http_error(e)
