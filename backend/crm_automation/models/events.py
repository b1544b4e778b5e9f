from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from crm_automation.models.automation import EntityType, TriggerType


class EntityEvent(BaseModel):
    """Entity-lifecycle event emitted by the CRUD layer."""

    event_type: TriggerType
    entity_type: EntityType
    entity_id: str
    before: Optional[Dict[str, Any]] = None
    after: Dict[str, Any] = Field(default_factory=dict)
