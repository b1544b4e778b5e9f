import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

Outcome = Literal["success", "failure", "skipped"]


class ExecutionLogEntry(BaseModel):
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    automation_id: str
    enrollment_id: Optional[str] = None  # None for single-step automations
    entity_type: str
    entity_id: str
    step_index: Optional[int] = None
    step_type: Optional[str] = None
    action_type: Optional[str] = None
    outcome: Outcome
    detail: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
