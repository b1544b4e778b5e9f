import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

TriggerType = Literal[
    "contact_created",
    "contact_updated",
    "deal_created",
    "deal_updated",
    "deal_stage_changed",
]
EntityType = Literal["contact", "deal"]
StepType = Literal["action", "delay", "condition", "branch"]
DelayUnit = Literal["minutes", "hours", "days"]

TRIGGER_ENTITY_TYPES: Dict[str, str] = {
    "contact_created": "contact",
    "contact_updated": "contact",
    "deal_created": "deal",
    "deal_updated": "deal",
    "deal_stage_changed": "deal",
}

# Keys of branch_step_indices with a fixed meaning.
CONDITION_TRUE = "true"
CONDITION_FALSE = "false"
DEFAULT_BRANCH = "default"


class Condition(BaseModel):
    field: str
    operator: str
    value: Any = None
    logic: Optional[Literal["AND", "OR"]] = None

    @field_validator("logic", mode="before")
    @classmethod
    def _normalize_logic(cls, value):
        if isinstance(value, str):
            value = value.strip().upper()
            return value or None
        return value


class Action(BaseModel):
    type: str
    config: Dict[str, Any] = Field(default_factory=dict)


class DelayConfig(BaseModel):
    value: int
    unit: DelayUnit


class BranchDefinition(BaseModel):
    name: str
    conditions: List[Condition] = Field(default_factory=list)


class BranchConfig(BaseModel):
    branches: List[BranchDefinition] = Field(default_factory=list)


class Step(BaseModel):
    step_index: int
    name: str
    type: StepType
    next_step_index: Optional[int] = None
    actions: List[Action] = Field(default_factory=list)
    delay_config: Optional[DelayConfig] = None
    conditions: List[Condition] = Field(default_factory=list)
    branch_config: Optional[BranchConfig] = None
    branch_step_indices: Dict[str, Optional[int]] = Field(default_factory=dict)

    def successors(self) -> List[Optional[int]]:
        """Every step index this step can transition to (None means terminal)."""
        if self.type in ("action", "delay"):
            return [self.next_step_index]
        return list(self.branch_step_indices.values())


class Trigger(BaseModel):
    type: TriggerType
    # Only meaningful for deal_stage_changed
    from_stage: Optional[str] = None
    to_stage: Optional[str] = None


class SafetyConfig(BaseModel):
    max_errors: Optional[int] = None
    exit_on_unsubscribe: bool = True
    exit_on_bounce: bool = True


class Automation(BaseModel):
    automation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
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

    # Counters, only ever touched by the engine
    total_executions: int = 0
    successful_executions: int = 0
    last_executed_at: Optional[datetime] = None
    enrolled_count: int = 0
    active_enrollments: int = 0
    completed_enrollments: int = 0
    exited_enrollments: int = 0

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "New lead nurture",
                "trigger": {"type": "contact_created"},
                "conditions": [],
                "is_multi_step": True,
                "steps": [
                    {"step_index": 0, "name": "Tag", "type": "action",
                     "actions": [{"type": "add_tag", "config": {"tag": "lead"}}], "next_step_index": 1},
                    {"step_index": 1, "name": "Wait", "type": "delay",
                     "delay_config": {"value": 1, "unit": "days"}, "next_step_index": 2},
                    {"step_index": 2, "name": "Follow up", "type": "action",
                     "actions": [{"type": "send_email", "config": {"subject": "Hi {{ first_name }}", "body": "..."}}]},
                ],
                "max_duration_days": 30,
            }
        }
    )

    @property
    def entity_type(self) -> str:
        return TRIGGER_ENTITY_TYPES[self.trigger.type]

    def step_map(self) -> Dict[int, Step]:
        return {step.step_index: step for step in self.steps}

    def get_step(self, step_index: Optional[int]) -> Optional[Step]:
        if step_index is None:
            return None
        return self.step_map().get(step_index)


# Fields owned by the engine; saving a definition never overwrites them.
COUNTER_FIELDS = frozenset({
    "total_executions",
    "successful_executions",
    "last_executed_at",
    "enrolled_count",
    "active_enrollments",
    "completed_enrollments",
    "exited_enrollments",
    "created_at",
})
