import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, NamedTuple, Optional, Tuple

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field

from crm_automation import config
from crm_automation.models.automation import Action

logger = logging.getLogger(__name__)


class ActionSpec(NamedTuple):
    entity_type: Optional[str]  # None applies to any entity
    required: Tuple[Tuple[str, ...], ...]  # each group needs at least one key


ACTION_SPECS: Dict[str, ActionSpec] = {
    "update_contact_field": ActionSpec("contact", (("field",),)),
    "update_deal_field": ActionSpec("deal", (("field",),)),
    "update_custom_field": ActionSpec(None, (("field",),)),
    "add_tag": ActionSpec(None, (("tag",),)),
    "add_contact_tag": ActionSpec(None, (("tag",),)),
    "remove_tag": ActionSpec(None, (("tag",),)),
    "change_deal_stage": ActionSpec("deal", (("stage", "stageId"),)),
    "move_deal_to_stage": ActionSpec("deal", (("stage", "stageId"),)),
    "send_email": ActionSpec(None, (("subject",), ("body",))),
    "create_task": ActionSpec(None, (("title",),)),
}

DEFAULT_TASK_DUE_DAYS = 1

_templates = SandboxedEnvironment(autoescape=False)


class ActionOutcome(BaseModel):
    outcome: Literal["success", "failure", "skipped"]
    detail: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class ActionPlan(BaseModel):
    """What an action means for one entity, before anything is written."""

    kind: Literal["update", "email", "task", "skip", "fail"]
    detail: Optional[str] = None
    updates: Dict[str, Any] = Field(default_factory=dict)
    email: Optional[Dict[str, Any]] = None
    task: Optional[Dict[str, Any]] = None


def render_template(source: str, snapshot: Dict[str, Any]) -> str:
    return _templates.from_string(source).render(**snapshot)


def _custom_field_path(field: str) -> str:
    for prefix in ("custom_fields.", "customFields."):
        if field.startswith(prefix):
            field = field[len(prefix):]
    return f"custom_fields.{field}"


def plan_action(entity_type: str, entity_id: str, snapshot: Dict[str, Any], action: Action,
                now: datetime) -> ActionPlan:
    spec = ACTION_SPECS.get(action.type)
    if spec is None:
        return ActionPlan(kind="fail", detail=f"Unknown action type: {action.type}")

    cfg = action.config
    for alternatives in spec.required:
        if not any(cfg.get(key) not in (None, "") for key in alternatives):
            return ActionPlan(kind="fail", detail=f"{action.type} requires '{' or '.join(alternatives)}'")

    if spec.entity_type and spec.entity_type != entity_type:
        return ActionPlan(kind="skip", detail=f"{action.type} does not apply to {entity_type}")

    if action.type in ("update_contact_field", "update_deal_field"):
        return ActionPlan(kind="update", updates={cfg["field"]: cfg.get("value")},
                          detail=f"Set {cfg['field']}")

    if action.type == "update_custom_field":
        path = _custom_field_path(cfg["field"])
        return ActionPlan(kind="update", updates={path: cfg.get("value")}, detail=f"Set {path}")

    if action.type in ("add_tag", "add_contact_tag"):
        tags = list(snapshot.get("tags") or [])
        if cfg["tag"] in tags:
            return ActionPlan(kind="update", detail=f"Tag '{cfg['tag']}' already present")
        return ActionPlan(kind="update", updates={"tags": tags + [cfg["tag"]]}, detail=f"Added tag '{cfg['tag']}'")

    if action.type == "remove_tag":
        tags = list(snapshot.get("tags") or [])
        if cfg["tag"] not in tags:
            return ActionPlan(kind="update", detail=f"Tag '{cfg['tag']}' not present")
        return ActionPlan(kind="update", updates={"tags": [t for t in tags if t != cfg["tag"]]},
                          detail=f"Removed tag '{cfg['tag']}'")

    if action.type in ("change_deal_stage", "move_deal_to_stage"):
        stage = cfg.get("stage") or cfg.get("stageId")
        return ActionPlan(kind="update", updates={"stage": stage}, detail=f"Moved to stage '{stage}'")

    try:
        if action.type == "send_email":
            to = cfg.get("to") or snapshot.get("email")
            email = {
                "to": render_template(to, snapshot) if to else None,
                "subject": render_template(cfg["subject"], snapshot),
                "body": render_template(cfg["body"], snapshot),
            }
            return ActionPlan(kind="email", email=email, detail=f"Email '{email['subject']}'")

        # create_task
        due_in_days = cfg.get("due_in_days", DEFAULT_TASK_DUE_DAYS)
        task = {
            "title": render_template(cfg["title"], snapshot),
            "description": render_template(cfg.get("description") or "", snapshot),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "due_at": now + timedelta(days=float(due_in_days)),
            "status": "open",
        }
        return ActionPlan(kind="task", task=task, detail=f"Task '{task['title']}'")
    except (TemplateError, TypeError, ValueError) as e:
        return ActionPlan(kind="fail", detail=f"{action.type} could not be prepared: {e}")


class EntityService(ABC):
    """Read snapshots of CRM entities and apply actions to them."""

    @abstractmethod
    async def get_snapshot(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_snapshots(self, entity_type: str, limit: int) -> List[Dict[str, Any]]:
        """Up to `limit` snapshots of one entity type, each carrying its `id`."""
        ...

    @abstractmethod
    async def apply_action(self, entity_type: str, entity_id: str, action: Action) -> ActionOutcome:
        ...


class ActionRunner:
    """Runs a list of actions in order; one failing or hanging action never stops the rest."""

    def __init__(self, entities: EntityService, timeout_seconds: Optional[float] = None):
        self.entities = entities
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.ACTION_TIMEOUT_SECONDS

    async def run_one(self, entity_type: str, entity_id: str, action: Action) -> ActionOutcome:
        try:
            return await asyncio.wait_for(
                self.entities.apply_action(entity_type, entity_id, action),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[ACTION] {action.type} on {entity_type}:{entity_id} timed out after {self.timeout_seconds}s")
            return ActionOutcome(outcome="failure", detail=f"Timed out after {self.timeout_seconds}s")
        except Exception as e:
            logger.error(f"[ACTION] {action.type} on {entity_type}:{entity_id} failed: {e}", exc_info=True)
            return ActionOutcome(outcome="failure", detail=str(e))

    async def run_all(self, entity_type: str, entity_id: str, actions: List[Action]) -> List[ActionOutcome]:
        outcomes = []
        for action in actions:
            outcome = await self.run_one(entity_type, entity_id, action)
            logger.info(f"[ACTION] {action.type} on {entity_type}:{entity_id} -> {outcome.outcome}")
            outcomes.append(outcome)
        return outcomes
