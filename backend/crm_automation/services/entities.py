import asyncio
import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

from crm_automation.db.documents import DOCUMENT_ONLY_FIELDS, ContactDocument, DealDocument, TaskDocument
from crm_automation.models.automation import Action
from crm_automation.services.actions import ActionOutcome, ActionPlan, EntityService, plan_action
from crm_automation.services.email import send_email
from crm_automation.timeutils import utc_now

logger = logging.getLogger(__name__)


def _set_path(target: Dict[str, Any], path: str, value: Any):
    parts = path.split(".")
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _plan_outcome(plan: ActionPlan) -> Optional[ActionOutcome]:
    """Outcome for plans that need no side effect."""
    if plan.kind == "fail":
        return ActionOutcome(outcome="failure", detail=plan.detail)
    if plan.kind == "skip":
        return ActionOutcome(outcome="skipped", detail=plan.detail)
    return None


class InMemoryEntityService(EntityService):
    """Contacts and deals held in dicts; emails and tasks are recorded instead of delivered."""

    def __init__(self):
        self._entities: Dict[str, Dict[str, Dict[str, Any]]] = {"contact": {}, "deal": {}}
        self.sent_emails: List[Dict[str, Any]] = []
        self.tasks: List[Dict[str, Any]] = []

    def upsert(self, entity_type: str, entity_id: str, data: Dict[str, Any]):
        self._entities[entity_type][entity_id] = copy.deepcopy(data)

    def remove(self, entity_type: str, entity_id: str):
        self._entities[entity_type].pop(entity_id, None)

    async def get_snapshot(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        entity = self._entities.get(entity_type, {}).get(entity_id)
        if entity is None:
            return None
        snapshot = copy.deepcopy(entity)
        snapshot.setdefault("id", entity_id)
        return snapshot

    async def list_snapshots(self, entity_type: str, limit: int) -> List[Dict[str, Any]]:
        snapshots = []
        for entity_id in list(self._entities.get(entity_type, {}))[:limit]:
            snapshots.append(await self.get_snapshot(entity_type, entity_id))
        return snapshots

    def _deal_contact_email(self, snapshot: Dict[str, Any]) -> Optional[str]:
        contact = self._entities["contact"].get(snapshot.get("contact_id") or "")
        return contact.get("email") if contact else None

    async def apply_action(self, entity_type: str, entity_id: str, action: Action) -> ActionOutcome:
        snapshot = await self.get_snapshot(entity_type, entity_id)
        if snapshot is None:
            return ActionOutcome(outcome="failure", detail=f"{entity_type} {entity_id} not found")

        plan = plan_action(entity_type, entity_id, snapshot, action, utc_now())
        outcome = _plan_outcome(plan)
        if outcome:
            return outcome

        if plan.kind == "update":
            entity = self._entities[entity_type][entity_id]
            for path, value in plan.updates.items():
                _set_path(entity, path, value)
            return ActionOutcome(outcome="success", detail=plan.detail, data={"updates": plan.updates})

        if plan.kind == "email":
            email = dict(plan.email)
            if not email["to"] and entity_type == "deal":
                email["to"] = self._deal_contact_email(snapshot)
            if not email["to"]:
                return ActionOutcome(outcome="failure", detail="No recipient email address")
            self.sent_emails.append({**email, "entity_type": entity_type, "entity_id": entity_id})
            return ActionOutcome(outcome="success", detail=plan.detail, data={"to": email["to"]})

        task = {"task_id": uuid.uuid4().hex, **plan.task}
        self.tasks.append(task)
        return ActionOutcome(outcome="success", detail=plan.detail, data={"task_id": task["task_id"]})


ENTITY_DOCUMENTS = {
    "contact": (ContactDocument, "contact_id"),
    "deal": (DealDocument, "deal_id"),
}


class MongoEntityService(EntityService):
    """Reads and mutates the contacts and deals collections shared with the CRUD layer."""

    async def _find(self, entity_type: str, entity_id: str):
        document, key = ENTITY_DOCUMENTS[entity_type]
        return await document.find_one({key: entity_id})

    async def get_snapshot(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        doc = await self._find(entity_type, entity_id)
        if doc is None:
            return None
        snapshot = doc.model_dump(exclude=DOCUMENT_ONLY_FIELDS)
        snapshot["id"] = entity_id
        return snapshot

    async def list_snapshots(self, entity_type: str, limit: int) -> List[Dict[str, Any]]:
        document, key = ENTITY_DOCUMENTS[entity_type]
        docs = await document.find({}).sort("+created_at").limit(limit).to_list()
        snapshots = []
        for doc in docs:
            snapshot = doc.model_dump(exclude=DOCUMENT_ONLY_FIELDS)
            snapshot["id"] = getattr(doc, key)
            snapshots.append(snapshot)
        return snapshots

    async def apply_action(self, entity_type: str, entity_id: str, action: Action) -> ActionOutcome:
        snapshot = await self.get_snapshot(entity_type, entity_id)
        if snapshot is None:
            return ActionOutcome(outcome="failure", detail=f"{entity_type} {entity_id} not found")

        now = utc_now()
        plan = plan_action(entity_type, entity_id, snapshot, action, now)
        outcome = _plan_outcome(plan)
        if outcome:
            return outcome

        if plan.kind == "update":
            if plan.updates:
                document, key = ENTITY_DOCUMENTS[entity_type]
                await document.get_pymongo_collection().update_one(
                    {key: entity_id}, {"$set": {**plan.updates, "updated_at": now}}
                )
            return ActionOutcome(outcome="success", detail=plan.detail, data={"updates": plan.updates})

        if plan.kind == "email":
            email = dict(plan.email)
            if not email["to"] and entity_type == "deal" and snapshot.get("contact_id"):
                contact = await self._find("contact", snapshot["contact_id"])
                email["to"] = contact.email if contact else None
            if not email["to"]:
                return ActionOutcome(outcome="failure", detail="No recipient email address")
            # smtplib blocks; keep it off the event loop
            await asyncio.to_thread(send_email, email["subject"], email["body"], email["to"], entity_id)
            return ActionOutcome(outcome="success", detail=plan.detail, data={"to": email["to"]})

        task = TaskDocument(task_id=uuid.uuid4().hex, **plan.task)
        await task.insert()
        logger.info(f"[TASK] Created task {task.task_id} for {entity_type}:{entity_id}")
        return ActionOutcome(outcome="success", detail=plan.detail, data={"task_id": task.task_id})
