import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from crm_automation.db.documents import (
    AutomationDocument,
    EnrollmentDocument,
    ExecutionLogDocument,
    to_automation,
    to_enrollment,
    to_log_entry,
)
from crm_automation.models.automation import COUNTER_FIELDS, Automation
from crm_automation.models.enrollment import ACTIVE, Enrollment
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.stores.base import AutomationStore, EnrollmentStore, ExecutionLogStore

logger = logging.getLogger(__name__)

RAW_ONLY_FIELDS = ("_id", "revision_id")


def _strip_raw(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in raw.items() if key not in RAW_ONLY_FIELDS}


def _claim_free(now: datetime) -> Dict[str, Any]:
    return {"$or": [{"claimed_until": None}, {"claimed_until": {"$lte": now}}]}


class MongoAutomationStore(AutomationStore):
    async def save(self, automation: Automation) -> Automation:
        collection = AutomationDocument.get_pymongo_collection()
        definition = automation.model_dump(exclude=set(COUNTER_FIELDS))
        counters = automation.model_dump(include=set(COUNTER_FIELDS))
        await collection.update_one(
            {"automation_id": automation.automation_id},
            {"$set": definition, "$setOnInsert": counters},
            upsert=True,
        )
        logger.info(f"[AUTOMATION_STORE] Saved automation {automation.automation_id}")
        return await self.get(automation.automation_id)

    async def get(self, automation_id: str) -> Optional[Automation]:
        doc = await AutomationDocument.find_one(AutomationDocument.automation_id == automation_id)
        return to_automation(doc) if doc else None

    async def list(self, active_only: bool = False, trigger_type: Optional[str] = None) -> List[Automation]:
        query: Dict[str, Any] = {}
        if active_only:
            query["is_active"] = True
        if trigger_type:
            query["trigger.type"] = trigger_type
        docs = await AutomationDocument.find(query).sort("+created_at").to_list()
        return [to_automation(doc) for doc in docs]

    async def delete(self, automation_id: str) -> bool:
        result = await AutomationDocument.get_pymongo_collection().delete_one({"automation_id": automation_id})
        return result.deleted_count == 1

    async def set_active(self, automation_id: str, is_active: bool, now: datetime) -> Optional[Automation]:
        raw = await AutomationDocument.get_pymongo_collection().find_one_and_update(
            {"automation_id": automation_id},
            {"$set": {"is_active": is_active, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return Automation.model_validate(_strip_raw(raw)) if raw else None

    async def increment_counters(self, automation_id: str, deltas: Dict[str, int],
                                 last_executed_at: Optional[datetime] = None):
        update: Dict[str, Any] = {}
        if deltas:
            update["$inc"] = deltas
        if last_executed_at is not None:
            update["$set"] = {"last_executed_at": last_executed_at}
        if update:
            await AutomationDocument.get_pymongo_collection().update_one({"automation_id": automation_id}, update)


class MongoEnrollmentStore(EnrollmentStore):
    async def create_if_absent(self, enrollment: Enrollment) -> Optional[Enrollment]:
        try:
            await EnrollmentDocument(**enrollment.model_dump()).insert()
        except DuplicateKeyError:
            logger.info(
                f"[ENROLLMENT_STORE] Active enrollment already exists for automation {enrollment.automation_id} "
                f"{enrollment.entity_type}:{enrollment.entity_id}"
            )
            return None
        return enrollment

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        doc = await EnrollmentDocument.find_one(EnrollmentDocument.enrollment_id == enrollment_id)
        return to_enrollment(doc) if doc else None

    async def find_active(self, automation_id: str, entity_type: str, entity_id: str) -> Optional[Enrollment]:
        doc = await EnrollmentDocument.find_one({
            "automation_id": automation_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "status": ACTIVE,
        })
        return to_enrollment(doc) if doc else None

    async def find_due(self, now: datetime, limit: int) -> List[Enrollment]:
        query = {"status": ACTIVE, "next_due_at": {"$lte": now}, **_claim_free(now)}
        docs = await EnrollmentDocument.find(query).sort("+next_due_at").limit(limit).to_list()
        return [to_enrollment(doc) for doc in docs]

    async def claim(self, enrollment_id: str, token: str, now: datetime, timeout_seconds: float) -> Optional[Enrollment]:
        raw = await EnrollmentDocument.get_pymongo_collection().find_one_and_update(
            {"enrollment_id": enrollment_id, "status": ACTIVE, **_claim_free(now)},
            {"$set": {"claimed_by": token, "claimed_until": now + timedelta(seconds=timeout_seconds)}},
            return_document=ReturnDocument.AFTER,
        )
        return Enrollment.model_validate(_strip_raw(raw)) if raw else None

    async def commit(self, enrollment: Enrollment, token: str) -> bool:
        state = enrollment.model_dump(exclude={"enrollment_id"})
        state.update({"claimed_by": None, "claimed_until": None})
        result = await EnrollmentDocument.get_pymongo_collection().update_one(
            {"enrollment_id": enrollment.enrollment_id, "status": ACTIVE, "claimed_by": token},
            {"$set": state},
        )
        return result.matched_count == 1

    async def release(self, enrollment_id: str, token: str):
        await EnrollmentDocument.get_pymongo_collection().update_one(
            {"enrollment_id": enrollment_id, "claimed_by": token},
            {"$set": {"claimed_by": None, "claimed_until": None}},
        )

    async def list(self, automation_id: Optional[str] = None, entity_type: Optional[str] = None,
                   entity_id: Optional[str] = None, status: Optional[str] = None,
                   limit: int = 50) -> List[Enrollment]:
        query = {
            key: value for key, value in (
                ("automation_id", automation_id),
                ("entity_type", entity_type),
                ("entity_id", entity_id),
                ("status", status),
            ) if value is not None
        }
        docs = await EnrollmentDocument.find(query).sort("-enrolled_at").limit(limit).to_list()
        return [to_enrollment(doc) for doc in docs]

    async def count_by_status(self, automation_id: str) -> Dict[str, int]:
        rows = await EnrollmentDocument.find(EnrollmentDocument.automation_id == automation_id).aggregate(
            [{"$group": {"_id": "$status", "count": {"$sum": 1}}}]
        ).to_list()
        return {row["_id"]: row["count"] for row in rows}


class MongoExecutionLogStore(ExecutionLogStore):
    async def append(self, entry: ExecutionLogEntry):
        await ExecutionLogDocument(**entry.model_dump()).insert()

    async def list(self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None,
                   entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                   limit: int = 100) -> List[ExecutionLogEntry]:
        query = {
            key: value for key, value in (
                ("automation_id", automation_id),
                ("enrollment_id", enrollment_id),
                ("entity_type", entity_type),
                ("entity_id", entity_id),
            ) if value is not None
        }
        docs = await ExecutionLogDocument.find(query).sort("-created_at").limit(limit).to_list()
        return [to_log_entry(doc) for doc in docs]

    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await ExecutionLogDocument.get_pymongo_collection().delete_many({"created_at": {"$lt": cutoff}})
        return result.deleted_count
