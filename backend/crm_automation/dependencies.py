from functools import lru_cache

from crm_automation.services.engine import AutomationEngine
from crm_automation.services.entities import MongoEntityService
from crm_automation.stores.mongo import MongoAutomationStore, MongoEnrollmentStore, MongoExecutionLogStore


@lru_cache
def get_engine() -> AutomationEngine:
    """Mongo-backed engine; the stores are stateless, so one instance serves every request and task."""
    return AutomationEngine(
        automations=MongoAutomationStore(),
        enrollments=MongoEnrollmentStore(),
        logs=MongoExecutionLogStore(),
        entities=MongoEntityService(),
    )
