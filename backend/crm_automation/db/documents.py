from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from beanie import Document, Indexed
from pydantic import ConfigDict, Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from crm_automation.models.automation import Automation
from crm_automation.models.enrollment import Enrollment
from crm_automation.models.execution_log import ExecutionLogEntry

# Fields Beanie adds on top of the domain models
DOCUMENT_ONLY_FIELDS = {"id", "revision_id"}


class AutomationDocument(Document, Automation):
    automation_id: Indexed(str, unique=True)

    class Settings:
        name = "automations"
        indexes = [
            IndexModel([("is_active", ASCENDING), ("trigger.type", ASCENDING)], name="active_by_trigger"),
        ]


class EnrollmentDocument(Document, Enrollment):
    enrollment_id: Indexed(str, unique=True)

    class Settings:
        name = "automation_enrollments"
        indexes = [
            # At most one active enrollment per (automation, entity)
            IndexModel(
                [("automation_id", ASCENDING), ("entity_type", ASCENDING), ("entity_id", ASCENDING)],
                name="one_active_enrollment",
                unique=True,
                partialFilterExpression={"status": "active"},
            ),
            IndexModel([("status", ASCENDING), ("next_due_at", ASCENDING)], name="due_enrollments"),
            IndexModel([("entity_type", ASCENDING), ("entity_id", ASCENDING)], name="enrollments_by_entity"),
        ]


class ExecutionLogDocument(Document, ExecutionLogEntry):
    entry_id: Indexed(str, unique=True)

    class Settings:
        name = "automation_execution_logs"
        indexes = [
            IndexModel([("automation_id", ASCENDING), ("created_at", DESCENDING)], name="logs_by_automation"),
            IndexModel([("enrollment_id", ASCENDING), ("created_at", DESCENDING)], name="logs_by_enrollment"),
            IndexModel([("entity_type", ASCENDING), ("entity_id", ASCENDING), ("created_at", DESCENDING)],
                       name="logs_by_entity"),
        ]


class ContactDocument(Document):
    """Contacts are owned by the CRUD layer; unknown fields are kept as-is."""

    contact_id: Indexed(str, unique=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    unsubscribed: bool = False
    email_bounced: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(extra="allow")

    class Settings:
        name = "contacts"


class DealDocument(Document):
    deal_id: Indexed(str, unique=True)
    title: Optional[str] = None
    value: Optional[float] = None
    stage: Optional[str] = None
    contact_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(extra="allow")

    class Settings:
        name = "deals"


class TaskDocument(Document):
    task_id: Indexed(str, unique=True)
    title: str
    description: Optional[str] = None
    entity_type: str
    entity_id: str
    due_at: Optional[datetime] = None
    status: str = "open"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "tasks"


DOCUMENT_MODELS = [
    AutomationDocument,
    EnrollmentDocument,
    ExecutionLogDocument,
    ContactDocument,
    DealDocument,
    TaskDocument,
]


def to_automation(doc: AutomationDocument) -> Automation:
    return Automation.model_validate(doc.model_dump(exclude=DOCUMENT_ONLY_FIELDS))


def to_enrollment(doc: EnrollmentDocument) -> Enrollment:
    return Enrollment.model_validate(doc.model_dump(exclude=DOCUMENT_ONLY_FIELDS))


def to_log_entry(doc: ExecutionLogDocument) -> ExecutionLogEntry:
    return ExecutionLogEntry.model_validate(doc.model_dump(exclude=DOCUMENT_ONLY_FIELDS))
