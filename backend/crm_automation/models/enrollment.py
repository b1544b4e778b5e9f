import uuid
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field

EnrollmentStatus = Literal["active", "completed", "exited"]

ACTIVE = "active"
COMPLETED = "completed"
EXITED = "exited"

# Exit reasons
CRITERIA_MET = "criteria_met"
MAX_DURATION_EXCEEDED = "max_duration_exceeded"
AUTOMATION_DEACTIVATED = "automation_deactivated"
AUTOMATION_DELETED = "automation_deleted"
ENTITY_DELETED = "entity_deleted"
UNSUBSCRIBED = "unsubscribed"
BOUNCED = "bounced"
MAX_ERRORS_EXCEEDED = "max_errors_exceeded"
INVALID_STEP = "invalid_step"
UNENROLLED = "unenrolled"


class Enrollment(BaseModel):
    enrollment_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    automation_id: str
    entity_type: Literal["contact", "deal"]
    entity_id: str
    current_step_index: int = 0
    status: EnrollmentStatus = ACTIVE
    exit_reason: Optional[str] = None

    enrolled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    next_due_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None

    # Claim marker, set by compare-and-set before any worker touches the row
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None

    error_count: int = 0
    steps_executed: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    def complete(self, now: datetime):
        self.status = COMPLETED
        self.completed_at = now
        self.next_due_at = None
        self.updated_at = now

    def exit(self, reason: str, now: datetime):
        self.status = EXITED
        self.exit_reason = reason
        self.exited_at = now
        self.next_due_at = None
        self.updated_at = now
