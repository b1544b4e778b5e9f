from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from crm_automation.models.automation import Automation
from crm_automation.models.enrollment import Enrollment
from crm_automation.models.execution_log import ExecutionLogEntry


class AutomationStore(ABC):
    """
    Persistence boundary for automation definitions. Saving a definition never
    touches the engine-owned counters; those only move through increment_counters.
    """

    @abstractmethod
    async def save(self, automation: Automation) -> Automation:
        """Insert or replace the definition and return the stored automation."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, automation_id: str) -> Optional[Automation]:
        raise NotImplementedError

    @abstractmethod
    async def list(self, active_only: bool = False, trigger_type: Optional[str] = None) -> List[Automation]:
        raise NotImplementedError

    @abstractmethod
    async def delete(self, automation_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def set_active(self, automation_id: str, is_active: bool, now: datetime) -> Optional[Automation]:
        raise NotImplementedError

    @abstractmethod
    async def increment_counters(self, automation_id: str, deltas: Dict[str, int],
                                 last_executed_at: Optional[datetime] = None):
        """Atomically add each delta to its counter."""
        raise NotImplementedError


class EnrollmentStore(ABC):
    """
    Enrollment rows. Every mutation of an existing row goes through a claim:
    claim() is a compare-and-set on the claim marker, and commit() only lands
    while the caller still holds the claim token.
    """

    @abstractmethod
    async def create_if_absent(self, enrollment: Enrollment) -> Optional[Enrollment]:
        """Insert a new active enrollment, or return None when one is already active for the entity."""
        raise NotImplementedError

    @abstractmethod
    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        raise NotImplementedError

    @abstractmethod
    async def find_active(self, automation_id: str, entity_type: str, entity_id: str) -> Optional[Enrollment]:
        raise NotImplementedError

    @abstractmethod
    async def find_due(self, now: datetime, limit: int) -> List[Enrollment]:
        """Active, unclaimed (or claim expired) enrollments with next_due_at <= now, oldest first."""
        raise NotImplementedError

    @abstractmethod
    async def claim(self, enrollment_id: str, token: str, now: datetime, timeout_seconds: float) -> Optional[Enrollment]:
        """Take the claim if the row is active and unclaimed or its claim expired; None otherwise."""
        raise NotImplementedError

    @abstractmethod
    async def commit(self, enrollment: Enrollment, token: str) -> bool:
        """Write the new state and drop the claim, only if `token` still holds it."""
        raise NotImplementedError

    @abstractmethod
    async def release(self, enrollment_id: str, token: str):
        raise NotImplementedError

    @abstractmethod
    async def list(self, automation_id: Optional[str] = None, entity_type: Optional[str] = None,
                   entity_id: Optional[str] = None, status: Optional[str] = None,
                   limit: int = 50) -> List[Enrollment]:
        """Newest enrollments first."""
        raise NotImplementedError

    @abstractmethod
    async def count_by_status(self, automation_id: str) -> Dict[str, int]:
        raise NotImplementedError


class ExecutionLogStore(ABC):
    """Append-only execution log."""

    @abstractmethod
    async def append(self, entry: ExecutionLogEntry):
        raise NotImplementedError

    @abstractmethod
    async def list(self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None,
                   entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                   limit: int = 100) -> List[ExecutionLogEntry]:
        """Newest entries first."""
        raise NotImplementedError

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        raise NotImplementedError
