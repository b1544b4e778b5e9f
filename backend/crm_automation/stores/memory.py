import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from crm_automation.models.automation import COUNTER_FIELDS, Automation
from crm_automation.models.enrollment import ACTIVE, Enrollment
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.stores.base import AutomationStore, EnrollmentStore, ExecutionLogStore
from crm_automation.timeutils import as_utc


class InMemoryAutomationStore(AutomationStore):
    """
    Dict-backed store for tests and local runs. Records are copied on the way in
    and out so callers never share state with the store.
    """

    def __init__(self):
        self._storage: Dict[str, Automation] = {}
        self._lock = threading.Lock()

    async def save(self, automation: Automation) -> Automation:
        with self._lock:
            existing = self._storage.get(automation.automation_id)
            stored = automation.model_copy(deep=True)
            if existing is not None:
                stored = stored.model_copy(update={field: getattr(existing, field) for field in COUNTER_FIELDS})
            self._storage[automation.automation_id] = stored
            return stored.model_copy(deep=True)

    async def get(self, automation_id: str) -> Optional[Automation]:
        with self._lock:
            automation = self._storage.get(automation_id)
            return automation.model_copy(deep=True) if automation else None

    async def list(self, active_only: bool = False, trigger_type: Optional[str] = None) -> List[Automation]:
        with self._lock:
            automations = [
                a.model_copy(deep=True) for a in self._storage.values()
                if (not active_only or a.is_active) and (trigger_type is None or a.trigger.type == trigger_type)
            ]
        return sorted(automations, key=lambda a: a.created_at)

    async def delete(self, automation_id: str) -> bool:
        with self._lock:
            return self._storage.pop(automation_id, None) is not None

    async def set_active(self, automation_id: str, is_active: bool, now: datetime) -> Optional[Automation]:
        with self._lock:
            automation = self._storage.get(automation_id)
            if automation is None:
                return None
            automation.is_active = is_active
            automation.updated_at = now
            return automation.model_copy(deep=True)

    async def increment_counters(self, automation_id: str, deltas: Dict[str, int],
                                 last_executed_at: Optional[datetime] = None):
        with self._lock:
            automation = self._storage.get(automation_id)
            if automation is None:
                return
            for field, delta in deltas.items():
                setattr(automation, field, getattr(automation, field) + delta)
            if last_executed_at is not None:
                automation.last_executed_at = last_executed_at


class InMemoryEnrollmentStore(EnrollmentStore):
    def __init__(self):
        self._storage: Dict[str, Enrollment] = {}
        self._lock = threading.Lock()

    def _active_for(self, automation_id: str, entity_type: str, entity_id: str) -> Optional[Enrollment]:
        for enrollment in self._storage.values():
            if (enrollment.status == ACTIVE and enrollment.automation_id == automation_id
                    and enrollment.entity_type == entity_type and enrollment.entity_id == entity_id):
                return enrollment
        return None

    @staticmethod
    def _claim_free(enrollment: Enrollment, now: datetime) -> bool:
        return enrollment.claimed_until is None or as_utc(enrollment.claimed_until) <= now

    async def create_if_absent(self, enrollment: Enrollment) -> Optional[Enrollment]:
        with self._lock:
            if self._active_for(enrollment.automation_id, enrollment.entity_type, enrollment.entity_id):
                return None
            self._storage[enrollment.enrollment_id] = enrollment.model_copy(deep=True)
            return enrollment.model_copy(deep=True)

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._lock:
            enrollment = self._storage.get(enrollment_id)
            return enrollment.model_copy(deep=True) if enrollment else None

    async def find_active(self, automation_id: str, entity_type: str, entity_id: str) -> Optional[Enrollment]:
        with self._lock:
            enrollment = self._active_for(automation_id, entity_type, entity_id)
            return enrollment.model_copy(deep=True) if enrollment else None

    async def find_due(self, now: datetime, limit: int) -> List[Enrollment]:
        with self._lock:
            due = [
                e.model_copy(deep=True) for e in self._storage.values()
                if e.status == ACTIVE and e.next_due_at is not None
                and as_utc(e.next_due_at) <= now and self._claim_free(e, now)
            ]
        due.sort(key=lambda e: as_utc(e.next_due_at))
        return due[:limit]

    async def claim(self, enrollment_id: str, token: str, now: datetime, timeout_seconds: float) -> Optional[Enrollment]:
        with self._lock:
            enrollment = self._storage.get(enrollment_id)
            if enrollment is None or enrollment.status != ACTIVE or not self._claim_free(enrollment, now):
                return None
            enrollment.claimed_by = token
            enrollment.claimed_until = now + timedelta(seconds=timeout_seconds)
            return enrollment.model_copy(deep=True)

    async def commit(self, enrollment: Enrollment, token: str) -> bool:
        with self._lock:
            stored = self._storage.get(enrollment.enrollment_id)
            if stored is None or stored.status != ACTIVE or stored.claimed_by != token:
                return False
            self._storage[enrollment.enrollment_id] = enrollment.model_copy(
                deep=True, update={"claimed_by": None, "claimed_until": None}
            )
            return True

    async def release(self, enrollment_id: str, token: str):
        with self._lock:
            stored = self._storage.get(enrollment_id)
            if stored is not None and stored.claimed_by == token:
                stored.claimed_by = None
                stored.claimed_until = None

    async def list(self, automation_id: Optional[str] = None, entity_type: Optional[str] = None,
                   entity_id: Optional[str] = None, status: Optional[str] = None,
                   limit: int = 50) -> List[Enrollment]:
        with self._lock:
            matches = [
                e.model_copy(deep=True) for e in self._storage.values()
                if (automation_id is None or e.automation_id == automation_id)
                and (entity_type is None or e.entity_type == entity_type)
                and (entity_id is None or e.entity_id == entity_id)
                and (status is None or e.status == status)
            ]
        matches.sort(key=lambda e: as_utc(e.enrolled_at), reverse=True)
        return matches[:limit]

    async def count_by_status(self, automation_id: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for enrollment in self._storage.values():
                if enrollment.automation_id == automation_id:
                    counts[enrollment.status] = counts.get(enrollment.status, 0) + 1
        return counts


class InMemoryExecutionLogStore(ExecutionLogStore):
    def __init__(self):
        self._entries: List[ExecutionLogEntry] = []
        self._lock = threading.Lock()

    async def append(self, entry: ExecutionLogEntry):
        with self._lock:
            self._entries.append(entry.model_copy(deep=True))

    async def list(self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None,
                   entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                   limit: int = 100) -> List[ExecutionLogEntry]:
        with self._lock:
            # Reverse insertion order keeps entries written in the same instant newest-first
            matches = [
                e.model_copy(deep=True) for e in reversed(self._entries)
                if (automation_id is None or e.automation_id == automation_id)
                and (enrollment_id is None or e.enrollment_id == enrollment_id)
                and (entity_type is None or e.entity_type == entity_type)
                and (entity_id is None or e.entity_id == entity_id)
            ]
        matches.sort(key=lambda e: as_utc(e.created_at), reverse=True)
        return matches[:limit]

    async def delete_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if as_utc(e.created_at) >= cutoff]
            return before - len(self._entries)
