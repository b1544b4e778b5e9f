import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from crm_automation import config
from crm_automation.exceptions import (
    AutomationNotFoundError,
    AutomationValidationError,
    EnrollmentBusyError,
    EnrollmentNotFoundError,
    InvalidEventError,
)
from crm_automation.models.automation import Automation
from crm_automation.models.enrollment import (
    AUTOMATION_DELETED,
    COMPLETED,
    EXITED,
    UNENROLLED,
    Enrollment,
)
from crm_automation.models.events import EntityEvent
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.services.actions import ActionRunner, EntityService
from crm_automation.services.exit_criteria import ExitCriteriaEvaluator
from crm_automation.services.step_executor import StepExecutor
from crm_automation.services.trigger_matcher import TriggerMatcher
from crm_automation.services.validation import validate_automation
from crm_automation.stores.base import AutomationStore, EnrollmentStore, ExecutionLogStore
from crm_automation.timeutils import as_utc, utc_now

logger = logging.getLogger(__name__)

# process_enrollment results
ADVANCED = "advanced"
NOT_DUE = "not_due"
NOT_CLAIMED = "not_claimed"
STALE = "stale"
CONFLICT = "conflict"


class AutomationEngine:
    def __init__(self, automations: AutomationStore, enrollments: EnrollmentStore, logs: ExecutionLogStore,
                 entities: EntityService, claim_timeout_seconds: Optional[float] = None,
                 action_timeout_seconds: Optional[float] = None):
        self.automations = automations
        self.enrollments = enrollments
        self.logs = logs
        self.entities = entities
        self.claim_timeout_seconds = (
            claim_timeout_seconds if claim_timeout_seconds is not None else config.CLAIM_TIMEOUT_SECONDS
        )
        self.runner = ActionRunner(entities, action_timeout_seconds)
        self.matcher = TriggerMatcher(automations, enrollments, logs, self.runner)
        self.executor = StepExecutor(self.runner, logs)
        self.exit_criteria = ExitCriteriaEvaluator()
        self.worker_id = f"{socket.gethostname()}:{os.getpid()}"

    def _log_engine(self, enrollment_id: str, message: str, level: str = "info", **kwargs):
        """Structured logging for enrollment processing"""
        log_data = {"worker_id": self.worker_id, "enrollment_id": enrollment_id, "message": message, **kwargs}
        getattr(logger, level)(f"[ENGINE] {log_data}")

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def get_automation(self, automation_id: str) -> Automation:
        automation = await self.automations.get(automation_id)
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    async def list_automations(self, active_only: bool = False) -> List[Automation]:
        return await self.automations.list(active_only=active_only)

    async def create_automation(self, automation: Automation) -> Automation:
        validate_automation(automation)
        now = utc_now()
        automation = automation.model_copy(update={"created_at": now, "updated_at": now})
        saved = await self.automations.save(automation)
        logger.info(f"[AUTOMATION] Created automation {saved.automation_id} '{saved.name}'")
        return saved

    async def update_automation(self, automation_id: str, automation: Automation) -> Automation:
        await self.get_automation(automation_id)
        automation = automation.model_copy(update={"automation_id": automation_id, "updated_at": utc_now()})
        validate_automation(automation)
        saved = await self.automations.save(automation)
        logger.info(f"[AUTOMATION] Updated automation {automation_id}")
        return saved

    async def toggle_automation(self, automation_id: str, is_active: Optional[bool] = None) -> Automation:
        current = await self.get_automation(automation_id)
        target = (not current.is_active) if is_active is None else is_active
        updated = await self.automations.set_active(automation_id, target, utc_now())
        if updated is None:
            raise AutomationNotFoundError(automation_id)
        logger.info(f"[AUTOMATION] Automation {automation_id} is now {'active' if target else 'inactive'}")
        return updated

    async def delete_automation(self, automation_id: str):
        if not await self.automations.delete(automation_id):
            raise AutomationNotFoundError(automation_id)
        # Running enrollments exit with automation_deleted the next time they are due
        logger.info(f"[AUTOMATION] Deleted automation {automation_id}")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def handle_event(self, event: EntityEvent, now: Optional[datetime] = None) -> Dict[str, List[str]]:
        return await self.matcher.handle_event(event, now or utc_now())

    # ------------------------------------------------------------------
    # Enrollment processing
    # ------------------------------------------------------------------

    def new_claim_token(self) -> str:
        return f"{self.worker_id}:{uuid.uuid4().hex}"

    async def claim_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[Tuple[str, str]]:
        """Claim due enrollments; returns (enrollment_id, claim_token) pairs for dispatch."""
        now = now or utc_now()
        claimed = []
        for enrollment in await self.enrollments.find_due(now, limit or config.DUE_BATCH_SIZE):
            token = self.new_claim_token()
            if await self.enrollments.claim(enrollment.enrollment_id, token, now, self.claim_timeout_seconds):
                claimed.append((enrollment.enrollment_id, token))
        return claimed

    async def process_enrollment(self, enrollment_id: str, claim_token: Optional[str] = None,
                                 now: Optional[datetime] = None, force: bool = False) -> str:
        """
        Run one pass for an enrollment: exit check, then at most one step, then a
        commit that only lands while the claim is still ours.

        With a claim_token the caller already holds the claim (dispatch from the
        poller); without one the claim is taken here. Anyone else holding the row
        turns the call into a no-op.
        """
        now = now or utc_now()

        if claim_token is None:
            token = self.new_claim_token()
            enrollment = await self.enrollments.claim(enrollment_id, token, now, self.claim_timeout_seconds)
            if enrollment is None:
                self._log_engine(enrollment_id, "Not claimable (busy, finished or missing), skipping", level="debug")
                return NOT_CLAIMED
        else:
            token = claim_token
            enrollment = await self.enrollments.get(enrollment_id)
            if enrollment is None or not enrollment.is_active or enrollment.claimed_by != token:
                self._log_engine(enrollment_id, "Stale dispatch, claim no longer held", level="info")
                return STALE

        try:
            return await self._advance(enrollment, token, now, force)
        finally:
            await self.enrollments.release(enrollment_id, token)

    async def _advance(self, enrollment: Enrollment, token: str, now: datetime, force: bool) -> str:
        if not force and (enrollment.next_due_at is None or as_utc(enrollment.next_due_at) > now):
            self._log_engine(enrollment.enrollment_id, "Not due yet", level="debug",
                             next_due_at=str(enrollment.next_due_at))
            return NOT_DUE

        automation = await self.automations.get(enrollment.automation_id)
        if automation is None:
            await self._log_exit(enrollment, AUTOMATION_DELETED, now)
            enrollment.exit(AUTOMATION_DELETED, now)
            return await self._commit(None, enrollment, token, stepped=False, failures=0, now=now)

        snapshot = await self.entities.get_snapshot(enrollment.entity_type, enrollment.entity_id)

        reason = self.exit_criteria.check(automation, enrollment, snapshot, now)
        if reason:
            await self._log_exit(enrollment, reason, now)
            enrollment.exit(reason, now)
            return await self._commit(automation, enrollment, token, stepped=False, failures=0, now=now)

        result = await self.executor.run(automation, enrollment, snapshot or {}, now)
        failures = result.failures if result else 0
        return await self._commit(automation, enrollment, token, stepped=result is not None,
                                  failures=failures, now=now)

    async def _log_exit(self, enrollment: Enrollment, reason: str, now: datetime):
        self._log_engine(enrollment.enrollment_id, f"Exiting: {reason}", step_index=enrollment.current_step_index)
        await self.logs.append(ExecutionLogEntry(
            automation_id=enrollment.automation_id,
            enrollment_id=enrollment.enrollment_id,
            entity_type=enrollment.entity_type,
            entity_id=enrollment.entity_id,
            step_index=enrollment.current_step_index,
            outcome="skipped",
            detail=f"Enrollment exited: {reason}",
            data={"exit_reason": reason},
            created_at=now,
        ))

    async def _commit(self, automation: Optional[Automation], enrollment: Enrollment, token: str,
                      stepped: bool, failures: int, now: datetime) -> str:
        if not await self.enrollments.commit(enrollment, token):
            self._log_engine(enrollment.enrollment_id, "Commit rejected, claim was lost to another worker",
                             level="warning")
            return CONFLICT

        if automation is not None:
            deltas: Dict[str, int] = {}
            if stepped:
                deltas["total_executions"] = 1
                deltas["successful_executions"] = 0 if failures else 1
            if enrollment.status == COMPLETED:
                deltas.update(active_enrollments=-1, completed_enrollments=1)
            elif enrollment.status == EXITED:
                deltas.update(active_enrollments=-1, exited_enrollments=1)
            if deltas:
                await self.automations.increment_counters(
                    automation.automation_id, deltas, last_executed_at=now if stepped else None
                )

        self._log_engine(enrollment.enrollment_id, f"Committed, status={enrollment.status}",
                         step_index=enrollment.current_step_index)
        return enrollment.status if enrollment.status in (COMPLETED, EXITED) else ADVANCED

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    def _check_entity_type(self, automation: Automation, entity_type: str):
        if entity_type != automation.entity_type:
            raise InvalidEventError(
                f"Automation {automation.automation_id} runs on {automation.entity_type}s, not {entity_type}s"
            )

    async def run_test(self, automation_id: str, entity_type: str, entity_id: str,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
        """Force one pass for an entity, enrolling it first when needed, ignoring due times and trigger conditions."""
        now = now or utc_now()
        automation = await self.get_automation(automation_id)
        self._check_entity_type(automation, entity_type)

        if not automation.is_multi_step:
            succeeded = await self.matcher.run_single_step(automation, entity_type, entity_id, now)
            return {"mode": "single_step", "success": succeeded}

        enrollment = await self.enrollments.find_active(automation_id, entity_type, entity_id)
        if enrollment is None:
            enrollment = await self.matcher.enroll(automation, entity_type, entity_id, now)
        if enrollment is None:
            raise EnrollmentBusyError(f"{automation_id}:{entity_type}:{entity_id}")

        status = await self.process_enrollment(enrollment.enrollment_id, now=now, force=True)
        if status == NOT_CLAIMED:
            raise EnrollmentBusyError(enrollment.enrollment_id)
        return {
            "mode": "multi_step",
            "status": status,
            "enrollment": await self.enrollments.get(enrollment.enrollment_id),
        }

    async def enroll(self, automation_id: str, entity_type: str, entity_ids: List[str],
                     now: Optional[datetime] = None) -> Dict[str, List[str]]:
        now = now or utc_now()
        automation = await self.get_automation(automation_id)
        self._check_entity_type(automation, entity_type)
        if not automation.is_multi_step:
            raise AutomationValidationError(["Manual enrollment requires a multi-step automation"])

        summary: Dict[str, List[str]] = {"enrolled": [], "already_enrolled": [], "not_found": []}
        for entity_id in entity_ids:
            if await self.entities.get_snapshot(entity_type, entity_id) is None:
                summary["not_found"].append(entity_id)
                continue
            enrollment = await self.matcher.enroll(automation, entity_type, entity_id, now)
            if enrollment:
                summary["enrolled"].append(entity_id)
            else:
                summary["already_enrolled"].append(entity_id)
        return summary

    async def preview_enrollment(self, automation_id: str, limit: int = 20,
                                 scan_limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Entities of the automation's type that would enroll right now: not already
        active and passing the trigger filter and conditions. Scans at most
        scan_limit entities and returns the total found plus the first `limit`.
        """
        automation = await self.get_automation(automation_id)
        entity_type = automation.entity_type
        snapshots = await self.entities.list_snapshots(entity_type, scan_limit or config.PREVIEW_SCAN_LIMIT)

        candidates = []
        for snapshot in snapshots:
            entity_id = snapshot["id"]
            if await self.enrollments.find_active(automation_id, entity_type, entity_id):
                continue
            if automation.trigger.type == "deal_stage_changed":
                # The deal sits in its current stage; the stage it came from is unknown
                snapshot = {**snapshot, "toStage": snapshot.get("stage")}
            if self.matcher.matches(automation, snapshot):
                candidates.append({"entity_type": entity_type, "entity_id": entity_id, "entity": snapshot})

        logger.info(
            f"[ENROLLMENT] Preview for automation {automation_id}: {len(candidates)} of {len(snapshots)} "
            f"scanned {entity_type}s would enroll"
        )
        return {
            "automation_id": automation_id,
            "entity_type": entity_type,
            "scanned": len(snapshots),
            "potential_count": len(candidates),
            "preview": candidates[:limit],
        }

    async def unenroll(self, automation_id: str, entity_type: str, entity_id: str,
                       now: Optional[datetime] = None) -> Enrollment:
        now = now or utc_now()
        enrollment = await self.enrollments.find_active(automation_id, entity_type, entity_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"{automation_id}:{entity_type}:{entity_id}")

        token = self.new_claim_token()
        claimed = await self.enrollments.claim(enrollment.enrollment_id, token, now, self.claim_timeout_seconds)
        if claimed is None:
            raise EnrollmentBusyError(enrollment.enrollment_id)

        try:
            await self._log_exit(claimed, UNENROLLED, now)
            claimed.exit(UNENROLLED, now)
            automation = await self.automations.get(automation_id)
            if await self._commit(automation, claimed, token, stepped=False, failures=0, now=now) == CONFLICT:
                raise EnrollmentBusyError(enrollment.enrollment_id)
        finally:
            await self.enrollments.release(enrollment.enrollment_id, token)
        return claimed

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = await self.enrollments.get(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    async def list_enrollments(self, automation_id: Optional[str] = None, entity_type: Optional[str] = None,
                               entity_id: Optional[str] = None, status: Optional[str] = None,
                               limit: int = 50) -> List[Enrollment]:
        return await self.enrollments.list(automation_id=automation_id, entity_type=entity_type,
                                           entity_id=entity_id, status=status, limit=limit)

    async def enrollment_summary(self, automation_id: str, limit: int = 50) -> Dict[str, Any]:
        await self.get_automation(automation_id)
        counts = await self.enrollments.count_by_status(automation_id)
        recent = await self.enrollments.list(automation_id=automation_id, limit=limit)
        return {"counts": counts, "enrollments": recent}

    async def list_logs(self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None,
                        entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                        limit: int = 100) -> List[ExecutionLogEntry]:
        return await self.logs.list(automation_id=automation_id, enrollment_id=enrollment_id,
                                    entity_type=entity_type, entity_id=entity_id, limit=limit)

    async def cleanup_logs(self, retention_days: int, now: Optional[datetime] = None) -> int:
        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        deleted = await self.logs.delete_older_than(cutoff)
        logger.info(f"[ENGINE] Deleted {deleted} execution log entries older than {cutoff}")
        return deleted
