import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from crm_automation.exceptions import InvalidEventError
from crm_automation.models.automation import TRIGGER_ENTITY_TYPES, Automation, Trigger
from crm_automation.models.enrollment import Enrollment
from crm_automation.models.events import EntityEvent
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.services.actions import ActionRunner
from crm_automation.services.conditions import evaluate
from crm_automation.services.step_executor import entry_due_at
from crm_automation.stores.base import AutomationStore, EnrollmentStore, ExecutionLogStore

logger = logging.getLogger(__name__)


def check_event(event: EntityEvent):
    expected = TRIGGER_ENTITY_TYPES[event.event_type]
    if event.entity_type != expected:
        raise InvalidEventError(
            f"Event {event.event_type} must carry entity_type '{expected}', got '{event.entity_type}'"
        )
    if not event.entity_id:
        raise InvalidEventError("Event entity_id is required")


def build_snapshot(event: EntityEvent) -> Dict[str, Any]:
    """The entity as it is after the event, plus the previous stage for stage changes."""
    snapshot = dict(event.after)
    snapshot.setdefault("id", event.entity_id)
    if event.before is not None:
        snapshot.setdefault("previous", dict(event.before))
    if event.event_type == "deal_stage_changed":
        snapshot["fromStage"] = (event.before or {}).get("stage")
        snapshot["toStage"] = event.after.get("stage")
    return snapshot


def stage_filter_passes(trigger: Trigger, snapshot: Dict[str, Any]) -> bool:
    if trigger.type != "deal_stage_changed":
        return True
    if trigger.from_stage and snapshot.get("fromStage") != trigger.from_stage:
        return False
    if trigger.to_stage and snapshot.get("toStage") != trigger.to_stage:
        return False
    return True


class TriggerMatcher:
    def __init__(self, automations: AutomationStore, enrollments: EnrollmentStore, logs: ExecutionLogStore,
                 runner: ActionRunner):
        self.automations = automations
        self.enrollments = enrollments
        self.logs = logs
        self.runner = runner

    def matches(self, automation: Automation, snapshot: Dict[str, Any]) -> bool:
        if not stage_filter_passes(automation.trigger, snapshot):
            return False
        return evaluate(automation.conditions, snapshot)

    async def handle_event(self, event: EntityEvent, now: datetime) -> Dict[str, List[str]]:
        check_event(event)
        snapshot = build_snapshot(event)
        summary: Dict[str, List[str]] = {"matched": [], "enrolled": [], "executed": []}

        candidates = await self.automations.list(active_only=True, trigger_type=event.event_type)
        logger.info(
            f"[TRIGGER] {event.event_type} for {event.entity_type}:{event.entity_id}, "
            f"{len(candidates)} candidate automation(s)"
        )

        for automation in candidates:
            try:
                if not self.matches(automation, snapshot):
                    continue
                summary["matched"].append(automation.automation_id)

                if automation.is_multi_step:
                    enrollment = await self.enroll(automation, event.entity_type, event.entity_id, now)
                    if enrollment:
                        summary["enrolled"].append(enrollment.enrollment_id)
                else:
                    await self.run_single_step(automation, event.entity_type, event.entity_id, now)
                    summary["executed"].append(automation.automation_id)
            except Exception as e:
                # One broken automation never blocks the others
                logger.error(
                    f"[TRIGGER] Automation {automation.automation_id} failed on {event.event_type} "
                    f"for {event.entity_type}:{event.entity_id}: {e}",
                    exc_info=True,
                )
        return summary

    async def enroll(self, automation: Automation, entity_type: str, entity_id: str,
                     now: datetime) -> Optional[Enrollment]:
        first_step = automation.get_step(0)
        if first_step is None:
            logger.warning(f"[TRIGGER] Automation {automation.automation_id} has no step 0, not enrolling")
            return None

        created = await self.enrollments.create_if_absent(Enrollment(
            automation_id=automation.automation_id,
            entity_type=entity_type,
            entity_id=entity_id,
            enrolled_at=now,
            updated_at=now,
            next_due_at=entry_due_at(first_step, now),
        ))
        if created is None:
            logger.info(
                f"[TRIGGER] {entity_type}:{entity_id} already active in automation {automation.automation_id}"
            )
            return None

        await self.automations.increment_counters(
            automation.automation_id, {"enrolled_count": 1, "active_enrollments": 1}
        )
        logger.info(
            f"[TRIGGER] Enrolled {entity_type}:{entity_id} in automation {automation.automation_id} "
            f"as {created.enrollment_id}, due at {created.next_due_at}"
        )
        return created

    async def run_single_step(self, automation: Automation, entity_type: str, entity_id: str,
                              now: datetime) -> bool:
        outcomes = await self.runner.run_all(entity_type, entity_id, automation.actions)
        for action, outcome in zip(automation.actions, outcomes):
            await self.logs.append(ExecutionLogEntry(
                automation_id=automation.automation_id,
                enrollment_id=None,
                entity_type=entity_type,
                entity_id=entity_id,
                action_type=action.type,
                outcome=outcome.outcome,
                detail=outcome.detail,
                data=outcome.data,
                created_at=now,
            ))

        succeeded = all(outcome.outcome != "failure" for outcome in outcomes)
        await self.automations.increment_counters(
            automation.automation_id,
            {"total_executions": 1, "successful_executions": 1 if succeeded else 0},
            last_executed_at=now,
        )
        logger.info(
            f"[TRIGGER] Ran single-step automation {automation.automation_id} on {entity_type}:{entity_id}, "
            f"success={succeeded}"
        )
        return succeeded
