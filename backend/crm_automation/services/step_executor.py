import logging
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional

from crm_automation.models.automation import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    DEFAULT_BRANCH,
    Automation,
    Step,
)
from crm_automation.models.enrollment import INVALID_STEP, Enrollment
from crm_automation.models.execution_log import ExecutionLogEntry
from crm_automation.services.actions import ActionRunner
from crm_automation.services.conditions import evaluate
from crm_automation.stores.base import ExecutionLogStore
from crm_automation.timeutils import delay_delta

logger = logging.getLogger(__name__)


class StepResult(NamedTuple):
    step_index: int
    next_step_index: Optional[int]
    branch: Optional[str] = None
    failures: int = 0


def entry_due_at(step: Step, now: datetime) -> datetime:
    """When an enrollment that just moved onto `step` becomes due."""
    if step.type == "delay" and step.delay_config is not None:
        return now + delay_delta(step.delay_config.value, step.delay_config.unit)
    return now


class StepExecutor:
    """Advances one enrollment by exactly one step and records what happened."""

    def __init__(self, runner: ActionRunner, logs: ExecutionLogStore):
        self.runner = runner
        self.logs = logs

    async def _log(self, enrollment: Enrollment, step: Optional[Step], outcome: str, now: datetime,
                   detail: Optional[str] = None, action_type: Optional[str] = None,
                   data: Optional[Dict[str, Any]] = None):
        await self.logs.append(ExecutionLogEntry(
            automation_id=enrollment.automation_id,
            enrollment_id=enrollment.enrollment_id,
            entity_type=enrollment.entity_type,
            entity_id=enrollment.entity_id,
            step_index=step.step_index if step else enrollment.current_step_index,
            step_type=step.type if step else None,
            action_type=action_type,
            outcome=outcome,
            detail=detail,
            data=data or {},
            created_at=now,
        ))

    async def run(self, automation: Automation, enrollment: Enrollment, snapshot: Dict[str, Any],
                  now: datetime) -> Optional[StepResult]:
        """
        Execute the current step and move `enrollment` along the chosen edge.
        The enrollment is mutated in place; the caller commits it.
        Returns None when the current step no longer exists.
        """
        step = automation.get_step(enrollment.current_step_index)
        if step is None:
            logger.warning(
                f"[STEP] Enrollment {enrollment.enrollment_id} points at missing step "
                f"{enrollment.current_step_index}, exiting"
            )
            await self._log(enrollment, None, "failure", now,
                            detail=f"Step {enrollment.current_step_index} does not exist")
            enrollment.exit(INVALID_STEP, now)
            return None

        dispatch = {
            "action": self._execute_action_step,
            "delay": self._execute_delay_step,
            "condition": self._execute_condition_step,
            "branch": self._execute_branch_step,
        }
        logger.info(
            f"[STEP] Executing step {step.step_index} ({step.type}) for enrollment {enrollment.enrollment_id}"
        )
        result = await dispatch[step.type](automation, enrollment, step, snapshot, now)
        await self._transition(automation, enrollment, result, now)
        return result

    async def _execute_action_step(self, automation, enrollment, step, snapshot, now) -> StepResult:
        if not step.actions:
            await self._log(enrollment, step, "skipped", now, detail="No actions configured")
        outcomes = await self.runner.run_all(enrollment.entity_type, enrollment.entity_id, step.actions)
        for action, outcome in zip(step.actions, outcomes):
            await self._log(enrollment, step, outcome.outcome, now, detail=outcome.detail,
                            action_type=action.type, data=outcome.data)
        failures = sum(1 for outcome in outcomes if outcome.outcome == "failure")
        return StepResult(step.step_index, step.next_step_index, failures=failures)

    async def _execute_delay_step(self, automation, enrollment, step, snapshot, now) -> StepResult:
        # The wait itself was applied on entry; being dispatched means it elapsed
        await self._log(enrollment, step, "success", now, detail="Delay elapsed",
                        data=step.delay_config.model_dump() if step.delay_config else {})
        return StepResult(step.step_index, step.next_step_index)

    async def _execute_condition_step(self, automation, enrollment, step, snapshot, now) -> StepResult:
        matched = evaluate(step.conditions, snapshot)
        branch = CONDITION_TRUE if matched else CONDITION_FALSE
        await self._log(enrollment, step, "success", now, detail=f"Conditions evaluated {branch}",
                        data={"branch": branch})
        return StepResult(step.step_index, step.branch_step_indices.get(branch), branch=branch)

    async def _execute_branch_step(self, automation, enrollment, step, snapshot, now) -> StepResult:
        branches = step.branch_config.branches if step.branch_config else []
        chosen = None
        for branch in branches:
            if evaluate(branch.conditions, snapshot):
                chosen = branch.name
                break
        if chosen is None and DEFAULT_BRANCH in step.branch_step_indices:
            chosen = DEFAULT_BRANCH

        if chosen is None:
            await self._log(enrollment, step, "success", now, detail="No branch matched", data={"branch": None})
            return StepResult(step.step_index, None)

        await self._log(enrollment, step, "success", now, detail=f"Branch '{chosen}' selected",
                        data={"branch": chosen})
        return StepResult(step.step_index, step.branch_step_indices.get(chosen), branch=chosen)

    async def _transition(self, automation: Automation, enrollment: Enrollment, result: StepResult,
                          now: datetime):
        enrollment.steps_executed += 1
        enrollment.error_count += result.failures
        enrollment.updated_at = now

        if result.next_step_index is None:
            enrollment.complete(now)
            logger.info(f"[STEP] Enrollment {enrollment.enrollment_id} completed at step {result.step_index}")
            return

        next_step = automation.get_step(result.next_step_index)
        if next_step is None:
            logger.warning(
                f"[STEP] Step {result.step_index} targets missing step {result.next_step_index}, "
                f"exiting enrollment {enrollment.enrollment_id}"
            )
            await self._log(enrollment, None, "failure", now,
                            detail=f"Transition to missing step {result.next_step_index}")
            enrollment.exit(INVALID_STEP, now)
            return

        enrollment.current_step_index = next_step.step_index
        enrollment.next_due_at = entry_due_at(next_step, now)
        logger.info(
            f"[STEP] Enrollment {enrollment.enrollment_id} moved to step {next_step.step_index} "
            f"({next_step.type}), due at {enrollment.next_due_at}"
        )
