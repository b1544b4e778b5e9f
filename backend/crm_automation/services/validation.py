import logging
from collections import deque
from typing import List, Set

from crm_automation.exceptions import AutomationValidationError
from crm_automation.models.automation import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    DEFAULT_BRANCH,
    Action,
    Automation,
    Condition,
    Step,
)
from crm_automation.services.actions import ACTION_SPECS
from crm_automation.services.conditions import unknown_operators

logger = logging.getLogger(__name__)


def validate_automation(automation: Automation):
    """Reject a definition that could put an enrollment on a step that does not exist."""
    errors = collect_errors(automation)
    if errors:
        logger.warning(f"[AUTOMATION_VALIDATION] Automation '{automation.name}' rejected: {errors}")
        raise AutomationValidationError(errors)
    logger.info(f"[AUTOMATION_VALIDATION] Automation '{automation.name}' validated successfully")


def collect_errors(automation: Automation) -> List[str]:
    errors: List[str] = []

    if not automation.name or not automation.name.strip():
        errors.append("Automation name is required")

    trigger = automation.trigger
    if (trigger.from_stage or trigger.to_stage) and trigger.type != "deal_stage_changed":
        errors.append(f"Stage filters are only allowed on deal_stage_changed triggers, not {trigger.type}")

    if automation.max_duration_days is not None and automation.max_duration_days <= 0:
        errors.append("max_duration_days must be greater than zero")

    max_errors = automation.safety_config.max_errors
    if max_errors is not None and max_errors < 1:
        errors.append("safety_config.max_errors must be at least 1")

    errors.extend(_condition_errors(automation.conditions, "Trigger conditions"))
    errors.extend(_condition_errors(automation.exit_criteria, "Exit criteria"))

    if automation.is_multi_step:
        errors.extend(_step_errors(automation))
    else:
        if not automation.actions:
            errors.append("Single-step automation must have at least one action")
        errors.extend(_action_errors(automation.actions, "Automation actions"))

    return errors


def _condition_errors(conditions: List[Condition], where: str) -> List[str]:
    errors = []
    for operator in unknown_operators(conditions):
        errors.append(f"{where}: unknown operator '{operator}'")
    for condition in conditions:
        if not condition.field and condition.operator not in ("has_tag", "not_has_tag"):
            errors.append(f"{where}: condition with operator '{condition.operator}' has no field")
    return errors


def _action_errors(actions: List[Action], where: str) -> List[str]:
    errors = []
    for position, action in enumerate(actions):
        spec = ACTION_SPECS.get(action.type)
        if spec is None:
            errors.append(f"{where}: unknown action type '{action.type}'")
            continue
        for alternatives in spec.required:
            if not any(action.config.get(key) not in (None, "") for key in alternatives):
                errors.append(f"{where}: action {position} ({action.type}) requires '{' or '.join(alternatives)}'")
    return errors


def _step_errors(automation: Automation) -> List[str]:
    steps = automation.steps
    if not steps:
        return ["Multi-step automation must have at least one step"]

    errors: List[str] = []
    indices = [step.step_index for step in steps]
    seen: Set[int] = set()
    for index in indices:
        if index in seen:
            errors.append(f"Duplicate step index {index}")
        seen.add(index)
    if sorted(seen) != list(range(len(seen))):
        errors.append(f"Step indices must be dense and start at 0, got {sorted(seen)}")

    step_map = automation.step_map()
    for step in steps:
        errors.extend(_single_step_errors(step))
        for target in step.successors():
            if target is not None and target not in step_map:
                errors.append(f"Step {step.step_index} targets missing step {target}")

    if 0 in step_map:
        reachable = _reachable_from_start(step_map)
        for index in sorted(step_map):
            if index not in reachable:
                errors.append(f"Step {index} ({step_map[index].name}) is unreachable from step 0")

    return errors


def _single_step_errors(step: Step) -> List[str]:
    where = f"Step {step.step_index} ({step.type})"
    errors: List[str] = []

    if step.type == "action":
        if not step.actions:
            errors.append(f"{where}: action step must have at least one action")
        errors.extend(_action_errors(step.actions, where))

    elif step.type == "delay":
        if step.delay_config is None:
            errors.append(f"{where}: delay step requires delay_config")
        elif step.delay_config.value <= 0:
            errors.append(f"{where}: delay value must be greater than zero")

    elif step.type == "condition":
        if not step.conditions:
            errors.append(f"{where}: condition step must have at least one condition")
        errors.extend(_condition_errors(step.conditions, where))
        for key in step.branch_step_indices:
            if key not in (CONDITION_TRUE, CONDITION_FALSE):
                errors.append(f"{where}: branch key '{key}' must be 'true' or 'false'")

    elif step.type == "branch":
        branches = step.branch_config.branches if step.branch_config else []
        if not branches:
            errors.append(f"{where}: branch step requires at least one branch")
        names = set()
        for branch in branches:
            if not branch.name:
                errors.append(f"{where}: branch without a name")
            elif branch.name == DEFAULT_BRANCH:
                errors.append(f"{where}: '{DEFAULT_BRANCH}' is reserved for the else target")
            elif branch.name in names:
                errors.append(f"{where}: duplicate branch name '{branch.name}'")
            names.add(branch.name)
            errors.extend(_condition_errors(branch.conditions, f"{where} branch '{branch.name}'"))
        for key in step.branch_step_indices:
            if key != DEFAULT_BRANCH and key not in names:
                errors.append(f"{where}: branch target '{key}' does not name a branch")

    return errors


def _reachable_from_start(step_map) -> Set[int]:
    reachable: Set[int] = set()
    queue = deque([0])
    while queue:
        index = queue.popleft()
        if index in reachable or index not in step_map:
            continue
        reachable.add(index)
        for target in step_map[index].successors():
            if target is not None:
                queue.append(target)
    return reachable
