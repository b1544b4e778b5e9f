"""Tests for save-time automation validation."""

import pytest

from crm_automation.exceptions import AutomationValidationError
from crm_automation.models.automation import Automation
from crm_automation.services.validation import collect_errors, validate_automation


def automation(steps, **overrides):
    data = {
        "name": "Nurture",
        "trigger": {"type": "contact_created"},
        "steps": steps,
    }
    data.update(overrides)
    return Automation.model_validate(data)


def tag_step(index, next_index=None):
    return {
        "step_index": index,
        "name": f"Tag {index}",
        "type": "action",
        "actions": [{"type": "add_tag", "config": {"tag": "lead"}}],
        "next_step_index": next_index,
    }


class TestValidAutomations:
    """Definitions that must be accepted."""

    def test_linear_workflow(self):
        validate_automation(automation([
            tag_step(0, 1),
            {"step_index": 1, "name": "Wait", "type": "delay",
             "delay_config": {"value": 1, "unit": "days"}, "next_step_index": 2},
            tag_step(2),
        ]))

    def test_cycle_is_allowed(self):
        validate_automation(automation(
            [
                {"step_index": 0, "name": "Wait", "type": "delay",
                 "delay_config": {"value": 1, "unit": "days"}, "next_step_index": 1},
                {"step_index": 1, "name": "Check", "type": "condition",
                 "conditions": [{"field": "status", "operator": "equals", "value": "won"}],
                 "branch_step_indices": {"true": None, "false": 0}},
            ],
            max_duration_days=30,
        ))

    def test_branch_with_default(self):
        validate_automation(automation([
            {"step_index": 0, "name": "Route", "type": "branch",
             "branch_config": {"branches": [
                 {"name": "vip", "conditions": [{"field": "tags", "operator": "contains", "value": "vip"}]},
             ]},
             "branch_step_indices": {"vip": 1, "default": 2}},
            tag_step(1),
            tag_step(2),
        ]))

    def test_single_step_automation(self):
        validate_automation(automation(
            [],
            is_multi_step=False,
            actions=[{"type": "update_contact_field", "config": {"field": "status", "value": "lead"}}],
        ))


class TestInvalidAutomations:
    """Definitions that must be rejected with a useful message."""

    def test_non_dense_indices(self):
        errors = collect_errors(automation([tag_step(0, 2), tag_step(2)]))
        assert any("dense" in error for error in errors)

    def test_duplicate_indices(self):
        errors = collect_errors(automation([tag_step(0, 1), tag_step(1), tag_step(1)]))
        assert any("Duplicate step index 1" in error for error in errors)

    def test_dangling_target(self):
        errors = collect_errors(automation([tag_step(0, 5)]))
        assert "Step 0 targets missing step 5" in errors

    def test_unreachable_step(self):
        errors = collect_errors(automation([tag_step(0), tag_step(1)]))
        assert any("Step 1" in error and "unreachable" in error for error in errors)

    def test_unknown_operator(self):
        errors = collect_errors(automation(
            [tag_step(0)],
            conditions=[{"field": "status", "operator": "sounds_like", "value": "open"}],
        ))
        assert "Trigger conditions: unknown operator 'sounds_like'" in errors

    def test_unknown_action_and_missing_config(self):
        errors = collect_errors(automation([{
            "step_index": 0, "name": "Bad", "type": "action",
            "actions": [{"type": "launch_rocket", "config": {}}, {"type": "send_email", "config": {"subject": "Hi"}}],
        }]))
        assert any("unknown action type 'launch_rocket'" in error for error in errors)
        assert any("send_email" in error and "'body'" in error for error in errors)

    def test_stage_change_accepts_stage_id(self):
        errors = collect_errors(automation(
            [{"step_index": 0, "name": "Move", "type": "action",
              "actions": [{"type": "move_deal_to_stage", "config": {"stageId": "won"}}]}],
            trigger={"type": "deal_created"},
        ))
        assert errors == []

    def test_delay_requires_config(self):
        errors = collect_errors(automation([{"step_index": 0, "name": "Wait", "type": "delay"}]))
        assert "Step 0 (delay): delay step requires delay_config" in errors

    def test_delay_must_be_positive(self):
        errors = collect_errors(automation([{"step_index": 0, "name": "Wait", "type": "delay",
                                             "delay_config": {"value": 0, "unit": "hours"}}]))
        assert any("greater than zero" in error for error in errors)

    def test_condition_branch_keys(self):
        errors = collect_errors(automation([
            {"step_index": 0, "name": "Check", "type": "condition",
             "conditions": [{"field": "status", "operator": "equals", "value": "open"}],
             "branch_step_indices": {"yes": 1}},
            tag_step(1),
        ]))
        assert any("'yes' must be 'true' or 'false'" in error for error in errors)

    def test_branch_keys_must_name_branches(self):
        errors = collect_errors(automation([
            {"step_index": 0, "name": "Route", "type": "branch",
             "branch_config": {"branches": [{"name": "vip", "conditions": []}]},
             "branch_step_indices": {"gold": None}},
        ]))
        assert any("'gold' does not name a branch" in error for error in errors)

    def test_stage_filter_only_on_stage_trigger(self):
        errors = collect_errors(automation([tag_step(0)], trigger={"type": "deal_created", "to_stage": "won"}))
        assert any("Stage filters" in error for error in errors)

    def test_single_step_needs_actions(self):
        errors = collect_errors(automation([], is_multi_step=False))
        assert "Single-step automation must have at least one action" in errors

    def test_all_problems_reported(self):
        with pytest.raises(AutomationValidationError) as exc_info:
            validate_automation(automation([tag_step(0, 7), tag_step(3)], name=" ", max_duration_days=0))
        errors = exc_info.value.errors
        assert "Automation name is required" in errors
        assert "max_duration_days must be greater than zero" in errors
        assert "Step 0 targets missing step 7" in errors
        assert len(errors) >= 4
