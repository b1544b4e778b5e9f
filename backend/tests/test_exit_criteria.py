"""Tests for exit criteria and safety guards."""

from datetime import timedelta

import pytest

from crm_automation.models.automation import Automation
from crm_automation.models.enrollment import Enrollment
from crm_automation.services.exit_criteria import ExitCriteriaEvaluator


def make_automation(**overrides):
    data = {
        "name": "Flow",
        "trigger": {"type": "contact_created"},
        "steps": [{"step_index": 0, "name": "Tag", "type": "action",
                   "actions": [{"type": "add_tag", "config": {"tag": "lead"}}]}],
    }
    data.update(overrides)
    return Automation.model_validate(data)


def make_enrollment(now, **overrides):
    data = {"automation_id": "a1", "entity_type": "contact", "entity_id": "c1", "enrolled_at": now,
            "next_due_at": now}
    data.update(overrides)
    return Enrollment(**data)


class TestExitCriteriaEvaluator:
    """Exit reasons and their precedence."""

    def setup_method(self):
        self.evaluator = ExitCriteriaEvaluator()

    def test_no_exit(self, now):
        assert self.evaluator.check(make_automation(), make_enrollment(now), {"email": "a@b.c"}, now) is None

    def test_criteria_met(self, now):
        automation = make_automation(exit_criteria=[{"field": "status", "operator": "equals", "value": "customer"}])
        assert self.evaluator.check(automation, make_enrollment(now), {"status": "customer"}, now) == "criteria_met"

    def test_max_duration(self, now):
        automation = make_automation(max_duration_days=7)
        enrollment = make_enrollment(now - timedelta(days=7, seconds=1))
        assert self.evaluator.check(automation, enrollment, {}, now) == "max_duration_exceeded"
        assert self.evaluator.check(automation, make_enrollment(now - timedelta(days=7)), {}, now) is None

    def test_criteria_win_over_max_duration(self, now):
        automation = make_automation(
            exit_criteria=[{"field": "status", "operator": "equals", "value": "customer"}],
            max_duration_days=1,
        )
        enrollment = make_enrollment(now - timedelta(days=30))
        assert self.evaluator.check(automation, enrollment, {"status": "customer"}, now) == "criteria_met"

    @pytest.mark.parametrize("overrides,snapshot,expected", [
        ({"is_active": False}, {"unsubscribed": True}, "automation_deactivated"),
        ({}, None, "entity_deleted"),
        ({}, {"unsubscribed": True, "email_bounced": True}, "unsubscribed"),
        ({}, {"email_bounced": True}, "bounced"),
        ({"safety_config": {"exit_on_unsubscribe": False}}, {"unsubscribed": True}, None),
        ({"safety_config": {"exit_on_bounce": False}}, {"email_bounced": True}, None),
        ({"safety_exit_enabled": False, "is_active": False}, None, None),
    ])
    def test_safety_guards(self, now, overrides, snapshot, expected):
        automation = make_automation(**overrides)
        assert self.evaluator.check(automation, make_enrollment(now), snapshot, now) == expected

    def test_max_errors(self, now):
        automation = make_automation(safety_config={"max_errors": 3})
        assert self.evaluator.check(automation, make_enrollment(now, error_count=2), {}, now) is None
        assert self.evaluator.check(automation, make_enrollment(now, error_count=3), {}, now) == "max_errors_exceeded"


class TestExitsThroughEngine:
    """Exits are committed once with a single reason."""

    async def enroll(self, engine, automations, now, **overrides):
        automation = await automations.save(make_automation(**overrides))
        enrollment = await engine.matcher.enroll(automation, "contact", "c1", now)
        return automation, enrollment

    @pytest.mark.asyncio
    async def test_exit_precedence_records_one_reason(self, engine, automations, enrollments, logs, now):
        automation, enrollment = await self.enroll(
            engine, automations, now - timedelta(days=10),
            exit_criteria=[{"field": "status", "operator": "equals", "value": "open"}],
            max_duration_days=2,
        )

        assert await engine.process_enrollment(enrollment.enrollment_id, now=now) == "exited"

        exited = await enrollments.get(enrollment.enrollment_id)
        assert exited.status == "exited"
        assert exited.exit_reason == "criteria_met"
        assert exited.exited_at == now
        assert exited.next_due_at is None
        exit_entries = [e for e in await logs.list(enrollment_id=enrollment.enrollment_id) if "exit_reason" in e.data]
        assert len(exit_entries) == 1
        stored = await automations.get(automation.automation_id)
        assert stored.active_enrollments == 0
        assert stored.exited_enrollments == 1

    @pytest.mark.asyncio
    async def test_exited_enrollment_is_terminal(self, engine, automations, enrollments, now):
        _, enrollment = await self.enroll(engine, automations, now, is_active=False)
        await engine.process_enrollment(enrollment.enrollment_id, now=now)
        assert (await enrollments.get(enrollment.enrollment_id)).exit_reason == "automation_deactivated"

        later = now + timedelta(days=1)
        assert await engine.process_enrollment(enrollment.enrollment_id, now=later) == "not_claimed"
        assert (await enrollments.get(enrollment.enrollment_id)).exit_reason == "automation_deactivated"

    @pytest.mark.asyncio
    async def test_deleted_entity(self, engine, automations, enrollments, entities, now):
        _, enrollment = await self.enroll(engine, automations, now)
        entities.remove("contact", "c1")
        await engine.process_enrollment(enrollment.enrollment_id, now=now)
        assert (await enrollments.get(enrollment.enrollment_id)).exit_reason == "entity_deleted"

    @pytest.mark.asyncio
    async def test_deleted_automation(self, engine, automations, enrollments, now):
        automation, enrollment = await self.enroll(engine, automations, now, safety_exit_enabled=False)
        await engine.delete_automation(automation.automation_id)
        assert await engine.process_enrollment(enrollment.enrollment_id, now=now) == "exited"
        assert (await enrollments.get(enrollment.enrollment_id)).exit_reason == "automation_deleted"
