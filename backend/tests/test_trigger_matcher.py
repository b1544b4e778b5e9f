"""Tests for trigger matching and enrollment creation."""

from datetime import timedelta

import pytest

from crm_automation.exceptions import InvalidEventError
from crm_automation.models.automation import Automation
from crm_automation.models.events import EntityEvent
from crm_automation.services.trigger_matcher import build_snapshot


def tag_workflow(trigger=None, **overrides):
    data = {
        "name": "Tag new contacts",
        "trigger": trigger or {"type": "contact_created"},
        "steps": [{"step_index": 0, "name": "Tag", "type": "action",
                   "actions": [{"type": "add_tag", "config": {"tag": "lead"}}]}],
    }
    data.update(overrides)
    return Automation.model_validate(data)


def contact_created(entity_id="c1", **after):
    return EntityEvent(event_type="contact_created", entity_type="contact", entity_id=entity_id,
                       after={"email": "ada@example.com", **after})


class TestEnrollment:
    """Matching events create enrollments."""

    @pytest.mark.asyncio
    async def test_matching_event_enrolls_at_step_zero(self, engine, automations, enrollments, now):
        automation = await automations.save(tag_workflow())

        summary = await engine.handle_event(contact_created(), now=now)

        assert summary["matched"] == [automation.automation_id]
        enrollment = await enrollments.find_active(automation.automation_id, "contact", "c1")
        assert enrollment is not None
        assert enrollment.current_step_index == 0
        assert enrollment.status == "active"
        assert enrollment.next_due_at == now
        stored = await automations.get(automation.automation_id)
        assert stored.enrolled_count == 1
        assert stored.active_enrollments == 1

    @pytest.mark.asyncio
    async def test_second_event_does_not_double_enroll(self, engine, automations, enrollments, now):
        automation = await automations.save(tag_workflow(trigger={"type": "contact_updated"}))
        event = EntityEvent(event_type="contact_updated", entity_type="contact", entity_id="c1", after={})

        await engine.handle_event(event, now=now)
        summary = await engine.handle_event(event, now=now + timedelta(minutes=1))

        assert summary["enrolled"] == []
        active = await enrollments.list(automation_id=automation.automation_id, status="active")
        assert len(active) == 1
        assert (await automations.get(automation.automation_id)).enrolled_count == 1

    @pytest.mark.asyncio
    async def test_inactive_automation_ignored(self, engine, automations, now):
        await automations.save(tag_workflow(is_active=False))
        summary = await engine.handle_event(contact_created(), now=now)
        assert summary["matched"] == []

    @pytest.mark.asyncio
    async def test_conditions_filter_events(self, engine, automations, enrollments, now):
        automation = await automations.save(tag_workflow(
            conditions=[{"field": "email", "operator": "contains", "value": "@acme.com"}]
        ))
        await engine.handle_event(contact_created(), now=now)
        assert await enrollments.find_active(automation.automation_id, "contact", "c1") is None

    @pytest.mark.asyncio
    async def test_delay_first_step_due_after_delay(self, engine, automations, enrollments, now):
        automation = await automations.save(tag_workflow(steps=[
            {"step_index": 0, "name": "Wait", "type": "delay",
             "delay_config": {"value": 30, "unit": "minutes"}},
        ]))
        await engine.handle_event(contact_created(), now=now)
        enrollment = await enrollments.find_active(automation.automation_id, "contact", "c1")
        assert enrollment.next_due_at == now + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_entity_type_must_match_event(self, engine):
        event = EntityEvent(event_type="deal_created", entity_type="contact", entity_id="c1", after={})
        with pytest.raises(InvalidEventError):
            await engine.handle_event(event)

    @pytest.mark.asyncio
    async def test_failing_automation_does_not_block_others(self, engine, automations, enrollments, now,
                                                            monkeypatch):
        broken = await automations.save(tag_workflow(name="Broken"))
        healthy = await automations.save(tag_workflow(name="Healthy"))
        original_enroll = engine.matcher.enroll

        async def enroll(automation, *args, **kwargs):
            if automation.automation_id == broken.automation_id:
                raise RuntimeError("boom")
            return await original_enroll(automation, *args, **kwargs)

        monkeypatch.setattr(engine.matcher, "enroll", enroll)
        summary = await engine.handle_event(contact_created(), now=now)

        assert len(summary["enrolled"]) == 1
        assert await enrollments.find_active(healthy.automation_id, "contact", "c1") is not None


class TestStageChange:
    """deal_stage_changed snapshots and stage filters."""

    def test_snapshot_carries_from_and_to_stage(self):
        event = EntityEvent(event_type="deal_stage_changed", entity_type="deal", entity_id="d1",
                            before={"stage": "qualified"}, after={"stage": "won", "value": 10})
        snapshot = build_snapshot(event)
        assert snapshot["fromStage"] == "qualified"
        assert snapshot["toStage"] == "won"
        assert snapshot["value"] == 10
        assert snapshot["previous"] == {"stage": "qualified"}

    @pytest.mark.asyncio
    async def test_stage_filter(self, engine, automations, enrollments, now):
        automation = await automations.save(tag_workflow(
            trigger={"type": "deal_stage_changed", "from_stage": "qualified", "to_stage": "won"}
        ))

        wrong = EntityEvent(event_type="deal_stage_changed", entity_type="deal", entity_id="d1",
                            before={"stage": "new"}, after={"stage": "won"})
        await engine.handle_event(wrong, now=now)
        assert await enrollments.find_active(automation.automation_id, "deal", "d1") is None

        right = EntityEvent(event_type="deal_stage_changed", entity_type="deal", entity_id="d1",
                            before={"stage": "qualified"}, after={"stage": "won"})
        await engine.handle_event(right, now=now)
        assert await enrollments.find_active(automation.automation_id, "deal", "d1") is not None

    @pytest.mark.asyncio
    async def test_conditions_see_stage_fields(self, engine, automations, enrollments, now):
        automation = await automations.save(tag_workflow(
            trigger={"type": "deal_stage_changed"},
            conditions=[{"field": "toStage", "operator": "equals", "value": "lost"}],
        ))
        event = EntityEvent(event_type="deal_stage_changed", entity_type="deal", entity_id="d1",
                            before={"stage": "qualified"}, after={"stage": "lost"})
        await engine.handle_event(event, now=now)
        assert await enrollments.find_active(automation.automation_id, "deal", "d1") is not None


class TestSingleStep:
    """Automations without steps run their actions immediately."""

    @pytest.mark.asyncio
    async def test_actions_run_without_enrollment(self, engine, automations, enrollments, logs, entities, now):
        automation = await automations.save(tag_workflow(
            is_multi_step=False,
            steps=[],
            actions=[
                {"type": "add_tag", "config": {"tag": "new"}},
                {"type": "update_deal_field", "config": {"field": "value", "value": 1}},
            ],
        ))

        summary = await engine.handle_event(contact_created(), now=now)

        assert summary["executed"] == [automation.automation_id]
        assert await enrollments.list(automation_id=automation.automation_id) == []
        snapshot = await entities.get_snapshot("contact", "c1")
        assert "new" in snapshot["tags"]

        entries = await logs.list(automation_id=automation.automation_id)
        assert len(entries) == 2
        assert all(entry.enrollment_id is None for entry in entries)
        assert sorted(entry.outcome for entry in entries) == ["skipped", "success"]

        stored = await automations.get(automation.automation_id)
        assert stored.total_executions == 1
        assert stored.successful_executions == 1
        assert stored.last_executed_at == now
