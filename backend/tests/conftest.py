"""Pytest configuration and fixtures."""

from datetime import datetime, timezone

import pytest

from crm_automation.services.engine import AutomationEngine
from crm_automation.services.entities import InMemoryEntityService
from crm_automation.stores.memory import (
    InMemoryAutomationStore,
    InMemoryEnrollmentStore,
    InMemoryExecutionLogStore,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return T0


@pytest.fixture
def entities():
    """Entity service seeded with one contact and one deal."""
    service = InMemoryEntityService()
    service.upsert("contact", "c1", {
        "first_name": "Ada",
        "email": "ada@example.com",
        "status": "open",
        "tags": [],
        "custom_fields": {"score": 42},
    })
    service.upsert("deal", "d1", {
        "title": "Big deal",
        "value": 1500,
        "stage": "qualified",
        "contact_id": "c1",
        "tags": [],
    })
    return service


@pytest.fixture
def automations():
    return InMemoryAutomationStore()


@pytest.fixture
def enrollments():
    return InMemoryEnrollmentStore()


@pytest.fixture
def logs():
    return InMemoryExecutionLogStore()


@pytest.fixture
def engine(automations, enrollments, logs, entities):
    """Engine wired to the in-memory stores."""
    return AutomationEngine(
        automations=automations,
        enrollments=enrollments,
        logs=logs,
        entities=entities,
        claim_timeout_seconds=300,
        action_timeout_seconds=1,
    )
