from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from crm_automation.models.automation import Automation
from crm_automation.models.enrollment import (
    AUTOMATION_DEACTIVATED,
    BOUNCED,
    CRITERIA_MET,
    ENTITY_DELETED,
    MAX_DURATION_EXCEEDED,
    MAX_ERRORS_EXCEEDED,
    UNSUBSCRIBED,
    Enrollment,
)
from crm_automation.services.conditions import evaluate
from crm_automation.timeutils import as_utc


class ExitCriteriaEvaluator:
    """
    Decides whether a due enrollment must leave its workflow before the next step.
    Checks run in a fixed order and the first hit is the only reason recorded:
    explicit criteria, then maximum duration, then the safety guards.
    """

    def check(self, automation: Automation, enrollment: Enrollment, snapshot: Optional[Dict[str, Any]],
              now: datetime) -> Optional[str]:
        if automation.exit_criteria and snapshot is not None and evaluate(automation.exit_criteria, snapshot):
            return CRITERIA_MET

        if automation.max_duration_days is not None:
            if now - as_utc(enrollment.enrolled_at) > timedelta(days=automation.max_duration_days):
                return MAX_DURATION_EXCEEDED

        if automation.safety_exit_enabled:
            return self._safety_reason(automation, enrollment, snapshot)
        return None

    def _safety_reason(self, automation: Automation, enrollment: Enrollment,
                       snapshot: Optional[Dict[str, Any]]) -> Optional[str]:
        safety = automation.safety_config
        if not automation.is_active:
            return AUTOMATION_DEACTIVATED
        if snapshot is None:
            return ENTITY_DELETED
        if safety.exit_on_unsubscribe and snapshot.get("unsubscribed"):
            return UNSUBSCRIBED
        if safety.exit_on_bounce and snapshot.get("email_bounced"):
            return BOUNCED
        if safety.max_errors is not None and enrollment.error_count >= safety.max_errors:
            return MAX_ERRORS_EXCEEDED
        return None
