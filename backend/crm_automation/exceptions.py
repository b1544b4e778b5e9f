from typing import List


class AutomationValidationError(ValueError):
    """Raised when an automation definition is rejected at save time."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid automation")


class UnknownOperatorError(ValueError):
    def __init__(self, operator: str):
        self.operator = operator
        super().__init__(f"Unknown condition operator: {operator}")


class InvalidEventError(ValueError):
    pass


class AutomationNotFoundError(LookupError):
    def __init__(self, automation_id: str):
        self.automation_id = automation_id
        super().__init__(f"Automation {automation_id} not found")


class EnrollmentNotFoundError(LookupError):
    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment {enrollment_id} not found")


class EnrollmentBusyError(RuntimeError):
    """The enrollment is claimed by another worker."""

    def __init__(self, enrollment_id: str):
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment {enrollment_id} is being processed by another worker")
