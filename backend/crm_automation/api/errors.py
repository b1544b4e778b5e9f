import logging

from fastapi import HTTPException

from crm_automation.exceptions import (
    AutomationNotFoundError,
    AutomationValidationError,
    EnrollmentBusyError,
    EnrollmentNotFoundError,
    InvalidEventError,
)

logger = logging.getLogger(__name__)


def http_error(e: Exception) -> HTTPException:
    """Translate a service exception into the HTTP error the caller sees."""
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, AutomationValidationError):
        return HTTPException(status_code=422, detail={"message": "Automation definition is invalid", "errors": e.errors})
    if isinstance(e, (AutomationNotFoundError, EnrollmentNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, EnrollmentBusyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidEventError):
        return HTTPException(status_code=400, detail=str(e))
    logger.error(f"[API] Unhandled error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail=f"Internal error: {str(e)}")
