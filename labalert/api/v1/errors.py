import logging

from fastapi import HTTPException

from ...errors import (
    AlertingError,
    ConfigurationError,
    CriticalResultNotFoundError,
    InvalidMeasurementError,
    InvalidTransitionError,
    PersistenceConflictError,
)

logger = logging.getLogger(__name__)

# First match wins, so subclasses come before their bases
STATUS_CODES = (
    (CriticalResultNotFoundError, 404),
    (InvalidMeasurementError, 400),
    (InvalidTransitionError, 409),
    (PersistenceConflictError, 409),
    (ConfigurationError, 422),
)


def to_http_exception(error: AlertingError) -> HTTPException:
    status_code = next((code for cls, code in STATUS_CODES if isinstance(error, cls)), 500)
    if status_code >= 500:
        logger.error(f"{type(error).__name__}: {str(error)}")
    else:
        logger.warning(f"Request rejected with {status_code}: {str(error)}")
    headers = {"Retry-After": "1"} if error.retryable else None
    return HTTPException(status_code=status_code, detail=str(error), headers=headers)
