from fastapi import HTTPException, status

from commission_core.core.exceptions import (
    CommissionError, InvalidSplitConfiguration, InvalidStateTransition,
    NoEarnerError, NotFoundError, PersistenceConflict,
)

_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidStateTransition, status.HTTP_409_CONFLICT),
    (PersistenceConflict, status.HTTP_409_CONFLICT),
    (NoEarnerError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidSplitConfiguration, status.HTTP_422_UNPROCESSABLE_ENTITY),
)


def http_error(exc: Exception) -> HTTPException:
    """Translate a domain error into the matching HTTP error."""
    if isinstance(exc, CommissionError):
        for error_type, code in _STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
