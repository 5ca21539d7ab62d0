# protocol_scheduler/errors.py
from fastapi import status


class SchedulingError(Exception):
    """Base class for every error the scheduling core reports to its caller."""
    status_code = status.HTTP_400_BAD_REQUEST


class ValidationError(SchedulingError):
    """Malformed frequency rule or activity definition. Nothing was written."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFoundError(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(SchedulingError):
    """Stale version token. The caller must re-fetch and retry."""
    status_code = status.HTTP_409_CONFLICT


class StateError(SchedulingError):
    """Mutation of a terminal occurrence or a closed instance."""
    status_code = status.HTTP_409_CONFLICT


class RepositoryError(SchedulingError):
    """Backing store failure; the transaction was rolled back."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
