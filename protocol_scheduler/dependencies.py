# protocol_scheduler/dependencies.py
from datetime import date
from typing import Optional

from fastapi import Header, HTTPException

from .errors import SchedulingError


def get_actor_id(x_actor_id: Optional[int] = Header(None)) -> Optional[int]:
    """
    Identity of the doctor or patient issuing the request.

    Authentication happens upstream; the caller forwards the resolved user id
    so the audit trail can attribute each change.
    """
    return x_actor_id


def get_today() -> date:
    # Overridden in tests to pin the reference day
    return date.today()


def http_error(e: SchedulingError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))
