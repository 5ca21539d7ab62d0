# protocol_scheduler/routers/health.py
from fastapi import APIRouter, Depends
from typing import Dict
from datetime import datetime, timezone
import logging

from .. import schemas
from ..config import get_settings
from ..crud import get_repository
from ..dependencies import http_error
from ..errors import SchedulingError
from ..repository import ProtocolRepository
from ..services import materializer

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)

logger = logging.getLogger(__name__)


@router.get("", response_model=Dict[str, str])
def health_check():
    settings = get_settings()
    return {
        "status": "ok",
        "app": settings.app_name,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/consistency-check", response_model=schemas.ConsistencyReport)
def check_schedule_consistency(repo: ProtocolRepository = Depends(get_repository)) -> schemas.ConsistencyReport:
    """
    Look for duplicate live occurrences and occurrences whose activity is unknown.
    """
    logger.info("Running schedule consistency checks...")
    try:
        report = materializer.run_consistency_checks(repo)
    except SchedulingError as e:
        raise http_error(e)
    logger.info(
        f"Consistency checks completed over {report.checked_instances} instances: "
        f"{len(report.duplicate_occurrences)} duplicate and {len(report.orphaned_occurrences)} orphaned entries."
    )
    return report
