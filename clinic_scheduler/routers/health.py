# clinic_scheduler/routers/health.py
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import get_settings
from ..context import RequestContext
from ..database import get_db
from ..models import UserRole
from ..security import require_role

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)

get_current_admin_context = require_role(UserRole.admin)


@router.get("/")
def liveness(db: Session = Depends(get_db)):
    """Service and database liveness."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Database ping failed: {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    settings = get_settings()
    return {
        "status": "ok",
        "app": settings.app_name,
        "version": settings.app_version,
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/consistency-check", response_model=schemas.ConsistencyReport)
def check_system_consistency(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_current_admin_context),
) -> schemas.ConsistencyReport:
    """
    Compares the slot capacity ledger and occupancy links with the visits.
    Accessible only by admin users.
    """
    report = crud.run_consistency_checks(db, ctx)
    logger.info(
        f"Consistency check for tenant {ctx.tenant_id}: "
        f"{len(report['ledger_count_mismatches'])} ledger, "
        f"{len(report['links_for_cancelled_visits'])} stale link, "
        f"{len(report['visits_without_links'])} unlinked visit issues"
    )
    return report


@router.post("/fix-anomalies", response_model=schemas.ConsistencyFixReport)
def fix_system_anomalies(
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_current_admin_context),
):
    """
    Runs the consistency checker and fixes ledger counters and stale links.
    Accessible only by admin users.
    """
    fix_report = crud.fix_consistency_issues(db, ctx)
    logger.info(
        f"Consistency fix for tenant {ctx.tenant_id}: released {len(fix_report.released_links)} links, "
        f"fixed {len(fix_report.fixed_counters)} counters"
    )
    return fix_report
