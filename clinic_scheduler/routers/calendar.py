# clinic_scheduler/routers/calendar.py
from datetime import date
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import schemas
from ..context import RequestContext
from ..database import get_db
from ..exceptions import SchedulingError
from ..security import get_request_context
from ..services import calendar_service
from .common import to_http_exception

router = APIRouter(
    prefix="/calendar",
    tags=["Calendar"],
)


@router.get("/{doctor_id}", response_model=List[schemas.CalendarEvent])
def read_calendar(
    doctor_id: int,
    start_date: date,
    end_date: date,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Calendar events for a doctor, laid out in columns where they overlap."""
    try:
        return calendar_service.build_calendar(db, ctx, doctor_id, start_date, end_date)
    except SchedulingError as e:
        raise to_http_exception(e)
