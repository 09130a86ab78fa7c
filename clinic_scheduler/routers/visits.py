# clinic_scheduler/routers/visits.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..context import RequestContext
from ..database import get_db
from ..exceptions import SchedulingError
from ..limiter import booking_rate_limit, limiter
from ..security import get_request_context
from ..services import booking_service
from .common import to_http_exception

router = APIRouter(
    prefix="/visits",
    tags=["Visits"],
    responses={404: {"description": "Not found"}},
)


@router.post("/", response_model=schemas.VisitResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(booking_rate_limit)
def book_visit(
    request: Request,
    visit_in: schemas.VisitCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Book a visit. The time is re-checked against live bookings; a 409 names the
    conflicting time range or reports exhausted capacity.
    """
    try:
        return booking_service.book_visit(db, ctx, visit_in)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.get("/", response_model=List[schemas.VisitResponse])
def read_visits(
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    visit_status: Optional[models.VisitStatus] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.list_visits(
            db, ctx, doctor_id=doctor_id, start_date=start_date, end_date=end_date,
            status=visit_status, patient_id=patient_id, skip=skip, limit=limit,
        )
    except SchedulingError as e:
        raise to_http_exception(e)


@router.get("/{visit_id}", response_model=schemas.VisitResponse)
def read_visit(
    visit_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.get_visit(db, ctx, visit_id)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.patch("/{visit_id}", response_model=schemas.VisitResponse)
def update_visit(
    visit_id: int,
    visit_update: schemas.VisitUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Update fee, payment status or notes. Date and time change only through reschedule."""
    try:
        return crud.update_visit(db, ctx, visit_id, visit_update)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.put("/{visit_id}/reschedule", response_model=schemas.VisitResponse)
def reschedule_visit(
    visit_id: int,
    reschedule: schemas.VisitReschedule,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return booking_service.reschedule_visit(
            db, ctx, visit_id, reschedule.visit_date, reschedule.visit_time, reschedule.duration_minutes
        )
    except SchedulingError as e:
        raise to_http_exception(e)


@router.post("/{visit_id}/cancel", response_model=schemas.VisitResponse)
def cancel_visit(
    visit_id: int,
    cancel: schemas.VisitCancel,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return booking_service.cancel_visit(db, ctx, visit_id, cancel.reason)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.put("/{visit_id}/status", response_model=schemas.VisitResponse)
def update_visit_status(
    visit_id: int,
    status_update: schemas.VisitStatusUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return booking_service.update_visit_status(db, ctx, visit_id, status_update.status, status_update.reason)
    except SchedulingError as e:
        raise to_http_exception(e)
