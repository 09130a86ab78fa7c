# clinic_scheduler/routers/availability.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas
from ..context import RequestContext
from ..database import get_db
from ..exceptions import SchedulingError
from ..security import get_request_context
from .common import to_http_exception

router = APIRouter(
    prefix="/availability",
    tags=["Doctor Availability"],
    responses={404: {"description": "Not found"}},
)


@router.get("/", response_model=List[schemas.AvailabilityResponse])
def read_availability(
    doctor_id: Optional[int] = None,
    day_of_week: Optional[int] = None,
    active_only: bool = True,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """List availability patterns ordered by day of week and start time."""
    return crud.list_availability(db, ctx, doctor_id=doctor_id, day_of_week=day_of_week, active_only=active_only)


@router.post("/", response_model=schemas.AvailabilityResponse, status_code=status.HTTP_201_CREATED)
def create_availability(
    pattern: schemas.AvailabilityCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.create_availability(db, ctx, pattern)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.post("/batch", response_model=List[schemas.AvailabilityResponse], status_code=status.HTTP_201_CREATED)
def create_availability_batch(
    submission: schemas.AvailabilityBatchCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Save a weekly schedule: one record per time block. Blocks on the same day
    may not overlap. With replace_existing, the submitted days replace the
    doctor's current active blocks on those days.
    """
    try:
        return crud.create_availability_batch(
            db, ctx, submission.doctor_id, submission.blocks, replace_existing=submission.replace_existing
        )
    except SchedulingError as e:
        raise to_http_exception(e)


@router.get("/{pattern_id}", response_model=schemas.AvailabilityResponse)
def read_availability_pattern(
    pattern_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.get_availability(db, ctx, pattern_id)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.put("/{pattern_id}", response_model=schemas.AvailabilityResponse)
def update_availability(
    pattern_id: int,
    pattern_update: schemas.AvailabilityUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.update_availability(db, ctx, pattern_id, pattern_update)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.post("/{pattern_id}/deactivate", response_model=schemas.AvailabilityResponse)
def deactivate_availability(
    pattern_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return crud.deactivate_availability(db, ctx, pattern_id)
    except SchedulingError as e:
        raise to_http_exception(e)


@router.delete("/{pattern_id}", response_model=schemas.AvailabilityDeleteResult)
def delete_availability(
    pattern_id: int,
    cascade_cancel: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """
    Delete a pattern. Returns 409 while future bookings depend on it, unless
    cascade_cancel=true, which cancels those bookings first.
    """
    try:
        return crud.delete_availability(db, ctx, pattern_id, cascade_cancel=cascade_cancel)
    except SchedulingError as e:
        raise to_http_exception(e)
