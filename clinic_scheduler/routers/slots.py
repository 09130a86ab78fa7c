# clinic_scheduler/routers/slots.py
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..context import RequestContext
from ..database import get_db
from ..exceptions import SchedulingError
from ..security import get_request_context
from ..services import occupancy_service
from .common import to_http_exception

router = APIRouter(
    prefix="/slots",
    tags=["Slots"],
    responses={404: {"description": "Not found"}},
)


@router.get("/{doctor_id}", response_model=schemas.OccupancyResponse)
def read_slots(
    doctor_id: int,
    start_date: date,
    end_date: Optional[date] = None,
    available_only: bool = False,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    """Slots of a doctor with occupancy, plus visits that no longer fit any slot."""
    end_date = end_date or start_date
    try:
        result = occupancy_service.resolve_occupancy(
            db, ctx, doctor_id, start_date, end_date, include_unavailable=not available_only
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    return schemas.OccupancyResponse(
        doctor_id=doctor_id,
        start_date=start_date,
        end_date=end_date,
        slots=result.slots,
        orphaned_visits=result.orphaned_visits,
    )


@router.get("/{doctor_id}/check", response_model=schemas.SlotCheckResponse)
def check_slot(
    doctor_id: int,
    slot_date: date,
    at: time,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        available, reason, slot = occupancy_service.check_slot_available(db, ctx, doctor_id, slot_date, at)
    except SchedulingError as e:
        raise to_http_exception(e)
    return schemas.SlotCheckResponse(available=available, reason=reason, slot=slot)


@router.get("/{doctor_id}/next", response_model=schemas.SlotAvailability)
def read_next_available_slot(
    doctor_id: int,
    from_date: Optional[date] = None,
    days_ahead: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        slot = occupancy_service.next_available_slot(db, ctx, doctor_id, from_date=from_date, days_ahead=days_ahead)
    except SchedulingError as e:
        raise to_http_exception(e)
    if slot is None:
        raise HTTPException(status_code=404, detail="No available slot in the search window")
    return slot


@router.get("/{doctor_id}/stats", response_model=schemas.AvailabilityStats)
def read_availability_stats(
    doctor_id: int,
    start_date: date,
    end_date: date,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context),
):
    try:
        return occupancy_service.availability_stats(db, ctx, doctor_id, start_date, end_date)
    except SchedulingError as e:
        raise to_http_exception(e)
