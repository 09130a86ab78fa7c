# clinic_scheduler/services/booking_service.py
"""
Booking, rescheduling and cancellation of visits.

Every write re-checks availability against live data, then claims a unit of
slot capacity through a conditional UPDATE on the slot ledger:

    UPDATE slot_ledger SET booked_count = booked_count + 1
    WHERE id = :id AND booked_count < :capacity

A concurrent booking that loses that race updates zero rows and is rejected.
The visit row, its occupancy link and the ledger change commit together.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..context import RequestContext
from ..exceptions import ConflictError, SchedulingError, ValidationError
from . import occupancy_service, slot_service

logger = structlog.get_logger(__name__)


def visit_interval(visit_date: date, visit_time: time, duration_minutes: int) -> Tuple[datetime, datetime]:
    start = datetime.combine(visit_date, visit_time)
    return start, start + timedelta(minutes=duration_minutes)


def _fmt(at) -> str:
    return at.strftime("%H:%M")


def _validate_request(visit_date: date, visit_time: time, duration_minutes: int) -> None:
    if visit_date is None or visit_time is None:
        raise ValidationError("visit_date and visit_time are required")
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError("duration_minutes must be greater than zero")
    _, end = visit_interval(visit_date, visit_time, duration_minutes)
    if end.date() != visit_date:
        raise ValidationError("A visit must end on the day it starts")


def check_booking(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    visit_date: date,
    visit_time: time,
    duration_minutes: int,
    patient_id: Optional[int] = None,
    exclude_visit_id: Optional[int] = None,
) -> schemas.SlotAvailability:
    """
    Live check of a requested interval. Returns the covering slot with its
    current occupancy, or raises ConflictError naming what blocks it.
    """
    _validate_request(visit_date, visit_time, duration_minutes)
    slots = slot_service.materialize_slots(db, ctx, doctor_id, visit_date, visit_date)
    visits = [
        v for v in crud.get_live_visits(db, ctx, doctor_id, visit_date, visit_date)
        if v.id != exclude_visit_id
    ]
    occupancy = occupancy_service.overlay_visits(slots, visits)
    requested_start, requested_end = visit_interval(visit_date, visit_time, duration_minutes)
    slot = _choose_slot(occupancy.slots, visit_date, visit_time, requested_start, requested_end)

    for marker in occupancy.slots:
        if marker.is_bookable:
            continue
        if crud.intervals_overlap(
            requested_start, requested_end,
            datetime.combine(visit_date, marker.start_time), datetime.combine(visit_date, marker.end_time),
        ):
            raise ConflictError(
                f"Requested {_fmt(requested_start)}-{_fmt(requested_end)} overlaps a "
                f"{marker.availability_type.value} period ({_fmt(marker.start_time)}-{_fmt(marker.end_time)})",
                reason=ConflictError.BLOCKED_PERIOD,
                conflicting_start=marker.start_time,
                conflicting_end=marker.end_time,
            )
    _check_doctor_free(visits, requested_start, requested_end)

    if patient_id is not None:
        _check_patient_free(db, ctx, patient_id, requested_start, requested_end, exclude_visit_id)
    return slot


def _choose_slot(
    slots: List[schemas.SlotAvailability],
    visit_date: date,
    visit_time: time,
    requested_start: datetime,
    requested_end: datetime,
) -> schemas.SlotAvailability:
    """
    First bookable slot containing the start time that has room and covers the
    whole interval. Overlapping patterns are all tried before giving up.
    """
    containing = sorted(
        (s for s in slots if s.slot_date == visit_date and s.contains(visit_time)),
        key=lambda s: (not s.is_bookable, s.start_time, s.end_time),
    )
    if not containing:
        raise ConflictError(
            f"No availability covers {visit_date.isoformat()} at {_fmt(visit_time)}",
            reason=ConflictError.NO_AVAILABILITY,
        )
    bookable = [s for s in containing if s.is_bookable]
    if not bookable:
        blocked = containing[0]
        raise ConflictError(
            f"{_fmt(visit_time)} falls in a {blocked.availability_type.value} period "
            f"({_fmt(blocked.start_time)}-{_fmt(blocked.end_time)})",
            reason=ConflictError.BLOCKED_PERIOD,
            conflicting_start=blocked.start_time,
            conflicting_end=blocked.end_time,
        )
    with_room = [s for s in bookable if s.booked_count < s.aggregate_capacity]
    if not with_room:
        full = bookable[0]
        raise ConflictError(
            f"Slot {_fmt(full.start_time)}-{_fmt(full.end_time)} on {visit_date.isoformat()}: "
            f"capacity exhausted ({full.booked_count}/{full.aggregate_capacity} booked)",
            reason=ConflictError.CAPACITY_EXHAUSTED,
            conflicting_start=full.start_time,
            conflicting_end=full.end_time,
        )
    for candidate in with_room:
        if requested_end <= datetime.combine(visit_date, candidate.end_time):
            return candidate
    longest = max(with_room, key=lambda s: s.end_time)
    raise ConflictError(
        f"Requested {_fmt(requested_start)}-{_fmt(requested_end)} runs past the end of "
        f"the availability block at {_fmt(longest.end_time)}",
        reason=ConflictError.OUTSIDE_SLOT,
        conflicting_start=longest.start_time,
        conflicting_end=longest.end_time,
    )


def _check_doctor_free(visits, requested_start: datetime, requested_end: datetime) -> None:
    for existing in visits:
        existing_start, existing_end = visit_interval(existing.visit_date, existing.visit_time, existing.duration_minutes)
        if existing_start < requested_end and requested_start < existing_end:
            raise ConflictError(
                f"Requested {_fmt(requested_start)}-{_fmt(requested_end)} overlaps the existing "
                f"booking at {_fmt(existing_start)}-{_fmt(existing_end)}",
                reason=ConflictError.TIME_OVERLAP,
                conflicting_start=existing_start.time(),
                conflicting_end=existing_end.time(),
            )


def _recheck_after_lock(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    patient_id: int,
    visit_date: date,
    visit_time: time,
    duration_minutes: int,
    exclude_visit_id: Optional[int] = None,
) -> None:
    """Repeat the interval checks once the ledger row is locked, against visits committed since the live check."""
    requested_start, requested_end = visit_interval(visit_date, visit_time, duration_minutes)
    visits = [
        v for v in crud.get_live_visits(db, ctx, doctor_id, visit_date, visit_date)
        if v.id != exclude_visit_id
    ]
    _check_doctor_free(visits, requested_start, requested_end)
    _check_patient_free(db, ctx, patient_id, requested_start, requested_end, exclude_visit_id)


def _check_patient_free(
    db: Session,
    ctx: RequestContext,
    patient_id: int,
    requested_start: datetime,
    requested_end: datetime,
    exclude_visit_id: Optional[int],
) -> None:
    """A patient cannot be in two visits at once, with any doctor."""
    same_day = crud.list_visits(
        db, ctx, patient_id=patient_id,
        start_date=requested_start.date(), end_date=requested_start.date(),
        include_cancelled=False,
    )
    for existing in same_day:
        if existing.id == exclude_visit_id:
            continue
        existing_start, existing_end = visit_interval(existing.visit_date, existing.visit_time, existing.duration_minutes)
        if existing_start < requested_end and requested_start < existing_end:
            raise ConflictError(
                f"Patient {patient_id} already has a visit at {_fmt(existing_start)}-{_fmt(existing_end)}",
                reason=ConflictError.TIME_OVERLAP,
                conflicting_start=existing_start.time(),
                conflicting_end=existing_end.time(),
            )


def _claim_capacity(db: Session, ctx: RequestContext, slot: schemas.SlotAvailability) -> models.SlotLedger:
    """Lock or create the ledger row of the slot, then take one unit with a conditional update."""
    ledger = db.query(models.SlotLedger).filter(
        models.SlotLedger.tenant_id == ctx.tenant_id,
        models.SlotLedger.doctor_id == slot.doctor_id,
        models.SlotLedger.slot_date == slot.slot_date,
        models.SlotLedger.start_time == slot.start_time,
        models.SlotLedger.end_time == slot.end_time,
    ).with_for_update().first()

    if ledger is None:
        ledger = models.SlotLedger(
            tenant_id=ctx.tenant_id,
            doctor_id=slot.doctor_id,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            capacity=slot.aggregate_capacity,
            booked_count=0,
        )
        db.add(ledger)
        try:
            db.flush()
        except IntegrityError as e:
            raise ConflictError(
                f"Slot {_fmt(slot.start_time)}-{_fmt(slot.end_time)} on {slot.slot_date.isoformat()} "
                f"is being booked concurrently; reload availability and try again",
                reason=ConflictError.CAPACITY_EXHAUSTED,
                conflicting_start=slot.start_time,
                conflicting_end=slot.end_time,
            ) from e

    claimed = db.query(models.SlotLedger).filter(
        models.SlotLedger.id == ledger.id,
        models.SlotLedger.booked_count < slot.aggregate_capacity,
    ).update(
        {
            models.SlotLedger.booked_count: models.SlotLedger.booked_count + 1,
            models.SlotLedger.capacity: slot.aggregate_capacity,
        },
        synchronize_session=False,
    )
    if claimed != 1:
        raise ConflictError(
            f"Slot {_fmt(slot.start_time)}-{_fmt(slot.end_time)} on {slot.slot_date.isoformat()}: "
            f"capacity exhausted",
            reason=ConflictError.CAPACITY_EXHAUSTED,
            conflicting_start=slot.start_time,
            conflicting_end=slot.end_time,
        )
    return ledger


def _return_capacity(db: Session, ledger_id: Optional[int]) -> None:
    if ledger_id is None:
        return
    db.query(models.SlotLedger).filter(
        models.SlotLedger.id == ledger_id,
        models.SlotLedger.booked_count > 0,
    ).update(
        {models.SlotLedger.booked_count: models.SlotLedger.booked_count - 1},
        synchronize_session=False,
    )


def _active_link(db: Session, visit: models.Visit) -> Optional[models.SlotOccupancy]:
    return db.query(models.SlotOccupancy).filter(
        models.SlotOccupancy.visit_id == visit.id,
        models.SlotOccupancy.released_at.is_(None),
    ).with_for_update().first()


def _release_link(db: Session, visit: models.Visit) -> Optional[models.SlotOccupancy]:
    link = _active_link(db, visit)
    if link is not None:
        link.released_at = datetime.now(timezone.utc)
        _return_capacity(db, link.ledger_id)
    return link


def release_visit(db: Session, ctx: RequestContext, visit: models.Visit, reason: Optional[str] = None) -> models.Visit:
    """Cancel a visit and free its slot unit inside the caller's transaction."""
    if visit.status in (models.VisitStatus.completed, models.VisitStatus.cancelled):
        raise ValidationError(f"Visit {visit.id} is {visit.status.value} and cannot be cancelled")
    _release_link(db, visit)
    visit.status = models.VisitStatus.cancelled
    visit.cancellation_reason = reason
    visit.cancelled_by = ctx.user_id
    visit.cancelled_at = datetime.now(timezone.utc)
    compliance_logger.log_event(
        db, ctx, models.AuditAction.CANCEL, "VISIT",
        resource_type="Visit", resource_id=visit.id,
        details=f"Cancelled visit {visit.visit_number}: {reason or 'no reason given'}",
    )
    return visit


def _storage_conflict(db: Session, error: IntegrityError, action: str) -> ConflictError:
    """A storage guard (unique index or ledger constraint) rejected the write."""
    db.rollback()
    logger.warning("booking_write_conflict", action=action, error=str(error.orig))
    return ConflictError(
        f"Another booking took this time while {action}; reload availability and try again",
        reason=ConflictError.TIME_OVERLAP,
    )


def _commit_or_raise(db: Session, action: str) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        raise _storage_conflict(db, e, action) from e


def book_visit(db: Session, ctx: RequestContext, request: schemas.VisitCreate) -> models.Visit:
    """Check the requested time live, then write the visit and its slot link atomically."""
    crud.get_doctor(db, ctx, request.doctor_id)
    crud.get_patient(db, ctx, request.patient_id)
    log = logger.bind(
        tenant_id=ctx.tenant_id, doctor_id=request.doctor_id, patient_id=request.patient_id,
        visit_date=request.visit_date.isoformat(), visit_time=_fmt(request.visit_time),
    )

    try:
        slot = check_booking(
            db, ctx, request.doctor_id, request.visit_date, request.visit_time,
            request.duration_minutes, patient_id=request.patient_id,
        )
        ledger = _claim_capacity(db, ctx, slot)
        _recheck_after_lock(
            db, ctx, request.doctor_id, request.patient_id,
            request.visit_date, request.visit_time, request.duration_minutes,
        )
        visit = crud.create_visit(db, ctx, request)
        db.add(models.SlotOccupancy(
            tenant_id=ctx.tenant_id,
            visit_id=visit.id,
            pattern_id=slot.pattern_ids[0],
            ledger_id=ledger.id,
            doctor_id=slot.doctor_id,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
        ))
        compliance_logger.log_event(
            db, ctx, models.AuditAction.BOOK, "VISIT",
            resource_type="Visit", resource_id=visit.id,
            details=f"Booked {visit.visit_number} for patient {visit.patient_id} at {_fmt(visit.visit_time)}",
        )
        _commit_or_raise(db, "booking")
    except SchedulingError as e:
        db.rollback()
        log.info("booking_rejected", reason=getattr(e, "reason", type(e).__name__), message=e.message)
        raise
    except IntegrityError as e:
        raise _storage_conflict(db, e, "booking") from e
    except SQLAlchemyError as e:
        raise crud.store_failure(db, e, "booking a visit") from e

    db.refresh(visit)
    log.info("booking_accepted", visit_id=visit.id, visit_number=visit.visit_number)
    return visit


def reschedule_visit(
    db: Session,
    ctx: RequestContext,
    visit_id: int,
    new_date: date,
    new_time: time,
    duration_minutes: Optional[int] = None,
) -> models.Visit:
    """Move a scheduled visit; its own current reservation does not count against the new time."""
    visit = crud.get_visit(db, ctx, visit_id, for_update=True)
    if visit.status != models.VisitStatus.scheduled:
        raise ValidationError(f"Only scheduled visits can be rescheduled; visit {visit_id} is {visit.status.value}")
    duration = duration_minutes or visit.duration_minutes
    log = logger.bind(tenant_id=ctx.tenant_id, visit_id=visit_id, new_date=new_date.isoformat(), new_time=_fmt(new_time))
    previous = f"{visit.visit_date.isoformat()} {_fmt(visit.visit_time)}"

    try:
        slot = check_booking(
            db, ctx, visit.doctor_id, new_date, new_time, duration,
            patient_id=visit.patient_id, exclude_visit_id=visit.id,
        )
        link = _release_link(db, visit)
        ledger = _claim_capacity(db, ctx, slot)
        _recheck_after_lock(
            db, ctx, visit.doctor_id, visit.patient_id, new_date, new_time, duration,
            exclude_visit_id=visit.id,
        )
        if link is None:
            link = db.query(models.SlotOccupancy).filter(models.SlotOccupancy.visit_id == visit.id).first()
        if link is None:
            link = models.SlotOccupancy(tenant_id=ctx.tenant_id, visit_id=visit.id, doctor_id=visit.doctor_id)
            db.add(link)
        link.pattern_id = slot.pattern_ids[0]
        link.ledger_id = ledger.id
        link.slot_date = slot.slot_date
        link.start_time = slot.start_time
        link.end_time = slot.end_time
        link.released_at = None

        visit.visit_date = new_date
        visit.visit_time = new_time
        visit.duration_minutes = duration
        compliance_logger.log_event(
            db, ctx, models.AuditAction.RESCHEDULE, "VISIT",
            resource_type="Visit", resource_id=visit.id,
            details=f"Rescheduled {visit.visit_number} from {previous} to {new_date.isoformat()} {_fmt(new_time)}",
        )
        _commit_or_raise(db, "rescheduling")
    except SchedulingError as e:
        db.rollback()
        log.info("reschedule_rejected", reason=getattr(e, "reason", type(e).__name__), message=e.message)
        raise
    except IntegrityError as e:
        raise _storage_conflict(db, e, "rescheduling") from e
    except SQLAlchemyError as e:
        raise crud.store_failure(db, e, "rescheduling a visit") from e

    db.refresh(visit)
    log.info("reschedule_accepted")
    return visit


def cancel_visit(db: Session, ctx: RequestContext, visit_id: int, reason: Optional[str] = None) -> models.Visit:
    """Mark a visit cancelled and release its slot. The visit row is kept."""
    visit = crud.get_visit(db, ctx, visit_id, for_update=True)
    try:
        release_visit(db, ctx, visit, reason)
        db.commit()
    except SchedulingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        raise crud.store_failure(db, e, "cancelling a visit") from e
    db.refresh(visit)
    logger.info("visit_cancelled", tenant_id=ctx.tenant_id, visit_id=visit_id)
    return visit


def update_visit_status(
    db: Session,
    ctx: RequestContext,
    visit_id: int,
    new_status: models.VisitStatus,
    reason: Optional[str] = None,
) -> models.Visit:
    """scheduled -> in_progress -> completed; scheduled or in_progress -> cancelled."""
    if new_status == models.VisitStatus.cancelled:
        return cancel_visit(db, ctx, visit_id, reason)

    visit = crud.get_visit(db, ctx, visit_id, for_update=True)
    current = models.VisitStatus(visit.status)
    if new_status not in models.VISIT_STATUS_TRANSITIONS[current]:
        db.rollback()
        raise ValidationError(f"Cannot change visit {visit_id} from {current.value} to {new_status.value}")

    visit.status = new_status
    try:
        compliance_logger.log_event(
            db, ctx, models.AuditAction.UPDATE, "VISIT",
            resource_type="Visit", resource_id=visit.id,
            details=f"Status {current.value} -> {new_status.value}",
        )
        db.commit()
    except SQLAlchemyError as e:
        raise crud.store_failure(db, e, "updating visit status") from e
    db.refresh(visit)
    return visit
