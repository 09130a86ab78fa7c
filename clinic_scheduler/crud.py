# clinic_scheduler/crud.py - availability pattern store, directories and visit store
from sqlalchemy.orm import Session
from sqlalchemy import or_, func, select
from sqlalchemy.exc import SQLAlchemyError
from datetime import date, time, datetime, timezone
from typing import Optional, List, Dict, Any, Iterable
import logging

from . import models, schemas
from .compliance_logger import compliance_logger
from .config import get_settings
from .context import RequestContext
from .exceptions import AuthorizationError, ConflictError, NotFoundError, TransientStoreError, ValidationError

logger = logging.getLogger(__name__)
# IMPORTANT: services import crud; import them lazily inside functions to avoid cycles.

ACTIVE_VISIT_STATUSES = (models.VisitStatus.scheduled, models.VisitStatus.in_progress, models.VisitStatus.completed)
OPEN_VISIT_STATUSES = (models.VisitStatus.scheduled, models.VisitStatus.in_progress)


def store_failure(db: Session, error: SQLAlchemyError, action: str) -> TransientStoreError:
    """Roll back and wrap a data-store failure."""
    db.rollback()
    logger.error(f"Database error while {action}: {error}")
    return TransientStoreError(f"The data store failed while {action}; please retry.")


def normalize_day_of_week(day_of_week: int) -> int:
    """7 is the legacy spelling of Sunday."""
    return 0 if day_of_week == 7 else day_of_week


def intervals_overlap(start_a, end_a, start_b, end_b) -> bool:
    return start_a < end_b and start_b < end_a


# ==================== DIRECTORY LOOKUPS ====================

def get_user(db: Session, ctx: RequestContext, user_id: int) -> models.User:
    user = db.query(models.User).filter(
        models.User.id == user_id,
        models.User.tenant_id == ctx.tenant_id,
    ).first()
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    return user


def get_doctor(db: Session, ctx: RequestContext, doctor_id: int) -> models.User:
    """Active doctor of the acting tenant, or NotFoundError."""
    doctor = db.query(models.User).filter(
        models.User.id == doctor_id,
        models.User.tenant_id == ctx.tenant_id,
        models.User.role == models.UserRole.doctor,
        models.User.is_active.is_(True),
    ).first()
    if not doctor:
        raise NotFoundError(f"Doctor {doctor_id} not found")
    return doctor


def list_doctors(db: Session, ctx: RequestContext) -> List[models.User]:
    return db.query(models.User).filter(
        models.User.tenant_id == ctx.tenant_id,
        models.User.role == models.UserRole.doctor,
        models.User.is_active.is_(True),
    ).order_by(models.User.full_name).all()


def get_patient(db: Session, ctx: RequestContext, patient_id: int) -> models.Patient:
    patient = db.query(models.Patient).filter(
        models.Patient.id == patient_id,
        models.Patient.tenant_id == ctx.tenant_id,
    ).first()
    if not patient:
        raise NotFoundError(f"Patient {patient_id} not found")
    return patient


def search_patients(db: Session, ctx: RequestContext, query: Optional[str] = None, skip: int = 0, limit: int = 50) -> List[models.Patient]:
    """Case-insensitive search over name and phone number."""
    q = db.query(models.Patient).filter(models.Patient.tenant_id == ctx.tenant_id)
    if query:
        like = f"%{query.strip()}%"
        q = q.filter(or_(
            models.Patient.first_name.ilike(like),
            models.Patient.last_name.ilike(like),
            models.Patient.phone_number.ilike(like),
        ))
    return q.order_by(models.Patient.first_name, models.Patient.last_name).offset(skip).limit(limit).all()


def get_patient_names(db: Session, ctx: RequestContext, patient_ids: Iterable[int]) -> Dict[int, str]:
    ids = set(patient_ids)
    if not ids:
        return {}
    patients = db.query(models.Patient).filter(
        models.Patient.tenant_id == ctx.tenant_id,
        models.Patient.id.in_(ids),
    ).all()
    return {p.id: p.name for p in patients}


# ==================== AVAILABILITY PATTERN VALIDATION ====================

def validate_pattern_values(
    day_of_week: int,
    start_time: time,
    end_time: time,
    effective_from: date,
    effective_until: Optional[date],
    slot_duration_minutes: int,
    buffer_time_minutes: int,
    max_patients_per_slot: int,
) -> None:
    if day_of_week is None or not 0 <= day_of_week <= 7:
        raise ValidationError("day_of_week must be between 0 (Sunday) and 6; 7 is accepted as Sunday")
    if start_time is None or end_time is None:
        raise ValidationError("start_time and end_time are required")
    if start_time >= end_time:
        raise ValidationError(f"start_time {start_time:%H:%M} must be before end_time {end_time:%H:%M}")
    if effective_from is None:
        raise ValidationError("effective_from is required")
    if effective_until is not None and effective_until < effective_from:
        raise ValidationError("effective_until must not be before effective_from")
    for name, value in (
        ("slot_duration_minutes", slot_duration_minutes),
        ("buffer_time_minutes", buffer_time_minutes),
        ("max_patients_per_slot", max_patients_per_slot),
    ):
        if value is None or value < 0:
            raise ValidationError(f"{name} must be zero or greater")


def validate_blocks_do_not_overlap(blocks: Iterable[schemas.AvailabilityBase]) -> None:
    """Blocks submitted together must not intersect on the same weekday."""
    by_day: Dict[int, List[schemas.AvailabilityBase]] = {}
    for block in blocks:
        by_day.setdefault(normalize_day_of_week(block.day_of_week), []).append(block)
    for day, day_blocks in by_day.items():
        for i, first in enumerate(day_blocks):
            for second in day_blocks[i + 1:]:
                if intervals_overlap(first.start_time, first.end_time, second.start_time, second.end_time):
                    raise ValidationError(
                        f"Time blocks cannot overlap: {first.start_time:%H:%M}-{first.end_time:%H:%M} "
                        f"and {second.start_time:%H:%M}-{second.end_time:%H:%M} on day {day}"
                    )


def _ensure_can_manage(ctx: RequestContext, doctor_id: int) -> None:
    if not ctx.can_manage_schedule_of(doctor_id):
        raise AuthorizationError("Only the doctor or an admin/manager may change this schedule")


def _pattern_values(block: schemas.AvailabilityBase) -> Dict[str, Any]:
    settings = get_settings()
    values = block.model_dump()
    if values.get("slot_duration_minutes") is None:
        values["slot_duration_minutes"] = settings.default_slot_duration_minutes
    if values.get("buffer_time_minutes") is None:
        values["buffer_time_minutes"] = settings.default_buffer_minutes
    if values.get("max_patients_per_slot") is None:
        values["max_patients_per_slot"] = settings.default_max_patients_per_slot
    if values.get("effective_from") is None:
        values["effective_from"] = date.today()
    validate_pattern_values(
        values["day_of_week"], values["start_time"], values["end_time"],
        values["effective_from"], values.get("effective_until"),
        values["slot_duration_minutes"], values["buffer_time_minutes"], values["max_patients_per_slot"],
    )
    return values


# ==================== AVAILABILITY PATTERN CRUD ====================

def get_availability(db: Session, ctx: RequestContext, pattern_id: int) -> models.DoctorAvailability:
    pattern = db.query(models.DoctorAvailability).filter(
        models.DoctorAvailability.id == pattern_id,
        models.DoctorAvailability.tenant_id == ctx.tenant_id,
    ).first()
    if not pattern:
        raise NotFoundError(f"Availability pattern {pattern_id} not found")
    return pattern


def list_availability(
    db: Session,
    ctx: RequestContext,
    doctor_id: Optional[int] = None,
    day_of_week: Optional[int] = None,
    active_only: bool = True,
) -> List[models.DoctorAvailability]:
    """Patterns of the tenant ordered by (day_of_week, start_time)."""
    q = db.query(models.DoctorAvailability).filter(models.DoctorAvailability.tenant_id == ctx.tenant_id)
    if doctor_id is not None:
        q = q.filter(models.DoctorAvailability.doctor_id == doctor_id)
    if day_of_week is not None:
        if normalize_day_of_week(day_of_week) == 0:
            q = q.filter(models.DoctorAvailability.day_of_week.in_([0, 7]))
        else:
            q = q.filter(models.DoctorAvailability.day_of_week == day_of_week)
    if active_only:
        q = q.filter(models.DoctorAvailability.is_active.is_(True))
    return q.order_by(
        models.DoctorAvailability.day_of_week,
        models.DoctorAvailability.start_time,
        models.DoctorAvailability.id,
    ).all()


def create_availability(db: Session, ctx: RequestContext, pattern: schemas.AvailabilityCreate) -> models.DoctorAvailability:
    """Create one availability block for a doctor."""
    _ensure_can_manage(ctx, pattern.doctor_id)
    values = _pattern_values(pattern)
    get_doctor(db, ctx, pattern.doctor_id)

    db_pattern = models.DoctorAvailability(
        **values,
        tenant_id=ctx.tenant_id,
        is_active=True,
        created_by=ctx.user_id,
        updated_by=ctx.user_id,
    )
    try:
        db.add(db_pattern)
        db.flush()
        compliance_logger.log_event(
            db, ctx, models.AuditAction.CREATE, "SCHEDULE",
            resource_type="DoctorAvailability", resource_id=db_pattern.id,
            details=f"Added {db_pattern.start_time:%H:%M}-{db_pattern.end_time:%H:%M} on day {db_pattern.day_of_week} for doctor {db_pattern.doctor_id}",
        )
        db.commit()
        db.refresh(db_pattern)
    except SQLAlchemyError as e:
        raise store_failure(db, e, "creating an availability pattern") from e
    logger.info(f"Created availability pattern {db_pattern.id} for doctor {db_pattern.doctor_id}")
    return db_pattern


def create_availability_batch(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    blocks: List[schemas.AvailabilityBlock],
    replace_existing: bool = False,
) -> List[models.DoctorAvailability]:
    """
    Save a weekly schedule submission: one record per contiguous block.
    With replace_existing, active patterns on the submitted days are deactivated first.
    """
    _ensure_can_manage(ctx, doctor_id)
    if not blocks:
        raise ValidationError("At least one time block is required")
    values_list = [_pattern_values(block) for block in blocks]
    validate_blocks_do_not_overlap(blocks)
    get_doctor(db, ctx, doctor_id)

    try:
        if replace_existing:
            days = {normalize_day_of_week(v["day_of_week"]) for v in values_list}
            if 0 in days:
                days.add(7)
            replaced = db.query(models.DoctorAvailability).filter(
                models.DoctorAvailability.tenant_id == ctx.tenant_id,
                models.DoctorAvailability.doctor_id == doctor_id,
                models.DoctorAvailability.day_of_week.in_(days),
                models.DoctorAvailability.is_active.is_(True),
            ).update({"is_active": False, "updated_by": ctx.user_id}, synchronize_session=False)
            logger.info(f"Deactivated {replaced} availability patterns of doctor {doctor_id} on days {sorted(days)}")

        created = []
        for values in values_list:
            db_pattern = models.DoctorAvailability(
                **values,
                tenant_id=ctx.tenant_id,
                doctor_id=doctor_id,
                is_active=True,
                created_by=ctx.user_id,
                updated_by=ctx.user_id,
            )
            db.add(db_pattern)
            created.append(db_pattern)
        db.flush()
        compliance_logger.log_event(
            db, ctx, models.AuditAction.BULK_ACTION, "SCHEDULE",
            resource_type="DoctorAvailability", resource_id=doctor_id,
            details=f"Saved {len(created)} availability blocks for doctor {doctor_id} (replace={replace_existing})",
        )
        db.commit()
        for db_pattern in created:
            db.refresh(db_pattern)
    except SQLAlchemyError as e:
        raise store_failure(db, e, "saving the weekly schedule") from e
    return created


def update_availability(
    db: Session,
    ctx: RequestContext,
    pattern_id: int,
    pattern_update: schemas.AvailabilityUpdate,
) -> models.DoctorAvailability:
    db_pattern = get_availability(db, ctx, pattern_id)
    _ensure_can_manage(ctx, db_pattern.doctor_id)

    update_data = pattern_update.model_dump(exclude_unset=True)
    merged = {
        column: update_data.get(column, getattr(db_pattern, column))
        for column in (
            "day_of_week", "start_time", "end_time", "effective_from", "effective_until",
            "slot_duration_minutes", "buffer_time_minutes", "max_patients_per_slot",
        )
    }
    validate_pattern_values(**merged)

    for key, value in update_data.items():
        setattr(db_pattern, key, value)
    db_pattern.updated_by = ctx.user_id
    try:
        compliance_logger.log_event(
            db, ctx, models.AuditAction.UPDATE, "SCHEDULE",
            resource_type="DoctorAvailability", resource_id=db_pattern.id,
            details=f"Updated fields: {', '.join(sorted(update_data)) or 'none'}",
        )
        db.commit()
        db.refresh(db_pattern)
    except SQLAlchemyError as e:
        raise store_failure(db, e, "updating an availability pattern") from e
    return db_pattern


def deactivate_availability(db: Session, ctx: RequestContext, pattern_id: int) -> models.DoctorAvailability:
    """Soft delete: the pattern stops producing slots but stays on record."""
    return update_availability(db, ctx, pattern_id, schemas.AvailabilityUpdate(is_active=False))


def find_future_bookings_at_risk(db: Session, ctx: RequestContext, db_pattern: models.DoctorAvailability) -> List[models.Visit]:
    """
    Open future visits linked to this pattern whose slot would disappear without it.
    Visits still covered by a duplicate pattern are not at risk.
    """
    from .services import slot_service

    linked = db.query(models.Visit).join(
        models.SlotOccupancy, models.SlotOccupancy.visit_id == models.Visit.id
    ).filter(
        models.SlotOccupancy.pattern_id == db_pattern.id,
        models.SlotOccupancy.released_at.is_(None),
        models.Visit.tenant_id == ctx.tenant_id,
        models.Visit.visit_date >= date.today(),
        models.Visit.status.in_(OPEN_VISIT_STATUSES),
    ).order_by(models.Visit.visit_date, models.Visit.visit_time).all()
    if not linked:
        return []

    others = db.query(models.DoctorAvailability).filter(
        models.DoctorAvailability.tenant_id == ctx.tenant_id,
        models.DoctorAvailability.doctor_id == db_pattern.doctor_id,
        models.DoctorAvailability.is_active.is_(True),
        models.DoctorAvailability.id != db_pattern.id,
    ).all()

    at_risk = []
    for visit in linked:
        occupancy = visit.occupancy
        remaining = slot_service.expand_patterns(others, visit.visit_date, visit.visit_date)
        still_covered = next((
            slot for slot in remaining
            if slot.is_bookable
            and slot.start_time == occupancy.start_time
            and slot.end_time == occupancy.end_time
        ), None)
        if still_covered:
            occupancy.pattern_id = still_covered.pattern_ids[0]
        else:
            at_risk.append(visit)
    return at_risk


def delete_availability(db: Session, ctx: RequestContext, pattern_id: int, cascade_cancel: bool = False) -> Dict[str, Any]:
    """
    Hard delete a pattern. Future bookings that depend on it block the delete
    unless cascade_cancel is set, in which case they are cancelled first.
    """
    from .services import booking_service

    db_pattern = get_availability(db, ctx, pattern_id)
    _ensure_can_manage(ctx, db_pattern.doctor_id)

    try:
        at_risk = find_future_bookings_at_risk(db, ctx, db_pattern)
        if at_risk and not cascade_cancel:
            db.rollback()
            first = at_risk[0]
            raise ConflictError(
                f"Availability pattern {pattern_id} has {len(at_risk)} future booking(s), "
                f"the first on {first.visit_date.isoformat()} at {first.visit_time:%H:%M}; "
                f"cancel them or delete with cascade_cancel",
                reason=ConflictError.FUTURE_BOOKINGS,
                conflicting_start=first.visit_time,
            )

        cancelled_ids = []
        for visit in at_risk:
            booking_service.release_visit(
                db, ctx, visit,
                reason=f"Availability pattern {pattern_id} was deleted",
            )
            cancelled_ids.append(visit.id)

        db.query(models.SlotOccupancy).filter(
            models.SlotOccupancy.pattern_id == db_pattern.id
        ).update({"pattern_id": None}, synchronize_session=False)
        db.delete(db_pattern)
        compliance_logger.log_event(
            db, ctx, models.AuditAction.DELETE, "SCHEDULE",
            resource_type="DoctorAvailability", resource_id=pattern_id,
            details=f"Deleted availability pattern; cancelled visits: {cancelled_ids or 'none'}",
        )
        db.commit()
    except SQLAlchemyError as e:
        raise store_failure(db, e, "deleting an availability pattern") from e

    logger.info(f"Deleted availability pattern {pattern_id}; cancelled {len(cancelled_ids)} visits")
    return {"pattern_id": pattern_id, "deleted": True, "cancelled_visit_ids": cancelled_ids}


def get_active_patterns_for_range(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    start_date: date,
    end_date: date,
    days_of_week: Iterable[int],
) -> List[models.DoctorAvailability]:
    """Active patterns that can produce a slot somewhere in [start_date, end_date]."""
    days = set(days_of_week)
    if 0 in days:
        days.add(7)
    try:
        return db.query(models.DoctorAvailability).filter(
            models.DoctorAvailability.tenant_id == ctx.tenant_id,
            models.DoctorAvailability.doctor_id == doctor_id,
            models.DoctorAvailability.is_active.is_(True),
            models.DoctorAvailability.day_of_week.in_(days),
            models.DoctorAvailability.effective_from <= end_date,
            or_(
                models.DoctorAvailability.effective_until.is_(None),
                models.DoctorAvailability.effective_until >= start_date,
            ),
        ).order_by(models.DoctorAvailability.start_time, models.DoctorAvailability.id).all()
    except SQLAlchemyError as e:
        raise store_failure(db, e, "reading availability patterns") from e


# ==================== VISIT STORE ====================

def get_visit(db: Session, ctx: RequestContext, visit_id: int, for_update: bool = False) -> models.Visit:
    q = db.query(models.Visit).filter(
        models.Visit.id == visit_id,
        models.Visit.tenant_id == ctx.tenant_id,
    )
    if for_update:
        q = q.with_for_update()
    visit = q.first()
    if not visit:
        raise NotFoundError(f"Visit {visit_id} not found")
    return visit


def list_visits(
    db: Session,
    ctx: RequestContext,
    doctor_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[models.VisitStatus] = None,
    patient_id: Optional[int] = None,
    include_cancelled: bool = True,
    skip: int = 0,
    limit: int = 200,
) -> List[models.Visit]:
    q = db.query(models.Visit).filter(models.Visit.tenant_id == ctx.tenant_id)
    if doctor_id is not None:
        q = q.filter(models.Visit.doctor_id == doctor_id)
    if patient_id is not None:
        q = q.filter(models.Visit.patient_id == patient_id)
    if start_date is not None:
        q = q.filter(models.Visit.visit_date >= start_date)
    if end_date is not None:
        q = q.filter(models.Visit.visit_date <= end_date)
    if status is not None:
        q = q.filter(models.Visit.status == status)
    elif not include_cancelled:
        q = q.filter(models.Visit.status != models.VisitStatus.cancelled)
    try:
        return q.order_by(models.Visit.visit_date, models.Visit.visit_time, models.Visit.id).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        raise store_failure(db, e, "listing visits") from e


def get_live_visits(db: Session, ctx: RequestContext, doctor_id: int, start_date: date, end_date: date) -> List[models.Visit]:
    """Non-cancelled visits of a doctor in a date range, unpaginated."""
    try:
        return db.query(models.Visit).filter(
            models.Visit.tenant_id == ctx.tenant_id,
            models.Visit.doctor_id == doctor_id,
            models.Visit.visit_date >= start_date,
            models.Visit.visit_date <= end_date,
            models.Visit.status != models.VisitStatus.cancelled,
        ).order_by(models.Visit.visit_date, models.Visit.visit_time, models.Visit.id).all()
    except SQLAlchemyError as e:
        raise store_failure(db, e, "reading visits") from e


def create_visit(db: Session, ctx: RequestContext, visit_in: schemas.VisitCreate) -> models.Visit:
    """Add a scheduled visit to the session and assign its visit number. Caller commits."""
    db_visit = models.Visit(
        tenant_id=ctx.tenant_id,
        patient_id=visit_in.patient_id,
        doctor_id=visit_in.doctor_id,
        visit_date=visit_in.visit_date,
        visit_time=visit_in.visit_time,
        duration_minutes=visit_in.duration_minutes,
        visit_type=visit_in.visit_type or "consultation",
        consultation_fee=visit_in.consultation_fee,
        chief_complaint=visit_in.chief_complaint,
        notes=visit_in.notes,
        status=models.VisitStatus.scheduled,
        payment_status=models.PaymentStatus.pending,
        created_by=ctx.user_id,
    )
    db.add(db_visit)
    db.flush()
    db_visit.visit_number = f"VIS-{db_visit.visit_date:%Y%m%d}-{db_visit.id:06d}"
    return db_visit


def update_visit(db: Session, ctx: RequestContext, visit_id: int, visit_update: schemas.VisitUpdate) -> models.Visit:
    """Update non-scheduling fields of a visit."""
    db_visit = get_visit(db, ctx, visit_id)
    update_data = visit_update.model_dump(exclude_unset=True)
    if not update_data:
        return db_visit
    for key, value in update_data.items():
        setattr(db_visit, key, value)
    try:
        compliance_logger.log_event(
            db, ctx, models.AuditAction.UPDATE, "VISIT",
            resource_type="Visit", resource_id=db_visit.id,
            details=f"Updated fields: {', '.join(sorted(update_data))}",
        )
        db.commit()
        db.refresh(db_visit)
    except SQLAlchemyError as e:
        raise store_failure(db, e, "updating a visit") from e
    return db_visit


# ==================== CONSISTENCY CHECKS ====================

def _active_link_counts(db: Session, ctx: RequestContext):
    return db.query(
        models.SlotOccupancy.ledger_id,
        func.count(models.SlotOccupancy.id).label("actual_count"),
    ).join(
        models.Visit, models.Visit.id == models.SlotOccupancy.visit_id
    ).filter(
        models.SlotOccupancy.tenant_id == ctx.tenant_id,
        models.SlotOccupancy.ledger_id.isnot(None),
        models.SlotOccupancy.released_at.is_(None),
        models.Visit.status != models.VisitStatus.cancelled,
    ).group_by(models.SlotOccupancy.ledger_id).subquery()


def run_consistency_checks(db: Session, ctx: RequestContext) -> Dict[str, Any]:
    """Compare the capacity ledger and occupancy links with the visits they describe."""
    report = {
        "checked_at": datetime.now(timezone.utc),
        "ledger_count_mismatches": [],
        "links_for_cancelled_visits": [],
        "visits_without_links": [],
    }

    # Check 1: ledger counters that disagree with the live links
    counts = _active_link_counts(db, ctx)
    mismatched = db.query(
        models.SlotLedger, counts.c.actual_count
    ).outerjoin(
        counts, models.SlotLedger.id == counts.c.ledger_id
    ).filter(
        models.SlotLedger.tenant_id == ctx.tenant_id,
        models.SlotLedger.booked_count != func.coalesce(counts.c.actual_count, 0),
    ).all()
    for ledger, actual_count in mismatched:
        report["ledger_count_mismatches"].append({
            "ledger_id": ledger.id,
            "doctor_id": ledger.doctor_id,
            "slot_date": ledger.slot_date,
            "start_time": ledger.start_time,
            "end_time": ledger.end_time,
            "recorded_count": ledger.booked_count,
            "actual_count": int(actual_count or 0),
            "issue": f"Ledger shows {ledger.booked_count} bookings, but found {int(actual_count or 0)} active links.",
        })

    # Check 2: unreleased links held by cancelled visits
    stale_links = db.query(models.SlotOccupancy).join(
        models.Visit, models.Visit.id == models.SlotOccupancy.visit_id
    ).filter(
        models.SlotOccupancy.tenant_id == ctx.tenant_id,
        models.SlotOccupancy.released_at.is_(None),
        models.Visit.status == models.VisitStatus.cancelled,
    ).all()
    for link in stale_links:
        report["links_for_cancelled_visits"].append({
            "visit_id": link.visit_id,
            "occupancy_id": link.id,
            "issue": "Visit is cancelled but still holds its slot link.",
        })

    # Check 3: live visits with no occupancy link at all
    linked_visit_ids = select(models.SlotOccupancy.visit_id).where(
        models.SlotOccupancy.tenant_id == ctx.tenant_id,
        models.SlotOccupancy.released_at.is_(None),
    )
    unlinked = db.query(models.Visit).filter(
        models.Visit.tenant_id == ctx.tenant_id,
        models.Visit.status.in_(OPEN_VISIT_STATUSES),
        ~models.Visit.id.in_(linked_visit_ids),
    ).all()
    for visit in unlinked:
        report["visits_without_links"].append({
            "visit_id": visit.id,
            "occupancy_id": None,
            "issue": f"Visit on {visit.visit_date.isoformat()} at {visit.visit_time:%H:%M} has no slot link.",
        })

    return report


def fix_consistency_issues(db: Session, ctx: RequestContext) -> schemas.ConsistencyFixReport:
    """Release stale links, then recompute ledger counters from the remaining links."""
    issues_report = run_consistency_checks(db, ctx)
    fix_report = schemas.ConsistencyFixReport(
        checked_at=issues_report["checked_at"],
        fixed_counters=[],
        released_links=[],
        errors=[],
    )

    try:
        now = datetime.now(timezone.utc)
        for issue in issues_report["links_for_cancelled_visits"]:
            link = db.query(models.SlotOccupancy).filter(
                models.SlotOccupancy.id == issue["occupancy_id"]
            ).with_for_update().first()
            if link and link.released_at is None:
                link.released_at = now
                fix_report.released_links.append(schemas.LinkIssue(**issue))
        db.flush()

        # Counters are recomputed after link releases so both fixes agree.
        counts = {
            ledger_id: actual for ledger_id, actual in db.query(
                models.SlotOccupancy.ledger_id, func.count(models.SlotOccupancy.id)
            ).join(
                models.Visit, models.Visit.id == models.SlotOccupancy.visit_id
            ).filter(
                models.SlotOccupancy.tenant_id == ctx.tenant_id,
                models.SlotOccupancy.ledger_id.isnot(None),
                models.SlotOccupancy.released_at.is_(None),
                models.Visit.status != models.VisitStatus.cancelled,
            ).group_by(models.SlotOccupancy.ledger_id).all()
        }
        ledgers = db.query(models.SlotLedger).filter(
            models.SlotLedger.tenant_id == ctx.tenant_id
        ).with_for_update().all()
        for ledger in ledgers:
            actual = int(counts.get(ledger.id, 0))
            if ledger.booked_count != actual:
                fix_report.fixed_counters.append(schemas.LedgerIssue(
                    ledger_id=ledger.id,
                    doctor_id=ledger.doctor_id,
                    slot_date=ledger.slot_date,
                    start_time=ledger.start_time,
                    end_time=ledger.end_time,
                    recorded_count=ledger.booked_count,
                    actual_count=actual,
                    issue="Ledger counter recomputed from active links.",
                ))
                ledger.capacity = max(ledger.capacity, actual)
                ledger.booked_count = actual

        compliance_logger.log_event(
            db, ctx, models.AuditAction.UPDATE, "CONSISTENCY",
            details=f"Released {len(fix_report.released_links)} links, fixed {len(fix_report.fixed_counters)} counters",
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error during consistency fix: {e}")
        fix_report.errors.append(f"A database error occurred, rolling back all changes: {e}")

    return fix_report
