# clinic_scheduler/services/occupancy_service.py
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..config import get_settings
from ..context import RequestContext
from ..exceptions import ValidationError
from . import slot_service

logger = structlog.get_logger(__name__)

SLOT_STATUS_AVAILABLE = "available"
SLOT_STATUS_PARTIAL = "partially_booked"
SLOT_STATUS_FULL = "fully_booked"
SLOT_STATUS_BLOCKED = "blocked"


@dataclass
class OccupancyResult:
    slots: List[schemas.SlotAvailability] = field(default_factory=list)
    orphaned_visits: List[schemas.VisitSummary] = field(default_factory=list)


def _slot_status(slot: schemas.MaterializedSlot, booked: int) -> str:
    if not slot.is_bookable:
        return SLOT_STATUS_BLOCKED
    if booked >= slot.aggregate_capacity:
        return SLOT_STATUS_FULL
    if booked > 0:
        return SLOT_STATUS_PARTIAL
    return SLOT_STATUS_AVAILABLE


def _linked_slot(keyed, visit: models.Visit) -> Optional[schemas.MaterializedSlot]:
    # The slot recorded at booking time, while it still exists and still contains the visit.
    link = getattr(visit, "occupancy", None)
    if link is None or link.released_at is not None:
        return None
    slot = keyed.get((visit.doctor_id, link.slot_date, link.start_time, link.end_time))
    if slot is None or not slot.is_bookable or slot.slot_date != visit.visit_date or not slot.contains(visit.visit_time):
        return None
    return slot


def overlay_visits(
    slots: Iterable[schemas.MaterializedSlot],
    visits: Iterable[models.Visit],
) -> OccupancyResult:
    """
    Assign every live visit to the slot it is linked to, or else to the slot
    containing its start time, and count it.
    A visit that fits no slot is returned as an orphan instead of being dropped.
    """
    keyed: "Dict[Tuple, schemas.MaterializedSlot]" = {}
    for slot in slots:
        # Keys are unique by construction; first one wins if a caller passes repeats.
        keyed.setdefault(slot.key, slot)

    by_date: Dict[date, List[schemas.MaterializedSlot]] = {}
    for slot in keyed.values():
        by_date.setdefault(slot.slot_date, []).append(slot)

    occupants: Dict[Tuple, List[schemas.VisitSummary]] = {key: [] for key in keyed}
    orphans: List[schemas.VisitSummary] = []
    for visit in visits:
        if visit.status == models.VisitStatus.cancelled:
            continue
        summary = schemas.VisitSummary.model_validate(visit)
        slot = _linked_slot(keyed, visit)
        if slot is None:
            slot = slot_service.find_slot_for_time(by_date.get(visit.visit_date, []), visit.visit_date, visit.visit_time)
        if slot is None:
            orphans.append(summary)
            continue
        occupants[slot.key].append(summary)

    result = OccupancyResult(orphaned_visits=orphans)
    for key, slot in keyed.items():
        booked = len(occupants[key])
        remaining = max(slot.aggregate_capacity - booked, 0) if slot.is_bookable else 0
        result.slots.append(schemas.SlotAvailability(
            **slot.model_dump(),
            booked_count=booked,
            remaining_capacity=remaining,
            is_available=slot.is_bookable and booked < slot.aggregate_capacity,
            status=_slot_status(slot, booked),
            occupants=occupants[key],
        ))
    result.slots.sort(key=lambda s: (s.slot_date, s.start_time, s.end_time))
    return result


def resolve_occupancy(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    start_date: date,
    end_date: date,
    include_unavailable: bool = True,
) -> OccupancyResult:
    """Materialized slots for the range with live bookings overlaid."""
    slots = slot_service.materialize_slots(db, ctx, doctor_id, start_date, end_date)
    visits = crud.get_live_visits(db, ctx, doctor_id, start_date, end_date)
    result = overlay_visits(slots, visits)

    for orphan in result.orphaned_visits:
        logger.warning(
            "orphaned_visit",
            tenant_id=ctx.tenant_id, doctor_id=doctor_id, visit_id=orphan.id,
            visit_date=orphan.visit_date.isoformat(), visit_time=orphan.visit_time.isoformat(),
        )

    if not include_unavailable:
        result.slots = [s for s in result.slots if s.is_available]
    return result


def get_available_slots(db: Session, ctx: RequestContext, doctor_id: int, start_date: date, end_date: date) -> List[schemas.SlotAvailability]:
    return resolve_occupancy(db, ctx, doctor_id, start_date, end_date, include_unavailable=False).slots


def check_slot_available(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    slot_date: date,
    at: time,
) -> Tuple[bool, Optional[str], Optional[schemas.SlotAvailability]]:
    """(available, reason, slot) for the slot containing `at` on slot_date."""
    result = resolve_occupancy(db, ctx, doctor_id, slot_date, slot_date)
    slot = slot_service.find_slot_for_time(result.slots, slot_date, at)
    if slot is None:
        return False, "Slot not found", None
    if not slot.is_bookable:
        return False, "Slot is not available", slot
    if not slot.is_available:
        return False, "Slot is fully booked", slot
    return True, None, slot


def next_available_slot(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    from_date: Optional[date] = None,
    days_ahead: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Optional[schemas.SlotAvailability]:
    """First slot with free capacity on/after from_date; slots already ended today are skipped."""
    settings = get_settings()
    now = now or datetime.now()
    from_date = from_date or now.date()
    if days_ahead is None:
        days_ahead = settings.next_slot_search_days
    if days_ahead < 1:
        raise ValidationError("days_ahead must be at least 1")
    window = min(days_ahead, settings.max_materialization_days)
    end_date = from_date + timedelta(days=window - 1)

    for slot in get_available_slots(db, ctx, doctor_id, from_date, end_date):
        if slot.slot_date == now.date() and slot.end_time <= now.time():
            continue
        return slot
    return None


def availability_stats(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    start_date: date,
    end_date: date,
) -> schemas.AvailabilityStats:
    result = resolve_occupancy(db, ctx, doctor_id, start_date, end_date)
    bookable = [s for s in result.slots if s.is_bookable]
    total_capacity = sum(s.aggregate_capacity for s in bookable)
    booked = sum(s.booked_count for s in bookable)
    remaining = sum(s.remaining_capacity for s in bookable)
    booking_rate = round(booked / total_capacity * 100, 2) if total_capacity else 0.0
    return schemas.AvailabilityStats(
        doctor_id=doctor_id,
        start_date=start_date,
        end_date=end_date,
        total_slots=len(bookable),
        blocked_slots=len(result.slots) - len(bookable),
        total_capacity=total_capacity,
        booked=booked,
        remaining=remaining,
        booking_rate=booking_rate,
        orphaned_visits=len(result.orphaned_visits),
    )
