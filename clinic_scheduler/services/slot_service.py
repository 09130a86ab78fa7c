# clinic_scheduler/services/slot_service.py
"""
Expands weekly availability patterns into dated slots.

A pattern's whole start-end span is one slot with ``max_patients_per_slot``
places; ``slot_duration_minutes`` and ``buffer_time_minutes`` are kept on the
pattern for display only. Patterns sharing the exact same (start, end) on a
date are merged into one slot whose capacity is the sum of theirs.
"""
from collections import OrderedDict
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..config import get_settings
from ..context import RequestContext
from ..exceptions import ValidationError

logger = structlog.get_logger(__name__)


def weekday_index(day: date) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def matches_weekday(day_of_week: int, day: date) -> bool:
    return crud.normalize_day_of_week(day_of_week) == weekday_index(day)


def is_effective_on(pattern: models.DoctorAvailability, day: date) -> bool:
    """Both effective bounds are inclusive; no effective_until means open-ended."""
    if pattern.effective_from is not None and day < pattern.effective_from:
        return False
    if pattern.effective_until is not None and day > pattern.effective_until:
        return False
    return True


def iter_dates(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def weekdays_in_range(start_date: date, end_date: date) -> Set[int]:
    if (end_date - start_date).days >= 6:
        return set(range(7))
    return {weekday_index(day) for day in iter_dates(start_date, end_date)}


def validate_range(start_date: date, end_date: date) -> None:
    if start_date is None or end_date is None:
        raise ValidationError("start_date and end_date are required")
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date")
    max_days = get_settings().max_materialization_days
    if (end_date - start_date).days + 1 > max_days:
        raise ValidationError(f"Date range may cover at most {max_days} days")


def _merge_group(doctor_id: int, day: date, patterns: List[models.DoctorAvailability]) -> schemas.MaterializedSlot:
    availability_type = max(
        (models.AvailabilityType(p.availability_type) for p in patterns),
        key=models.AVAILABILITY_TYPE_PRECEDENCE.get,
    )
    # Only bookable duplicates contribute places; a blocking duplicate turns the slot into a marker.
    capacity = sum(
        p.max_patients_per_slot or 0
        for p in patterns
        if models.AvailabilityType(p.availability_type) not in models.NON_BOOKABLE_TYPES
    )
    return schemas.MaterializedSlot(
        doctor_id=doctor_id,
        slot_date=day,
        day_of_week=weekday_index(day),
        start_time=patterns[0].start_time,
        end_time=patterns[0].end_time,
        pattern_ids=[p.id for p in patterns],
        availability_type=availability_type,
        aggregate_capacity=capacity,
    )


def expand_patterns(
    patterns: Iterable[models.DoctorAvailability],
    start_date: date,
    end_date: date,
) -> List[schemas.MaterializedSlot]:
    """
    Pure expansion step: one slot per (date, start_time, end_time), ordered by
    date then time. Inactive patterns are ignored.
    """
    by_day: Dict[int, List[models.DoctorAvailability]] = {}
    for pattern in patterns:
        if not pattern.is_active:
            continue
        by_day.setdefault(crud.normalize_day_of_week(pattern.day_of_week), []).append(pattern)

    slots: List[schemas.MaterializedSlot] = []
    for day in iter_dates(start_date, end_date):
        candidates = [p for p in by_day.get(weekday_index(day), []) if is_effective_on(p, day)]
        if not candidates:
            continue
        groups: "OrderedDict[Tuple, List[models.DoctorAvailability]]" = OrderedDict()
        for pattern in sorted(candidates, key=lambda p: (p.start_time, p.end_time, p.id or 0)):
            groups.setdefault((pattern.start_time, pattern.end_time), []).append(pattern)
        for group in groups.values():
            doctor_id = group[0].doctor_id
            slots.append(_merge_group(doctor_id, day, group))
    return slots


def materialize_slots(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    start_date: date,
    end_date: date,
) -> List[schemas.MaterializedSlot]:
    """Dated slots for a doctor over [start_date, end_date], before occupancy is applied."""
    validate_range(start_date, end_date)
    crud.get_doctor(db, ctx, doctor_id)

    patterns = crud.get_active_patterns_for_range(
        db, ctx, doctor_id, start_date, end_date, weekdays_in_range(start_date, end_date)
    )
    slots = expand_patterns(patterns, start_date, end_date)

    merged = sum(1 for slot in slots if len(slot.pattern_ids) > 1)
    if merged:
        logger.info(
            "duplicate_patterns_merged",
            doctor_id=doctor_id, tenant_id=ctx.tenant_id, merged_slots=merged,
        )
    logger.debug(
        "slots_materialized",
        doctor_id=doctor_id, start_date=start_date.isoformat(), end_date=end_date.isoformat(),
        patterns=len(patterns), slots=len(slots),
    )
    return slots


def find_slot_for_time(slots: Iterable[schemas.MaterializedSlot], slot_date: date, at) -> Optional[schemas.MaterializedSlot]:
    """The slot on slot_date whose [start, end) contains `at`; bookable slots win, then earliest start."""
    containing = [s for s in slots if s.slot_date == slot_date and s.contains(at)]
    if not containing:
        return None
    containing.sort(key=lambda s: (not s.is_bookable, s.start_time, s.end_time))
    return containing[0]
