# clinic_scheduler/services/calendar_service.py
from datetime import date, datetime, timedelta
from typing import Dict, List

from sqlalchemy.orm import Session

from .. import crud, schemas
from ..context import RequestContext
from . import occupancy_service

STATUS_COLORS = {
    "scheduled": "#3b82f6",
    "in_progress": "#f59e0b",
    "completed": "#10b981",
    "cancelled": "#ef4444",
}
SLOT_COLORS = {
    occupancy_service.SLOT_STATUS_AVAILABLE: "#d1fae5",
    occupancy_service.SLOT_STATUS_PARTIAL: "#fef3c7",
    occupancy_service.SLOT_STATUS_FULL: "#e5e7eb",
    occupancy_service.SLOT_STATUS_BLOCKED: "#9ca3af",
}
ORPHAN_COLOR = "#a855f7"


def _visit_event(visit: schemas.VisitSummary, patient_names: Dict[int, str], kind: str) -> schemas.CalendarEvent:
    start = datetime.combine(visit.visit_date, visit.visit_time)
    title = patient_names.get(visit.patient_id, f"Patient {visit.patient_id}")
    if kind == "orphan":
        title = f"{title} (outside schedule)"
    return schemas.CalendarEvent(
        id=f"visit-{visit.id}",
        kind=kind,
        title=title,
        start=start,
        end=start + timedelta(minutes=visit.duration_minutes),
        color=ORPHAN_COLOR if kind == "orphan" else STATUS_COLORS.get(visit.status.value, "#6b7280"),
        visit_id=visit.id,
        status=visit.status.value,
    )


def layout_events(events: List[schemas.CalendarEvent]) -> List[schemas.CalendarEvent]:
    """
    Assign side-by-side columns to overlapping events of each day. Events that
    transitively overlap form a cluster; every event in a cluster gets the
    cluster's column count so they render at equal widths.
    """
    ordered = sorted(events, key=lambda e: (e.start, e.end, e.id))
    cluster: List[schemas.CalendarEvent] = []
    columns_end: List[datetime] = []
    cluster_end = None

    def close_cluster():
        for event in cluster:
            event.column_count = len(columns_end)

    for event in ordered:
        if cluster and (event.start >= cluster_end or event.start.date() != cluster[0].start.date()):
            close_cluster()
            cluster, columns_end, cluster_end = [], [], None
        for index, column_end in enumerate(columns_end):
            if column_end <= event.start:
                event.column = index
                columns_end[index] = event.end
                break
        else:
            event.column = len(columns_end)
            columns_end.append(event.end)
        cluster.append(event)
        cluster_end = event.end if cluster_end is None else max(cluster_end, event.end)
    if cluster:
        close_cluster()
    return ordered


def build_calendar(
    db: Session,
    ctx: RequestContext,
    doctor_id: int,
    start_date: date,
    end_date: date,
) -> List[schemas.CalendarEvent]:
    """Availability blocks, blocked periods, booked visits and orphaned visits as calendar events."""
    result = occupancy_service.resolve_occupancy(db, ctx, doctor_id, start_date, end_date)

    patient_ids = {v.patient_id for slot in result.slots for v in slot.occupants}
    patient_ids.update(v.patient_id for v in result.orphaned_visits)
    patient_names = crud.get_patient_names(db, ctx, patient_ids)

    events: List[schemas.CalendarEvent] = []
    for slot in result.slots:
        kind = "availability" if slot.is_bookable else "blocked"
        if slot.is_bookable:
            title = f"{slot.booked_count}/{slot.aggregate_capacity} booked"
        else:
            title = slot.availability_type.value.capitalize()
        events.append(schemas.CalendarEvent(
            id=f"slot-{slot.slot_date.isoformat()}-{slot.start_time:%H%M}-{slot.end_time:%H%M}",
            kind=kind,
            title=title,
            start=datetime.combine(slot.slot_date, slot.start_time),
            end=datetime.combine(slot.slot_date, slot.end_time),
            color=SLOT_COLORS[slot.status],
            status=slot.status,
        ))
        events.extend(_visit_event(v, patient_names, "visit") for v in slot.occupants)
    events.extend(_visit_event(v, patient_names, "orphan") for v in result.orphaned_visits)
    return layout_events(events)
