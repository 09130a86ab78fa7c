# tests/test_availability_store.py
from datetime import date, time

import pytest

from clinic_scheduler import crud, models, schemas
from clinic_scheduler.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from clinic_scheduler.services import booking_service

from conftest import context_for


def test_create_fills_defaults_and_audits(db, make_pattern, doctor):
    pattern = make_pattern(capacity=None)

    assert pattern.id is not None
    assert pattern.doctor_id == doctor.id
    assert pattern.is_active is True
    assert pattern.slot_duration_minutes == 30
    assert pattern.buffer_time_minutes == 5
    assert pattern.max_patients_per_slot == 1

    audit = db.query(models.AuditLog).filter(models.AuditLog.resource_id == pattern.id).one()
    assert audit.action == models.AuditAction.CREATE
    assert audit.category == "SCHEDULE"


@pytest.mark.parametrize("overrides, message", [
    ({"start": "10:00", "end": "09:00"}, "must be before"),
    ({"start": "09:00", "end": "09:00"}, "must be before"),
    ({"effective_from": date(2024, 5, 1), "effective_until": date(2024, 4, 30)}, "effective_until"),
])
def test_create_rejects_invalid_pattern(db, make_pattern, overrides, message):
    with pytest.raises(ValidationError, match=message):
        make_pattern(**overrides)
    assert db.query(models.DoctorAvailability).count() == 0


def test_validate_pattern_values_rejects_bad_day_and_negative_counts():
    common = dict(
        start_time=time(9), end_time=time(10), effective_from=date(2024, 1, 1), effective_until=None,
        slot_duration_minutes=30, buffer_time_minutes=5, max_patients_per_slot=1,
    )
    with pytest.raises(ValidationError, match="day_of_week"):
        crud.validate_pattern_values(day_of_week=8, **common)
    with pytest.raises(ValidationError, match="max_patients_per_slot"):
        crud.validate_pattern_values(day_of_week=1, **{**common, "max_patients_per_slot": -1})


def test_doctor_manages_own_schedule_only(db, make_pattern, doctor, second_doctor, doctor_ctx):
    own = make_pattern(ctx=doctor_ctx)
    assert own.created_by == doctor.id

    with pytest.raises(AuthorizationError):
        make_pattern(doctor_id=second_doctor.id, ctx=doctor_ctx)


def test_receptionist_cannot_mutate_patterns(db, make_pattern, reception_ctx):
    pattern = make_pattern()

    with pytest.raises(AuthorizationError):
        make_pattern(ctx=reception_ctx)
    with pytest.raises(AuthorizationError):
        crud.update_availability(db, reception_ctx, pattern.id, schemas.AvailabilityUpdate(max_patients_per_slot=4))
    with pytest.raises(AuthorizationError):
        crud.delete_availability(db, reception_ctx, pattern.id)


def test_manager_may_edit_any_doctor(db, make_pattern, manager):
    pattern = make_pattern(ctx=context_for(manager))
    updated = crud.update_availability(
        db, context_for(manager), pattern.id, schemas.AvailabilityUpdate(max_patients_per_slot=3)
    )
    assert updated.max_patients_per_slot == 3
    assert updated.updated_by == manager.id


def test_other_tenant_cannot_see_or_use_patterns(db, make_pattern, foreign_ctx, doctor):
    pattern = make_pattern()

    with pytest.raises(NotFoundError):
        crud.get_availability(db, foreign_ctx, pattern.id)
    assert crud.list_availability(db, foreign_ctx) == []


def test_create_for_unknown_doctor_is_not_found(db, make_pattern, admin_ctx, receptionist):
    with pytest.raises(NotFoundError):
        make_pattern(doctor_id=receptionist.id)


def test_batch_creates_one_record_per_block(db, admin_ctx, doctor):
    blocks = [
        schemas.AvailabilityBlock(day_of_week=1, start_time=time(9), end_time=time(12)),
        schemas.AvailabilityBlock(day_of_week=1, start_time=time(14), end_time=time(17)),
        schemas.AvailabilityBlock(day_of_week=3, start_time=time(9), end_time=time(12)),
    ]
    created = crud.create_availability_batch(db, admin_ctx, doctor.id, blocks)

    assert len(created) == 3
    assert {p.doctor_id for p in created} == {doctor.id}
    audit = db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.BULK_ACTION).one()
    assert "3 availability blocks" in audit.details


def test_batch_rejects_overlapping_blocks_and_writes_nothing(db, admin_ctx, doctor):
    blocks = [
        schemas.AvailabilityBlock(day_of_week=1, start_time=time(9), end_time=time(12)),
        schemas.AvailabilityBlock(day_of_week=1, start_time=time(11), end_time=time(13)),
    ]
    with pytest.raises(ValidationError, match="cannot overlap"):
        crud.create_availability_batch(db, admin_ctx, doctor.id, blocks)
    assert db.query(models.DoctorAvailability).count() == 0


def test_batch_treats_seven_and_zero_as_the_same_day(db, admin_ctx, doctor):
    blocks = [
        schemas.AvailabilityBlock(day_of_week=0, start_time=time(9), end_time=time(12)),
        schemas.AvailabilityBlock(day_of_week=7, start_time=time(10), end_time=time(11)),
    ]
    with pytest.raises(ValidationError):
        crud.create_availability_batch(db, admin_ctx, doctor.id, blocks)


def test_batch_allows_adjacent_blocks(db, admin_ctx, doctor):
    blocks = [
        schemas.AvailabilityBlock(day_of_week=2, start_time=time(9), end_time=time(10)),
        schemas.AvailabilityBlock(day_of_week=2, start_time=time(10), end_time=time(11)),
    ]
    assert len(crud.create_availability_batch(db, admin_ctx, doctor.id, blocks)) == 2


def test_batch_replace_existing_deactivates_submitted_days(db, admin_ctx, doctor, make_pattern):
    monday = make_pattern(day_of_week=1)
    tuesday = make_pattern(day_of_week=2)

    crud.create_availability_batch(db, admin_ctx, doctor.id, [
        schemas.AvailabilityBlock(day_of_week=1, start_time=time(13), end_time=time(15)),
    ], replace_existing=True)

    db.refresh(monday)
    db.refresh(tuesday)
    assert monday.is_active is False
    assert tuesday.is_active is True
    active_monday = crud.list_availability(db, admin_ctx, doctor_id=doctor.id, day_of_week=1)
    assert [(p.start_time, p.end_time) for p in active_monday] == [(time(13), time(15))]


def test_list_is_ordered_by_day_then_start(db, admin_ctx, make_pattern):
    make_pattern(day_of_week=3, start="08:00", end="09:00")
    make_pattern(day_of_week=1, start="14:00", end="15:00")
    make_pattern(day_of_week=1, start="09:00", end="10:00")

    listed = crud.list_availability(db, admin_ctx)
    assert [(p.day_of_week, p.start_time) for p in listed] == [
        (1, time(9)), (1, time(14)), (3, time(8)),
    ]


def test_list_sunday_filter_includes_legacy_seven(db, admin_ctx, make_pattern):
    make_pattern(day_of_week=0, start="09:00", end="10:00")
    make_pattern(day_of_week=7, start="11:00", end="12:00")
    make_pattern(day_of_week=6)

    assert len(crud.list_availability(db, admin_ctx, day_of_week=0)) == 2
    assert len(crud.list_availability(db, admin_ctx, day_of_week=7)) == 2


def test_update_validates_merged_values(db, admin_ctx, make_pattern):
    pattern = make_pattern(start="09:00", end="10:00")

    with pytest.raises(ValidationError):
        crud.update_availability(db, admin_ctx, pattern.id, schemas.AvailabilityUpdate(start_time=time(11)))
    db.refresh(pattern)
    assert pattern.start_time == time(9)


def test_deactivate_keeps_record_but_hides_it(db, admin_ctx, make_pattern):
    pattern = make_pattern()

    crud.deactivate_availability(db, admin_ctx, pattern.id)

    assert crud.get_availability(db, admin_ctx, pattern.id).is_active is False
    assert crud.list_availability(db, admin_ctx) == []
    assert len(crud.list_availability(db, admin_ctx, active_only=False)) == 1


def test_delete_without_bookings(db, admin_ctx, make_pattern):
    pattern = make_pattern()

    result = crud.delete_availability(db, admin_ctx, pattern.id)

    assert result == {"pattern_id": pattern.id, "deleted": True, "cancelled_visit_ids": []}
    with pytest.raises(NotFoundError):
        crud.get_availability(db, admin_ctx, pattern.id)


def test_delete_with_future_booking_is_rejected(db, admin_ctx, make_pattern, book, patient):
    pattern = make_pattern()
    visit = book(patient, "09:00")

    with pytest.raises(ConflictError) as excinfo:
        crud.delete_availability(db, admin_ctx, pattern.id)

    assert excinfo.value.reason == ConflictError.FUTURE_BOOKINGS
    assert excinfo.value.conflicting_start == time(9)
    assert crud.get_availability(db, admin_ctx, pattern.id) is not None
    assert crud.get_visit(db, admin_ctx, visit.id).status == models.VisitStatus.scheduled


def test_delete_with_cascade_cancels_future_bookings(db, admin_ctx, make_pattern, book, patient):
    pattern = make_pattern()
    visit = book(patient, "09:00")

    result = crud.delete_availability(db, admin_ctx, pattern.id, cascade_cancel=True)

    assert result["cancelled_visit_ids"] == [visit.id]
    cancelled = crud.get_visit(db, admin_ctx, visit.id)
    assert cancelled.status == models.VisitStatus.cancelled
    assert "was deleted" in cancelled.cancellation_reason
    link = db.query(models.SlotOccupancy).filter(models.SlotOccupancy.visit_id == visit.id).one()
    assert link.pattern_id is None
    assert link.released_at is not None


def test_delete_keeps_bookings_covered_by_a_duplicate(db, admin_ctx, make_pattern, book, patient):
    first = make_pattern()
    second = make_pattern()
    visit = book(patient, "09:00")

    result = crud.delete_availability(db, admin_ctx, first.id)

    assert result["cancelled_visit_ids"] == []
    link = db.query(models.SlotOccupancy).filter(models.SlotOccupancy.visit_id == visit.id).one()
    assert link.pattern_id == second.id
    assert crud.get_visit(db, admin_ctx, visit.id).status == models.VisitStatus.scheduled


def test_delete_ignores_cancelled_visits(db, admin_ctx, reception_ctx, make_pattern, book, patient):
    pattern = make_pattern()
    visit = book(patient, "09:00")
    booking_service.cancel_visit(db, reception_ctx, visit.id, "patient called")

    result = crud.delete_availability(db, admin_ctx, pattern.id)
    assert result["deleted"] is True


def test_search_patients_matches_name_and_phone(db, admin_ctx, patient, second_patient, foreign_patient):
    assert [p.id for p in crud.search_patients(db, admin_ctx, "priya")] == [patient.id]
    assert [p.id for p in crud.search_patients(db, admin_ctx, "500002")] == [second_patient.id]
    # "Far" also matches the other tenant's patient, which must stay hidden.
    assert [p.id for p in crud.search_patients(db, admin_ctx, "Far")] == [second_patient.id]


def test_list_doctors_is_tenant_scoped(db, admin_ctx, doctor, second_doctor, foreign_doctor):
    names = [d.full_name for d in crud.list_doctors(db, admin_ctx)]
    assert names == ["Dev Rao", "Kim Lee"]
