# tests/test_booking_service.py
from datetime import time, timedelta
from decimal import Decimal

import pytest

from clinic_scheduler import crud, models, schemas
from clinic_scheduler.exceptions import ConflictError, NotFoundError, ValidationError
from clinic_scheduler.services import booking_service, occupancy_service

from conftest import MONDAY


def _ledger_counts(db):
    db.expire_all()
    return [(l.start_time, l.booked_count, l.capacity) for l in db.query(models.SlotLedger).order_by(models.SlotLedger.start_time)]


def test_duplicate_patterns_double_capacity_then_exhaust(db, reception_ctx, make_pattern, book, patient, second_patient, third_patient):
    make_pattern(capacity=1)
    make_pattern(capacity=1)

    first = book(patient, "09:00")
    second = book(second_patient, "09:30")

    assert first.status == models.VisitStatus.scheduled
    assert second.status == models.VisitStatus.scheduled
    with pytest.raises(ConflictError, match="capacity exhausted") as excinfo:
        book(third_patient, "09:45")
    assert excinfo.value.reason == ConflictError.CAPACITY_EXHAUSTED
    assert excinfo.value.conflicting_start == time(9)
    assert excinfo.value.conflicting_end == time(10)
    assert _ledger_counts(db) == [(time(9), 2, 2)]
    assert db.query(models.Visit).count() == 2


def test_booking_writes_visit_link_ledger_and_audit(db, doctor, make_pattern, book, patient):
    pattern = make_pattern()

    visit = book(patient, "09:00")

    assert visit.visit_number == f"VIS-20290101-{visit.id:06d}"
    assert visit.duration_minutes == 30
    assert visit.consultation_fee == Decimal("0")
    link = db.query(models.SlotOccupancy).filter(models.SlotOccupancy.visit_id == visit.id).one()
    assert link.pattern_id == pattern.id
    assert (link.slot_date, link.start_time, link.end_time) == (MONDAY, time(9), time(10))
    assert link.released_at is None
    assert link.ledger.booked_count == 1
    audit = db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.BOOK).one()
    assert audit.resource_id == visit.id


def test_overlapping_visits_are_rejected_even_with_spare_capacity(db, make_pattern, book, patient, second_patient):
    make_pattern(capacity=3)
    book(patient, "09:00")

    with pytest.raises(ConflictError) as excinfo:
        book(second_patient, "09:15")

    assert excinfo.value.reason == ConflictError.TIME_OVERLAP
    assert (excinfo.value.conflicting_start, excinfo.value.conflicting_end) == (time(9), time(9, 30))
    assert "09:00-09:30" in excinfo.value.message


def test_adjacent_visits_do_not_conflict(db, make_pattern, book, patient, second_patient):
    make_pattern(capacity=2)
    book(patient, "09:00")
    assert book(second_patient, "09:30").visit_time == time(9, 30)


def test_same_start_is_rejected(db, make_pattern, book, patient, second_patient):
    make_pattern(capacity=2)
    book(patient, "09:00")
    with pytest.raises(ConflictError):
        book(second_patient, "09:00")


def test_no_availability_covers_time(db, make_pattern, book, patient):
    make_pattern()
    with pytest.raises(ConflictError) as excinfo:
        book(patient, "14:00")
    assert excinfo.value.reason == ConflictError.NO_AVAILABILITY


def test_visit_may_not_run_past_slot_end(db, make_pattern, book, patient):
    make_pattern()
    with pytest.raises(ConflictError) as excinfo:
        book(patient, "09:45", duration=30)
    assert excinfo.value.reason == ConflictError.OUTSIDE_SLOT
    assert excinfo.value.conflicting_end == time(10)


def test_overlapping_pattern_covers_visit_past_earlier_block(db, admin_ctx, doctor, make_pattern, book, patient, second_patient):
    make_pattern(start="09:00", end="10:00")
    make_pattern(start="09:30", end="11:00", capacity=2)

    visit = book(patient, "09:45", duration=30)

    link = db.query(models.SlotOccupancy).filter(models.SlotOccupancy.visit_id == visit.id).one()
    assert (link.start_time, link.end_time) == (time(9, 30), time(11))
    assert _ledger_counts(db) == [(time(9, 30), 1, 2)]
    early, late = occupancy_service.resolve_occupancy(db, admin_ctx, doctor.id, MONDAY, MONDAY).slots
    assert (early.start_time, early.booked_count) == (time(9), 0)
    assert (late.start_time, late.booked_count) == (time(9, 30), 1)

    with pytest.raises(ConflictError) as excinfo:
        book(second_patient, "10:45", duration=30)
    assert excinfo.value.reason == ConflictError.OUTSIDE_SLOT
    assert excinfo.value.conflicting_end == time(11)


def test_break_blocks_booking(db, make_pattern, book, patient, second_patient):
    make_pattern(start="09:00", end="13:00", capacity=4)
    make_pattern(start="12:00", end="13:00", availability_type=models.AvailabilityType.break_)

    with pytest.raises(ConflictError) as inside:
        book(patient, "12:15")
    assert inside.value.reason == ConflictError.BLOCKED_PERIOD

    with pytest.raises(ConflictError) as overlapping:
        book(second_patient, "11:45")
    assert overlapping.value.reason == ConflictError.BLOCKED_PERIOD
    assert overlapping.value.conflicting_start == time(12)

    assert book(patient, "11:30").visit_time == time(11, 30)


def test_patient_cannot_be_double_booked_across_doctors(db, admin_ctx, doctor, second_doctor, make_pattern, book, patient):
    make_pattern()
    make_pattern(doctor_id=second_doctor.id)
    book(patient, "09:00")

    with pytest.raises(ConflictError, match="already has a visit") as excinfo:
        book(patient, "09:15", doctor_id=second_doctor.id)
    assert excinfo.value.reason == ConflictError.TIME_OVERLAP


def test_capacity_never_exceeded(db, admin_ctx, doctor, make_pattern, book, patient, second_patient, third_patient):
    make_pattern(start="09:00", end="12:00", capacity=2)
    patients = [patient, second_patient, third_patient]
    accepted = 0
    for index, at in enumerate(["09:00", "09:30", "10:00", "10:30"]):
        try:
            book(patients[index % 3], at)
            accepted += 1
        except ConflictError as e:
            assert e.reason == ConflictError.CAPACITY_EXHAUSTED
        slot = occupancy_service.resolve_occupancy(db, admin_ctx, doctor.id, MONDAY, MONDAY).slots[0]
        assert slot.booked_count <= slot.aggregate_capacity
    assert accepted == 2


def test_ledger_guard_rejects_when_counter_is_full(db, reception_ctx, make_pattern, book, patient, second_patient):
    make_pattern(capacity=2)
    book(patient, "09:00")
    # Simulate a concurrent writer that took the last place after our live check.
    ledger = db.query(models.SlotLedger).one()
    ledger.booked_count = 2
    db.commit()

    with pytest.raises(ConflictError, match="capacity exhausted"):
        book(second_patient, "09:30")
    assert db.query(models.Visit).count() == 1


def test_unique_start_index_conflict_is_a_booking_conflict(db, make_pattern, book, patient, second_patient, monkeypatch):
    make_pattern(capacity=2)
    book(patient, "09:00")
    # Live reads miss the committed visit, as a concurrent writer's would.
    monkeypatch.setattr(crud, "get_live_visits", lambda *args, **kwargs: [])

    with pytest.raises(ConflictError, match="Another booking") as excinfo:
        book(second_patient, "09:00")
    assert excinfo.value.reason == ConflictError.TIME_OVERLAP
    assert db.query(models.Visit).count() == 1
    assert _ledger_counts(db) == [(time(9), 1, 2)]


def test_overlap_committed_during_claim_is_rejected(db, make_pattern, book, patient, second_patient, monkeypatch):
    make_pattern(capacity=2)
    original_claim = booking_service._claim_capacity

    def claim_after_competing_booking(db_, ctx, slot):
        monkeypatch.setattr(booking_service, "_claim_capacity", original_claim)
        book(second_patient, "09:00")
        return original_claim(db_, ctx, slot)

    monkeypatch.setattr(booking_service, "_claim_capacity", claim_after_competing_booking)

    with pytest.raises(ConflictError) as excinfo:
        book(patient, "09:15")
    assert excinfo.value.reason == ConflictError.TIME_OVERLAP
    assert (excinfo.value.conflicting_start, excinfo.value.conflicting_end) == (time(9), time(9, 30))
    assert db.query(models.Visit).count() == 1
    assert _ledger_counts(db) == [(time(9), 1, 2)]


def test_booking_validation_errors(db, reception_ctx, doctor, make_pattern, book, patient, foreign_patient):
    make_pattern(start="00:00", end="23:59")
    with pytest.raises(ValidationError, match="same day|day it starts"):
        book(patient, "23:30", duration=60)
    with pytest.raises(NotFoundError):
        book(foreign_patient, "09:00")


def test_tenant_isolation(db, foreign_ctx, make_pattern, book, patient, foreign_patient, doctor):
    make_pattern()
    with pytest.raises(NotFoundError):
        book(foreign_patient, "09:00", ctx=foreign_ctx)
    assert db.query(models.Visit).count() == 0


def test_cancel_frees_capacity_and_keeps_row(db, reception_ctx, make_pattern, book, patient, second_patient):
    make_pattern()
    visit = book(patient, "09:00")

    cancelled = booking_service.cancel_visit(db, reception_ctx, visit.id, "patient called")

    assert cancelled.status == models.VisitStatus.cancelled
    assert cancelled.cancellation_reason == "patient called"
    assert cancelled.cancelled_by == reception_ctx.user_id
    assert cancelled.cancelled_at is not None
    assert crud.get_visit(db, reception_ctx, visit.id) is not None
    assert _ledger_counts(db) == [(time(9), 0, 1)]
    rebooked = book(second_patient, "09:00")
    assert rebooked.status == models.VisitStatus.scheduled


def test_cancel_twice_is_rejected(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    visit = book(patient, "09:00")
    booking_service.cancel_visit(db, reception_ctx, visit.id)

    with pytest.raises(ValidationError):
        booking_service.cancel_visit(db, reception_ctx, visit.id)
    assert _ledger_counts(db) == [(time(9), 0, 1)]


def test_reschedule_within_own_full_slot(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    visit = book(patient, "09:00")

    moved = booking_service.reschedule_visit(db, reception_ctx, visit.id, MONDAY, time(9, 15))

    assert moved.visit_time == time(9, 15)
    assert _ledger_counts(db) == [(time(9), 1, 1)]
    assert db.query(models.SlotOccupancy).count() == 1


def test_reschedule_moves_capacity_between_slots(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    make_pattern(start="10:00", end="11:00")
    visit = book(patient, "09:00")

    moved = booking_service.reschedule_visit(db, reception_ctx, visit.id, MONDAY, time(10))

    link = db.query(models.SlotOccupancy).filter(models.SlotOccupancy.visit_id == moved.id).one()
    assert (link.start_time, link.end_time, link.released_at) == (time(10), time(11), None)
    assert _ledger_counts(db) == [(time(9), 0, 1), (time(10), 1, 1)]
    audit = db.query(models.AuditLog).filter(models.AuditLog.action == models.AuditAction.RESCHEDULE).one()
    assert "09:00" in audit.details


def test_reschedule_onto_taken_time_keeps_original(db, reception_ctx, make_pattern, book, patient, second_patient):
    make_pattern()
    make_pattern(start="10:00", end="11:00")
    visit = book(patient, "09:00")
    book(second_patient, "10:00")

    with pytest.raises(ConflictError):
        booking_service.reschedule_visit(db, reception_ctx, visit.id, MONDAY, time(10))

    unchanged = crud.get_visit(db, reception_ctx, visit.id)
    assert unchanged.visit_time == time(9)
    assert _ledger_counts(db) == [(time(9), 1, 1), (time(10), 1, 1)]


def test_reschedule_to_another_day(db, reception_ctx, make_pattern, book, patient):
    make_pattern(day_of_week=1)
    make_pattern(day_of_week=2)
    visit = book(patient, "09:00")

    moved = booking_service.reschedule_visit(db, reception_ctx, visit.id, MONDAY + timedelta(days=1), time(9))

    assert moved.visit_date == MONDAY + timedelta(days=1)
    assert moved.visit_number.startswith("VIS-20290101-")


def test_only_scheduled_visits_can_be_rescheduled(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    visit = book(patient, "09:00")
    booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.in_progress)

    with pytest.raises(ValidationError):
        booking_service.reschedule_visit(db, reception_ctx, visit.id, MONDAY, time(9, 30))


def test_status_flow(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    visit = book(patient, "09:00")

    with pytest.raises(ValidationError):
        booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.completed)

    booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.in_progress)
    done = booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.completed)
    assert done.status == models.VisitStatus.completed

    with pytest.raises(ValidationError):
        booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.cancelled)
    with pytest.raises(ValidationError):
        booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.scheduled)
    assert _ledger_counts(db) == [(time(9), 1, 1)]


def test_in_progress_visit_can_be_cancelled(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    visit = book(patient, "09:00")
    booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.in_progress)

    cancelled = booking_service.update_visit_status(db, reception_ctx, visit.id, models.VisitStatus.cancelled, "no show")

    assert cancelled.cancellation_reason == "no show"
    assert _ledger_counts(db) == [(time(9), 0, 1)]


def test_update_visit_details_leaves_schedule_alone(db, reception_ctx, make_pattern, book, patient):
    make_pattern()
    visit = book(patient, "09:00")

    updated = crud.update_visit(db, reception_ctx, visit.id, schemas.VisitUpdate(
        consultation_fee=Decimal("500.00"), payment_status=models.PaymentStatus.paid, notes="follow-up in 2 weeks",
    ))

    assert updated.consultation_fee == Decimal("500.00")
    assert updated.payment_status == models.PaymentStatus.paid
    assert updated.visit_time == time(9)


def test_consistency_check_and_fix(db, admin_ctx, reception_ctx, make_pattern, book, patient, second_patient):
    make_pattern(capacity=2)
    visit = book(patient, "09:00")
    book(second_patient, "09:30")
    ledger = db.query(models.SlotLedger).one()
    ledger.booked_count = 0
    db.query(models.Visit).filter(models.Visit.id == visit.id).update({"status": models.VisitStatus.cancelled})
    db.commit()

    report = crud.run_consistency_checks(db, admin_ctx)
    assert [i["recorded_count"] for i in report["ledger_count_mismatches"]] == [0]
    assert [i["visit_id"] for i in report["links_for_cancelled_visits"]] == [visit.id]
    assert report["visits_without_links"] == []

    fixed = crud.fix_consistency_issues(db, admin_ctx)
    assert [i.visit_id for i in fixed.released_links] == [visit.id]
    assert [i.actual_count for i in fixed.fixed_counters] == [1]
    assert fixed.errors == []

    clean = crud.run_consistency_checks(db, admin_ctx)
    assert clean["ledger_count_mismatches"] == []
    assert clean["links_for_cancelled_visits"] == []
