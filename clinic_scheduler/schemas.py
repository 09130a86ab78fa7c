# clinic_scheduler/schemas.py
from datetime import datetime, date, time
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from .models import AvailabilityType, PaymentStatus, UserRole, VisitStatus


class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# --- Directory Schemas ---
class UserResponse(BaseSchema):
    id: int
    tenant_id: int
    username: str
    full_name: str
    role: UserRole
    specialization: Optional[str] = None
    is_active: bool


class PatientResponse(BaseSchema):
    id: int
    first_name: str
    last_name: Optional[str] = None
    name: str
    phone_number: Optional[str] = None
    email: Optional[str] = None
    date_of_birth: Optional[date] = None


# --- Availability Pattern Schemas ---
class AvailabilityBase(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=7, description="0 = Sunday; 7 is accepted as Sunday")
    start_time: time
    end_time: time
    slot_duration_minutes: Optional[int] = Field(default=None, ge=0)
    buffer_time_minutes: Optional[int] = Field(default=None, ge=0)
    max_patients_per_slot: Optional[int] = Field(default=None, ge=0)
    availability_type: AvailabilityType = AvailabilityType.regular
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    notes: Optional[str] = None


class AvailabilityCreate(AvailabilityBase):
    doctor_id: int


class AvailabilityBlock(AvailabilityBase):
    """One contiguous time block of a weekly schedule submission."""
    pass


class AvailabilityBatchCreate(BaseSchema):
    doctor_id: int
    blocks: List[AvailabilityBlock] = Field(..., min_length=1)
    replace_existing: bool = False


class AvailabilityUpdate(BaseSchema):
    day_of_week: Optional[int] = Field(default=None, ge=0, le=7)
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    slot_duration_minutes: Optional[int] = Field(default=None, ge=0)
    buffer_time_minutes: Optional[int] = Field(default=None, ge=0)
    max_patients_per_slot: Optional[int] = Field(default=None, ge=0)
    availability_type: Optional[AvailabilityType] = None
    effective_from: Optional[date] = None
    effective_until: Optional[date] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = None


class AvailabilityResponse(BaseSchema):
    id: int
    tenant_id: int
    doctor_id: int
    day_of_week: int
    start_time: time
    end_time: time
    slot_duration_minutes: int
    buffer_time_minutes: int
    max_patients_per_slot: int
    availability_type: AvailabilityType
    effective_from: date
    effective_until: Optional[date] = None
    is_active: bool
    notes: Optional[str] = None
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AvailabilityDeleteResult(BaseSchema):
    pattern_id: int
    deleted: bool
    cancelled_visit_ids: List[int] = []


# --- Slot Schemas ---
class MaterializedSlot(BaseSchema):
    doctor_id: int
    slot_date: date
    day_of_week: int
    start_time: time
    end_time: time
    pattern_ids: List[int]
    availability_type: AvailabilityType
    aggregate_capacity: int

    @property
    def key(self):
        return (self.doctor_id, self.slot_date, self.start_time, self.end_time)

    @property
    def is_bookable(self) -> bool:
        return self.availability_type not in (AvailabilityType.break_, AvailabilityType.unavailable)

    def contains(self, at: time) -> bool:
        return self.start_time <= at < self.end_time


class VisitSummary(BaseSchema):
    id: int
    patient_id: int
    visit_number: Optional[str] = None
    visit_date: date
    visit_time: time
    duration_minutes: int
    status: VisitStatus


class SlotAvailability(MaterializedSlot):
    booked_count: int = 0
    remaining_capacity: int = 0
    is_available: bool = False
    status: str = "available"  # available | partially_booked | fully_booked | blocked
    occupants: List[VisitSummary] = []


class OccupancyResponse(BaseSchema):
    doctor_id: int
    start_date: date
    end_date: date
    slots: List[SlotAvailability]
    orphaned_visits: List[VisitSummary]


class SlotCheckResponse(BaseSchema):
    available: bool
    reason: Optional[str] = None
    slot: Optional[SlotAvailability] = None


class AvailabilityStats(BaseSchema):
    doctor_id: int
    start_date: date
    end_date: date
    total_slots: int
    blocked_slots: int
    total_capacity: int
    booked: int
    remaining: int
    booking_rate: float
    orphaned_visits: int


# --- Visit Schemas ---
class VisitCreate(BaseSchema):
    doctor_id: int
    patient_id: int
    visit_date: date
    visit_time: time
    duration_minutes: int = Field(default=30, gt=0, le=24 * 60)
    consultation_fee: Decimal = Field(default=Decimal("0"), ge=0)
    chief_complaint: Optional[str] = None
    visit_type: str = "consultation"
    notes: Optional[str] = None


class VisitReschedule(BaseSchema):
    visit_date: date
    visit_time: time
    duration_minutes: Optional[int] = Field(default=None, gt=0, le=24 * 60)


class VisitCancel(BaseSchema):
    reason: Optional[str] = None


class VisitStatusUpdate(BaseSchema):
    status: VisitStatus
    reason: Optional[str] = None


class VisitUpdate(BaseSchema):
    consultation_fee: Optional[Decimal] = Field(default=None, ge=0)
    payment_status: Optional[PaymentStatus] = None
    chief_complaint: Optional[str] = None
    visit_type: Optional[str] = None
    notes: Optional[str] = None


class VisitResponse(BaseSchema):
    id: int
    tenant_id: int
    patient_id: int
    doctor_id: int
    visit_number: Optional[str] = None
    visit_date: date
    visit_time: time
    duration_minutes: int
    visit_type: str
    status: VisitStatus
    consultation_fee: Decimal
    payment_status: PaymentStatus
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None


# --- Calendar Schemas ---
class CalendarEvent(BaseSchema):
    id: str
    kind: str  # availability | blocked | visit | orphan
    title: str
    start: datetime
    end: datetime
    color: str
    column: int = 0
    column_count: int = 1
    visit_id: Optional[int] = None
    status: Optional[str] = None

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v, info):
        start = info.data.get("start")
        if start is not None and v <= start:
            raise ValueError("event end must be after start")
        return v


# --- Consistency Schemas ---
class LedgerIssue(BaseSchema):
    ledger_id: int
    doctor_id: int
    slot_date: date
    start_time: time
    end_time: time
    recorded_count: int
    actual_count: int
    issue: str


class LinkIssue(BaseSchema):
    visit_id: int
    occupancy_id: Optional[int] = None
    issue: str


class ConsistencyReport(BaseSchema):
    checked_at: datetime
    ledger_count_mismatches: List[LedgerIssue] = []
    links_for_cancelled_visits: List[LinkIssue] = []
    visits_without_links: List[LinkIssue] = []


class ConsistencyFixReport(BaseSchema):
    checked_at: datetime
    fixed_counters: List[LedgerIssue] = []
    released_links: List[LinkIssue] = []
    errors: List[str] = []
