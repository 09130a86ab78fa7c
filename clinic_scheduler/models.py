# clinic_scheduler/models.py
from datetime import date
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, Numeric, Index, UniqueConstraint,
    CheckConstraint, text
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    admin = "admin"
    manager = "manager"
    doctor = "doctor"
    nurse = "nurse"
    receptionist = "receptionist"
    staff = "staff"


# Roles allowed to edit any doctor's availability.
SCHEDULE_ADMIN_ROLES = (UserRole.admin, UserRole.manager)


class AvailabilityType(str, enum.Enum):
    regular = "regular"
    special = "special"
    break_ = "break"
    unavailable = "unavailable"


# break/unavailable blocks are shown on the calendar but never offered for booking.
NON_BOOKABLE_TYPES = (AvailabilityType.break_, AvailabilityType.unavailable)

# Most restrictive type wins when duplicate blocks are merged.
AVAILABILITY_TYPE_PRECEDENCE = {
    AvailabilityType.regular: 0,
    AvailabilityType.special: 1,
    AvailabilityType.break_: 2,
    AvailabilityType.unavailable: 3,
}


class VisitStatus(str, enum.Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


VISIT_STATUS_TRANSITIONS = {
    VisitStatus.scheduled: {VisitStatus.in_progress, VisitStatus.cancelled},
    VisitStatus.in_progress: {VisitStatus.completed, VisitStatus.cancelled},
    VisitStatus.completed: set(),
    VisitStatus.cancelled: set(),
}


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    partial = "partial"
    waived = "waived"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BOOK = "BOOK"
    RESCHEDULE = "RESCHEDULE"
    CANCEL = "CANCEL"
    ACCESS_DENIED = "ACCESS_DENIED"
    BULK_ACTION = "BULK_ACTION"


class Tenant(Base):
    """An isolated clinic/organization."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), nullable=False, unique=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    users = relationship("User", back_populates="tenant")


class User(Base):
    """Tenant staff member; doctors own availability patterns."""
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'username', name='uq_users_tenant_username'),
        Index('idx_users_tenant_role', 'tenant_id', 'role'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    username = Column(String(50), nullable=False)
    full_name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), nullable=False, default=UserRole.staff)
    specialization = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    tenant = relationship("Tenant", back_populates="users")


class Patient(Base):
    """Patient directory entry, read-only to the scheduling core."""
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_tenant_name', 'tenant_id', 'last_name', 'first_name'),
        Index('idx_patients_tenant_phone', 'tenant_id', 'phone_number'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    phone_number = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    gender = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class DoctorAvailability(Base):
    """Recurring weekly working block of a doctor."""
    __tablename__ = "doctor_availability"
    __table_args__ = (
        Index('idx_availability_doctor_day', 'tenant_id', 'doctor_id', 'day_of_week', 'is_active'),
        CheckConstraint('start_time < end_time', name='ck_availability_time_order'),
        CheckConstraint('day_of_week >= 0 AND day_of_week <= 7', name='ck_availability_day_of_week'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday; 7 also means Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    slot_duration_minutes = Column(Integer, nullable=False, default=30)
    buffer_time_minutes = Column(Integer, nullable=False, default=5)
    max_patients_per_slot = Column(Integer, nullable=False, default=1)
    availability_type = Column(
        SQLAlchemyEnum(AvailabilityType, name='availability_type', values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=AvailabilityType.regular
    )
    effective_from = Column(Date, nullable=False, default=date.today)
    effective_until = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    doctor = relationship("User", foreign_keys=[doctor_id])


class Visit(Base):
    """A booked patient visit. Cancelled visits are kept for history."""
    __tablename__ = "patient_visits"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'visit_number', name='uq_visits_tenant_number'),
        Index('idx_visits_doctor_date', 'tenant_id', 'doctor_id', 'visit_date', 'status'),
        Index('idx_visits_patient_date', 'tenant_id', 'patient_id', 'visit_date'),
        # Two live visits of one doctor can never start at the same instant.
        Index(
            'uq_visits_doctor_start_active',
            'tenant_id', 'doctor_id', 'visit_date', 'visit_time',
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
        CheckConstraint('duration_minutes > 0', name='ck_visits_duration_positive'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    visit_number = Column(String(40), nullable=True)
    visit_date = Column(Date, nullable=False)
    visit_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    visit_type = Column(String(50), nullable=False, default="consultation")
    status = Column(SQLAlchemyEnum(VisitStatus, name='visit_status'), nullable=False, default=VisitStatus.scheduled)
    consultation_fee = Column(Numeric(10, 2), nullable=False, default=0)
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), nullable=False, default=PaymentStatus.pending)
    chief_complaint = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    patient = relationship("Patient")
    doctor = relationship("User", foreign_keys=[doctor_id])
    occupancy = relationship("SlotOccupancy", back_populates="visit", uselist=False)


class SlotLedger(Base):
    """Per-slot capacity counter; the storage-level guard against double booking."""
    __tablename__ = "slot_ledger"
    __table_args__ = (
        UniqueConstraint('tenant_id', 'doctor_id', 'slot_date', 'start_time', 'end_time', name='uq_slot_ledger_slot'),
        CheckConstraint('booked_count >= 0', name='ck_slot_ledger_booked_non_negative'),
        CheckConstraint('booked_count <= capacity', name='ck_slot_ledger_within_capacity'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    capacity = Column(Integer, nullable=False, default=0)
    booked_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SlotOccupancy(Base):
    """Links a visit to the availability pattern and slot it consumes."""
    __tablename__ = "appointment_slots"
    __table_args__ = (
        Index('idx_occupancy_pattern_active', 'pattern_id', 'released_at'),
        Index('idx_occupancy_ledger', 'ledger_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False, index=True)
    visit_id = Column(Integer, ForeignKey("patient_visits.id"), nullable=False, unique=True)
    pattern_id = Column(Integer, ForeignKey("doctor_availability.id", ondelete="SET NULL"), nullable=True)
    ledger_id = Column(Integer, ForeignKey("slot_ledger.id"), nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    slot_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    released_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    visit = relationship("Visit", back_populates="occupancy")
    ledger = relationship("SlotLedger")


class AuditLog(Base):
    """Audit trail of scheduling mutations."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_tenant_date', 'tenant_id', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO")
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
