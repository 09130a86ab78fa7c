# tests/conftest.py
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-123456"
os.environ["AUTO_CREATE_TABLES"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"

from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clinic_scheduler import crud, models, schemas
from clinic_scheduler.context import RequestContext
from clinic_scheduler.database import create_tables, drop_tables

# 2029-01-01 is a Monday; far enough ahead to count as a future booking.
MONDAY = date(2029, 1, 1)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    drop_tables(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def tenant(db):
    return _add(db, models.Tenant(name="Sunrise Clinic", slug="sunrise"))


@pytest.fixture
def other_tenant(db):
    return _add(db, models.Tenant(name="Harbor Clinic", slug="harbor"))


@pytest.fixture
def admin(db, tenant):
    return _add(db, models.User(tenant_id=tenant.id, username="admin", full_name="Asha Admin", role=models.UserRole.admin))


@pytest.fixture
def manager(db, tenant):
    return _add(db, models.User(tenant_id=tenant.id, username="manager", full_name="Mo Manager", role=models.UserRole.manager))


@pytest.fixture
def doctor(db, tenant):
    return _add(db, models.User(
        tenant_id=tenant.id, username="drdev", full_name="Dev Rao", role=models.UserRole.doctor,
        specialization="General Medicine",
    ))


@pytest.fixture
def second_doctor(db, tenant):
    return _add(db, models.User(tenant_id=tenant.id, username="drkim", full_name="Kim Lee", role=models.UserRole.doctor))


@pytest.fixture
def receptionist(db, tenant):
    return _add(db, models.User(tenant_id=tenant.id, username="front", full_name="Fran Front", role=models.UserRole.receptionist))


@pytest.fixture
def foreign_doctor(db, other_tenant):
    return _add(db, models.User(tenant_id=other_tenant.id, username="drout", full_name="Out Sider", role=models.UserRole.doctor))


@pytest.fixture
def patient(db, tenant):
    return _add(db, models.Patient(tenant_id=tenant.id, first_name="Priya", last_name="Shah", phone_number="+911234500001"))


@pytest.fixture
def second_patient(db, tenant):
    return _add(db, models.Patient(tenant_id=tenant.id, first_name="Omar", last_name="Farouk", phone_number="+911234500002"))


@pytest.fixture
def third_patient(db, tenant):
    return _add(db, models.Patient(tenant_id=tenant.id, first_name="Lena", last_name="Park", phone_number="+911234500003"))


@pytest.fixture
def foreign_patient(db, other_tenant):
    return _add(db, models.Patient(tenant_id=other_tenant.id, first_name="Far", last_name="Away"))


def context_for(user) -> RequestContext:
    return RequestContext(tenant_id=user.tenant_id, user_id=user.id, role=models.UserRole(user.role))


@pytest.fixture
def admin_ctx(admin):
    return context_for(admin)


@pytest.fixture
def doctor_ctx(doctor):
    return context_for(doctor)


@pytest.fixture
def reception_ctx(receptionist):
    return context_for(receptionist)


@pytest.fixture
def foreign_ctx(foreign_doctor):
    return context_for(foreign_doctor)


@pytest.fixture
def make_pattern(db, admin_ctx, doctor):
    """Create an availability pattern for `doctor` through the store."""
    def _make(
        day_of_week=1,
        start="09:00",
        end="10:00",
        capacity=1,
        availability_type=models.AvailabilityType.regular,
        effective_from=date(2024, 1, 1),
        effective_until=None,
        doctor_id=None,
        ctx=None,
    ):
        return crud.create_availability(db, ctx or admin_ctx, schemas.AvailabilityCreate(
            doctor_id=doctor_id or doctor.id,
            day_of_week=day_of_week,
            start_time=time.fromisoformat(start),
            end_time=time.fromisoformat(end),
            max_patients_per_slot=capacity,
            availability_type=availability_type,
            effective_from=effective_from,
            effective_until=effective_until,
        ))
    return _make


@pytest.fixture
def book(db, reception_ctx, doctor):
    """Book a visit for `doctor` through the booking service."""
    from clinic_scheduler.services import booking_service

    def _book(patient, at, visit_date=MONDAY, duration=30, doctor_id=None, ctx=None):
        return booking_service.book_visit(db, ctx or reception_ctx, schemas.VisitCreate(
            doctor_id=doctor_id or doctor.id,
            patient_id=patient.id,
            visit_date=visit_date,
            visit_time=time.fromisoformat(at),
            duration_minutes=duration,
        ))
    return _book
