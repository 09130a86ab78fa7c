"""Scheduling core tables

Revision ID: 0001_scheduling_core
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_scheduling_core'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = sa.Enum('admin', 'manager', 'doctor', 'nurse', 'receptionist', 'staff', name='user_role')
availability_type = sa.Enum('regular', 'special', 'break', 'unavailable', name='availability_type')
visit_status = sa.Enum('scheduled', 'in_progress', 'completed', 'cancelled', name='visit_status')
payment_status = sa.Enum('pending', 'paid', 'partial', 'waived', name='payment_status')
audit_action = sa.Enum(
    'CREATE', 'READ', 'UPDATE', 'DELETE', 'BOOK', 'RESCHEDULE', 'CANCEL', 'ACCESS_DENIED', 'BULK_ACTION',
    name='audit_action',
)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('username', sa.String(50), nullable=False),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('role', user_role, nullable=False),
        sa.Column('specialization', sa.String(100)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'username', name='uq_users_tenant_username'),
    )
    op.create_index('idx_users_tenant_role', 'users', ['tenant_id', 'role'])

    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100)),
        sa.Column('phone_number', sa.String(20)),
        sa.Column('email', sa.String(255)),
        sa.Column('date_of_birth', sa.Date()),
        sa.Column('gender', sa.String(20)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_patients_tenant_name', 'patients', ['tenant_id', 'last_name', 'first_name'])
    op.create_index('idx_patients_tenant_phone', 'patients', ['tenant_id', 'phone_number'])

    op.create_table(
        'doctor_availability',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('day_of_week', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('slot_duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('buffer_time_minutes', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('max_patients_per_slot', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('availability_type', availability_type, nullable=False, server_default='regular'),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_until', sa.Date()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('notes', sa.Text()),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('updated_by', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.CheckConstraint('start_time < end_time', name='ck_availability_time_order'),
        sa.CheckConstraint('day_of_week >= 0 AND day_of_week <= 7', name='ck_availability_day_of_week'),
    )
    op.create_index(
        'idx_availability_doctor_day', 'doctor_availability',
        ['tenant_id', 'doctor_id', 'day_of_week', 'is_active'],
    )

    op.create_table(
        'patient_visits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('visit_number', sa.String(40)),
        sa.Column('visit_date', sa.Date(), nullable=False),
        sa.Column('visit_time', sa.Time(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('visit_type', sa.String(50), nullable=False, server_default='consultation'),
        sa.Column('status', visit_status, nullable=False, server_default='scheduled'),
        sa.Column('consultation_fee', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('payment_status', payment_status, nullable=False, server_default='pending'),
        sa.Column('chief_complaint', sa.Text()),
        sa.Column('notes', sa.Text()),
        sa.Column('cancellation_reason', sa.Text()),
        sa.Column('cancelled_by', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('tenant_id', 'visit_number', name='uq_visits_tenant_number'),
        sa.CheckConstraint('duration_minutes > 0', name='ck_visits_duration_positive'),
    )
    op.create_index('idx_visits_doctor_date', 'patient_visits', ['tenant_id', 'doctor_id', 'visit_date', 'status'])
    op.create_index('idx_visits_patient_date', 'patient_visits', ['tenant_id', 'patient_id', 'visit_date'])
    op.create_index(
        'uq_visits_doctor_start_active', 'patient_visits',
        ['tenant_id', 'doctor_id', 'visit_date', 'visit_time'],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
        sqlite_where=sa.text("status != 'cancelled'"),
    )

    op.create_table(
        'slot_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('slot_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('booked_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('tenant_id', 'doctor_id', 'slot_date', 'start_time', 'end_time', name='uq_slot_ledger_slot'),
        sa.CheckConstraint('booked_count >= 0', name='ck_slot_ledger_booked_non_negative'),
        sa.CheckConstraint('booked_count <= capacity', name='ck_slot_ledger_within_capacity'),
    )

    op.create_table(
        'appointment_slots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('visit_id', sa.Integer(), sa.ForeignKey('patient_visits.id'), nullable=False, unique=True),
        sa.Column('pattern_id', sa.Integer(), sa.ForeignKey('doctor_availability.id', ondelete='SET NULL')),
        sa.Column('ledger_id', sa.Integer(), sa.ForeignKey('slot_ledger.id')),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('slot_date', sa.Date(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('released_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_occupancy_pattern_active', 'appointment_slots', ['pattern_id', 'released_at'])
    op.create_index('idx_occupancy_ledger', 'appointment_slots', ['ledger_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id')),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id')),
        sa.Column('action', audit_action, nullable=False),
        sa.Column('category', sa.String(50), nullable=False, server_default='GENERAL', index=True),
        sa.Column('severity', sa.String(20), server_default='INFO'),
        sa.Column('resource_type', sa.String(50)),
        sa.Column('resource_id', sa.Integer()),
        sa.Column('details', sa.Text()),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.func.now(), index=True),
    )
    op.create_index('idx_audit_tenant_date', 'audit_logs', ['tenant_id', 'timestamp'])
    op.create_index('idx_audit_resource', 'audit_logs', ['resource_type', 'resource_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('audit_logs')
    op.drop_table('appointment_slots')
    op.drop_table('slot_ledger')
    op.drop_table('patient_visits')
    op.drop_table('doctor_availability')
    op.drop_table('patients')
    op.drop_table('users')
    op.drop_table('tenants')
    bind = op.get_bind()
    for enum_type in (audit_action, payment_status, visit_status, availability_type, user_role):
        enum_type.drop(bind, checkfirst=True)
