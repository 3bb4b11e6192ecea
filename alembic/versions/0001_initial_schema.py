"""initial billing and doctor calendar schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

user_role = sa.Enum('superadmin', 'centeradmin', 'accountant', 'doctor', 'receptionist', 'lab_staff', 'patient',
                    name='user_role')
slot_status = sa.Enum('available', 'booked', 'completed', 'cancelled', 'no_show', name='slot_status')
patient_appointment_status = sa.Enum('pending', 'confirmed', 'completed', 'cancelled', 'no_show',
                                     name='patient_appointment_status')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'centers',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('code', sa.String(30), nullable=True, unique=True),
        sa.Column('is_deleted', sa.Boolean(), default=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(150), nullable=True),
        sa.Column('username', sa.String(50), nullable=False, unique=True, index=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('qualification', sa.String(150), nullable=True),
        sa.Column('designation', sa.String(150), nullable=True),
        sa.Column('role', user_role, nullable=False),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=True),
        sa.Column('status', sa.String(20), default='active'),
        sa.Column('is_deleted', sa.Boolean(), default=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_users_center_role', 'users', ['center_id', 'role'])

    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=True),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('uh_id', sa.String(50), nullable=True),
        sa.Column('age', sa.Integer(), nullable=True),
        sa.Column('gender', sa.String(20), nullable=True),
        sa.Column('contact', sa.String(30), nullable=True),
        sa.Column('assigned_doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('current_doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('billing', sa.JSON(), nullable=True),
        sa.Column('reassigned_billing', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_patients_center', 'patients', ['center_id'])
    op.create_index('idx_patients_uh_id', 'patients', ['uh_id'])

    op.create_table(
        'patient_appointments',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('patient_name', sa.String(150), nullable=True),
        sa.Column('confirmation_code', sa.String(30), nullable=True),
        sa.Column('preferred_date', sa.DateTime(), nullable=True),
        sa.Column('preferred_time', sa.String(5), nullable=True),
        sa.Column('confirmed_date', sa.DateTime(), nullable=True),
        sa.Column('confirmed_time', sa.String(5), nullable=True),
        sa.Column('status', patient_appointment_status, nullable=False),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_patient_appointments_center_status', 'patient_appointments', ['center_id', 'status'])

    op.create_table(
        'test_requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('patient_name', sa.String(150), nullable=True),
        sa.Column('doctor_name', sa.String(150), nullable=True),
        sa.Column('status', sa.String(40), default='pending'),
        sa.Column('billing', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_test_requests_center_created', 'test_requests', ['center_id', 'created_at'])

    op.create_table(
        'slit_therapy_requests',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=False),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=True),
        sa.Column('patient_name', sa.String(150), nullable=False),
        sa.Column('product_code', sa.String(20), nullable=False),
        sa.Column('product_name', sa.String(150), nullable=True),
        sa.Column('product_price', sa.Float(), default=0),
        sa.Column('quantity', sa.Integer(), default=1),
        sa.Column('courier_required', sa.Boolean(), default=False),
        sa.Column('courier_fee', sa.Float(), default=0),
        sa.Column('delivery_method', sa.String(20), default='pickup'),
        sa.Column('status', sa.String(40), default='Billing_Generated'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('billing', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('idx_slit_center_created', 'slit_therapy_requests', ['center_id', 'created_at'])

    op.create_table(
        'payment_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=True),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=True),
        sa.Column('invoice_number', sa.String(80), nullable=True),
        sa.Column('transaction_id', sa.String(120), nullable=True),
        sa.Column('amount', sa.Float(), default=0),
        sa.Column('status', sa.String(30), default='completed'),
        sa.Column('payment_type', sa.String(30), default='payment'),
        sa.Column('payment_method', sa.String(30), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('processed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('refund', sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_payment_logs_center_created', 'payment_logs', ['center_id', 'created_at'])
    op.create_index('idx_payment_logs_invoice', 'payment_logs', ['invoice_number'])
    op.create_index('idx_payment_logs_transaction', 'payment_logs', ['transaction_id'])
    op.create_index('idx_payment_logs_patient', 'payment_logs', ['patient_id'])

    op.create_table(
        'doctor_availability',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.Column('is_available', sa.Boolean(), default=True),
        sa.Column('is_holiday', sa.Boolean(), default=False),
        sa.Column('holiday_name', sa.String(100), default=''),
        sa.Column('start_time', sa.String(5), nullable=True),
        sa.Column('end_time', sa.String(5), nullable=True),
        sa.Column('break_start_time', sa.String(5), nullable=True),
        sa.Column('break_end_time', sa.String(5), nullable=True),
        sa.Column('notes', sa.Text(), default=''),
        sa.Column('max_appointments', sa.Integer(), default=50),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_availability_doctor_date', 'doctor_availability', ['doctor_id', 'date'])
    op.create_index('idx_availability_center_date', 'doctor_availability', ['center_id', 'date'])
    op.create_index('idx_availability_date_available', 'doctor_availability', ['date', 'is_available'])

    op.create_table(
        'appointment_slots',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('center_id', sa.Integer(), sa.ForeignKey('centers.id'), nullable=False),
        sa.Column('date', sa.DateTime(), nullable=False),
        sa.Column('start_time', sa.String(5), nullable=False),
        sa.Column('end_time', sa.String(5), nullable=False),
        sa.Column('duration', sa.Integer(), default=30),
        sa.Column('is_booked', sa.Boolean(), nullable=False, default=False),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=True),
        sa.Column('patient_appointment_id', sa.Integer(), sa.ForeignKey('patient_appointments.id'), nullable=True),
        sa.Column('booked_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('booked_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), default=''),
        sa.Column('status', slot_status, nullable=False),
        sa.Column('created_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_slot_doctor_date_start', 'appointment_slots', ['doctor_id', 'date', 'start_time'])
    op.create_index('idx_slot_center_date', 'appointment_slots', ['center_id', 'date'])
    op.create_index('idx_slot_date_booked', 'appointment_slots', ['date', 'is_booked'])
    op.create_index('idx_slot_status_date', 'appointment_slots', ['status', 'date'])


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        'appointment_slots',
        'doctor_availability',
        'payment_logs',
        'slit_therapy_requests',
        'test_requests',
        'patient_appointments',
        'patients',
        'users',
        'centers',
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (slot_status, patient_appointment_status, user_role):
        enum.drop(bind, checkfirst=True)
