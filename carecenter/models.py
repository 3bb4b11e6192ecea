# carecenter/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Float,
    Enum as SQLAlchemyEnum, Boolean, JSON, Index
)
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UserRole(str, enum.Enum):
    superadmin = "superadmin"
    centeradmin = "centeradmin"
    accountant = "accountant"
    doctor = "doctor"
    receptionist = "receptionist"
    lab_staff = "lab_staff"
    patient = "patient"


class SlotStatus(str, enum.Enum):
    available = "available"
    booked = "booked"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class PatientAppointmentStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class Center(Base):
    """A clinic branch; the tenancy-scoping unit."""
    __tablename__ = "centers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=False)
    code = Column(String(30), nullable=True, unique=True)
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())


class User(Base):
    """Staff account. Referenced by billing records only for display names."""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_center_role', 'center_id', 'role'),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(150), nullable=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    qualification = Column(String(150), nullable=True)
    designation = Column(String(150), nullable=True)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.receptionist, nullable=False)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=True)
    status = Column(String(20), default="active")
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())

    center = relationship("Center")

    @property
    def display_name(self):
        return self.name or self.username


class Patient(Base):
    """Patient record carrying consultation and reassignment billing sub-documents."""
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_center', 'center_id'),
        Index('idx_patients_uh_id', 'uh_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=True)
    name = Column(String(150), nullable=False)
    uh_id = Column(String(50), nullable=True)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)
    contact = Column(String(30), nullable=True)
    assigned_doctor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    current_doctor_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Billing sub-documents (list of dicts); shape evolves over time
    billing = Column(MutableList.as_mutable(JSON), default=list)
    reassigned_billing = Column(MutableList.as_mutable(JSON), default=list)

    created_at = Column(DateTime, server_default=func.now())

    assigned_doctor = relationship("User", foreign_keys=[assigned_doctor_id])
    current_doctor = relationship("User", foreign_keys=[current_doctor_id])


class TestRequest(Base):
    """Lab order with a single billing sub-document."""
    __tablename__ = "test_requests"
    __test__ = False  # not a pytest test class
    __table_args__ = (
        Index('idx_test_requests_center_created', 'center_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    patient_name = Column(String(150), nullable=True)
    doctor_name = Column(String(150), nullable=True)
    status = Column(String(40), default="pending")
    billing = Column(MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    patient = relationship("Patient")
    doctor = relationship("User")


class SlitTherapyRequest(Base):
    """Sublingual immunotherapy order with a single billing sub-document."""
    __tablename__ = "slit_therapy_requests"
    __table_args__ = (
        Index('idx_slit_center_created', 'center_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    patient_name = Column(String(150), nullable=False)
    product_code = Column(String(20), nullable=False)
    product_name = Column(String(150), nullable=True)
    product_price = Column(Float, default=0)
    quantity = Column(Integer, default=1)
    courier_required = Column(Boolean, default=False)
    courier_fee = Column(Float, default=0)
    delivery_method = Column(String(20), default="pickup")
    status = Column(String(40), default="Billing_Generated")
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    billing = Column(MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    patient = relationship("Patient")


class PaymentLog(Base):
    """Append-only ledger of payment and refund transactions."""
    __tablename__ = "payment_logs"
    __table_args__ = (
        Index('idx_payment_logs_center_created', 'center_id', 'created_at'),
        Index('idx_payment_logs_invoice', 'invoice_number'),
        Index('idx_payment_logs_transaction', 'transaction_id'),
        Index('idx_payment_logs_patient', 'patient_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    invoice_number = Column(String(80), nullable=True)
    transaction_id = Column(String(120), nullable=True)
    amount = Column(Float, default=0)
    status = Column(String(30), default="completed")
    payment_type = Column(String(30), default="payment")
    payment_method = Column(String(30), nullable=True)
    description = Column(String(255), nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    # refunded_amount, refunded_by, refunded_at, refund_method, external_refund_id, refund_reason
    refund = Column(MutableDict.as_mutable(JSON), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    patient = relationship("Patient")


class DoctorAvailability(Base):
    """Per doctor/center/day working hours or holiday marker."""
    __tablename__ = "doctor_availability"
    __table_args__ = (
        Index('idx_availability_doctor_date', 'doctor_id', 'date'),
        Index('idx_availability_center_date', 'center_id', 'date'),
        Index('idx_availability_date_available', 'date', 'is_available'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=False)
    date = Column(DateTime, nullable=False)
    is_available = Column(Boolean, default=True)
    is_holiday = Column(Boolean, default=False)
    holiday_name = Column(String(100), default="")
    start_time = Column(String(5), nullable=True)  # "HH:mm"
    end_time = Column(String(5), nullable=True)
    break_start_time = Column(String(5), nullable=True)
    break_end_time = Column(String(5), nullable=True)
    notes = Column(Text, default="")
    max_appointments = Column(Integer, default=50)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor = relationship("User", foreign_keys=[doctor_id])


class AppointmentSlot(Base):
    """A generated, bookable time window for one doctor on one day."""
    __tablename__ = "appointment_slots"
    __table_args__ = (
        Index('idx_slot_doctor_date_start', 'doctor_id', 'date', 'start_time'),
        Index('idx_slot_center_date', 'center_id', 'date'),
        Index('idx_slot_date_booked', 'date', 'is_booked'),
        Index('idx_slot_status_date', 'status', 'date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=False)
    date = Column(DateTime, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    duration = Column(Integer, default=30)
    is_booked = Column(Boolean, default=False, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    patient_appointment_id = Column(Integer, ForeignKey("patient_appointments.id"), nullable=True)
    booked_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    booked_at = Column(DateTime, nullable=True)
    notes = Column(Text, default="")
    status = Column(SQLAlchemyEnum(SlotStatus, name='slot_status'), default=SlotStatus.available, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    doctor = relationship("User", foreign_keys=[doctor_id])
    patient = relationship("Patient")
    patient_appointment = relationship("PatientAppointment")
    booker = relationship("User", foreign_keys=[booked_by])


class PatientAppointment(Base):
    """Patient-facing booking request, loosely linked to at most one slot."""
    __tablename__ = "patient_appointments"
    __table_args__ = (
        Index('idx_patient_appointments_center_status', 'center_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    center_id = Column(Integer, ForeignKey("centers.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    patient_name = Column(String(150), nullable=True)
    confirmation_code = Column(String(30), nullable=True)
    preferred_date = Column(DateTime, nullable=True)
    preferred_time = Column(String(5), nullable=True)
    confirmed_date = Column(DateTime, nullable=True)
    confirmed_time = Column(String(5), nullable=True)
    status = Column(SQLAlchemyEnum(PatientAppointmentStatus, name='patient_appointment_status'),
                    default=PatientAppointmentStatus.pending, nullable=False)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
