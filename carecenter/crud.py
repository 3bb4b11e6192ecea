# carecenter/crud.py - data access helpers shared by the billing engine and the scheduler
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime
from typing import Optional, List, Dict, Iterable, Any
import logging

from . import models
from .timeutils import DateWindow, parse_dt, start_of_day, end_of_day

logger = logging.getLogger(__name__)


class CRUDError(Exception):
    pass


# ==================== USERS ====================

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    """Get a non-deleted user by ID."""
    try:
        return db.query(models.User).filter(
            models.User.id == user_id,
            models.User.is_deleted.is_(False)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user {user_id}: {str(e)}")
        raise CRUDError("A database error occurred while fetching the user.")


def get_user_names(db: Session, user_ids: Iterable[Any]) -> Dict[int, str]:
    """Resolve a set of user ids to display names with a single query."""
    ids = set()
    for raw in user_ids:
        try:
            ids.add(int(raw))
        except (TypeError, ValueError):
            continue
    if not ids:
        return {}
    try:
        rows = db.query(models.User.id, models.User.name, models.User.username).filter(
            models.User.id.in_(ids)
        ).all()
    except SQLAlchemyError as e:
        logger.error(f"Error resolving user names: {e}")
        raise CRUDError("A database error occurred while resolving user names.")
    return {row.id: (row.name or row.username) for row in rows}


def get_doctor_in_center(db: Session, doctor_id: int, center_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(
        models.User.id == doctor_id,
        models.User.center_id == center_id,
        models.User.role == models.UserRole.doctor,
    ).first()


def get_center_doctors(db: Session, center_id: int) -> List[models.User]:
    return db.query(models.User).filter(
        models.User.center_id == center_id,
        models.User.role == models.UserRole.doctor,
        models.User.is_deleted.is_(False),
        models.User.status == "active",
    ).order_by(models.User.name).all()


# ==================== BILLING SOURCES ====================

def get_patient(db: Session, patient_id: int) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.id == patient_id).first()


def get_patients_for_billing(db: Session, center_id: Optional[int]) -> List[models.Patient]:
    """All patients in scope with assigned/current doctors eagerly loaded."""
    query = db.query(models.Patient).options(
        joinedload(models.Patient.assigned_doctor),
        joinedload(models.Patient.current_doctor),
    )
    if center_id is not None:
        query = query.filter(models.Patient.center_id == center_id)
    return query.order_by(models.Patient.id).all()


def _billing_dt(record, key: str) -> Optional[datetime]:
    return parse_dt((record.billing or {}).get(key))


def get_test_requests_for_billing(db: Session, center_id: Optional[int], window: DateWindow,
                                  include_refunds: bool = True) -> List[models.TestRequest]:
    """
    Test requests created inside the window, or (when include_refunds) refunded inside it.
    The refund date lives in the billing document so the OR is evaluated here.
    """
    query = db.query(models.TestRequest).options(
        joinedload(models.TestRequest.patient),
        joinedload(models.TestRequest.doctor),
    )
    if center_id is not None:
        query = query.filter(models.TestRequest.center_id == center_id)
    if window.is_active and not include_refunds:
        if window.start is not None:
            query = query.filter(models.TestRequest.created_at >= window.start)
        if window.end is not None:
            query = query.filter(models.TestRequest.created_at <= window.end)
    requests = query.order_by(models.TestRequest.id).all()
    if not window.is_active or not include_refunds:
        return requests
    return [
        r for r in requests
        if window.matches(r.created_at, _billing_dt(r, "refunded_at"))
    ]


def get_slit_requests_for_billing(db: Session, center_id: Optional[int], window: DateWindow) -> List[models.SlitTherapyRequest]:
    """SLIT requests whose creation, billing generation or refund falls in the window, newest first."""
    query = db.query(models.SlitTherapyRequest).options(joinedload(models.SlitTherapyRequest.patient))
    if center_id is not None:
        query = query.filter(models.SlitTherapyRequest.center_id == center_id)
    requests = query.order_by(models.SlitTherapyRequest.created_at.desc(), models.SlitTherapyRequest.id.desc()).all()
    if not window.is_active:
        return requests
    return [
        r for r in requests
        if window.matches(_billing_dt(r, "generated_at"), r.created_at, _billing_dt(r, "refunded_at"))
    ]


def _payment_log_query(db: Session, center_id: Optional[int]):
    query = db.query(models.PaymentLog).options(joinedload(models.PaymentLog.patient))
    if center_id is not None:
        query = query.filter(models.PaymentLog.center_id == center_id)
    return query


def get_payment_logs(db: Session, center_id: Optional[int], window: DateWindow) -> List[models.PaymentLog]:
    query = _payment_log_query(db, center_id)
    if window.start is not None:
        query = query.filter(models.PaymentLog.created_at >= window.start)
    if window.end is not None:
        query = query.filter(models.PaymentLog.created_at <= window.end)
    return query.order_by(models.PaymentLog.created_at.desc(), models.PaymentLog.id.desc()).all()


def get_payment_logs_by_invoice_numbers(db: Session, center_id: Optional[int], invoice_numbers: Iterable[str]) -> List[models.PaymentLog]:
    numbers = [n for n in set(invoice_numbers) if n]
    if not numbers:
        return []
    return _payment_log_query(db, center_id).filter(
        models.PaymentLog.invoice_number.in_(numbers)
    ).order_by(models.PaymentLog.created_at.desc(), models.PaymentLog.id.desc()).all()


def get_payment_logs_by_transaction_ids(db: Session, center_id: Optional[int], transaction_ids: Iterable[str]) -> List[models.PaymentLog]:
    ids = [t for t in set(transaction_ids) if t]
    if not ids:
        return []
    return _payment_log_query(db, center_id).filter(
        models.PaymentLog.transaction_id.in_(ids)
    ).order_by(models.PaymentLog.created_at.desc(), models.PaymentLog.id.desc()).all()


def get_payment_logs_by_patient_ids(db: Session, center_id: Optional[int], patient_ids: Iterable[int]) -> List[models.PaymentLog]:
    ids = [p for p in set(patient_ids) if p is not None]
    if not ids:
        return []
    return _payment_log_query(db, center_id).filter(
        models.PaymentLog.patient_id.in_(ids)
    ).order_by(models.PaymentLog.created_at.desc(), models.PaymentLog.id.desc()).all()


# ==================== DOCTOR AVAILABILITY ====================

def _same_day(column, day: datetime):
    # dates arrive with inconsistent time components; match the whole calendar day
    return column.between(start_of_day(day), end_of_day(day))


def get_availability_for_day(db: Session, doctor_id: int, center_id: int, day: datetime) -> Optional[models.DoctorAvailability]:
    return db.query(models.DoctorAvailability).filter(
        models.DoctorAvailability.doctor_id == doctor_id,
        models.DoctorAvailability.center_id == center_id,
        _same_day(models.DoctorAvailability.date, day),
    ).first()


def get_availability_range(db: Session, center_id: int, start: Optional[datetime], end: Optional[datetime],
                           doctor_id: Optional[int] = None) -> List[models.DoctorAvailability]:
    query = db.query(models.DoctorAvailability).options(joinedload(models.DoctorAvailability.doctor)).filter(
        models.DoctorAvailability.center_id == center_id
    )
    if doctor_id is not None:
        query = query.filter(models.DoctorAvailability.doctor_id == doctor_id)
    if start is not None:
        query = query.filter(models.DoctorAvailability.date >= start_of_day(start))
    if end is not None:
        query = query.filter(models.DoctorAvailability.date <= end_of_day(end))
    return query.order_by(models.DoctorAvailability.date, models.DoctorAvailability.doctor_id).all()


def upsert_availability(db: Session, doctor_id: int, center_id: int, day: datetime, values: Dict[str, Any]) -> models.DoctorAvailability:
    """Insert or update the record keyed by (doctor, center, calendar day). Does NOT commit."""
    record = get_availability_for_day(db, doctor_id, center_id, day)
    if record is None:
        record = models.DoctorAvailability(doctor_id=doctor_id, center_id=center_id)
        db.add(record)
    record.date = start_of_day(day)
    for key, value in values.items():
        setattr(record, key, value)
    return record


# ==================== APPOINTMENT SLOTS ====================

def get_slots_for_day(db: Session, center_id: int, day: datetime, doctor_id: Optional[int] = None,
                      booked_only: bool = False) -> List[models.AppointmentSlot]:
    query = db.query(models.AppointmentSlot).options(
        joinedload(models.AppointmentSlot.doctor),
        joinedload(models.AppointmentSlot.patient),
        joinedload(models.AppointmentSlot.patient_appointment),
        joinedload(models.AppointmentSlot.booker),
    ).filter(
        models.AppointmentSlot.center_id == center_id,
        _same_day(models.AppointmentSlot.date, day),
    )
    if doctor_id is not None:
        query = query.filter(models.AppointmentSlot.doctor_id == doctor_id)
    if booked_only:
        query = query.filter(models.AppointmentSlot.is_booked.is_(True))
    return query.order_by(models.AppointmentSlot.doctor_id, models.AppointmentSlot.start_time).all()


def get_booked_windows(db: Session, doctor_id: int, center_id: int, day: datetime) -> set:
    rows = db.query(models.AppointmentSlot.start_time, models.AppointmentSlot.end_time).filter(
        models.AppointmentSlot.doctor_id == doctor_id,
        models.AppointmentSlot.center_id == center_id,
        _same_day(models.AppointmentSlot.date, day),
        models.AppointmentSlot.is_booked.is_(True),
    ).all()
    return {(row.start_time, row.end_time) for row in rows}


def delete_unbooked_slots(db: Session, doctor_id: int, center_id: int, day: datetime) -> int:
    """Deletes unbooked slots for one doctor/day. Does NOT commit."""
    result = db.execute(
        delete(models.AppointmentSlot)
        .where(
            models.AppointmentSlot.doctor_id == doctor_id,
            models.AppointmentSlot.center_id == center_id,
            _same_day(models.AppointmentSlot.date, day),
            models.AppointmentSlot.is_booked.is_(False),
        )
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def claim_slot(db: Session, slot_id: int, center_id: int, values: Dict[str, Any]) -> bool:
    """Atomically flip an unbooked slot to booked. Returns False if another request got there first."""
    result = db.execute(
        update(models.AppointmentSlot)
        .where(
            models.AppointmentSlot.id == slot_id,
            models.AppointmentSlot.center_id == center_id,
            models.AppointmentSlot.is_booked.is_(False),
            models.AppointmentSlot.status == models.SlotStatus.available,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_slot(db: Session, slot_id: int, center_id: int, values: Dict[str, Any]) -> bool:
    """Atomically return a booked slot to available. Completed and no-show slots are left alone."""
    result = db.execute(
        update(models.AppointmentSlot)
        .where(
            models.AppointmentSlot.id == slot_id,
            models.AppointmentSlot.center_id == center_id,
            models.AppointmentSlot.is_booked.is_(True),
            models.AppointmentSlot.status == models.SlotStatus.booked,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_slot(db: Session, slot_id: int, center_id: Optional[int] = None) -> Optional[models.AppointmentSlot]:
    query = db.query(models.AppointmentSlot).options(
        joinedload(models.AppointmentSlot.patient),
        joinedload(models.AppointmentSlot.booker),
    ).filter(models.AppointmentSlot.id == slot_id)
    if center_id is not None:
        query = query.filter(models.AppointmentSlot.center_id == center_id)
    return query.first()


def get_patient_appointment(db: Session, appointment_id: int) -> Optional[models.PatientAppointment]:
    return db.query(models.PatientAppointment).filter(models.PatientAppointment.id == appointment_id).first()
