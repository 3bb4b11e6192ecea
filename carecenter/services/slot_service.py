# carecenter/services/slot_service.py
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..exceptions import NotFoundError, ValidationError
from ..timeutils import format_minutes, parse_hhmm, start_of_day, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_SLOT_DURATION = 30


def to_minutes(value: Optional[str], field: str) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return parse_hhmm(value)
    except ValueError:
        raise ValidationError(f"Invalid {field} '{value}'. Use HH:mm (24-hour) format", "INVALID_TIME_FORMAT")


def compute_windows(start_minutes: int, end_minutes: int, break_start: Optional[int] = None,
                    break_end: Optional[int] = None, duration: int = DEFAULT_SLOT_DURATION) -> List[Tuple[str, str]]:
    """
    Walk the working day in fixed steps. A step starting inside [break_start, break_end)
    jumps straight to break_end instead of advancing by one duration.
    """
    if duration <= 0:
        raise ValidationError("Slot duration must be a positive number of minutes")
    windows = []
    cursor = start_minutes
    while cursor + duration <= end_minutes:
        if break_start is not None and break_end is not None and break_start <= cursor < break_end:
            cursor = break_end
            continue
        windows.append((format_minutes(cursor), format_minutes(cursor + duration)))
        cursor += duration
    return windows


def regenerate_slots(db: Session, doctor_id: int, center_id: int, day: datetime,
                     start_time: str, end_time: str,
                     break_start_time: Optional[str] = None, break_end_time: Optional[str] = None,
                     duration: int = DEFAULT_SLOT_DURATION, created_by: Optional[int] = None,
                     commit: bool = True) -> List[models.AppointmentSlot]:
    """
    Rebuild the available slots of one doctor/day.

    Unbooked slots are dropped and recomputed; booked slots are never touched and
    no new slot is created over a booked window. Running it twice with the same
    hours yields the same set of slots.
    """
    start = to_minutes(start_time, "start time")
    end = to_minutes(end_time, "end time")
    if start is None or end is None:
        raise ValidationError("Start time and end time are required to generate slots")
    break_start = to_minutes(break_start_time, "break start time")
    break_end = to_minutes(break_end_time, "break end time")
    windows = compute_windows(start, end, break_start, break_end, duration)

    day = start_of_day(day)
    removed = crud.delete_unbooked_slots(db, doctor_id, center_id, day)
    booked = crud.get_booked_windows(db, doctor_id, center_id, day)

    new_slots = [
        models.AppointmentSlot(
            doctor_id=doctor_id,
            center_id=center_id,
            date=day,
            start_time=slot_start,
            end_time=slot_end,
            duration=duration,
            is_booked=False,
            status=models.SlotStatus.available,
            created_by=created_by,
        )
        for slot_start, slot_end in windows
        if (slot_start, slot_end) not in booked
    ]
    if new_slots:
        db.add_all(new_slots)
    if commit:
        db.commit()
    else:
        db.flush()

    logger.info("slots_regenerated", doctor_id=doctor_id, center_id=center_id, date=day.date().isoformat(),
                removed=removed, kept_booked=len(booked), created=len(new_slots))
    return new_slots


def clear_unbooked_slots(db: Session, doctor_id: int, center_id: int, day: datetime) -> int:
    removed = crud.delete_unbooked_slots(db, doctor_id, center_id, start_of_day(day))
    if removed:
        logger.info("unbooked_slots_cleared", doctor_id=doctor_id, center_id=center_id,
                    date=day.date().isoformat(), removed=removed)
    return removed


def delete_unbooked_slots(db: Session, center_id: int, doctor_id: int, day: datetime) -> int:
    removed = clear_unbooked_slots(db, doctor_id, center_id, day)
    db.commit()
    return removed


# --- Booking state machine ---

def book_slot(db: Session, center_id: int, slot_id: int, patient_id: int, booked_by: Optional[int],
              patient_appointment_id: Optional[int] = None, notes: Optional[str] = None) -> models.AppointmentSlot:
    """available -> booked, as one conditional UPDATE so two racing requests cannot both win."""
    if crud.get_patient(db, patient_id) is None:
        raise NotFoundError("Patient not found")
    if patient_appointment_id is not None and crud.get_patient_appointment(db, patient_appointment_id) is None:
        logger.warning("linked_appointment_missing", appointment_id=patient_appointment_id, slot_id=slot_id)
        patient_appointment_id = None

    values = {
        "is_booked": True,
        "status": models.SlotStatus.booked,
        "patient_id": patient_id,
        "patient_appointment_id": patient_appointment_id,
        "booked_by": booked_by,
        "booked_at": utcnow(),
    }
    if notes:
        values["notes"] = notes
    if not crud.claim_slot(db, slot_id, center_id, values):
        db.rollback()
        raise NotFoundError("Slot not found or already booked")
    db.commit()

    slot = crud.get_slot(db, slot_id, center_id)
    logger.info("slot_booked", slot_id=slot_id, center_id=center_id, patient_id=patient_id,
                patient_appointment_id=patient_appointment_id)
    if patient_appointment_id is not None:
        _confirm_appointment(db, slot, patient_appointment_id)
    return slot


def _confirm_appointment(db: Session, slot: models.AppointmentSlot, appointment_id: int) -> None:
    try:
        appointment = crud.get_patient_appointment(db, appointment_id)
        if appointment is None:
            logger.warning("linked_appointment_missing", appointment_id=appointment_id, slot_id=slot.id)
            return
        appointment.status = models.PatientAppointmentStatus.confirmed
        appointment.confirmed_date = slot.date or appointment.preferred_date
        appointment.confirmed_time = slot.start_time or appointment.preferred_time
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("appointment_confirm_failed", appointment_id=appointment_id, slot_id=slot.id, error=str(e))


def cancel_booked_slot(db: Session, center_id: int, slot_id: int,
                       reason: Optional[str] = None) -> models.AppointmentSlot:
    """booked -> available. Prior notes are kept; the linked appointment is cancelled best-effort."""
    slot = crud.get_slot(db, slot_id, center_id)
    if slot is None or slot.status != models.SlotStatus.booked:
        raise NotFoundError("Booked slot not found")

    appointment_id = slot.patient_appointment_id
    reason = reason or "No reason provided"
    entry = f"[{utcnow().isoformat(timespec='seconds')}] Cancelled: {reason}"
    values = {
        "is_booked": False,
        "status": models.SlotStatus.available,
        "patient_id": None,
        "patient_appointment_id": None,
        "booked_by": None,
        "booked_at": None,
        "notes": f"{slot.notes}\n{entry}" if slot.notes else entry,
    }
    if not crud.release_slot(db, slot_id, center_id, values):
        db.rollback()
        raise NotFoundError("Booked slot not found")
    db.commit()

    slot = crud.get_slot(db, slot_id, center_id)
    logger.info("slot_cancelled", slot_id=slot_id, center_id=center_id, patient_appointment_id=appointment_id)
    if appointment_id is not None:
        _cancel_appointment(db, appointment_id, reason)
    return slot


def _cancel_appointment(db: Session, appointment_id: int, reason: str) -> None:
    try:
        appointment = crud.get_patient_appointment(db, appointment_id)
        if appointment is None:
            logger.warning("linked_appointment_missing", appointment_id=appointment_id)
            return
        appointment.status = models.PatientAppointmentStatus.cancelled
        appointment.cancellation_reason = reason
        appointment.cancelled_at = utcnow()
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning("appointment_cancel_cascade_failed", appointment_id=appointment_id, error=str(e))


def mark_slot_outcome(db: Session, center_id: int, slot_id: int, status: models.SlotStatus) -> models.AppointmentSlot:
    """booked -> completed | no_show"""
    if status not in (models.SlotStatus.completed, models.SlotStatus.no_show):
        raise ValidationError("Outcome must be 'completed' or 'no_show'")
    slot = crud.get_slot(db, slot_id, center_id)
    if slot is None:
        raise NotFoundError("Slot not found")
    if slot.status != models.SlotStatus.booked:
        raise ValidationError(f"Only booked slots can be marked {status.value}; slot is {slot.status.value}")
    slot.status = status
    db.commit()
    db.refresh(slot)
    logger.info("slot_outcome_recorded", slot_id=slot_id, status=status.value)
    return slot


# --- Read views ---

def slot_view(slot: models.AppointmentSlot) -> Dict:
    data = schemas.SlotResponse.model_validate(slot).model_dump()
    data["patient"] = (
        {"id": slot.patient.id, "name": slot.patient.name, "uh_id": slot.patient.uh_id,
         "contact": slot.patient.contact, "age": slot.patient.age, "gender": slot.patient.gender}
        if slot.patient else None
    )
    appointment = slot.patient_appointment
    data["patient_appointment"] = (
        {"id": appointment.id, "patient_name": appointment.patient_name,
         "confirmation_code": appointment.confirmation_code, "status": appointment.status.value,
         "preferred_date": appointment.preferred_date, "preferred_time": appointment.preferred_time}
        if appointment else None
    )
    data["booked_by_name"] = slot.booker.display_name if slot.booker else None
    return data


def get_slots_for_day(db: Session, center_id: int, doctor_id: int, day: datetime) -> Dict:
    slots = crud.get_slots_for_day(db, center_id, day, doctor_id=doctor_id)
    booked = sum(1 for s in slots if s.is_booked)
    return {
        "slots": [slot_view(s) for s in slots],
        "summary": {"total": len(slots), "booked": booked, "available": len(slots) - booked},
    }


def get_day_appointments(db: Session, center_id: int, day: datetime) -> Dict:
    """Booked slots of every doctor in the center for one day, grouped by doctor, plus per-doctor counts."""
    all_slots = crud.get_slots_for_day(db, center_id, day)
    by_doctor: Dict[str, Dict] = {}
    stats: Dict[str, Dict[str, int]] = {}
    for slot in all_slots:
        key = str(slot.doctor_id)
        counts = stats.setdefault(key, {"total": 0, "booked": 0, "available": 0})
        counts["total"] += 1
        if not slot.is_booked:
            counts["available"] += 1
            continue
        counts["booked"] += 1
        group = by_doctor.setdefault(key, {
            "doctor": {
                "id": slot.doctor.id,
                "name": slot.doctor.display_name,
                "email": slot.doctor.email,
                "qualification": slot.doctor.qualification,
            },
            "appointments": [],
        })
        group["appointments"].append(slot_view(slot))
    return {
        "date": day.date().isoformat(),
        "appointments_by_doctor": by_doctor,
        "doctor_stats": stats,
    }
