# carecenter/routers/calendar.py
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date
import logging

from .. import models, schemas
from ..database import get_db, get_session_factory
from ..security import require_center, require_center_admin, require_front_desk
from ..services import calendar_service, slot_service
from ..services.calendar_service import as_day

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/doctor-calendar",
    tags=["doctor-calendar"],
    responses={404: {"description": "Not found"}},
)


def _availability_view(record: models.DoctorAvailability) -> schemas.AvailabilityResponse:
    view = schemas.AvailabilityResponse.model_validate(record)
    view.doctor_name = record.doctor.display_name if record.doctor else None
    return view


@router.get("/doctors", response_model=List[schemas.DoctorResponse])
def get_center_doctors(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    return calendar_service.get_center_doctors(db, require_center(current_user))


@router.post("/availability")
def set_doctor_availability(
    payload: schemas.AvailabilitySet,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_center_admin),
):
    """Create or update one doctor/day. Working hours regenerate that day's slots."""
    center_id = require_center(current_user)
    record, slots_created = calendar_service.set_doctor_availability(db, center_id, current_user, payload)
    return {
        "success": True,
        "message": "Doctor availability updated successfully",
        "availability": _availability_view(record),
        "slots_created": slots_created,
    }


@router.get("/availability")
def get_doctor_availability(
    doctor_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_center_admin),
):
    center_id = require_center(current_user)
    records = calendar_service.get_doctor_availability(db, center_id, doctor_id, start_date, end_date)
    return {"success": True, "availability": [_availability_view(r) for r in records]}


@router.get("/month-availability")
def get_month_range_availability(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    doctor_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    records = calendar_service.get_month_range_availability(db, center_id, start_date, end_date, doctor_id)
    return {"success": True, "availability": [_availability_view(r) for r in records]}


@router.post("/default-working-hours")
def set_default_working_hours(
    payload: schemas.DefaultWorkingHoursRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    current_user: models.User = Depends(require_center_admin),
):
    """
    Fill a year with default hours. Returns once the availability records are saved;
    slots are generated afterwards in batches. Re-fetch slots later to see them.
    """
    center_id = require_center(current_user)
    job, skipped = calendar_service.set_default_working_hours(db, center_id, current_user, payload)
    if job.dates:
        background_tasks.add_task(calendar_service.materialize_slots, session_factory, job)
    return {
        "success": True,
        "message": f"Default working hours set for {len(job.dates)} days",
        "updated": len(job.dates),
        "skipped": skipped,
        "slot_generation": "scheduled" if job.dates else "not_required",
    }


@router.post("/mark-sundays")
def mark_sundays_as_holidays(
    payload: schemas.SundayHolidaysRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_center_admin),
):
    center_id = require_center(current_user)
    count = calendar_service.mark_sundays_as_holidays(db, center_id, current_user, payload.doctor_id, payload.year)
    return {"success": True, "message": f"Successfully marked {count} Sundays as holidays", "count": count}


@router.post("/bulk-holidays")
def bulk_set_holidays(
    payload: schemas.BulkHolidaysRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_center_admin),
):
    center_id = require_center(current_user)
    count = calendar_service.bulk_set_holidays(
        db, center_id, current_user, payload.doctor_id, payload.dates, payload.holiday_name
    )
    return {"success": True, "message": f"Successfully set {count} holidays", "count": count}


@router.post("/bulk-availability")
def bulk_set_availability(
    payload: schemas.BulkAvailabilityRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    current_user: models.User = Depends(require_center_admin),
):
    center_id = require_center(current_user)
    job = calendar_service.bulk_set_availability(db, center_id, current_user, payload)
    background_tasks.add_task(calendar_service.materialize_slots, session_factory, job)
    return {
        "success": True,
        "message": f"Availability set for {len(job.dates)} days",
        "updated": len(job.dates),
        "slot_generation": "scheduled",
    }


@router.post("/slots/create")
def create_appointment_slots(
    payload: schemas.SlotCreateRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    slots = calendar_service.create_appointment_slots(db, center_id, current_user, payload)
    return {
        "success": True,
        "message": f"Created {len(slots)} appointment slots",
        "slots_created": len(slots),
    }


@router.get("/slots")
def get_appointment_slots(
    doctor_id: int,
    date: date,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    result = slot_service.get_slots_for_day(db, center_id, doctor_id, as_day(date))
    return {"success": True, **result}


@router.get("/day-appointments")
def get_day_appointments(
    date: date,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    return {"success": True, **slot_service.get_day_appointments(db, center_id, as_day(date))}


@router.post("/slots/book")
def book_slot_for_patient(
    payload: schemas.SlotBookRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    slot = slot_service.book_slot(
        db, center_id, payload.slot_id, payload.patient_id, current_user.id,
        patient_appointment_id=payload.patient_appointment_id, notes=payload.notes,
    )
    return {"success": True, "message": "Slot booked successfully", "slot": slot_service.slot_view(slot)}


@router.post("/slots/cancel")
def cancel_booked_slot(
    payload: schemas.SlotCancelRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    slot = slot_service.cancel_booked_slot(db, center_id, payload.slot_id, payload.reason)
    logger.info(f"User {current_user.id} cancelled slot {payload.slot_id}")
    return {"success": True, "message": "Slot booking cancelled", "slot": slot_service.slot_view(slot)}


@router.post("/slots/{slot_id}/outcome")
def mark_slot_outcome(
    slot_id: int,
    payload: schemas.SlotOutcomeRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_front_desk),
):
    center_id = require_center(current_user)
    slot = slot_service.mark_slot_outcome(db, center_id, slot_id, payload.status)
    return {"success": True, "slot": slot_service.slot_view(slot)}


@router.delete("/slots")
def delete_appointment_slots(
    doctor_id: int = Query(...),
    date: date = Query(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_center_admin),
):
    """Removes the unbooked slots of one doctor/day. Booked slots stay."""
    center_id = require_center(current_user)
    deleted = slot_service.delete_unbooked_slots(db, center_id, doctor_id, as_day(date))
    return {"success": True, "message": f"Deleted {deleted} appointment slots", "deleted_count": deleted}
