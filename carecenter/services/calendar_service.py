# carecenter/services/calendar_service.py
"""
Doctor availability calendar: per-day working hours and holidays, and the
bulk operations that fill a whole year at once.

Setting hours for one day regenerates that day's slots inline. Bulk operations
only write availability records and hand back a SlotGenerationJob; the router
runs it as a background task after the response is sent.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..config import get_settings
from ..exceptions import NotFoundError, ValidationError
from ..timeutils import day_key, parse_dt, start_of_day
from . import slot_service

logger = structlog.get_logger(__name__)

HOLIDAY_CLEARED_FIELDS = ("start_time", "end_time", "break_start_time", "break_end_time")


@dataclass
class WorkingHours:
    start_time: str
    end_time: str
    break_start_time: Optional[str] = None
    break_end_time: Optional[str] = None
    max_appointments: Optional[int] = None

    def as_values(self) -> Dict:
        return {
            "is_available": True,
            "is_holiday": False,
            "holiday_name": "",
            "start_time": self.start_time,
            "end_time": self.end_time,
            "break_start_time": self.break_start_time,
            "break_end_time": self.break_end_time,
            "max_appointments": self.max_appointments or get_settings().default_max_appointments,
        }

    def matches(self, record: models.DoctorAvailability) -> bool:
        return (
            record.start_time == self.start_time
            and record.end_time == self.end_time
            and (record.break_start_time or None) == (self.break_start_time or None)
            and (record.break_end_time or None) == (self.break_end_time or None)
        )


@dataclass
class SlotGenerationJob:
    """Deferred slot materialisation for many dates of one doctor. No completion signal."""
    doctor_id: int
    center_id: int
    hours: WorkingHours
    dates: List[datetime] = field(default_factory=list)
    duration: int = slot_service.DEFAULT_SLOT_DURATION
    created_by: Optional[int] = None


def as_day(value) -> datetime:
    if isinstance(value, datetime):
        return start_of_day(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    parsed = parse_dt(value)
    if parsed is None:
        raise ValidationError(f"Invalid date '{value}'")
    return start_of_day(parsed)


def verify_doctor(db: Session, doctor_id: int, center_id: int) -> models.User:
    doctor = crud.get_doctor_in_center(db, doctor_id, center_id)
    if doctor is None:
        raise NotFoundError("Doctor not found or does not belong to this center")
    return doctor


def get_center_doctors(db: Session, center_id: int) -> List[models.User]:
    return crud.get_center_doctors(db, center_id)


def _holiday_values(name: str) -> Dict:
    values = {"is_available": False, "is_holiday": True, "holiday_name": name}
    values.update({f: None for f in HOLIDAY_CLEARED_FIELDS})
    return values


# --- Single day ---

def set_doctor_availability(db: Session, center_id: int, user: models.User,
                            payload: schemas.AvailabilitySet) -> Tuple[models.DoctorAvailability, int]:
    """
    Upsert one doctor/day record and bring its slots in line.

    A holiday always ends up unavailable with no hours, whatever else was sent.
    Returns the record and the number of slots created.
    """
    verify_doctor(db, payload.doctor_id, center_id)
    settings = get_settings()
    day = as_day(payload.date)

    if payload.is_holiday:
        values = _holiday_values(payload.holiday_name or "Holiday")
    else:
        for name in HOLIDAY_CLEARED_FIELDS:
            slot_service.to_minutes(getattr(payload, name), name.replace("_", " "))
        values = {
            "is_available": payload.is_available,
            "is_holiday": False,
            "holiday_name": "",
            "start_time": payload.start_time,
            "end_time": payload.end_time,
            "break_start_time": payload.break_start_time,
            "break_end_time": payload.break_end_time,
        }
    values["notes"] = payload.notes or ""
    values["max_appointments"] = payload.max_appointments or settings.default_max_appointments
    values["created_by"] = user.id

    record = crud.upsert_availability(db, payload.doctor_id, center_id, day, values)
    db.flush()

    created = 0
    if record.is_available and record.start_time and record.end_time:
        created = len(slot_service.regenerate_slots(
            db, payload.doctor_id, center_id, day,
            record.start_time, record.end_time, record.break_start_time, record.break_end_time,
            duration=settings.default_slot_duration, created_by=user.id, commit=False,
        ))
    else:
        slot_service.clear_unbooked_slots(db, payload.doctor_id, center_id, day)
    db.commit()
    db.refresh(record)

    logger.info("availability_set", doctor_id=payload.doctor_id, center_id=center_id,
                date=day.date().isoformat(), is_available=record.is_available,
                is_holiday=record.is_holiday, slots_created=created)
    return record, created


def get_doctor_availability(db: Session, center_id: int, doctor_id: Optional[int] = None,
                            start_date: Optional[date] = None, end_date: Optional[date] = None):
    start = as_day(start_date) if start_date else None
    end = as_day(end_date) if end_date else None
    return crud.get_availability_range(db, center_id, start, end, doctor_id=doctor_id)


def get_month_range_availability(db: Session, center_id: int, start_date: Optional[date],
                                 end_date: Optional[date], doctor_id: Optional[int] = None):
    if not start_date or not end_date:
        raise ValidationError("Start date and end date are required")
    return crud.get_availability_range(db, center_id, as_day(start_date), as_day(end_date), doctor_id=doctor_id)


def create_appointment_slots(db: Session, center_id: int, user: models.User,
                             payload: schemas.SlotCreateRequest) -> List[models.AppointmentSlot]:
    """Explicit (re)generation for one day; the doctor must already be marked available."""
    verify_doctor(db, payload.doctor_id, center_id)
    day = as_day(payload.date)
    availability = crud.get_availability_for_day(db, payload.doctor_id, center_id, day)
    if availability is None or not availability.is_available:
        raise ValidationError("Doctor is not marked as available on this date")

    start_time = payload.start_time or availability.start_time
    end_time = payload.end_time or availability.end_time
    if not start_time or not end_time:
        raise ValidationError("Doctor ID, date, start time, and end time are required")
    return slot_service.regenerate_slots(
        db, payload.doctor_id, center_id, day, start_time, end_time,
        payload.break_start_time or availability.break_start_time,
        payload.break_end_time or availability.break_end_time,
        duration=payload.slot_duration or get_settings().default_slot_duration,
        created_by=user.id,
    )


# --- Bulk ---

def _upsert_holidays(db: Session, center_id: int, doctor_id: int, days: Iterable[datetime],
                     holiday_name: str, created_by: Optional[int]) -> int:
    count = 0
    for day in days:
        values = _holiday_values(holiday_name)
        values["created_by"] = created_by
        crud.upsert_availability(db, doctor_id, center_id, day, values)
        slot_service.clear_unbooked_slots(db, doctor_id, center_id, day)
        count += 1
    db.commit()
    return count


def sundays_of(year: int) -> List[datetime]:
    day = datetime(year, 1, 1)
    day += timedelta(days=(6 - day.weekday()) % 7)
    sundays = []
    while day.year == year:
        sundays.append(day)
        day += timedelta(days=7)
    return sundays


def mark_sundays_as_holidays(db: Session, center_id: int, user: models.User, doctor_id: int, year: int) -> int:
    verify_doctor(db, doctor_id, center_id)
    count = _upsert_holidays(db, center_id, doctor_id, sundays_of(year), "Sunday", user.id)
    logger.info("sundays_marked", doctor_id=doctor_id, center_id=center_id, year=year, count=count)
    return count


def bulk_set_holidays(db: Session, center_id: int, user: models.User, doctor_id: int,
                      dates: Iterable[date], holiday_name: str) -> int:
    if not holiday_name or not holiday_name.strip():
        raise ValidationError("Holiday name is required")
    verify_doctor(db, doctor_id, center_id)
    count = _upsert_holidays(db, center_id, doctor_id, [as_day(d) for d in dates], holiday_name.strip(), user.id)
    logger.info("holidays_set", doctor_id=doctor_id, center_id=center_id, count=count)
    return count


def _hours_from(payload: schemas.BulkAvailabilityRequest) -> WorkingHours:
    for name in HOLIDAY_CLEARED_FIELDS:
        slot_service.to_minutes(getattr(payload, name), name.replace("_", " "))
    return WorkingHours(
        start_time=payload.start_time,
        end_time=payload.end_time,
        break_start_time=payload.break_start_time,
        break_end_time=payload.break_end_time,
        max_appointments=payload.max_appointments,
    )


def bulk_set_availability(db: Session, center_id: int, user: models.User,
                          payload: schemas.BulkAvailabilityRequest) -> SlotGenerationJob:
    """Same hours on every listed date. Slots are left to the returned job."""
    verify_doctor(db, payload.doctor_id, center_id)
    hours = _hours_from(payload)
    days = sorted({as_day(d) for d in payload.dates})
    for day in days:
        values = hours.as_values()
        values["created_by"] = user.id
        crud.upsert_availability(db, payload.doctor_id, center_id, day, values)
    db.commit()
    logger.info("bulk_availability_set", doctor_id=payload.doctor_id, center_id=center_id, count=len(days))
    return SlotGenerationJob(
        doctor_id=payload.doctor_id,
        center_id=center_id,
        hours=hours,
        dates=days,
        duration=payload.slot_duration or get_settings().default_slot_duration,
        created_by=user.id,
    )


def _year_days(year: int, include_sundays: bool) -> List[datetime]:
    day = datetime(year, 1, 1)
    days = []
    while day.year == year:
        if include_sundays or day.weekday() != 6:
            days.append(day)
        day += timedelta(days=1)
    return days


def set_default_working_hours(db: Session, center_id: int, user: models.User,
                              payload: schemas.DefaultWorkingHoursRequest) -> Tuple[SlotGenerationJob, int]:
    """
    Apply default hours across a year (or the listed dates of that year).

    Unless override_existing is set, a date that already has a holiday, is marked
    unavailable, or carries different hours keeps its record. Existing records
    are fetched for the whole year in one query up front.
    Returns the slot job and the number of skipped dates.
    """
    verify_doctor(db, payload.doctor_id, center_id)
    hours = _hours_from(payload)
    if payload.dates:
        days = sorted({as_day(d) for d in payload.dates if d.year == payload.year})
    else:
        days = _year_days(payload.year, payload.include_sundays)

    existing = {
        day_key(r.date): r
        for r in crud.get_availability_range(
            db, center_id, datetime(payload.year, 1, 1), datetime(payload.year, 12, 31), doctor_id=payload.doctor_id,
        )
    }

    applied, skipped = [], 0
    for day in days:
        record = existing.get(day_key(day))
        if record is not None and not payload.override_existing:
            if record.is_holiday or not record.is_available or not hours.matches(record):
                skipped += 1
                continue
        values = hours.as_values()
        values["created_by"] = user.id
        if record is None:
            record = models.DoctorAvailability(doctor_id=payload.doctor_id, center_id=center_id, date=day)
            db.add(record)
        for key, value in values.items():
            setattr(record, key, value)
        applied.append(day)
    db.commit()

    logger.info("default_working_hours_set", doctor_id=payload.doctor_id, center_id=center_id,
                year=payload.year, applied=len(applied), skipped=skipped,
                override_existing=payload.override_existing)
    job = SlotGenerationJob(
        doctor_id=payload.doctor_id,
        center_id=center_id,
        hours=hours,
        dates=applied,
        duration=payload.slot_duration or get_settings().default_slot_duration,
        created_by=user.id,
    )
    return job, skipped


def _batches(items: List, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def materialize_slots(session_factory: Callable[[], Session], job: SlotGenerationJob,
                      batch_size: Optional[int] = None) -> int:
    """
    Background task body. Each batch of dates gets its own session and commit;
    a failing batch is logged and the remaining batches still run.
    """
    batch_size = batch_size or get_settings().slot_batch_size
    created = 0
    for batch in _batches(job.dates, batch_size):
        db = session_factory()
        try:
            batch_created = 0
            for day in batch:
                batch_created += len(slot_service.regenerate_slots(
                    db, job.doctor_id, job.center_id, day,
                    job.hours.start_time, job.hours.end_time,
                    job.hours.break_start_time, job.hours.break_end_time,
                    duration=job.duration, created_by=job.created_by, commit=False,
                ))
            db.commit()
            created += batch_created
        except Exception as e:
            db.rollback()
            logger.error("slot_batch_failed", doctor_id=job.doctor_id, center_id=job.center_id,
                         first_date=batch[0].date().isoformat(), size=len(batch), error=str(e))
        finally:
            db.close()
    logger.info("slot_materialisation_finished", doctor_id=job.doctor_id, center_id=job.center_id,
                dates=len(job.dates), created=created)
    return created
