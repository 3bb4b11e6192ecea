# tests/test_slot_service.py
from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from carecenter import crud, models
from carecenter.exceptions import NotFoundError, ValidationError
from carecenter.services import slot_service
from carecenter.services.slot_service import compute_windows

DAY = datetime(2026, 3, 10)


def minutes(hhmm):
    hours, mins = hhmm.split(":")
    return int(hours) * 60 + int(mins)


class TestComputeWindows:
    def test_break_is_skipped(self):
        windows = compute_windows(minutes("09:00"), minutes("12:00"), minutes("10:00"), minutes("10:30"), 30)
        assert windows == [
            ("09:00", "09:30"),
            ("09:30", "10:00"),
            ("10:30", "11:00"),
            ("11:00", "11:30"),
            ("11:30", "12:00"),
        ]

    def test_last_slot_must_fit_before_end(self):
        windows = compute_windows(minutes("09:00"), minutes("10:10"), duration=20)
        assert windows[-1] == ("09:40", "10:00")
        assert len(windows) == 3

    def test_non_positive_duration_is_rejected(self):
        with pytest.raises(ValidationError):
            compute_windows(minutes("09:00"), minutes("10:00"), duration=0)


def test_invalid_time_is_reported_as_time_format_error(db, center, doctor):
    with pytest.raises(ValidationError) as exc:
        slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "9am", "17:00")
    assert exc.value.error_code == "INVALID_TIME_FORMAT"


def day_slots(db, center, doctor):
    return crud.get_slots_for_day(db, center.id, DAY, doctor_id=doctor.id)


class TestRegenerate:
    def test_regeneration_is_idempotent(self, db, center, doctor):
        slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "17:00", "13:00", "14:00")
        first = [(s.start_time, s.end_time) for s in day_slots(db, center, doctor)]
        slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "17:00", "13:00", "14:00")
        second = [(s.start_time, s.end_time) for s in day_slots(db, center, doctor)]
        assert len(first) == 14
        assert first == second

    def test_booked_slots_survive_regeneration(self, db, center, doctor, patient, receptionist):
        slots = slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "12:00")
        booked = slot_service.book_slot(db, center.id, slots[1].id, patient.id, receptionist.id)

        slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "12:00")
        current = day_slots(db, center, doctor)
        assert len(current) == 6
        assert [s.start_time for s in current].count("09:30") == 1
        assert db.get(models.AppointmentSlot, booked.id).is_booked

        # new hours no longer cover the booked window, it still stays
        slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "14:00", "15:00")
        current = day_slots(db, center, doctor)
        assert [(s.start_time, s.is_booked) for s in current] == [
            ("09:30", True), ("14:00", False), ("14:30", False),
        ]

    def test_delete_unbooked_keeps_bookings(self, db, center, doctor, patient, receptionist):
        slots = slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "10:00")
        slot_service.book_slot(db, center.id, slots[0].id, patient.id, receptionist.id)
        assert slot_service.delete_unbooked_slots(db, center.id, doctor.id, DAY) == 1
        assert [s.start_time for s in day_slots(db, center, doctor)] == ["09:00"]


@pytest.fixture
def open_slot(db, center, doctor):
    return slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "09:30")[0]


@pytest.fixture
def appointment(db, center, doctor, patient):
    appointment = models.PatientAppointment(
        center_id=center.id, patient_id=patient.id, doctor_id=doctor.id, patient_name=patient.name,
        confirmation_code="APT-42", preferred_date=DAY, preferred_time="09:00",
    )
    db.add(appointment)
    db.commit()
    return appointment


class TestBooking:
    def test_book_confirms_linked_appointment(self, db, center, open_slot, patient, receptionist, appointment):
        slot = slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id,
                                      patient_appointment_id=appointment.id, notes="First visit")
        assert slot.is_booked
        assert slot.status == models.SlotStatus.booked
        assert slot.patient_id == patient.id
        assert slot.booked_by == receptionist.id
        assert slot.notes == "First visit"
        db.refresh(appointment)
        assert appointment.status == models.PatientAppointmentStatus.confirmed
        assert appointment.confirmed_time == "09:00"

    def test_second_booking_of_the_same_slot_fails(self, db, center, open_slot, patient, receptionist):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id)
        with pytest.raises(NotFoundError) as exc:
            slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id)
        assert exc.value.message == "Slot not found or already booked"

    def test_slot_of_another_center_cannot_be_booked(self, db, other_center, open_slot, patient, receptionist):
        with pytest.raises(NotFoundError):
            slot_service.book_slot(db, other_center.id, open_slot.id, patient.id, receptionist.id)

    def test_unknown_patient(self, db, center, open_slot, receptionist):
        with pytest.raises(NotFoundError) as exc:
            slot_service.book_slot(db, center.id, open_slot.id, 9999, receptionist.id)
        assert exc.value.message == "Patient not found"
        assert not db.get(models.AppointmentSlot, open_slot.id).is_booked

    def test_missing_linked_appointment_does_not_fail_booking(self, db, center, open_slot, patient, receptionist):
        slot = slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id,
                                      patient_appointment_id=4242)
        assert slot.is_booked
        assert slot.patient_appointment_id is None


class TestCancellation:
    def test_cancel_frees_slot_and_cancels_appointment(self, db, center, open_slot, patient, receptionist,
                                                       appointment):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id,
                               patient_appointment_id=appointment.id, notes="First visit")
        slot = slot_service.cancel_booked_slot(db, center.id, open_slot.id, "Patient request")

        assert not slot.is_booked
        assert slot.status == models.SlotStatus.available
        assert slot.patient_id is None
        assert slot.patient_appointment_id is None
        assert slot.notes.startswith("First visit\n[")
        assert slot.notes.endswith("Cancelled: Patient request")
        db.refresh(appointment)
        assert appointment.status == models.PatientAppointmentStatus.cancelled
        assert appointment.cancellation_reason == "Patient request"
        assert appointment.cancelled_at is not None

    def test_cascade_failure_is_swallowed(self, db, center, open_slot, patient, receptionist, appointment,
                                          monkeypatch):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id,
                               patient_appointment_id=appointment.id)

        def broken(*args):
            raise SQLAlchemyError("appointments table locked")

        monkeypatch.setattr(crud, "get_patient_appointment", broken)
        slot = slot_service.cancel_booked_slot(db, center.id, open_slot.id)
        assert not slot.is_booked
        assert slot.notes.endswith("Cancelled: No reason provided")

    def test_cancelling_an_unbooked_slot(self, db, center, open_slot):
        with pytest.raises(NotFoundError) as exc:
            slot_service.cancel_booked_slot(db, center.id, open_slot.id)
        assert exc.value.message == "Booked slot not found"

    @pytest.mark.parametrize("outcome", [models.SlotStatus.completed, models.SlotStatus.no_show])
    def test_finished_slot_cannot_be_cancelled(self, db, center, open_slot, patient, receptionist, outcome):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id)
        slot_service.mark_slot_outcome(db, center.id, open_slot.id, outcome)
        with pytest.raises(NotFoundError) as exc:
            slot_service.cancel_booked_slot(db, center.id, open_slot.id, "Too late")
        assert exc.value.message == "Booked slot not found"
        slot = db.get(models.AppointmentSlot, open_slot.id)
        db.refresh(slot)
        assert slot.status == outcome
        assert slot.is_booked
        assert slot.patient_id == patient.id

    def test_cancelled_slot_can_be_booked_again(self, db, center, open_slot, patient, receptionist):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id)
        slot_service.cancel_booked_slot(db, center.id, open_slot.id, "Rescheduled")
        assert slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id).is_booked


class TestOutcome:
    def test_booked_slot_can_be_completed(self, db, center, open_slot, patient, receptionist):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id)
        slot = slot_service.mark_slot_outcome(db, center.id, open_slot.id, models.SlotStatus.completed)
        assert slot.status == models.SlotStatus.completed

        with pytest.raises(ValidationError):
            slot_service.mark_slot_outcome(db, center.id, open_slot.id, models.SlotStatus.no_show)

    def test_available_slot_has_no_outcome(self, db, center, open_slot):
        with pytest.raises(ValidationError):
            slot_service.mark_slot_outcome(db, center.id, open_slot.id, models.SlotStatus.no_show)

    def test_outcome_must_be_terminal(self, db, center, open_slot, patient, receptionist):
        slot_service.book_slot(db, center.id, open_slot.id, patient.id, receptionist.id)
        with pytest.raises(ValidationError):
            slot_service.mark_slot_outcome(db, center.id, open_slot.id, models.SlotStatus.cancelled)


def test_day_view_groups_bookings_by_doctor(db, center, doctor, patient, receptionist):
    slot_service.regenerate_slots(db, doctor.id, center.id, DAY, "09:00", "10:00")
    slots = day_slots(db, center, doctor)
    slot_service.book_slot(db, center.id, slots[0].id, patient.id, receptionist.id)

    view = slot_service.get_day_appointments(db, center.id, DAY)
    key = str(doctor.id)
    assert view["date"] == "2026-03-10"
    assert view["doctor_stats"][key] == {"total": 2, "booked": 1, "available": 1}
    booking = view["appointments_by_doctor"][key]["appointments"][0]
    assert booking["patient"]["name"] == "Sunita Rao"
    assert booking["booked_by_name"] == "Ravi Desk"
    assert view["appointments_by_doctor"][key]["doctor"]["name"] == "Dr. Kapoor"
