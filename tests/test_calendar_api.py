# tests/test_calendar_api.py
import pytest

from carecenter import models

BASE = "/api/v1/doctor-calendar"


@pytest.fixture
def desk(api, receptionist):
    return api(receptionist)


@pytest.fixture
def admin(api, center_admin):
    return api(center_admin)


def slots_on(client, doctor, day):
    response = client.get(f"{BASE}/slots", params={"doctor_id": doctor.id, "date": day})
    assert response.status_code == 200
    return response.json()


class TestSingleDay:
    def test_working_hours_generate_slots(self, admin, desk, doctor):
        response = admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-10",
            "start_time": "09:00", "end_time": "12:00",
            "break_start_time": "10:00", "break_end_time": "10:30",
        })
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["slots_created"] == 5
        assert body["availability"]["doctor_name"] == "Dr. Kapoor"
        assert slots_on(desk, doctor, "2026-03-10")["summary"] == {"total": 5, "booked": 0, "available": 5}

    def test_holiday_wins_over_hours(self, admin, desk, doctor):
        admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-10", "start_time": "09:00", "end_time": "10:00",
        })
        response = admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-10", "is_available": True,
            "is_holiday": True, "holiday_name": "Holi",
            "start_time": "09:00", "end_time": "17:00",
        })
        assert response.status_code == 200
        availability = response.json()["availability"]
        assert availability["is_available"] is False
        assert availability["is_holiday"] is True
        assert availability["holiday_name"] == "Holi"
        assert availability["start_time"] is None
        assert response.json()["slots_created"] == 0
        assert slots_on(desk, doctor, "2026-03-10")["summary"]["total"] == 0

    def test_one_record_per_doctor_and_day(self, admin, db, doctor):
        for start in ("09:00", "10:00"):
            admin.post(f"{BASE}/availability", json={
                "doctor_id": doctor.id, "date": "2026-03-10", "start_time": start, "end_time": "11:00",
            })
        records = db.query(models.DoctorAvailability).filter_by(doctor_id=doctor.id).all()
        assert len(records) == 1
        assert records[0].start_time == "10:00"

    def test_bad_time_format(self, admin, doctor):
        response = admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-10", "start_time": "25:00", "end_time": "17:00",
        })
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_TIME_FORMAT"

    def test_doctor_must_belong_to_center(self, admin, db, other_center):
        outsider = models.User(name="Dr. Elsewhere", username="elsewhere", role=models.UserRole.doctor,
                               center_id=other_center.id)
        db.add(outsider)
        db.commit()
        response = admin.post(f"{BASE}/availability", json={
            "doctor_id": outsider.id, "date": "2026-03-10", "start_time": "09:00", "end_time": "10:00",
        })
        assert response.status_code == 404
        assert response.json()["message"] == "Doctor not found or does not belong to this center"

    def test_slots_can_only_be_created_on_available_days(self, admin, desk, doctor):
        response = desk.post(f"{BASE}/slots/create", json={"doctor_id": doctor.id, "date": "2026-03-11"})
        assert response.status_code == 400
        assert response.json()["message"] == "Doctor is not marked as available on this date"

        admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-11", "start_time": "09:00", "end_time": "10:00",
        })
        response = desk.post(f"{BASE}/slots/create", json={
            "doctor_id": doctor.id, "date": "2026-03-11", "slot_duration": 15,
        })
        assert response.json()["slots_created"] == 4


class TestBulk:
    def test_bulk_availability_generates_slots_after_response(self, admin, desk, doctor):
        response = admin.post(f"{BASE}/bulk-availability", json={
            "doctor_id": doctor.id, "dates": ["2026-04-01", "2026-04-02"],
            "start_time": "09:00", "end_time": "10:00",
        })
        assert response.status_code == 200
        assert response.json()["updated"] == 2
        assert response.json()["slot_generation"] == "scheduled"
        for day in ("2026-04-01", "2026-04-02"):
            assert slots_on(desk, doctor, day)["summary"]["total"] == 2

    def test_default_hours_keep_existing_holidays_unless_overridden(self, admin, desk, doctor):
        admin.post(f"{BASE}/bulk-holidays", json={
            "doctor_id": doctor.id, "dates": ["2026-05-04"], "holiday_name": "Clinic closed",
        })
        payload = {
            "doctor_id": doctor.id, "year": 2026, "dates": ["2026-05-04", "2026-05-05"],
            "start_time": "09:00", "end_time": "10:00",
        }
        body = admin.post(f"{BASE}/default-working-hours", json=payload).json()
        assert (body["updated"], body["skipped"]) == (1, 1)
        assert slots_on(desk, doctor, "2026-05-04")["summary"]["total"] == 0
        assert slots_on(desk, doctor, "2026-05-05")["summary"]["total"] == 2

        body = admin.post(f"{BASE}/default-working-hours", json={**payload, "override_existing": True}).json()
        assert (body["updated"], body["skipped"]) == (2, 0)
        assert slots_on(desk, doctor, "2026-05-04")["summary"]["total"] == 2

    def test_default_hours_with_nothing_to_apply(self, admin, doctor):
        admin.post(f"{BASE}/bulk-holidays", json={
            "doctor_id": doctor.id, "dates": ["2026-05-04"], "holiday_name": "Clinic closed",
        })
        body = admin.post(f"{BASE}/default-working-hours", json={
            "doctor_id": doctor.id, "year": 2026, "dates": ["2026-05-04"],
            "start_time": "09:00", "end_time": "10:00",
        }).json()
        assert body["updated"] == 0
        assert body["slot_generation"] == "not_required"

    def test_mark_sundays(self, admin, db, doctor):
        response = admin.post(f"{BASE}/mark-sundays", json={"doctor_id": doctor.id, "year": 2026})
        assert response.status_code == 200
        assert response.json()["count"] == 52
        holidays = db.query(models.DoctorAvailability).filter_by(doctor_id=doctor.id, is_holiday=True).all()
        assert len(holidays) == 52
        assert all(h.date.weekday() == 6 and h.holiday_name == "Sunday" for h in holidays)

    def test_bulk_holidays_need_a_name(self, admin, doctor):
        response = admin.post(f"{BASE}/bulk-holidays", json={
            "doctor_id": doctor.id, "dates": ["2026-05-04"], "holiday_name": "  ",
        })
        assert response.status_code == 400
        assert response.json()["message"] == "Holiday name is required"

    def test_month_range_requires_both_dates(self, desk):
        response = desk.get(f"{BASE}/month-availability", params={"start_date": "2026-05-01"})
        assert response.status_code == 400


class TestBookingEndpoints:
    def test_book_cancel_and_day_view(self, admin, desk, doctor, patient):
        admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-12", "start_time": "09:00", "end_time": "10:00",
        })
        slot_id = slots_on(desk, doctor, "2026-03-12")["slots"][0]["id"]

        booked = desk.post(f"{BASE}/slots/book", json={"slot_id": slot_id, "patient_id": patient.id})
        assert booked.status_code == 200
        assert booked.json()["slot"]["status"] == "booked"
        assert booked.json()["slot"]["booked_by_name"] == "Ravi Desk"

        again = desk.post(f"{BASE}/slots/book", json={"slot_id": slot_id, "patient_id": patient.id})
        assert again.status_code == 404
        assert again.json()["message"] == "Slot not found or already booked"

        day = desk.get(f"{BASE}/day-appointments", params={"date": "2026-03-12"}).json()
        assert day["doctor_stats"][str(doctor.id)]["booked"] == 1

        deleted = admin.delete(f"{BASE}/slots", params={"doctor_id": doctor.id, "date": "2026-03-12"})
        assert deleted.json()["deleted_count"] == 1

        cancelled = desk.post(f"{BASE}/slots/cancel", json={"slot_id": slot_id, "reason": "Travel"})
        assert cancelled.status_code == 200
        assert cancelled.json()["slot"]["is_booked"] is False

    def test_outcome(self, admin, desk, doctor, patient):
        admin.post(f"{BASE}/availability", json={
            "doctor_id": doctor.id, "date": "2026-03-12", "start_time": "09:00", "end_time": "09:30",
        })
        slot_id = slots_on(desk, doctor, "2026-03-12")["slots"][0]["id"]
        desk.post(f"{BASE}/slots/book", json={"slot_id": slot_id, "patient_id": patient.id})
        response = desk.post(f"{BASE}/slots/{slot_id}/outcome", json={"status": "no_show"})
        assert response.status_code == 200
        assert response.json()["slot"]["status"] == "no_show"


class TestAccess:
    def test_accountant_cannot_manage_calendar(self, api, accountant):
        response = api(accountant).get(f"{BASE}/doctors")
        assert response.status_code == 403

    def test_center_is_required(self, api, db):
        floater = models.User(name="Floater", username="floater", role=models.UserRole.receptionist)
        db.add(floater)
        db.commit()
        response = api(floater).get(f"{BASE}/doctors")
        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_CENTER_ID"

    def test_doctors_of_own_center(self, desk, doctor):
        response = desk.get(f"{BASE}/doctors")
        assert [d["name"] for d in response.json()] == ["Dr. Kapoor"]

    @pytest.mark.parametrize("method, path", [
        ("post", "/availability"),
        ("get", "/availability"),
        ("post", "/default-working-hours"),
        ("post", "/mark-sundays"),
        ("post", "/bulk-holidays"),
        ("post", "/bulk-availability"),
        ("delete", "/slots"),
    ])
    def test_calendar_setup_is_center_admin_only(self, desk, method, path):
        response = desk.request(method.upper(), f"{BASE}{path}")
        assert response.status_code == 403
        assert response.json()["error"] == "INSUFFICIENT_ROLE"
