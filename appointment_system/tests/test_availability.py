from datetime import datetime, timedelta, timezone

import pytest

from appointment_system.app.availability import get_available_slots
from appointment_system.app.constants import AppointmentStatus
from appointment_system.app.exceptions import NotFoundError
from appointment_system.app.models import (Appointment, AvailabilitySchedule, BlockedDate, BlockedTimeSlot,
                                           ScheduleTimeSlot)


def add_appointment(db, doctor, patient, day, start, end, status=AppointmentStatus.CONFIRMED.value):
    appointment = Appointment(
        appointment_number=f"APT-TEST-{day.isoformat()}-{start}-{status}",
        patient_id=patient.id,
        doctor_id=doctor.id,
        appointment_date=day,
        slot_start=start,
        slot_end=end,
        status=status,
        consultation_fee=500.0,
    )
    db.add(appointment)
    db.commit()
    return appointment


def starts(result):
    return [slot["start"] for slot in result["slots"]]


def test_booked_slot_is_excluded(db, doctor, patient, monday, monday_schedule):
    add_appointment(db, doctor, patient, monday, "09:30", "10:00")

    result = get_available_slots(db, doctor.id, monday)

    assert result == {
        "available": True,
        "slots": [{"start": "09:00", "end": "09:30"}, {"start": "10:00", "end": "10:30"}],
    }


def test_blocked_date_wins_over_weekly_schedule(db, doctor, monday, monday_schedule):
    db.add(BlockedDate(doctor_id=doctor.id, date=monday, reason="Conference"))
    db.commit()

    assert get_available_slots(db, doctor.id, monday) == {"available": False, "slots": []}


def test_day_without_rule_has_no_slots(db, doctor, tuesday, monday_schedule):
    assert get_available_slots(db, doctor.id, tuesday) == {"available": False, "slots": []}


def test_unavailable_day_has_no_slots(db, doctor, set_weekly_slots, tuesday):
    set_weekly_slots(doctor.id, "tuesday", [("09:00", "09:30")], is_available=False)

    assert get_available_slots(db, doctor.id, tuesday)["available"] is False


def test_cancelled_and_completed_appointments_do_not_occupy(db, doctor, patient, monday, monday_schedule):
    add_appointment(db, doctor, patient, monday, "09:00", "09:30", status=AppointmentStatus.CANCELLED.value)
    add_appointment(db, doctor, patient, monday, "10:00", "10:30", status=AppointmentStatus.COMPLETED.value)

    assert starts(get_available_slots(db, doctor.id, monday)) == ["09:00", "09:30", "10:00"]


@pytest.mark.parametrize("status", [
    AppointmentStatus.PENDING.value,
    AppointmentStatus.RESCHEDULE_REQUESTED.value,
    AppointmentStatus.RESCHEDULED_BY_ADMIN.value,
])
def test_non_terminal_appointments_occupy(db, doctor, patient, monday, monday_schedule, status):
    add_appointment(db, doctor, patient, monday, "09:00", "09:30", status=status)

    assert "09:00" not in starts(get_available_slots(db, doctor.id, monday))


def test_blocked_slot_removed_only_on_exact_match(db, doctor, monday, monday_schedule):
    db.add(BlockedTimeSlot(doctor_id=doctor.id, date=monday, start="09:00", end="09:30"))
    db.add(BlockedTimeSlot(doctor_id=doctor.id, date=monday, start="10:00", end="11:00"))
    db.commit()

    assert starts(get_available_slots(db, doctor.id, monday)) == ["09:30", "10:00"]


def test_date_override_supersedes_weekly_rule(db, doctor, monday, monday_schedule):
    override = AvailabilitySchedule(doctor_id=doctor.id, date=monday, day_of_week="monday")
    override.time_slots = [
        ScheduleTimeSlot(start="14:00", end="14:30"),
        ScheduleTimeSlot(start="13:00", end="13:30"),
        ScheduleTimeSlot(start="15:00", end="15:30", is_available=False),
    ]
    db.add(override)
    db.commit()

    assert starts(get_available_slots(db, doctor.id, monday)) == ["13:00", "14:00"]


def test_blocked_override_empties_the_day(db, doctor, monday, monday_schedule):
    db.add(AvailabilitySchedule(doctor_id=doctor.id, date=monday, day_of_week="monday", is_blocked=True))
    db.commit()

    assert get_available_slots(db, doctor.id, monday) == {"available": False, "slots": []}


def test_today_keeps_only_slots_starting_after_now(db, doctor, monday, monday_schedule):
    now = datetime(monday.year, monday.month, monday.day, 9, 30, tzinfo=timezone.utc)

    # 09:30 itself is not strictly after now
    assert starts(get_available_slots(db, doctor.id, monday, now=now)) == ["10:00"]


def test_today_uses_doctor_timezone(db, make_user, set_weekly_slots, monday):
    doctor = make_user("doctor", timezone="Asia/Kolkata")
    set_weekly_slots(doctor.id, "monday", [("09:00", "09:30"), ("09:30", "10:00"), ("10:00", "10:30")])
    # 04:15 UTC is 09:45 in Kolkata
    now = datetime(monday.year, monday.month, monday.day, 4, 15, tzinfo=timezone.utc)

    assert starts(get_available_slots(db, doctor.id, monday, now=now)) == ["10:00"]


def test_past_date_resolves_empty(db, doctor, monday, monday_schedule):
    now = datetime.combine(monday + timedelta(days=7), datetime.min.time(), tzinfo=timezone.utc)

    assert get_available_slots(db, doctor.id, monday, now=now) == {"available": False, "slots": []}


def test_unapproved_doctor_not_found(db, make_user, monday):
    pending_doctor = make_user("doctor", is_approved=False)

    with pytest.raises(NotFoundError) as excinfo:
        get_available_slots(db, pending_doctor.id, monday)
    assert excinfo.value.message == "Doctor not found or not approved"


def test_tombstoned_doctor_not_found(db, doctor, monday, monday_schedule):
    doctor.doctor_profile.is_deleted = True
    db.commit()

    with pytest.raises(NotFoundError):
        get_available_slots(db, doctor.id, monday)


def test_available_slots_endpoint(client, doctor, monday, monday_schedule):
    response = client.get(f"/appointments/available-slots/{doctor.id}", params={"date": monday.isoformat()})

    assert response.status_code == 200
    assert response.json()["available"] is True
    assert [slot["start"] for slot in response.json()["slots"]] == ["09:00", "09:30", "10:00"]


def test_available_slots_requires_date(client, doctor):
    response = client.get(f"/appointments/available-slots/{doctor.id}")

    assert response.status_code == 400
    assert response.json()["detail"] == "Date is required"


def test_available_slots_unknown_doctor(client, monday):
    response = client.get("/appointments/available-slots/9999", params={"date": monday.isoformat()})

    assert response.status_code == 404
