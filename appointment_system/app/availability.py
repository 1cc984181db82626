# availability.py
"""
Bookable slot computation for a doctor on a single calendar date.

Sources, in precedence order:
  1. blocked dates (always win)
  2. a date-specific AvailabilitySchedule, which replaces the weekly rule for that date
  3. the weekly recurring table
Blocked (date, start, end) tuples and occupying appointments are then removed, and on the
doctor's current day only slots starting strictly after the current wall-clock minute survive.
"""
import logging
from datetime import date, datetime

from sqlalchemy.orm import Session

from .models import BlockedDate, BlockedTimeSlot, Doctor
from .repository import get_doctor, get_schedule_override, occupying_appointments
from .utils import day_name, local_now, to_minutes


def is_date_blocked(db: Session, doctor_id: int, target_date: date):
    return db.query(BlockedDate).filter_by(doctor_id=doctor_id, date=target_date).first() is not None


def is_slot_blocked(db: Session, doctor_id: int, target_date: date, start: str, end: str):
    return db.query(BlockedTimeSlot).filter_by(
        doctor_id=doctor_id, date=target_date, start=start, end=end
    ).first() is not None


def candidate_slots(db: Session, doctor: Doctor, target_date: date):
    """Slots the doctor offers on `target_date` before blocks and bookings are applied."""
    override = get_schedule_override(db, doctor.user_id, target_date)
    if override is not None:
        if override.is_blocked or not override.is_available:
            return []
        return [(slot.start, slot.end) for slot in override.time_slots if slot.is_available]

    weekday = day_name(target_date)
    rule = next((avail for avail in doctor.weekly_availability if avail.day == weekday), None)
    if rule is None or not rule.is_available:
        return []
    return [(slot.start, slot.end) for slot in rule.time_slots if slot.is_available]


def get_available_slots(db: Session, doctor_id: int, target_date: date, now: datetime = None):
    doctor = get_doctor(db, doctor_id)

    if is_date_blocked(db, doctor_id, target_date):
        return {"available": False, "slots": []}

    today_local = local_now(doctor.timezone, now)
    if target_date < today_local.date():
        return {"available": False, "slots": []}

    slots = candidate_slots(db, doctor, target_date)
    if not slots:
        return {"available": False, "slots": []}

    blocked = {
        (blocked_slot.start, blocked_slot.end)
        for blocked_slot in db.query(BlockedTimeSlot).filter_by(doctor_id=doctor_id, date=target_date)
    }
    booked_starts = {
        appointment.slot_start
        for appointment in occupying_appointments(db, doctor_id, target_date)
    }

    available_slots = [
        {"start": start, "end": end}
        for start, end in slots
        if (start, end) not in blocked and start not in booked_starts
    ]

    if target_date == today_local.date():
        current_minutes = today_local.hour * 60 + today_local.minute
        available_slots = [slot for slot in available_slots if to_minutes(slot["start"]) > current_minutes]

    available_slots.sort(key=lambda slot: to_minutes(slot["start"]))
    logging.info(f"Resolved {len(available_slots)} slot(s) for doctor {doctor_id} on {target_date.isoformat()}")
    return {"available": len(available_slots) > 0, "slots": available_slots}
