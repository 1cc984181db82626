# schedules.py
"""Doctor-side management of the inputs the availability resolver reads."""
import logging
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from .constants import DAYS_OF_WEEK
from .exceptions import ConflictError, NotFoundError, ValidationError
from .models import (AvailabilitySchedule, AvailabilityTimeSlot, BlockedDate, BlockedTimeSlot, Doctor,
                     DoctorAvailability, ScheduleTimeSlot, User)
from .notifications import audit, notify
from .repository import get_doctor, get_schedule_override, occupying_appointments
from .utils import day_name, generate_time_slots, local_now, normalize_time, resolve_timezone, validate_slot


def _normalized_slots(slots):
    normalized = []
    for slot in slots:
        start, end = normalize_time(slot["start"]), normalize_time(slot["end"])
        validate_slot(start, end)
        normalized.append((start, end, slot.get("is_available", True)))
    normalized.sort()
    for (_, prev_end, _), (next_start, _, _) in zip(normalized, normalized[1:]):
        if next_start < prev_end:
            raise ValidationError("Time slots must not overlap")
    return normalized


def update_doctor_profile(db: Session, doctor: Doctor, specialization=None, consultation_fee=None,
                          consultation_duration=None, timezone_name=None):
    if consultation_fee is not None:
        if consultation_fee < 0:
            raise ValidationError("Consultation fee cannot be negative")
        doctor.consultation_fee = consultation_fee
    if consultation_duration is not None:
        if consultation_duration <= 0:
            raise ValidationError("Consultation duration must be positive")
        doctor.consultation_duration = consultation_duration
    if timezone_name is not None:
        resolve_timezone(timezone_name)
        doctor.timezone = timezone_name
    if specialization is not None:
        doctor.specialization = specialization
    db.commit()
    db.refresh(doctor)
    return doctor


def set_weekly_schedule(db: Session, doctor: Doctor, days: dict):
    """
    Replace the weekly rule of each day given in `days`.

    Each value carries `is_available` and either explicit `slots` or a `working_hours`
    range that is cut into consultation_duration slots. Days not mentioned are left as they are.
    """
    for day, rule in days.items():
        day = day.lower()
        if day not in DAYS_OF_WEEK:
            raise ValidationError(f"Invalid day of week: {day}")

        if rule.get("working_hours"):
            hours = rule["working_hours"]
            slots = generate_time_slots(hours["start"], hours["end"], doctor.consultation_duration)
        else:
            slots = rule.get("slots") or []
        normalized = _normalized_slots(slots)

        availability = db.query(DoctorAvailability).filter_by(doctor_id=doctor.user_id, day=day).first()
        if availability is None:
            availability = DoctorAvailability(doctor_id=doctor.user_id, day=day)
            db.add(availability)
        availability.is_available = rule.get("is_available", True)
        availability.time_slots = [
            AvailabilityTimeSlot(start=start, end=end, is_available=is_available)
            for start, end, is_available in normalized
        ]

    db.commit()
    db.refresh(doctor)
    logging.info(f"Weekly schedule updated for doctor {doctor.user_id}: {sorted(days)}")
    return weekly_schedule(doctor)


def weekly_schedule(doctor: Doctor):
    return {
        avail.day: {
            "is_available": avail.is_available,
            "slots": [{"start": slot.start, "end": slot.end, "is_available": slot.is_available}
                      for slot in avail.time_slots],
        }
        for avail in doctor.weekly_availability
    }


def block_dates(db: Session, doctor: Doctor, dates, reason=None, now: datetime = None):
    if not dates:
        raise ValidationError("Dates array is required")

    today = local_now(doctor.timezone, now).date()
    past = sorted(d.isoformat() for d in dates if d < today)
    if past:
        raise ValidationError(f"Cannot block past dates: {', '.join(past)}")

    conflicting = sorted({d.isoformat() for d in dates
                          if occupying_appointments(db, doctor.user_id, d).first() is not None})
    if conflicting:
        raise ConflictError(f"Cannot block dates with existing appointments: {', '.join(conflicting)}")

    existing = {blocked.date for blocked in doctor.blocked_dates}
    newly_blocked = sorted(set(dates) - existing)
    for blocked_date in newly_blocked:
        db.add(BlockedDate(doctor_id=doctor.user_id, date=blocked_date, reason=reason))
    db.commit()
    logging.info(f"Doctor {doctor.user_id} blocked {len(newly_blocked)} date(s)")
    return [d.isoformat() for d in newly_blocked]


def unblock_dates(db: Session, doctor: Doctor, dates):
    if not dates:
        raise ValidationError("Dates array is required")
    removed = db.query(BlockedDate).filter(
        BlockedDate.doctor_id == doctor.user_id, BlockedDate.date.in_(list(dates))
    ).delete(synchronize_session=False)
    db.commit()
    db.expire(doctor)
    logging.info(f"Doctor {doctor.user_id} unblocked {removed} date(s)")
    return removed


def block_time_slots(db: Session, doctor: Doctor, slots, now: datetime = None):
    """Block exact (date, start, end) tuples. Slots already taken by an appointment are refused."""
    if not slots:
        raise ValidationError("Time slots array is required")

    today = local_now(doctor.timezone, now).date()
    created = 0
    for slot in slots:
        start, end = normalize_time(slot["start"]), normalize_time(slot["end"])
        validate_slot(start, end)
        if slot["date"] < today:
            raise ValidationError("Cannot block past dates")
        booked = occupying_appointments(db, doctor.user_id, slot["date"]).filter_by(slot_start=start).first()
        if booked:
            raise ConflictError(f"Time slot {slot['date'].isoformat()} {start} has an existing appointment")
        exists = db.query(BlockedTimeSlot).filter_by(
            doctor_id=doctor.user_id, date=slot["date"], start=start, end=end
        ).first()
        if not exists:
            db.add(BlockedTimeSlot(doctor_id=doctor.user_id, date=slot["date"], start=start, end=end))
            created += 1
    db.commit()
    return created


def unblock_time_slots(db: Session, doctor: Doctor, slots):
    removed = 0
    for slot in slots:
        removed += db.query(BlockedTimeSlot).filter_by(
            doctor_id=doctor.user_id,
            date=slot["date"],
            start=normalize_time(slot["start"]),
            end=normalize_time(slot["end"]),
        ).delete(synchronize_session=False)
    db.commit()
    return removed


def upsert_schedule_override(db: Session, doctor: Doctor, actor: User, target_date: date, time_slots=None,
                             is_available=True, is_blocked=False, reason=None):
    """Create or replace the date-specific override for `target_date`."""
    if is_available and not is_blocked and not time_slots:
        raise ValidationError("Date and time slots are required")
    normalized = _normalized_slots(time_slots or [])

    schedule = get_schedule_override(db, doctor.user_id, target_date)
    if schedule is None:
        schedule = AvailabilitySchedule(doctor_id=doctor.user_id, date=target_date,
                                        day_of_week=day_name(target_date))
        db.add(schedule)
    schedule.is_available = is_available
    schedule.is_blocked = is_blocked
    schedule.reason = reason
    schedule.updated_by = actor.id
    schedule.time_slots = [
        ScheduleTimeSlot(start=start, end=end, is_available=slot_available)
        for start, end, slot_available in normalized
    ]
    db.commit()
    db.refresh(schedule)
    notify(doctor.user_id, "availability_schedule_updated",
           f"Your availability schedule for {target_date.isoformat()} has been updated")
    return schedule


def delete_schedule_override(db: Session, doctor: Doctor, target_date: date):
    schedule = get_schedule_override(db, doctor.user_id, target_date)
    if schedule is None:
        raise NotFoundError("Availability schedule not found")
    db.delete(schedule)
    db.commit()


def serialize_schedule_override(schedule: AvailabilitySchedule):
    return {
        "date": schedule.date.isoformat(),
        "day_of_week": schedule.day_of_week,
        "is_available": schedule.is_available,
        "is_blocked": schedule.is_blocked,
        "reason": schedule.reason,
        "time_slots": [{"start": slot.start, "end": slot.end, "is_available": slot.is_available}
                       for slot in schedule.time_slots],
    }


def approve_doctor(db: Session, actor: User, doctor_id: int, approved=True):
    doctor = get_doctor(db, doctor_id, approved_only=False)
    doctor.is_approved = approved
    db.commit()
    db.refresh(doctor)
    audit(actor, "doctor_approved" if approved else "doctor_unapproved", "doctor", doctor_id)
    notify(doctor_id, "doctor_approval", "Your profile has been approved" if approved
           else "Your profile approval was revoked")
    return doctor


def delete_doctor(db: Session, actor: User, doctor_id: int):
    """Tombstone a doctor; existing appointments and payments are kept."""
    doctor = get_doctor(db, doctor_id, approved_only=False)
    doctor.is_deleted = True
    doctor.deleted_at = datetime.now(timezone.utc)
    db.commit()
    audit(actor, "doctor_deleted", "doctor", doctor_id)
    return doctor
