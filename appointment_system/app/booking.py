# booking.py
import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .availability import is_date_blocked, is_slot_blocked
from .constants import AppointmentStatus, Messages, PaymentStatus
from .exceptions import ConflictError, ValidationError
from .metrics import APPOINTMENTS_BOOKED
from .models import Appointment, User
from .payments import new_payment_for_appointment, resolve_gateway_name
from .repository import get_doctor, occupying_appointments
from .utils import generate_appointment_number, local_now, to_minutes, validate_slot


def check_slot_bookable(db: Session, doctor_id: int, target_date: date, start: str, end: str,
                        exclude_appointment_id=None, now: datetime = None):
    """
    Run the booking checks in order and return the doctor when the slot can be taken.

    Raises NotFoundError for a missing or unapproved doctor, ConflictError for a blocked
    date, blocked slot or occupied slot, and ValidationError for a slot already in the past.
    """
    validate_slot(start, end)
    doctor = get_doctor(db, doctor_id)

    if is_date_blocked(db, doctor_id, target_date):
        raise ConflictError(Messages.DATE_BLOCKED)

    if is_slot_blocked(db, doctor_id, target_date, start, end):
        raise ConflictError(Messages.TIME_SLOT_BLOCKED)

    clash = occupying_appointments(db, doctor_id, target_date, exclude_appointment_id).filter(
        Appointment.slot_start == start
    ).first()
    if clash:
        raise ConflictError(Messages.TIME_SLOT_ALREADY_BOOKED)

    today_local = local_now(doctor.timezone, now)
    if target_date < today_local.date() or (
            target_date == today_local.date()
            and to_minutes(start) <= today_local.hour * 60 + today_local.minute):
        raise ValidationError(Messages.TIME_SLOT_IN_PAST)

    return doctor


def _commit_slot(db: Session, doctor_id: int, target_date: date, start: str):
    # The partial unique index turns a lost check-then-act race into an IntegrityError.
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        APPOINTMENTS_BOOKED.labels(outcome="conflict").inc()
        logging.warning(f"Concurrent booking rejected for doctor {doctor_id} on {target_date} at {start}")
        raise ConflictError(Messages.TIME_SLOT_ALREADY_BOOKED)


def book_appointment(db: Session, patient: User, doctor_id: int, appointment_date: date, start: str, end: str,
                     reason_for_visit=None, symptoms=None, is_follow_up=False, previous_appointment_id=None,
                     payment_gateway=None, gateways=None, now: datetime = None):
    try:
        doctor = check_slot_bookable(db, doctor_id, appointment_date, start, end, now=now)
    except ConflictError:
        APPOINTMENTS_BOOKED.labels(outcome="conflict").inc()
        raise

    if previous_appointment_id is not None:
        previous = db.query(Appointment).filter_by(id=previous_appointment_id, patient_id=patient.id).first()
        if not previous:
            raise ValidationError("Previous appointment not found for this patient")

    if payment_gateway:
        payment_gateway = resolve_gateway_name(payment_gateway=payment_gateway, gateways=gateways)

    appointment = Appointment(
        appointment_number=generate_appointment_number(appointment_date),
        patient_id=patient.id,
        doctor_id=doctor_id,
        appointment_date=appointment_date,
        slot_start=start,
        slot_end=end,
        status=AppointmentStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        consultation_fee=doctor.consultation_fee,
        reason_for_visit=reason_for_visit,
        symptoms=symptoms,
        is_follow_up=bool(is_follow_up or previous_appointment_id),
        previous_appointment_id=previous_appointment_id,
    )
    db.add(appointment)

    if payment_gateway:
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            APPOINTMENTS_BOOKED.labels(outcome="conflict").inc()
            raise ConflictError(Messages.TIME_SLOT_ALREADY_BOOKED)
        db.add(new_payment_for_appointment(appointment, payment_gateway, gateways))

    _commit_slot(db, doctor_id, appointment_date, start)
    db.refresh(appointment)
    APPOINTMENTS_BOOKED.labels(outcome="booked").inc()
    logging.info(f"Appointment {appointment.id} booked for patient {patient.id} with doctor {doctor_id} "
                 f"on {appointment_date.isoformat()} {start}-{end}")
    return appointment


def move_appointment(db: Session, appointment: Appointment, new_date: date, start: str, end: str,
                     now: datetime = None):
    """Re-validate the target slot and move the appointment there; the caller commits."""
    check_slot_bookable(db, appointment.doctor_id, new_date, start, end,
                        exclude_appointment_id=appointment.id, now=now)
    appointment.original_date = appointment.appointment_date
    appointment.original_slot_start = appointment.slot_start
    appointment.original_slot_end = appointment.slot_end
    appointment.appointment_date = new_date
    appointment.slot_start = start
    appointment.slot_end = end
    return appointment


def commit_move(db: Session, appointment: Appointment):
    _commit_slot(db, appointment.doctor_id, appointment.appointment_date, appointment.slot_start)
    db.refresh(appointment)
    return appointment
