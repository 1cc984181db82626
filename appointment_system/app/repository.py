# repository.py
"""Shared lookups. Tombstoned doctors are filtered here and nowhere else."""
from sqlalchemy.orm import Session

from .constants import Messages, OCCUPYING_STATUSES, PaymentStatus
from .exceptions import NotFoundError
from .models import Appointment, AvailabilitySchedule, Doctor, Payment, Refund


def active_doctors(db: Session):
    return db.query(Doctor).filter(Doctor.is_deleted.is_(False))


def get_doctor(db: Session, doctor_id: int, approved_only: bool = True):
    query = active_doctors(db).filter(Doctor.user_id == doctor_id)
    if approved_only:
        query = query.filter(Doctor.is_approved.is_(True))
    doctor = query.first()
    if not doctor:
        raise NotFoundError(Messages.DOCTOR_NOT_FOUND_OR_NOT_APPROVED if approved_only
                            else Messages.DOCTOR_PROFILE_NOT_FOUND)
    return doctor


def get_appointment(db: Session, appointment_id: int, for_update: bool = False):
    query = db.query(Appointment).filter(Appointment.id == appointment_id)
    if for_update:
        query = query.with_for_update()
    appointment = query.first()
    if not appointment:
        raise NotFoundError(Messages.APPOINTMENT_NOT_FOUND)
    return appointment


def get_payment(db: Session, payment_id: int, for_update: bool = False):
    query = db.query(Payment).filter(Payment.id == payment_id)
    if for_update:
        query = query.with_for_update()
    payment = query.first()
    if not payment:
        raise NotFoundError(Messages.PAYMENT_NOT_FOUND)
    return payment


def get_refund(db: Session, payment_id: int, refund_id: int):
    refund = db.query(Refund).filter(Refund.id == refund_id, Refund.payment_id == payment_id).first()
    if not refund:
        raise NotFoundError(Messages.REFUND_NOT_FOUND)
    return refund


def occupying_appointments(db: Session, doctor_id: int, target_date, exclude_appointment_id=None):
    query = db.query(Appointment).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.appointment_date == target_date,
        Appointment.status.in_(OCCUPYING_STATUSES),
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)
    return query


def get_schedule_override(db: Session, doctor_id: int, target_date):
    return db.query(AvailabilitySchedule).filter_by(doctor_id=doctor_id, date=target_date).first()


def active_payment_for_appointment(db: Session, appointment_id: int):
    return db.query(Payment).filter(
        Payment.appointment_id == appointment_id,
        Payment.status != PaymentStatus.CANCELLED.value,
    ).first()
