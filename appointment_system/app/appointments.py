# appointments.py
"""
Appointment state machine.

    pending --accept--> confirmed --complete--> completed
    pending --decline--> cancelled
    any non-terminal --cancel--> cancelled
    pending/confirmed --request_reschedule--> reschedule_requested --reject--> previous status
    any non-terminal --admin reschedule--> rescheduled_by_admin --acknowledge--> previous status

completed and cancelled are terminal. Notifications and audit entries are sent after the
commit and never affect the outcome of a transition.
"""
import logging
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session

from .booking import check_slot_bookable, commit_move, move_appointment
from .constants import AppointmentStatus, Messages, TERMINAL_APPOINTMENT_STATUSES
from .dependencies import UserRole
from .exceptions import AuthorizationError, StateTransitionError
from .metrics import APPOINTMENT_TRANSITIONS
from .models import Appointment, User
from .notifications import audit, notify
from .payments import cancel_pending_payment
from .repository import get_appointment


def ensure_can_act(actor: User, appointment: Appointment, roles=(UserRole.PATIENT, UserRole.DOCTOR, UserRole.ADMIN)):
    """Patients act on their own appointments, doctors on assigned ones, admins on any."""
    allowed = {role.value for role in roles}
    if actor.role not in allowed:
        raise AuthorizationError(Messages.NOT_AUTHORIZED)
    if actor.role == UserRole.PATIENT.value and appointment.patient_id != actor.id:
        raise AuthorizationError(Messages.NOT_AUTHORIZED)
    if actor.role == UserRole.DOCTOR.value and appointment.doctor_id != actor.id:
        raise AuthorizationError(Messages.NOT_AUTHORIZED)


def get_appointment_for(db: Session, actor: User, appointment_id: int):
    appointment = get_appointment(db, appointment_id)
    ensure_can_act(actor, appointment)
    return appointment


def _counter_parties(actor: User, appointment: Appointment):
    if actor.role == UserRole.PATIENT.value:
        return [appointment.doctor_id]
    if actor.role == UserRole.DOCTOR.value:
        return [appointment.patient_id]
    return [appointment.patient_id, appointment.doctor_id]


def _after_transition(actor: User, appointment: Appointment, action, message):
    APPOINTMENT_TRANSITIONS.labels(action=action).inc()
    logging.info(f"Appointment {appointment.id} {action} by user {actor.id}: now {appointment.status}")
    for user_id in _counter_parties(actor, appointment):
        notify(user_id, f"appointment_{action}", message, appointment_id=appointment.id)


def _commit(db: Session, appointment: Appointment):
    db.commit()
    db.refresh(appointment)
    return appointment


def accept_appointment(db: Session, actor: User, appointment_id: int):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment, roles=(UserRole.DOCTOR,))
    if appointment.status != AppointmentStatus.PENDING.value:
        raise StateTransitionError(Messages.ONLY_PENDING_CAN_BE_ACCEPTED)

    appointment.status = AppointmentStatus.CONFIRMED.value
    _commit(db, appointment)
    _after_transition(actor, appointment, "accepted", "Your appointment has been confirmed")
    return appointment


def decline_appointment(db: Session, actor: User, appointment_id: int, reason=None):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment, roles=(UserRole.DOCTOR,))
    if appointment.status != AppointmentStatus.PENDING.value:
        raise StateTransitionError(Messages.ONLY_PENDING_CAN_BE_DECLINED)

    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.cancelled_by = actor.id
    cancel_pending_payment(db, appointment)
    _commit(db, appointment)
    _after_transition(actor, appointment, "declined", reason or "Your appointment was declined by the doctor")
    return appointment


def cancel_appointment(db: Session, actor: User, appointment_id: int, reason=None):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise StateTransitionError(Messages.APPOINTMENT_ALREADY_CANCELLED)
    if appointment.status == AppointmentStatus.COMPLETED.value:
        raise StateTransitionError(Messages.CANNOT_CANCEL_COMPLETED_APPOINTMENT)

    appointment.status = AppointmentStatus.CANCELLED.value
    appointment.cancelled_by = actor.id
    cancelled_payment = cancel_pending_payment(db, appointment)
    _commit(db, appointment)
    if cancelled_payment:
        logging.info(f"Pending payment {cancelled_payment.id} cancelled with appointment {appointment.id}")
    _after_transition(actor, appointment, "cancelled", reason or "The appointment has been cancelled")
    return appointment


def complete_appointment(db: Session, actor: User, appointment_id: int):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment, roles=(UserRole.DOCTOR,))
    if appointment.status == AppointmentStatus.COMPLETED.value:
        raise StateTransitionError(Messages.APPOINTMENT_ALREADY_COMPLETED)
    if appointment.status == AppointmentStatus.CANCELLED.value:
        raise StateTransitionError(Messages.CANNOT_COMPLETE_CANCELLED_APPOINTMENT)
    if appointment.status not in (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value):
        raise StateTransitionError(Messages.CANNOT_COMPLETE_DURING_RESCHEDULE)

    appointment.status = AppointmentStatus.COMPLETED.value
    _commit(db, appointment)
    _after_transition(actor, appointment, "completed", "Your appointment has been marked as completed")
    return appointment


def _clear_request(appointment: Appointment):
    appointment.requested_date = None
    appointment.requested_slot_start = None
    appointment.requested_slot_end = None


def reschedule_appointment(db: Session, actor: User, appointment_id: int, new_date: date, start: str, end: str,
                           reason=None, now: datetime = None):
    """
    Move an appointment to a new date/slot.

    Patients and doctors keep the current status, except that a direct move closes an open
    reschedule request and restores the status held before it. An admin reschedule puts the appointment in
    rescheduled_by_admin until the patient acknowledges it, and is written to the audit log.
    """
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment)
    if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
        raise StateTransitionError(Messages.CANNOT_RESCHEDULE_COMPLETED_OR_CANCELLED)

    previous = {"date": appointment.appointment_date.isoformat(), "time_slot": appointment.time_slot}
    move_appointment(db, appointment, new_date, start, end, now=now)
    appointment.rescheduled_by = actor.id
    appointment.rescheduled_at = datetime.now(timezone.utc)
    appointment.reschedule_reason = reason

    by_admin = actor.role == UserRole.ADMIN.value
    if by_admin:
        if appointment.status not in (AppointmentStatus.RESCHEDULE_REQUESTED.value,
                                      AppointmentStatus.RESCHEDULED_BY_ADMIN.value):
            appointment.status_before_reschedule = appointment.status
        appointment.status = AppointmentStatus.RESCHEDULED_BY_ADMIN.value
        _clear_request(appointment)
    elif appointment.status == AppointmentStatus.RESCHEDULE_REQUESTED.value:
        # A direct move supersedes the open request.
        appointment.status = appointment.status_before_reschedule or AppointmentStatus.PENDING.value
        appointment.status_before_reschedule = None
        _clear_request(appointment)

    commit_move(db, appointment)
    if by_admin:
        audit(actor, "appointment_rescheduled", "appointment", appointment.id,
              previous=previous, new={"date": new_date.isoformat(), "time_slot": appointment.time_slot},
              reason=reason)
    _after_transition(actor, appointment, "rescheduled",
                      f"Appointment moved to {new_date.isoformat()} {start}-{end}")
    return appointment


def request_reschedule(db: Session, actor: User, appointment_id: int, new_date: date, start: str, end: str,
                       reason=None, now: datetime = None):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment, roles=(UserRole.PATIENT,))
    if appointment.status not in (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value):
        raise StateTransitionError(Messages.ONLY_ACTIVE_CAN_REQUEST_RESCHEDULE)

    check_slot_bookable(db, appointment.doctor_id, new_date, start, end,
                        exclude_appointment_id=appointment.id, now=now)
    appointment.requested_date = new_date
    appointment.requested_slot_start = start
    appointment.requested_slot_end = end
    appointment.reschedule_reason = reason
    appointment.status_before_reschedule = appointment.status
    appointment.status = AppointmentStatus.RESCHEDULE_REQUESTED.value
    _commit(db, appointment)
    _after_transition(actor, appointment, "reschedule_requested",
                      f"Patient requested to move the appointment to {new_date.isoformat()} {start}-{end}")
    return appointment


def reject_reschedule_request(db: Session, actor: User, appointment_id: int, reason=None):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment, roles=(UserRole.ADMIN,))
    if appointment.status != AppointmentStatus.RESCHEDULE_REQUESTED.value:
        raise StateTransitionError(Messages.NO_RESCHEDULE_REQUEST)

    appointment.status = appointment.status_before_reschedule or AppointmentStatus.PENDING.value
    appointment.status_before_reschedule = None
    _clear_request(appointment)
    _commit(db, appointment)
    audit(actor, "reschedule_request_rejected", "appointment", appointment.id, reason=reason)
    _after_transition(actor, appointment, "reschedule_rejected",
                      reason or "Your reschedule request was not approved")
    return appointment


def acknowledge_reschedule(db: Session, actor: User, appointment_id: int):
    appointment = get_appointment(db, appointment_id, for_update=True)
    ensure_can_act(actor, appointment, roles=(UserRole.PATIENT,))
    if appointment.status != AppointmentStatus.RESCHEDULED_BY_ADMIN.value:
        raise StateTransitionError(Messages.NO_ADMIN_RESCHEDULE)

    appointment.status = appointment.status_before_reschedule or AppointmentStatus.PENDING.value
    appointment.status_before_reschedule = None
    _commit(db, appointment)
    _after_transition(actor, appointment, "reschedule_acknowledged", "Patient acknowledged the new schedule")
    return appointment
