import re
import uuid
from datetime import datetime, date, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .constants import DAYS_OF_WEEK
from .dependencies import CLINIC_TIMEZONE
from .exceptions import ValidationError

TIME_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")


def parse_time_string(time_str):
    """Helper function to parse time strings in either 'HH:MM' or 'h:mma' formats."""
    try:
        return datetime.strptime(time_str, "%I%p").time()  # Handle '8am', '4pm', etc.
    except ValueError:
        pass
    try:
        return datetime.strptime(time_str, "%H:%M").time()  # Handle '10:00', '14:00', etc.
    except ValueError:
        raise ValidationError("Invalid time format. Use HH:MM format (e.g., 09:00, 14:30)")


def normalize_time(time_str):
    """Return a time string as zero-padded HH:MM."""
    return parse_time_string(time_str).strftime("%H:%M")


def to_minutes(hhmm):
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def from_minutes(total):
    return f"{total // 60:02d}:{total % 60:02d}"


def validate_slot(start, end):
    if not TIME_PATTERN.match(start or "") or not TIME_PATTERN.match(end or ""):
        raise ValidationError("Time must be in HH:MM format")
    if to_minutes(start) >= to_minutes(end):
        raise ValidationError("Start time must be before end time")


def day_name(target_date: date):
    return DAYS_OF_WEEK[target_date.weekday()]


def resolve_timezone(name=None):
    try:
        return ZoneInfo(name or CLINIC_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}")


def local_now(tz_name=None, now=None):
    """Current wall-clock time in the given zone; naive `now` values are taken as UTC."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(resolve_timezone(tz_name))


def generate_time_slots(start, end, duration):
    """
    Split a working range into back-to-back consultation slots.

    :param start: Range start, 'HH:MM' or '9am'.
    :param end: Range end, 'HH:MM' or '5pm'.
    :param duration: Slot length in minutes.
    :return: List of {"start", "end"} dicts; a trailing remainder shorter than `duration` is dropped.
    """
    if duration <= 0:
        raise ValidationError("Consultation duration must be positive")
    slot_start = to_minutes(normalize_time(start))
    range_end = to_minutes(normalize_time(end))

    time_slots = []
    while slot_start + duration <= range_end:
        time_slots.append({"start": from_minutes(slot_start), "end": from_minutes(slot_start + duration)})
        slot_start += duration
    return time_slots


def generate_appointment_number(appointment_date: date):
    return f"APT-{appointment_date.strftime('%Y%m%d')}-{uuid.uuid4().hex[:10].upper()}"


def generate_receipt_number(payment_id):
    return f"RCP-{datetime.now(timezone.utc).strftime('%Y%m%d')}-{payment_id:06d}"


def serialize_appointment(appointment):
    return {
        "id": appointment.id,
        "appointment_number": appointment.appointment_number,
        "patient_id": appointment.patient_id,
        "doctor_id": appointment.doctor_id,
        "appointment_date": appointment.appointment_date.isoformat(),
        "time_slot": appointment.time_slot,
        "status": appointment.status,
        "payment_status": appointment.payment_status,
        "consultation_fee": appointment.consultation_fee,
        "reason_for_visit": appointment.reason_for_visit,
        "symptoms": appointment.symptoms,
        "is_follow_up": appointment.is_follow_up,
        "previous_appointment_id": appointment.previous_appointment_id,
        "rescheduling_info": _serialize_rescheduling_info(appointment),
    }


def _serialize_rescheduling_info(appointment):
    if not appointment.rescheduled_at and not appointment.requested_date:
        return None
    return {
        "original_date": appointment.original_date.isoformat() if appointment.original_date else None,
        "original_time_slot": {"start": appointment.original_slot_start, "end": appointment.original_slot_end}
        if appointment.original_slot_start else None,
        "requested_date": appointment.requested_date.isoformat() if appointment.requested_date else None,
        "requested_time_slot": {"start": appointment.requested_slot_start, "end": appointment.requested_slot_end}
        if appointment.requested_slot_start else None,
        "rescheduled_by": appointment.rescheduled_by,
        "rescheduled_at": appointment.rescheduled_at.isoformat() if appointment.rescheduled_at else None,
        "reason": appointment.reschedule_reason,
    }


def serialize_payment(payment):
    return {
        "id": payment.id,
        "appointment_id": payment.appointment_id,
        "patient_id": payment.patient_id,
        "doctor_id": payment.doctor_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "payment_gateway": payment.payment_gateway,
        "status": payment.status,
        "transaction_id": payment.transaction_id,
        "gateway_order_id": payment.gateway_order_id,
        "gateway_error": payment.gateway_error,
        "refund_amount": payment.refund_amount,
        "refund_amount_remaining": payment.refund_amount_remaining,
        "refund_reason": payment.refund_reason,
        "receipt_number": payment.receipt_number,
        "refunds": [serialize_refund(refund) for refund in payment.refunds],
    }


def serialize_refund(refund):
    return {
        "id": refund.id,
        "amount": refund.amount,
        "reason": refund.reason,
        "gateway_status": refund.gateway_status,
        "gateway_refund_id": refund.gateway_refund_id,
        "gateway_error": refund.gateway_error,
        "created_at": refund.created_at.isoformat() if refund.created_at else None,
        "reconciled_at": refund.reconciled_at.isoformat() if refund.reconciled_at else None,
    }

