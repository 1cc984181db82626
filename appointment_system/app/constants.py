from enum import Enum


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    RESCHEDULED_BY_ADMIN = "rescheduled_by_admin"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    ONLINE = "online"
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    CHEQUE = "cheque"


class RefundGatewayStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


OFFLINE_GATEWAY = "offline"

# Statuses that reserve a doctor's slot against new bookings.
OCCUPYING_STATUSES = (
    AppointmentStatus.PENDING.value,
    AppointmentStatus.CONFIRMED.value,
    AppointmentStatus.RESCHEDULE_REQUESTED.value,
    AppointmentStatus.RESCHEDULED_BY_ADMIN.value,
)
TERMINAL_APPOINTMENT_STATUSES = (
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.CANCELLED.value,
)

REFUNDABLE_PAYMENT_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
)
# Statuses a gateway confirmation may still move to completed.
SETTLEABLE_PAYMENT_STATUSES = (
    PaymentStatus.PENDING.value,
    PaymentStatus.FAILED.value,
)
SETTLED_PAYMENT_STATUSES = (
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
)

DAYS_OF_WEEK = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# Provider event statuses that mean the money arrived.
GATEWAY_SUCCESS_STATUSES = ("succeeded", "captured", "paid")
GATEWAY_FAILURE_STATUSES = ("failed",)


class Messages:
    DATE_REQUIRED = "Date is required"
    DOCTOR_NOT_FOUND_OR_NOT_APPROVED = "Doctor not found or not approved"
    DOCTOR_PROFILE_NOT_FOUND = "Doctor profile not found"
    DATE_BLOCKED = "This date is blocked. Please select another date."
    TIME_SLOT_BLOCKED = "This time slot is blocked and not available for booking."
    TIME_SLOT_ALREADY_BOOKED = "Time slot is already booked"
    TIME_SLOT_IN_PAST = "Cannot book a time slot in the past"
    APPOINTMENT_NOT_FOUND = "Appointment not found"
    APPOINTMENT_ALREADY_CANCELLED = "Appointment is already cancelled"
    CANNOT_CANCEL_COMPLETED_APPOINTMENT = "Cannot cancel completed appointment"
    CANNOT_RESCHEDULE_COMPLETED_OR_CANCELLED = "Cannot reschedule completed or cancelled appointment"
    ONLY_PENDING_CAN_BE_ACCEPTED = "Only pending appointments can be accepted"
    ONLY_PENDING_CAN_BE_DECLINED = "Only pending appointments can be declined"
    APPOINTMENT_ALREADY_COMPLETED = "Appointment is already completed"
    CANNOT_COMPLETE_CANCELLED_APPOINTMENT = "Cannot complete cancelled appointment"
    CANNOT_COMPLETE_DURING_RESCHEDULE = "Resolve the pending reschedule before completing the appointment"
    ONLY_ACTIVE_CAN_REQUEST_RESCHEDULE = "Only pending or confirmed appointments can request a reschedule"
    NO_RESCHEDULE_REQUEST = "Appointment has no pending reschedule request"
    NO_ADMIN_RESCHEDULE = "Appointment was not rescheduled by an admin"
    NOT_AUTHORIZED = "Not authorized to access this resource"

    PAYMENT_NOT_FOUND = "Payment not found"
    REFUND_NOT_FOUND = "Refund not found"
    INVALID_PAYMENT_GATEWAY = "Invalid payment gateway"
    PAYMENT_IN_PROGRESS = "Payment is already being processed, please retry"
    ONLINE_STATUS_UPDATE_REJECTED = "Online payment status can only be updated via verification or webhooks"
    PAYMENT_NOT_REFUNDABLE = "Payment is not in a refundable state"
    REFUND_AMOUNT_NOT_POSITIVE = "Refund amount must be positive"
    REFUND_EXCEEDS_REMAINING = "Refund amount exceeds remaining refundable amount"
    REFUND_ALREADY_RECONCILED = "Refund does not need reconciliation"
    CANNOT_VERIFY_CANCELLED_PAYMENT = "Cancelled payments cannot be verified"
    OFFLINE_CANNOT_VERIFY = "Offline payments cannot be verified automatically"
    PAYMENT_VERIFIED = "Payment verified successfully"
    PAYMENT_VERIFICATION_FAILED = "Payment verification failed"
    WEBHOOK_VERIFICATION_FAILED = "Webhook verification failed"
    WEBHOOK_ACCEPTED = "Webhook processed successfully"
