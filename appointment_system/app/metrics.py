from prometheus_client import Counter

APPOINTMENTS_BOOKED = Counter(
    "appointments_booked_total", "Booking attempts by outcome", ["outcome"]
)
APPOINTMENT_TRANSITIONS = Counter(
    "appointment_transitions_total", "Appointment state transitions", ["action"]
)
PAYMENT_STATUS_CHANGES = Counter(
    "payment_status_changes_total", "Payment status changes", ["gateway", "status"]
)
GATEWAY_ERRORS = Counter(
    "gateway_errors_total", "Failed payment gateway calls", ["gateway", "operation"]
)
