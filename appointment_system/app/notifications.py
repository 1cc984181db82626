# notifications.py
"""
Outbound side effects of state changes: counter-party notifications and audit entries.

Delivery and storage live outside this service; these hooks only hand the event over
(here: to dedicated loggers). A failing hook is logged and never undoes the transition
that triggered it.
"""
import logging

notification_logger = logging.getLogger("appointment_system.notifications")
audit_logger = logging.getLogger("appointment_system.audit")


def notify(user_id, kind, message, **metadata):
    try:
        notification_logger.info(f"notify user={user_id} kind={kind} message={message!r} metadata={metadata}")
    except Exception as e:
        logging.error(f"Notification {kind} for user {user_id} failed: {str(e)}")


def audit(actor, action, entity_type, entity_id, **metadata):
    try:
        audit_logger.info(
            f"audit actor={actor.id} role={actor.role} action={action} "
            f"{entity_type}={entity_id} metadata={metadata}"
        )
    except Exception as e:
        logging.error(f"Audit entry {action} for {entity_type} {entity_id} failed: {str(e)}")
