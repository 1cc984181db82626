# models.py
from datetime import datetime, timezone

from sqlalchemy import (Column, Integer, String, Date, DateTime, Float, ForeignKey, UniqueConstraint, Index,
                        Boolean, JSON, text)
from sqlalchemy.orm import declarative_base, relationship

from .constants import AppointmentStatus, PaymentStatus, PaymentMethod, OFFLINE_GATEWAY

Base = declarative_base()

_OCCUPYING_SQL = "status IN ('pending', 'confirmed', 'reschedule_requested', 'rescheduled_by_admin')"
_ACTIVE_PAYMENT_SQL = "status != 'cancelled'"


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = 'users'
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True)
    hashed_password = Column(String, nullable=False)
    role = Column(String, nullable=False)  # 'doctor', 'patient', or 'admin'

    doctor_profile = relationship("Doctor", back_populates="user", uselist=False)


class Doctor(Base):
    __tablename__ = 'doctors'
    user_id = Column(Integer, ForeignKey('users.id'), primary_key=True)
    specialization = Column(String, nullable=True)
    consultation_fee = Column(Float, nullable=False, default=0)
    consultation_duration = Column(Integer, nullable=False, default=30)  # minutes
    timezone = Column(String, nullable=True)  # IANA name, falls back to CLINIC_TIMEZONE
    is_approved = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="doctor_profile")
    weekly_availability = relationship("DoctorAvailability", back_populates="doctor",
                                       cascade="all, delete-orphan")
    blocked_dates = relationship("BlockedDate", back_populates="doctor", cascade="all, delete-orphan")
    blocked_time_slots = relationship("BlockedTimeSlot", back_populates="doctor", cascade="all, delete-orphan")


class DoctorAvailability(Base):
    """One weekly rule per doctor and day of week."""
    __tablename__ = 'doctor_availability'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.user_id'), nullable=False)
    day = Column(String, nullable=False)  # 'monday' .. 'sunday'
    is_available = Column(Boolean, nullable=False, default=True)

    doctor = relationship("Doctor", back_populates="weekly_availability")
    time_slots = relationship("AvailabilityTimeSlot", back_populates="availability",
                              cascade="all, delete-orphan", order_by="AvailabilityTimeSlot.start")

    __table_args__ = (
        UniqueConstraint('doctor_id', 'day', name='_doctor_day_uc'),
    )


class AvailabilityTimeSlot(Base):
    __tablename__ = 'availability_time_slots'
    id = Column(Integer, primary_key=True, index=True)
    availability_id = Column(Integer, ForeignKey('doctor_availability.id'), nullable=False)
    start = Column(String(5), nullable=False)  # HH:MM
    end = Column(String(5), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    availability = relationship("DoctorAvailability", back_populates="time_slots")


class BlockedDate(Base):
    __tablename__ = 'blocked_dates'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.user_id'), nullable=False)
    date = Column(Date, nullable=False)
    reason = Column(String, nullable=True)

    doctor = relationship("Doctor", back_populates="blocked_dates")

    __table_args__ = (
        UniqueConstraint('doctor_id', 'date', name='_doctor_blocked_date_uc'),
    )


class BlockedTimeSlot(Base):
    __tablename__ = 'blocked_time_slots'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.user_id'), nullable=False)
    date = Column(Date, nullable=False)
    start = Column(String(5), nullable=False)
    end = Column(String(5), nullable=False)

    doctor = relationship("Doctor", back_populates="blocked_time_slots")

    __table_args__ = (
        UniqueConstraint('doctor_id', 'date', 'start', 'end', name='_doctor_blocked_slot_uc'),
        Index('idx_blocked_slot_doctor_date', 'doctor_id', 'date'),
    )


class AvailabilitySchedule(Base):
    """Date-specific override of the weekly table."""
    __tablename__ = 'availability_schedules'
    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey('doctors.user_id'), nullable=False)
    date = Column(Date, nullable=False)
    day_of_week = Column(String, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    is_blocked = Column(Boolean, nullable=False, default=False)
    reason = Column(String, nullable=True)
    updated_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    time_slots = relationship("ScheduleTimeSlot", back_populates="schedule",
                              cascade="all, delete-orphan", order_by="ScheduleTimeSlot.start")

    __table_args__ = (
        UniqueConstraint('doctor_id', 'date', name='_doctor_schedule_date_uc'),
    )


class ScheduleTimeSlot(Base):
    __tablename__ = 'schedule_time_slots'
    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey('availability_schedules.id'), nullable=False)
    start = Column(String(5), nullable=False)
    end = Column(String(5), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    schedule = relationship("AvailabilitySchedule", back_populates="time_slots")


class Appointment(Base):
    __tablename__ = 'appointments'
    id = Column(Integer, primary_key=True, index=True)
    appointment_number = Column(String, nullable=False, unique=True)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    doctor_id = Column(Integer, ForeignKey('doctors.user_id'), nullable=False)
    appointment_date = Column(Date, nullable=False)
    slot_start = Column(String(5), nullable=False)
    slot_end = Column(String(5), nullable=False)
    status = Column(String, nullable=False, default=AppointmentStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    consultation_fee = Column(Float, nullable=False)  # snapshot taken at booking time
    reason_for_visit = Column(String, nullable=True)
    symptoms = Column(String, nullable=True)
    is_follow_up = Column(Boolean, nullable=False, default=False)
    previous_appointment_id = Column(Integer, ForeignKey('appointments.id'), nullable=True)

    # Rescheduling info
    original_date = Column(Date, nullable=True)
    original_slot_start = Column(String(5), nullable=True)
    original_slot_end = Column(String(5), nullable=True)
    requested_date = Column(Date, nullable=True)
    requested_slot_start = Column(String(5), nullable=True)
    requested_slot_end = Column(String(5), nullable=True)
    rescheduled_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    rescheduled_at = Column(DateTime, nullable=True)
    reschedule_reason = Column(String, nullable=True)
    status_before_reschedule = Column(String, nullable=True)

    cancelled_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    doctor = relationship("Doctor")
    payments = relationship("Payment", back_populates="appointment")

    __table_args__ = (
        # At most one occupying appointment per doctor, date and start time.
        Index('uq_appointments_occupied_slot', 'doctor_id', 'appointment_date', 'slot_start', unique=True,
              postgresql_where=text(_OCCUPYING_SQL), sqlite_where=text(_OCCUPYING_SQL)),
        Index('idx_appointments_doctor_date', 'doctor_id', 'appointment_date'),
        Index('idx_appointments_patient_date', 'patient_id', 'appointment_date'),
    )

    @property
    def time_slot(self):
        return {"start": self.slot_start, "end": self.slot_end}


class Payment(Base):
    __tablename__ = 'payments'
    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey('appointments.id'), nullable=False)
    patient_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    doctor_id = Column(Integer, ForeignKey('doctors.user_id'), nullable=False)
    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default='INR')
    payment_method = Column(String, nullable=False, default=PaymentMethod.ONLINE.value)
    payment_type = Column(String, nullable=False, default='appointment')
    payment_gateway = Column(String, nullable=False, default=OFFLINE_GATEWAY)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)

    transaction_id = Column(String, nullable=True, index=True)
    gateway_order_id = Column(String, nullable=True, index=True)
    payment_intent_id = Column(String, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    gateway_error = Column(JSON, nullable=True)
    payment_metadata = Column('metadata', JSON, nullable=False, default=dict)

    refund_amount = Column(Float, nullable=False, default=0)
    refund_reason = Column(String, nullable=True)
    receipt_number = Column(String, nullable=True, unique=True)

    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    appointment = relationship("Appointment", back_populates="payments")
    refunds = relationship("Refund", back_populates="payment", order_by="Refund.id")

    __table_args__ = (
        # One live payment per appointment; cancelled ones may be superseded.
        Index('uq_payments_active_appointment', 'appointment_id', unique=True,
              postgresql_where=text(_ACTIVE_PAYMENT_SQL), sqlite_where=text(_ACTIVE_PAYMENT_SQL)),
        Index('idx_payments_status', 'status'),
    )

    @property
    def refund_amount_remaining(self):
        return max(0.0, round((self.amount or 0) - (self.refund_amount or 0), 2))


class Refund(Base):
    __tablename__ = 'refunds'
    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=False)
    amount = Column(Float, nullable=False)
    reason = Column(String, nullable=True)
    processed_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    gateway_status = Column(String, nullable=False)
    gateway_refund_id = Column(String, nullable=True)
    gateway_response = Column(JSON, nullable=True)
    gateway_error = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    reconciled_at = Column(DateTime, nullable=True)

    payment = relationship("Payment", back_populates="refunds")
