from datetime import date, timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Body, Query, Depends, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session
from pydantic import BaseModel
import logging

from .models import Doctor, User
from .dependencies import get_db, UserRole
from .auth import (ACCESS_TOKEN_EXPIRE_MINUTES, authenticate_user, create_access_token, get_current_user,
                   get_password_hash, role_required)
from .availability import get_available_slots
from .booking import book_appointment
from .constants import Messages
from .exceptions import ValidationError
from .gateways import GatewayRegistry, get_gateway_registry
from .repository import get_doctor
from . import appointments, schedules
from .utils import serialize_appointment

router = APIRouter()


class UserRegistration(BaseModel):
    name: str
    email: str
    password: str
    role: str
    specialization: Optional[str] = None
    consultation_fee: Optional[float] = None


class TimeSlot(BaseModel):
    start: str
    end: str


class ScheduleSlot(TimeSlot):
    is_available: bool = True


class BookAppointmentRequest(BaseModel):
    doctor_id: int
    appointment_date: date
    time_slot: TimeSlot
    reason_for_visit: Optional[str] = None
    symptoms: Optional[str] = None
    payment_gateway: Optional[str] = None
    is_follow_up: bool = False
    previous_appointment_id: Optional[int] = None


class RescheduleAppointmentRequest(BaseModel):
    appointment_date: date
    time_slot: TimeSlot
    reason: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class DoctorProfileUpdate(BaseModel):
    specialization: Optional[str] = None
    consultation_fee: Optional[float] = None
    consultation_duration: Optional[int] = None
    timezone: Optional[str] = None


class DaySchedule(BaseModel):
    is_available: bool = True
    slots: List[ScheduleSlot] = []
    working_hours: Optional[TimeSlot] = None


class WeeklyScheduleRequest(BaseModel):
    days: Dict[str, DaySchedule]


class BlockDatesRequest(BaseModel):
    dates: List[date]
    reason: Optional[str] = None


class BlockedSlot(TimeSlot):
    date: date


class BlockSlotsRequest(BaseModel):
    slots: List[BlockedSlot]


class ScheduleOverrideRequest(BaseModel):
    time_slots: List[ScheduleSlot] = []
    is_available: bool = True
    is_blocked: bool = False
    reason: Optional[str] = None


class ApproveDoctorRequest(BaseModel):
    approved: bool = True


def _own_doctor_profile(db: Session, user: User):
    return get_doctor(db, user.id, approved_only=False)


@router.post("/register")
async def register_user(
        user: UserRegistration = Body(None),
        name: str = Query(None),
        email: str = Query(None),
        password: str = Query(None),
        role: str = Query(None),
        db: Session = Depends(get_db)
):
    name = user.name if user else name
    email = user.email if user else email
    password = user.password if user else password
    role = user.role if user else role

    if not all([name, email, password, role]):
        raise HTTPException(status_code=400, detail="All fields are required")

    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    # Admin accounts are provisioned from the command line.
    if role not in [UserRole.DOCTOR.value, UserRole.PATIENT.value]:
        raise HTTPException(status_code=400, detail="Invalid role")

    hashed_password = get_password_hash(password)
    new_user = User(name=name, email=email, hashed_password=hashed_password, role=role)
    db.add(new_user)
    db.flush()
    if role == UserRole.DOCTOR.value:
        db.add(Doctor(
            user_id=new_user.id,
            specialization=user.specialization if user else None,
            consultation_fee=(user.consultation_fee if user and user.consultation_fee is not None else 0),
        ))
    db.commit()
    db.refresh(new_user)
    logging.info(f"Registered {role} {new_user.id}")
    return {"message": "User registered successfully", "id": new_user.id}


@router.post("/token")
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token_expires = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": user.email}, expires_delta=access_token_expires
    )
    return {"access_token": access_token, "token_type": "bearer"}


# Availability

@router.get("/appointments/available-slots/{doctor_id}")
def available_slots(doctor_id: int, date: Optional[date] = Query(None), db: Session = Depends(get_db)):
    if date is None:
        raise ValidationError(Messages.DATE_REQUIRED)
    return get_available_slots(db, doctor_id, date)


# Appointments

@router.post("/appointments", status_code=201)
@role_required([UserRole.PATIENT.value])
def create_appointment(
        request: BookAppointmentRequest,
        db: Session = Depends(get_db),
        gateways: GatewayRegistry = Depends(get_gateway_registry),
        current_user: User = Depends(get_current_user)
):
    if current_user.role != UserRole.PATIENT.value:
        raise HTTPException(status_code=403, detail="Only patients can book appointments")
    appointment = book_appointment(
        db, current_user, request.doctor_id, request.appointment_date,
        request.time_slot.start, request.time_slot.end,
        reason_for_visit=request.reason_for_visit,
        symptoms=request.symptoms,
        is_follow_up=request.is_follow_up,
        previous_appointment_id=request.previous_appointment_id,
        payment_gateway=request.payment_gateway,
        gateways=gateways,
    )
    return {"message": "Appointment booked successfully", "appointment": serialize_appointment(appointment)}


@router.get("/appointments/{appointment_id}")
def get_appointment(appointment_id: int, db: Session = Depends(get_db),
                    current_user: User = Depends(get_current_user)):
    return serialize_appointment(appointments.get_appointment_for(db, current_user, appointment_id))


@router.put("/appointments/{appointment_id}/cancel")
def cancel_appointment(appointment_id: int, request: ReasonRequest = Body(None), db: Session = Depends(get_db),
                       current_user: User = Depends(get_current_user)):
    appointment = appointments.cancel_appointment(db, current_user, appointment_id,
                                                  reason=request.reason if request else None)
    return {"message": "Appointment cancelled successfully", "appointment": serialize_appointment(appointment)}


@router.put("/appointments/{appointment_id}/reschedule")
def reschedule_appointment(appointment_id: int, request: RescheduleAppointmentRequest,
                           db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    appointment = appointments.reschedule_appointment(
        db, current_user, appointment_id, request.appointment_date,
        request.time_slot.start, request.time_slot.end, reason=request.reason,
    )
    return {"message": "Appointment rescheduled successfully", "appointment": serialize_appointment(appointment)}


@router.post("/appointments/{appointment_id}/reschedule-request")
@role_required([UserRole.PATIENT.value])
def request_reschedule(appointment_id: int, request: RescheduleAppointmentRequest,
                       db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    appointment = appointments.request_reschedule(
        db, current_user, appointment_id, request.appointment_date,
        request.time_slot.start, request.time_slot.end, reason=request.reason,
    )
    return {"message": "Reschedule request submitted", "appointment": serialize_appointment(appointment)}


@router.put("/appointments/{appointment_id}/acknowledge-reschedule")
@role_required([UserRole.PATIENT.value])
def acknowledge_reschedule(appointment_id: int, db: Session = Depends(get_db),
                           current_user: User = Depends(get_current_user)):
    appointment = appointments.acknowledge_reschedule(db, current_user, appointment_id)
    return {"message": "Reschedule acknowledged", "appointment": serialize_appointment(appointment)}


@router.put("/doctor/appointments/{appointment_id}/accept")
@role_required([UserRole.DOCTOR.value])
def accept_appointment(appointment_id: int, db: Session = Depends(get_db),
                       current_user: User = Depends(get_current_user)):
    appointment = appointments.accept_appointment(db, current_user, appointment_id)
    return {"message": "Appointment accepted", "appointment": serialize_appointment(appointment)}


@router.put("/doctor/appointments/{appointment_id}/decline")
@role_required([UserRole.DOCTOR.value])
def decline_appointment(appointment_id: int, request: ReasonRequest = Body(None), db: Session = Depends(get_db),
                        current_user: User = Depends(get_current_user)):
    appointment = appointments.decline_appointment(db, current_user, appointment_id,
                                                   reason=request.reason if request else None)
    return {"message": "Appointment declined", "appointment": serialize_appointment(appointment)}


@router.put("/doctor/appointments/{appointment_id}/complete")
@role_required([UserRole.DOCTOR.value])
def complete_appointment(appointment_id: int, db: Session = Depends(get_db),
                         current_user: User = Depends(get_current_user)):
    appointment = appointments.complete_appointment(db, current_user, appointment_id)
    return {"message": "Appointment marked as completed", "appointment": serialize_appointment(appointment)}


# Doctor schedule

@router.put("/doctor/profile")
@role_required([UserRole.DOCTOR.value])
def update_doctor_profile(request: DoctorProfileUpdate, db: Session = Depends(get_db),
                          current_user: User = Depends(get_current_user)):
    doctor = schedules.update_doctor_profile(
        db, _own_doctor_profile(db, current_user),
        specialization=request.specialization,
        consultation_fee=request.consultation_fee,
        consultation_duration=request.consultation_duration,
        timezone_name=request.timezone,
    )
    return {
        "message": "Profile updated successfully",
        "doctor": {
            "id": doctor.user_id,
            "specialization": doctor.specialization,
            "consultation_fee": doctor.consultation_fee,
            "consultation_duration": doctor.consultation_duration,
            "timezone": doctor.timezone,
            "is_approved": doctor.is_approved,
        },
    }


@router.put("/doctor/schedule/weekly")
@role_required([UserRole.DOCTOR.value])
def set_weekly_schedule(request: WeeklyScheduleRequest, db: Session = Depends(get_db),
                        current_user: User = Depends(get_current_user)):
    days = {day: rule.model_dump() for day, rule in request.days.items()}
    weekly = schedules.set_weekly_schedule(db, _own_doctor_profile(db, current_user), days)
    return {"message": "Schedule updated successfully", "weekly_schedule": weekly}


@router.post("/doctor/schedule/block-dates")
@role_required([UserRole.DOCTOR.value])
def block_dates(request: BlockDatesRequest, db: Session = Depends(get_db),
                current_user: User = Depends(get_current_user)):
    blocked = schedules.block_dates(db, _own_doctor_profile(db, current_user), request.dates, request.reason)
    return {"message": f"{len(blocked)} date(s) blocked successfully", "newly_blocked": blocked}


@router.delete("/doctor/schedule/block-dates")
@role_required([UserRole.DOCTOR.value])
def unblock_dates(request: BlockDatesRequest, db: Session = Depends(get_db),
                  current_user: User = Depends(get_current_user)):
    removed = schedules.unblock_dates(db, _own_doctor_profile(db, current_user), request.dates)
    return {"message": f"{removed} date(s) unblocked successfully"}


@router.post("/doctor/schedule/block-slots")
@role_required([UserRole.DOCTOR.value])
def block_time_slots(request: BlockSlotsRequest, db: Session = Depends(get_db),
                     current_user: User = Depends(get_current_user)):
    created = schedules.block_time_slots(db, _own_doctor_profile(db, current_user),
                                         [slot.model_dump() for slot in request.slots])
    return {"message": f"{created} time slot(s) blocked successfully"}


@router.delete("/doctor/schedule/block-slots")
@role_required([UserRole.DOCTOR.value])
def unblock_time_slots(request: BlockSlotsRequest, db: Session = Depends(get_db),
                       current_user: User = Depends(get_current_user)):
    removed = schedules.unblock_time_slots(db, _own_doctor_profile(db, current_user),
                                           [slot.model_dump() for slot in request.slots])
    return {"message": f"{removed} time slot(s) unblocked successfully"}


@router.put("/availability-schedules/{schedule_date}")
@role_required([UserRole.DOCTOR.value])
def upsert_availability_schedule(schedule_date: date, request: ScheduleOverrideRequest,
                                 db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    schedule = schedules.upsert_schedule_override(
        db, _own_doctor_profile(db, current_user), current_user, schedule_date,
        time_slots=[slot.model_dump() for slot in request.time_slots],
        is_available=request.is_available,
        is_blocked=request.is_blocked,
        reason=request.reason,
    )
    return {"message": "Availability schedule saved successfully",
            "schedule": schedules.serialize_schedule_override(schedule)}


@router.delete("/availability-schedules/{schedule_date}")
@role_required([UserRole.DOCTOR.value])
def delete_availability_schedule(schedule_date: date, db: Session = Depends(get_db),
                                 current_user: User = Depends(get_current_user)):
    schedules.delete_schedule_override(db, _own_doctor_profile(db, current_user), schedule_date)
    return {"message": "Availability schedule deleted successfully"}


# Admin

@router.put("/admin/doctors/{doctor_id}/approve")
@role_required([UserRole.ADMIN.value])
def approve_doctor(doctor_id: int, request: ApproveDoctorRequest = Body(None), db: Session = Depends(get_db),
                   current_user: User = Depends(get_current_user)):
    approved = request.approved if request else True
    doctor = schedules.approve_doctor(db, current_user, doctor_id, approved)
    return {"message": "Doctor approval updated", "doctor_id": doctor.user_id, "is_approved": doctor.is_approved}


@router.delete("/admin/doctors/{doctor_id}")
@role_required([UserRole.ADMIN.value])
def delete_doctor(doctor_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    schedules.delete_doctor(db, current_user, doctor_id)
    return {"message": "Doctor deleted successfully", "doctor_id": doctor_id}


@router.put("/admin/appointments/{appointment_id}/reject-reschedule")
@role_required([UserRole.ADMIN.value])
def reject_reschedule(appointment_id: int, request: ReasonRequest = Body(None), db: Session = Depends(get_db),
                      current_user: User = Depends(get_current_user)):
    appointment = appointments.reject_reschedule_request(db, current_user, appointment_id,
                                                         reason=request.reason if request else None)
    return {"message": "Reschedule request rejected", "appointment": serialize_appointment(appointment)}
