from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from appointd.auth.dependencies import get_current_actor, require_role
from appointd.core import config
from appointd.core.errors import AppointdError
from appointd.database import get_db
from appointd.models.appointment import AppointmentStatus, AppointmentType
from appointd.models.user import Role
from appointd.routes.errors import database_unavailable, ensure_database_ready, http_error
from appointd.services import booking, lifecycle
from appointd.services.lifecycle import Actor
from appointd.services.notifications import NotificationDispatcher, get_dispatcher

router = APIRouter(tags=['appointments'])


class CreateAppointmentRequest(BaseModel):
    doctor_id: int
    start_time: datetime
    appointment_type: AppointmentType
    notes: str | None = None
    duration_minutes: int | None = None
    patient_id: int | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None

        cleaned = value.strip()
        if not cleaned:
            return None
        if len(cleaned) > config.MAX_APPOINTMENT_NOTES_LENGTH:
            raise ValueError(f'notes must be {config.MAX_APPOINTMENT_NOTES_LENGTH} characters or fewer.')
        return cleaned

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError('duration_minutes must be positive.')
        return value


class TransitionRequest(BaseModel):
    status: AppointmentStatus
    prescription: str | None = None
    prescription_file: str | None = None
    reason: str | None = None

    @field_validator('prescription', 'prescription_file', 'reason')
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None

    def payload(self) -> dict:
        return {
            key: value
            for key, value in (
                ('prescription', self.prescription),
                ('prescription_file', self.prescription_file),
                ('reason', self.reason),
            )
            if value is not None
        }


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    appointment_type: str
    status: str
    consultation_fee: Decimal
    notes: str | None = None
    prescription: str | None = None
    prescription_file: str | None = None
    created_at: datetime
    status_changed_at: datetime | None = None
    session_started_at: datetime | None = None

    class Config:
        from_attributes = True


def _patient_for_booking(actor: Actor, data: CreateAppointmentRequest) -> int:
    if actor.role == Role.PATIENT.value:
        if data.patient_id is not None and data.patient_id != actor.actor_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Patients can only book for themselves')
        return actor.actor_id

    if data.patient_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='patient_id is required')
    return data.patient_id


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    require_role(actor, Role.PATIENT, Role.ADMIN)
    patient_id = _patient_for_booking(actor, data)
    ensure_database_ready()

    try:
        appointment = booking.book_appointment(
            db,
            doctor_id=data.doctor_id,
            patient_id=patient_id,
            start=data.start_time,
            appointment_type=data.appointment_type,
            notes=data.notes,
            duration_minutes=data.duration_minutes,
        )
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return appointment


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    doctor_id: int | None = Query(default=None),
    patient_id: int | None = Query(default=None),
    appointment_status: AppointmentStatus | None = Query(default=None, alias='status'),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    # Non-admins only ever see their own appointments.
    if actor.role == Role.PATIENT.value:
        patient_id = actor.actor_id
    elif actor.role == Role.DOCTOR.value:
        doctor_id = actor.actor_id
    ensure_database_ready()

    try:
        return lifecycle.list_appointments(db, doctor_id=doctor_id, patient_id=patient_id, status=appointment_status)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = lifecycle.get_appointment(db, appointment_id)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if not lifecycle.is_party_to(actor, appointment):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail='Not allowed to view this appointment')
    return appointment


@router.post('/{appointment_id}/transition', response_model=AppointmentResponse)
def transition_appointment(
    appointment_id: int,
    data: TransitionRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    ensure_database_ready()

    try:
        return lifecycle.transition(
            db,
            appointment_id,
            actor,
            data.status,
            payload=data.payload(),
            dispatcher=dispatcher,
        )
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/{appointment_id}/session-start', response_model=AppointmentResponse)
def start_session(
    appointment_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return lifecycle.record_session_start(db, appointment_id, actor)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
