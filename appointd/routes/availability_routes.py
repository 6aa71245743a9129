from datetime import date, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from appointd.auth.dependencies import get_current_actor, require_role
from appointd.core.errors import AppointdError
from appointd.database import get_db
from appointd.models.availability import AvailabilityWindow
from appointd.models.user import Role
from appointd.routes.errors import database_unavailable, ensure_database_ready, http_error
from appointd.services import availability
from appointd.services.lifecycle import Actor

router = APIRouter(tags=['availability'])


def _validate_whole_minute(value: time | None) -> time | None:
    if value is None:
        return None
    if value.second or value.microsecond:
        raise ValueError('Times must be whole minutes.')
    if value.tzinfo is not None:
        raise ValueError('Times are clinic-local and must not carry a UTC offset.')
    return value


def _validate_iso_weekday(value: int | None) -> int | None:
    if value is not None and not 1 <= value <= 7:
        raise ValueError('weekday must be ISO format (1-7).')
    return value


class CreateWindowRequest(BaseModel):
    weekday: int
    start_time: time
    end_time: time
    is_active: bool = True

    @field_validator('weekday')
    @classmethod
    def validate_weekday(cls, value: int) -> int:
        return _validate_iso_weekday(value)

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, value: time) -> time:
        return _validate_whole_minute(value)


class UpdateWindowRequest(BaseModel):
    weekday: int | None = None
    start_time: time | None = None
    end_time: time | None = None
    is_active: bool | None = None

    @field_validator('weekday')
    @classmethod
    def validate_weekday(cls, value: int | None) -> int | None:
        return _validate_iso_weekday(value)

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, value: time | None) -> time | None:
        return _validate_whole_minute(value)


class WindowResponse(BaseModel):
    id: int
    doctor_id: int
    weekday: int
    start_time: str
    end_time: str
    is_active: bool


def window_response(window: AvailabilityWindow) -> WindowResponse:
    return WindowResponse(
        id=window.id,
        doctor_id=window.doctor_id,
        weekday=availability.to_external_weekday(window.weekday),
        start_time=availability.minute_to_time(window.start_minute).strftime('%H:%M'),
        end_time=availability.minute_to_time(window.end_minute).strftime('%H:%M'),
        is_active=window.is_active,
    )


@router.get('/doctors/{doctor_id}/slots', response_model=list[str])
def list_slots(
    doctor_id: int,
    slot_date: date = Query(..., alias='date'),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    del actor
    ensure_database_ready()

    try:
        slots = availability.generate_slots(db, doctor_id, slot_date)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return [slot.strftime('%H:%M') for slot in slots]


@router.get('/doctors/{doctor_id}/windows', response_model=list[WindowResponse])
def list_doctor_windows(
    doctor_id: int,
    weekday: int | None = Query(default=None, ge=1, le=7),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    del actor
    ensure_database_ready()

    try:
        if weekday is None:
            windows = availability.list_windows(db, doctor_id)
        else:
            windows = availability.get_windows(db, doctor_id, weekday)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return [window_response(window) for window in windows]


@router.post('/windows', response_model=WindowResponse, status_code=status.HTTP_201_CREATED)
def create_window(
    data: CreateWindowRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    require_role(actor, Role.DOCTOR)
    ensure_database_ready()

    try:
        window = availability.create_window(
            db,
            doctor_id=actor.actor_id,
            weekday=data.weekday,
            start_minute=availability.time_to_minute(data.start_time),
            end_minute=availability.time_to_minute(data.end_time),
            is_active=data.is_active,
        )
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return window_response(window)


@router.put('/windows/{window_id}', response_model=WindowResponse)
def update_window(
    window_id: int,
    data: UpdateWindowRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    require_role(actor, Role.DOCTOR)
    ensure_database_ready()

    try:
        window = availability.update_window(
            db,
            window_id,
            actor.actor_id,
            weekday=data.weekday,
            start_minute=None if data.start_time is None else availability.time_to_minute(data.start_time),
            end_minute=None if data.end_time is None else availability.time_to_minute(data.end_time),
            is_active=data.is_active,
        )
    except AppointdError as exc:
        db.rollback()
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return window_response(window)


@router.delete('/windows/{window_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_window(
    window_id: int,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    require_role(actor, Role.DOCTOR)
    ensure_database_ready()

    try:
        availability.delete_window(db, window_id, actor.actor_id)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
