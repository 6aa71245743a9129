"""Conflict-safe creation of appointments."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from appointd.core import config
from appointd.core.clock import local_now, minute_of_day
from appointd.core.errors import NotFound, SlotConflict, SlotNotOffered, ValidationError
from appointd.database import doctor_lock
from appointd.models.appointment import Appointment, AppointmentStatus, AppointmentType
from appointd.models.user import Role, User
from appointd.services.availability import (
    get_windows,
    merge_window_ranges,
    require_doctor,
    slot_minutes_for_windows,
)

logger = logging.getLogger(__name__)


def _require_patient(db: Session, patient_id: int) -> User:
    patient = db.get(User, patient_id)
    if patient is None or patient.role != Role.PATIENT.value:
        raise NotFound('Patient not found.')
    return patient


def _parse_appointment_type(value: str | AppointmentType) -> AppointmentType:
    try:
        return AppointmentType(value)
    except ValueError as exc:
        raise ValidationError('Appointment type must be "video" or "in-person".') from exc


def _ensure_offered(db: Session, doctor_id: int, start: datetime, duration_minutes: int, now: datetime) -> None:
    windows = get_windows(db, doctor_id, start.isoweekday())
    start_minute = minute_of_day(start)

    offered = slot_minutes_for_windows(windows, start.date(), config.SLOT_INCREMENT_MINUTES, now)
    if start_minute not in offered:
        raise SlotNotOffered('The requested time is not an available slot for this doctor.')

    end_minute = start_minute + duration_minutes
    if not any(
        range_start <= start_minute and end_minute <= range_end
        for range_start, range_end in merge_window_ranges(windows)
    ):
        raise SlotNotOffered('The requested duration runs past the end of the doctor\'s availability.')


def _ensure_no_conflict(db: Session, doctor_id: int, start: datetime, end: datetime) -> None:
    overlapping = db.query(Appointment.id).filter(
        Appointment.doctor_id == doctor_id,
        Appointment.status != AppointmentStatus.CANCELLED.value,
        Appointment.start_time < end,
        Appointment.end_time > start,
    ).first()
    if overlapping:
        raise SlotConflict('This time is already booked.')


def reserve(
    db: Session,
    doctor_id: int,
    patient_id: int,
    start: datetime,
    duration_minutes: int,
    appointment_type: str | AppointmentType,
    notes: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Validate ``start`` against live slots and live appointments, then insert.

    The check and the insert run inside one per-doctor critical section, so
    concurrent reservations of overlapping intervals yield exactly one winner.
    Any failure leaves the database untouched.
    """
    if duration_minutes <= 0:
        raise ValidationError('Duration must be a positive number of minutes.')
    if start.tzinfo is not None:
        raise ValidationError('Appointment start must be a clinic-local time without a UTC offset.')
    if start.second or start.microsecond:
        raise SlotNotOffered('Appointments start on whole minutes.')
    parsed_type = _parse_appointment_type(appointment_type)

    end = start + timedelta(minutes=duration_minutes)

    doctor = require_doctor(db, doctor_id)
    _require_patient(db, patient_id)
    fee = doctor.consultation_fee if doctor.consultation_fee is not None else Decimal('0')

    with doctor_lock(db, doctor_id):
        try:
            _ensure_offered(db, doctor_id, start, duration_minutes, now or local_now())
            _ensure_no_conflict(db, doctor_id, start, end)

            created_at = datetime.now()
            appointment = Appointment(
                patient_id=patient_id,
                doctor_id=doctor_id,
                start_time=start,
                end_time=end,
                duration_minutes=duration_minutes,
                appointment_type=parsed_type.value,
                status=AppointmentStatus.SCHEDULED.value,
                consultation_fee=fee,
                notes=notes,
                created_at=created_at,
                status_changed_at=created_at,
            )
            db.add(appointment)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise SlotConflict('This time is already booked.') from exc
        except Exception:
            db.rollback()
            raise
        db.refresh(appointment)

    logger.info(
        'Appointment %s booked with doctor %s for patient %s at %s (%s min)',
        appointment.id, doctor_id, patient_id, start, duration_minutes,
    )
    return appointment


def book_appointment(
    db: Session,
    doctor_id: int,
    patient_id: int,
    start: datetime,
    appointment_type: str | AppointmentType,
    notes: str | None = None,
    duration_minutes: int | None = None,
    now: datetime | None = None,
) -> Appointment:
    return reserve(
        db,
        doctor_id=doctor_id,
        patient_id=patient_id,
        start=start,
        duration_minutes=duration_minutes or config.DEFAULT_APPOINTMENT_DURATION_MINUTES,
        appointment_type=appointment_type,
        notes=notes,
        now=now,
    )
