"""Doctor availability windows and the slot generator built on them."""

import logging
from datetime import date, datetime, time

from sqlalchemy.orm import Session

from appointd.core import config
from appointd.core.clock import local_now, minute_of_day
from appointd.core.errors import NotFound, ValidationError
from appointd.models.availability import AvailabilityWindow
from appointd.models.user import Role, User

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


def to_internal_weekday(iso_weekday: int) -> int:
    """Map ISO weekday (1=Mon..7=Sun) to the stored 0-based weekday (0=Mon..6=Sun)."""
    if isinstance(iso_weekday, bool) or not isinstance(iso_weekday, int) or not 1 <= iso_weekday <= 7:
        raise ValidationError('weekday must be ISO format (1-7).')
    return iso_weekday - 1


def to_external_weekday(internal_weekday: int) -> int:
    if isinstance(internal_weekday, bool) or not isinstance(internal_weekday, int) or not 0 <= internal_weekday <= 6:
        raise ValidationError('Stored weekday must be between 0 and 6.')
    return internal_weekday + 1


def minute_to_time(minute: int) -> time:
    return time(minute // 60, minute % 60)


def time_to_minute(value: time) -> int:
    return value.hour * 60 + value.minute


def validate_window_range(start_minute: int, end_minute: int) -> None:
    if not 0 <= start_minute < MINUTES_PER_DAY or not 0 < end_minute <= MINUTES_PER_DAY:
        raise ValidationError('Window times must fall within a single day.')
    if start_minute >= end_minute:
        raise ValidationError('Window start must be before its end; windows cannot span midnight.')


def require_doctor(db: Session, doctor_id: int) -> User:
    doctor = db.get(User, doctor_id)
    if doctor is None or doctor.role != Role.DOCTOR.value:
        raise NotFound('Doctor not found.')
    return doctor


def _get_own_window(db: Session, window_id: int, doctor_id: int) -> AvailabilityWindow:
    window = db.get(AvailabilityWindow, window_id)
    if window is None or window.doctor_id != doctor_id:
        raise NotFound('Availability window not found.')
    return window


def create_window(
    db: Session,
    doctor_id: int,
    weekday: int,
    start_minute: int,
    end_minute: int,
    is_active: bool = True,
) -> AvailabilityWindow:
    internal_weekday = to_internal_weekday(weekday)
    validate_window_range(start_minute, end_minute)
    require_doctor(db, doctor_id)

    window = AvailabilityWindow(
        doctor_id=doctor_id,
        weekday=internal_weekday,
        start_minute=start_minute,
        end_minute=end_minute,
        is_active=is_active,
    )
    db.add(window)
    db.commit()
    db.refresh(window)

    logger.info(
        'Doctor %s added availability window %s (weekday %s, %s-%s)',
        doctor_id, window.id, weekday, minute_to_time(start_minute), minute_to_time(end_minute),
    )
    return window


def update_window(
    db: Session,
    window_id: int,
    doctor_id: int,
    *,
    weekday: int | None = None,
    start_minute: int | None = None,
    end_minute: int | None = None,
    is_active: bool | None = None,
) -> AvailabilityWindow:
    """Edit a window in place.

    Existing appointments are never re-validated against the new window.
    """
    window = _get_own_window(db, window_id, doctor_id)

    new_start = window.start_minute if start_minute is None else start_minute
    new_end = window.end_minute if end_minute is None else end_minute
    validate_window_range(new_start, new_end)

    if weekday is not None:
        window.weekday = to_internal_weekday(weekday)
    window.start_minute = new_start
    window.end_minute = new_end
    if is_active is not None:
        window.is_active = is_active

    db.commit()
    db.refresh(window)
    logger.info('Doctor %s updated availability window %s', doctor_id, window.id)
    return window


def delete_window(db: Session, window_id: int, doctor_id: int) -> None:
    window = _get_own_window(db, window_id, doctor_id)
    db.delete(window)
    db.commit()
    logger.info('Doctor %s removed availability window %s', doctor_id, window_id)


def get_windows(db: Session, doctor_id: int, weekday: int) -> list[AvailabilityWindow]:
    """Active windows of ``doctor_id`` on the ISO ``weekday``, sorted by start."""
    internal_weekday = to_internal_weekday(weekday)
    return db.query(AvailabilityWindow).filter(
        AvailabilityWindow.doctor_id == doctor_id,
        AvailabilityWindow.weekday == internal_weekday,
        AvailabilityWindow.is_active.is_(True),
    ).order_by(AvailabilityWindow.start_minute.asc(), AvailabilityWindow.id.asc()).all()


def list_windows(db: Session, doctor_id: int) -> list[AvailabilityWindow]:
    return db.query(AvailabilityWindow).filter(
        AvailabilityWindow.doctor_id == doctor_id,
    ).order_by(
        AvailabilityWindow.weekday.asc(),
        AvailabilityWindow.start_minute.asc(),
        AvailabilityWindow.id.asc(),
    ).all()


def merge_window_ranges(windows: list[AvailabilityWindow]) -> list[tuple[int, int]]:
    """Collapse overlapping or touching windows into disjoint minute ranges."""
    merged: list[tuple[int, int]] = []
    for start, end in sorted((window.start_minute, window.end_minute) for window in windows):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def slot_minutes_for_windows(
    windows: list[AvailabilityWindow],
    slot_date: date,
    increment_minutes: int,
    now: datetime,
) -> list[int]:
    if increment_minutes <= 0:
        raise ValidationError('Slot increment must be a positive number of minutes.')

    today = now.date()
    if slot_date < today:
        return []
    cutoff = minute_of_day(now) if slot_date == today else -1

    slot_minutes: list[int] = []
    for minute in range(0, MINUTES_PER_DAY, increment_minutes):
        if minute <= cutoff:
            continue
        if any(window.start_minute <= minute < window.end_minute for window in windows):
            slot_minutes.append(minute)
    return slot_minutes


def generate_slots(
    db: Session,
    doctor_id: int,
    slot_date: date,
    increment_minutes: int | None = None,
    now: datetime | None = None,
) -> list[time]:
    """Bookable start times of ``doctor_id`` on ``slot_date``, in order.

    A start is offered when it lies inside some active window for that weekday.
    On the current day every start at or before the current time is dropped.
    An empty list is a normal answer.
    """
    increment = increment_minutes or config.SLOT_INCREMENT_MINUTES
    windows = get_windows(db, doctor_id, slot_date.isoweekday())
    minutes = slot_minutes_for_windows(windows, slot_date, increment, now or local_now())
    return [minute_to_time(minute) for minute in minutes]
