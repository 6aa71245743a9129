"""Appointment status state machine.

Every status change goes through :func:`apply_transition`, which checks the
transition table, performs a compare-and-swap on the stored status and adds
the resulting notifications to the same transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from appointd.core.errors import IllegalTransition, NotFound, ValidationError
from appointd.models.appointment import TERMINAL_STATUSES, Appointment, AppointmentStatus
from appointd.models.notification import Notification
from appointd.models.user import Role
from appointd.services.notifications import NotificationDispatcher, build_notifications, dispatch_committed

logger = logging.getLogger(__name__)

PAYMENT_GATE = 'payment-gate'

PAYLOAD_KEYS = frozenset({'prescription', 'prescription_file', 'reason'})


@dataclass(frozen=True)
class Actor:
    """Who is asking, as asserted by the identity collaborator."""

    actor_id: int | None
    role: str


SYSTEM_ACTOR = Actor(actor_id=None, role=Role.ADMIN.value)
PAYMENT_GATE_ACTOR = Actor(actor_id=None, role=PAYMENT_GATE)


@dataclass(frozen=True)
class TransitionRule:
    actors: frozenset[str]
    sources: frozenset[AppointmentStatus]
    requires_session_start: bool = False
    accepts_prescription: bool = False


TRANSITIONS: dict[AppointmentStatus, TransitionRule] = {
    AppointmentStatus.AWAITING_PAYMENT: TransitionRule(
        actors=frozenset({Role.DOCTOR.value}),
        sources=frozenset({AppointmentStatus.SCHEDULED}),
    ),
    AppointmentStatus.CONFIRMED: TransitionRule(
        actors=frozenset({PAYMENT_GATE}),
        sources=frozenset({AppointmentStatus.AWAITING_PAYMENT}),
    ),
    AppointmentStatus.COMPLETED: TransitionRule(
        actors=frozenset({Role.DOCTOR.value, Role.ADMIN.value}),
        sources=frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED}),
        requires_session_start=True,
        accepts_prescription=True,
    ),
    AppointmentStatus.CANCELLED: TransitionRule(
        actors=frozenset({Role.DOCTOR.value, Role.ADMIN.value, Role.PATIENT.value}),
        sources=frozenset({
            AppointmentStatus.SCHEDULED,
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.AWAITING_PAYMENT,
        }),
    ),
    AppointmentStatus.NO_SHOW: TransitionRule(
        actors=frozenset({Role.DOCTOR.value, Role.ADMIN.value}),
        sources=frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED}),
    ),
}

SESSION_START_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


def parse_status(value: str | AppointmentStatus) -> AppointmentStatus:
    try:
        return AppointmentStatus(value)
    except ValueError as exc:
        raise ValidationError(f'Unknown appointment status: {value!r}.') from exc


def get_appointment(db: Session, appointment_id: int) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFound('Appointment not found.')
    return appointment


def list_appointments(
    db: Session,
    doctor_id: int | None = None,
    patient_id: int | None = None,
    status: str | AppointmentStatus | None = None,
) -> list[Appointment]:
    query = db.query(Appointment)
    if doctor_id is not None:
        query = query.filter(Appointment.doctor_id == doctor_id)
    if patient_id is not None:
        query = query.filter(Appointment.patient_id == patient_id)
    if status is not None:
        query = query.filter(Appointment.status == parse_status(status).value)
    return query.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()


def is_party_to(actor: Actor, appointment: Appointment) -> bool:
    if actor.role == Role.DOCTOR.value:
        return appointment.doctor_id == actor.actor_id
    if actor.role == Role.PATIENT.value:
        return appointment.patient_id == actor.actor_id
    return actor.role in {Role.ADMIN.value, PAYMENT_GATE}


def _check_payload(target: AppointmentStatus, rule: TransitionRule, payload: dict[str, Any]) -> None:
    unknown = set(payload) - PAYLOAD_KEYS
    if unknown:
        raise ValidationError(f'Unsupported transition fields: {", ".join(sorted(unknown))}.')
    if not rule.accepts_prescription and (payload.get('prescription') or payload.get('prescription_file')):
        raise IllegalTransition('A prescription can only be attached when completing an appointment.')
    if payload.get('reason') and target != AppointmentStatus.CANCELLED:
        raise ValidationError('A reason can only be given when cancelling an appointment.')


def apply_transition(
    db: Session,
    appointment: Appointment,
    actor: Actor,
    target_status: str | AppointmentStatus,
    payload: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> list[Notification]:
    """Move ``appointment`` to ``target_status`` inside the caller's transaction.

    Raises :class:`IllegalTransition` without touching the session when the
    actor, the current status or a guard does not allow the change. The caller
    commits, or rolls back on any error.
    """
    target = parse_status(target_status)
    payload = dict(payload or {})
    current = parse_status(appointment.status)

    rule = TRANSITIONS.get(target)
    if current in TERMINAL_STATUSES:
        raise IllegalTransition(f'Appointment is already {current.value}.')
    if rule is None or current not in rule.sources:
        raise IllegalTransition(f'Cannot move an appointment from {current.value} to {target.value}.')
    if actor.role not in rule.actors:
        raise IllegalTransition(f'A {actor.role} cannot move an appointment to {target.value}.')
    if not is_party_to(actor, appointment):
        raise IllegalTransition('This appointment belongs to someone else.')
    if rule.requires_session_start and appointment.session_started_at is None:
        raise IllegalTransition('The consultation session has not been started.')
    _check_payload(target, rule, payload)

    values: dict[str, Any] = {
        'status': target.value,
        'status_changed_at': now or datetime.now(),
    }
    extra_payload: dict[str, Any] = {}
    if payload.get('prescription'):
        values['prescription'] = payload['prescription']
        extra_payload['prescription'] = payload['prescription']
    if payload.get('prescription_file'):
        values['prescription_file'] = payload['prescription_file']
        extra_payload['prescription_file'] = payload['prescription_file']
    if payload.get('reason'):
        reason = f"Cancelled: {payload['reason']}"
        values['notes'] = f'{appointment.notes}\n{reason}' if appointment.notes else reason
        extra_payload['reason'] = payload['reason']
    extra_payload['actor_role'] = actor.role

    statement = update(Appointment).where(
        Appointment.id == appointment.id,
        Appointment.status == current.value,
    )
    if rule.requires_session_start:
        statement = statement.where(Appointment.session_started_at.is_not(None))
    result = db.execute(
        statement.values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise IllegalTransition('The appointment changed while this request was processed; reload and retry.')

    notifications = build_notifications(db, appointment, current, target, actor.role, extra_payload)
    db.flush()
    logger.info(
        'Appointment %s: %s -> %s by %s %s',
        appointment.id, current.value, target.value, actor.role, actor.actor_id,
    )
    return notifications


def transition(
    db: Session,
    appointment_id: int,
    actor: Actor,
    target_status: str | AppointmentStatus,
    payload: dict[str, Any] | None = None,
    dispatcher: NotificationDispatcher | None = None,
    now: datetime | None = None,
) -> Appointment:
    appointment = get_appointment(db, appointment_id)
    try:
        notifications = apply_transition(db, appointment, actor, target_status, payload, now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    dispatch_committed(db, notifications, dispatcher)
    return appointment


def record_session_start(
    db: Session,
    appointment_id: int,
    actor: Actor,
    now: datetime | None = None,
) -> Appointment:
    """Record that the consultation session began.

    The first start time is kept; each participant's first join is recorded.
    """
    appointment = get_appointment(db, appointment_id)
    if actor.role == PAYMENT_GATE or not is_party_to(actor, appointment):
        raise IllegalTransition('Only the doctor, the patient or an admin can start this session.')
    current = parse_status(appointment.status)
    if current not in SESSION_START_STATUSES:
        raise IllegalTransition(f'Cannot start a session for a {current.value} appointment.')

    started_at = now or datetime.now()
    values: dict[str, Any] = {
        'session_started_at': func.coalesce(Appointment.session_started_at, started_at),
    }
    if actor.role == Role.DOCTOR.value:
        values['doctor_joined_at'] = func.coalesce(Appointment.doctor_joined_at, started_at)
    if actor.role == Role.PATIENT.value:
        values['patient_joined_at'] = func.coalesce(Appointment.patient_joined_at, started_at)

    try:
        result = db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.status.in_([status.value for status in SESSION_START_STATUSES]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise IllegalTransition('The appointment changed while this request was processed; reload and retry.')
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Appointment %s: session started (%s %s)', appointment.id, actor.role, actor.actor_id)
    return appointment
