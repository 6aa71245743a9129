"""
Notification fan-out for appointment status changes.

Notification rows are written in the same transaction as the status change
they describe. Delivery to each channel happens afterwards on a worker pool,
is retried with exponential backoff, and never feeds back into the
appointment.
"""

import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable

from sqlalchemy.orm import Session

from appointd.core import config
from appointd.core.errors import NotFound
from appointd.models.appointment import Appointment, AppointmentStatus
from appointd.models.notification import Notification, NotificationChannel
from appointd.models.user import Role, User

logger = logging.getLogger(__name__)

ALL_CHANNELS = (NotificationChannel.EMAIL, NotificationChannel.IN_APP)

PATIENT = 'patient'
DOCTOR = 'doctor'
COUNTER_PARTY = 'counter-party'


@dataclass(frozen=True)
class NotificationRule:
    kind: str
    recipients: str
    title: str
    message: str
    channels: tuple[NotificationChannel, ...] = ALL_CHANNELS


_PAYMENT_PENDING = NotificationRule(
    kind='payment-pending',
    recipients=PATIENT,
    title='Your appointment request was accepted',
    message='Please complete the payment of {fee} to confirm your appointment on {start}.',
)
_CONFIRMED = NotificationRule(
    kind='appointment-confirmed',
    recipients=DOCTOR,
    title='Appointment confirmed',
    message='Payment received. The appointment on {start} is confirmed.',
)
_COMPLETED = NotificationRule(
    kind='completed',
    recipients=PATIENT,
    title='Consultation completed',
    message='Your consultation on {start} is complete.',
)
_CANCELLED = NotificationRule(
    kind='cancelled',
    recipients=COUNTER_PARTY,
    title='Appointment cancelled',
    message='The appointment on {start} was cancelled.',
)
_NO_SHOW = NotificationRule(
    kind='no-show',
    recipients=PATIENT,
    title='Missed appointment',
    message='You were recorded as a no-show for the appointment on {start}.',
)

NOTIFICATION_RULES: dict[tuple[AppointmentStatus, AppointmentStatus], NotificationRule] = {
    (AppointmentStatus.SCHEDULED, AppointmentStatus.AWAITING_PAYMENT): _PAYMENT_PENDING,
    (AppointmentStatus.AWAITING_PAYMENT, AppointmentStatus.CONFIRMED): _CONFIRMED,
    (AppointmentStatus.SCHEDULED, AppointmentStatus.COMPLETED): _COMPLETED,
    (AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED): _COMPLETED,
    (AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED): _CANCELLED,
    (AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED): _CANCELLED,
    (AppointmentStatus.AWAITING_PAYMENT, AppointmentStatus.CANCELLED): _CANCELLED,
    (AppointmentStatus.SCHEDULED, AppointmentStatus.NO_SHOW): _NO_SHOW,
    (AppointmentStatus.CONFIRMED, AppointmentStatus.NO_SHOW): _NO_SHOW,
}


@dataclass(frozen=True)
class NotificationEvent:
    """Outbound delivery request for one persisted notification."""

    notification_id: int
    recipient_id: int
    recipient_email: str | None
    kind: str
    title: str
    message: str
    channels: tuple[str, ...]
    payload: dict[str, Any] = field(default_factory=dict)

    def to_outbound(self) -> dict[str, Any]:
        return {
            'recipient_id': self.recipient_id,
            'kind': self.kind,
            'channels': list(self.channels),
            'payload': dict(self.payload),
        }


def resolve_recipients(rule: NotificationRule, appointment: Appointment, actor_role: str) -> list[int]:
    if rule.recipients == PATIENT:
        return [appointment.patient_id]
    if rule.recipients == DOCTOR:
        return [appointment.doctor_id]
    if actor_role == Role.PATIENT.value:
        return [appointment.doctor_id]
    if actor_role == Role.DOCTOR.value:
        return [appointment.patient_id]
    return [appointment.patient_id, appointment.doctor_id]


def build_notifications(
    db: Session,
    appointment: Appointment,
    from_status: AppointmentStatus,
    to_status: AppointmentStatus,
    actor_role: str,
    extra_payload: dict[str, Any] | None = None,
) -> list[Notification]:
    """Add the notifications for an accepted transition to the session.

    The caller owns the transaction; nothing is committed here.
    """
    rule = NOTIFICATION_RULES.get((from_status, to_status))
    if rule is None:
        return []

    payload = {
        'appointment_id': appointment.id,
        'doctor_id': appointment.doctor_id,
        'patient_id': appointment.patient_id,
        'start_time': appointment.start_time.isoformat(),
        'appointment_type': appointment.appointment_type,
        'consultation_fee': str(appointment.consultation_fee),
        'from_status': from_status.value,
        'status': to_status.value,
    }
    payload.update(extra_payload or {})
    message = rule.message.format(
        fee=appointment.consultation_fee,
        start=appointment.start_time.strftime('%Y-%m-%d %H:%M'),
    )

    notifications = [
        Notification(
            recipient_id=recipient_id,
            appointment_id=appointment.id,
            kind=rule.kind,
            title=rule.title,
            message=message,
            payload=payload,
            channels=[channel.value for channel in rule.channels],
            is_read=False,
        )
        for recipient_id in resolve_recipients(rule, appointment, actor_role)
    ]
    db.add_all(notifications)
    return notifications


def events_for(db: Session, notifications: list[Notification]) -> list[NotificationEvent]:
    if not notifications:
        return []
    recipient_ids = {notification.recipient_id for notification in notifications}
    emails = dict(db.query(User.id, User.email).filter(User.id.in_(recipient_ids)).all())
    return [
        NotificationEvent(
            notification_id=notification.id,
            recipient_id=notification.recipient_id,
            recipient_email=emails.get(notification.recipient_id),
            kind=notification.kind,
            title=notification.title,
            message=notification.message,
            channels=tuple(notification.channels),
            payload=dict(notification.payload or {}),
        )
        for notification in notifications
    ]


def deliver_in_app(event: NotificationEvent) -> None:
    # The persisted row is the in-app message.
    logger.debug('Notification %s available in-app for user %s', event.notification_id, event.recipient_id)


def deliver_email(event: NotificationEvent) -> None:
    if not event.recipient_email:
        logger.warning('No email address for user %s; skipping %s email', event.recipient_id, event.kind)
        return
    logger.info('Email queued for %s: %s %s', event.recipient_email, event.title, event.to_outbound())


Sender = Callable[[NotificationEvent], None]

DEFAULT_SENDERS: dict[str, Sender] = {
    NotificationChannel.IN_APP.value: deliver_in_app,
    NotificationChannel.EMAIL.value: deliver_email,
}


class NotificationDispatcher:
    """Deliver notification events to their channels off the caller's thread."""

    def __init__(
        self,
        senders: dict[str, Sender] | None = None,
        executor: Executor | None = None,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.senders = dict(DEFAULT_SENDERS if senders is None else senders)
        self.max_attempts = max(1, max_attempts or config.NOTIFICATION_MAX_ATTEMPTS)
        self.backoff_seconds = (
            config.NOTIFICATION_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self._sleep = sleep
        self._executor = executor
        self._executor_lock = Lock()

    def _get_executor(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=config.NOTIFICATION_WORKERS,
                    thread_name_prefix='appointd-notify',
                )
            return self._executor

    def dispatch(self, events: list[NotificationEvent]) -> None:
        executor = self._get_executor()
        for event in events:
            for channel in event.channels:
                executor.submit(self.deliver, event, channel)

    def deliver(self, event: NotificationEvent, channel: str) -> bool:
        sender = self.senders.get(channel)
        if sender is None:
            logger.error('No sender configured for channel %s (notification %s)', channel, event.notification_id)
            return False

        for attempt in range(1, self.max_attempts + 1):
            try:
                sender(event)
                return True
            except Exception:
                logger.warning(
                    'Delivery of notification %s via %s failed (attempt %s/%s)',
                    event.notification_id, channel, attempt, self.max_attempts,
                    exc_info=True,
                )
            if attempt < self.max_attempts:
                self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        logger.error(
            'Giving up on notification %s via %s after %s attempts',
            event.notification_id, channel, self.max_attempts,
        )
        return False

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None


dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    return dispatcher


def dispatch_committed(
    db: Session,
    notifications: list[Notification],
    notification_dispatcher: NotificationDispatcher | None = None,
) -> None:
    """Hand notifications of an already committed change to the dispatcher.

    Failures are logged and swallowed: the change they describe stands.
    """
    if not notifications:
        return
    try:
        (notification_dispatcher or get_dispatcher()).dispatch(events_for(db, notifications))
    except Exception:
        logger.exception(
            'Could not dispatch notifications %s',
            [notification.id for notification in notifications],
        )


def list_notifications(db: Session, recipient_id: int, unread_only: bool = False) -> list[Notification]:
    query = db.query(Notification).filter(Notification.recipient_id == recipient_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc(), Notification.id.desc()).all()


def mark_notification_read(db: Session, notification_id: int, recipient_id: int, is_read: bool = True) -> Notification:
    notification = db.get(Notification, notification_id)
    if notification is None or notification.recipient_id != recipient_id:
        raise NotFound('Notification not found.')
    notification.is_read = is_read
    db.commit()
    db.refresh(notification)
    return notification
