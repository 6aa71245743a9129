"""
Opt-in expiry of unpaid appointments.

Nothing expires on its own: this runs only when invoked (see
``appointd.expire_payments``) and only when a maximum age is configured.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from appointd.core import config
from appointd.core.errors import IllegalTransition
from appointd.models.appointment import Appointment, AppointmentStatus
from appointd.services.lifecycle import SYSTEM_ACTOR, transition
from appointd.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

EXPIRY_REASON = 'Payment was not received in time.'


def expire_stale_payment_pending(
    db: Session,
    now: datetime | None = None,
    max_age_minutes: int | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> list[int]:
    """Cancel appointments that have been awaiting payment for too long.

    Returns the ids of the cancelled appointments. Appointments paid or
    cancelled while the job runs are skipped.
    """
    max_age = config.PAYMENT_PENDING_EXPIRY_MINUTES if max_age_minutes is None else max_age_minutes
    if max_age is None:
        logger.info('Payment-pending expiry is disabled (PAYMENT_PENDING_EXPIRY_MINUTES unset)')
        return []

    cutoff = (now or datetime.now()) - timedelta(minutes=max_age)
    stale_ids = [
        appointment_id
        for (appointment_id,) in db.query(Appointment.id).filter(
            Appointment.status == AppointmentStatus.AWAITING_PAYMENT.value,
            Appointment.status_changed_at <= cutoff,
        ).order_by(Appointment.id.asc()).all()
    ]

    expired: list[int] = []
    for appointment_id in stale_ids:
        try:
            transition(
                db,
                appointment_id,
                SYSTEM_ACTOR,
                AppointmentStatus.CANCELLED,
                payload={'reason': EXPIRY_REASON},
                dispatcher=dispatcher,
            )
        except IllegalTransition:
            logger.info('Appointment %s left awaiting_payment before expiry; skipped', appointment_id)
            continue
        expired.append(appointment_id)

    if expired:
        logger.info('Expired %s unpaid appointment(s): %s', len(expired), expired)
    else:
        logger.debug('No unpaid appointments to expire')
    return expired
