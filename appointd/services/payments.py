"""
Payment gate: turns a verified provider event into a confirmed appointment.

Verification covers authenticity (HMAC-SHA256 over the event fields, compared
in constant time), duplicates (a provider reference confirms at most once)
and the charged amount. Only after all three pass is the
``awaiting_payment -> confirmed`` transition applied.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from appointd.core import config
from appointd.core.errors import PaymentVerificationFailed
from appointd.models.appointment import Appointment, AppointmentStatus
from appointd.models.payment import Payment
from appointd.services.lifecycle import PAYMENT_GATE_ACTOR, apply_transition, get_appointment
from appointd.services.notifications import NotificationDispatcher, dispatch_committed

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')


@dataclass(frozen=True)
class PaymentEvent:
    appointment_id: int
    amount: Decimal
    provider_reference: str
    signature: str


def _normalize_amount(amount) -> Decimal:
    try:
        return Decimal(str(amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise PaymentVerificationFailed('Payment amount is not a number.') from exc


def signing_message(appointment_id: int, provider_reference: str, amount) -> bytes:
    return f'{appointment_id}|{provider_reference}|{_normalize_amount(amount)}'.encode('utf-8')


def sign_payment(appointment_id: int, provider_reference: str, amount, secret: str | None = None) -> str:
    """Signature the payment collaborator attaches to a payment-confirmed event."""
    key = config.PAYMENT_WEBHOOK_SECRET if secret is None else secret
    return hmac.new(
        key.encode('utf-8'),
        signing_message(appointment_id, provider_reference, amount),
        hashlib.sha256,
    ).hexdigest()


def payment_amount_for(appointment: Appointment) -> Decimal:
    """Consultation fee plus the platform surcharge."""
    fee = Decimal(str(appointment.consultation_fee or 0))
    rate = Decimal(str(config.PLATFORM_FEE_RATE))
    return (fee * (1 + rate)).quantize(CENTS, rounding=ROUND_HALF_UP)


def verify_signature(event: PaymentEvent) -> None:
    if not config.PAYMENT_WEBHOOK_SECRET:
        raise PaymentVerificationFailed('Payment verification is not configured.')
    if not event.provider_reference or not event.signature:
        raise PaymentVerificationFailed('Payment event is missing its reference or signature.')

    expected = sign_payment(event.appointment_id, event.provider_reference, event.amount)
    if not hmac.compare_digest(expected, event.signature.strip().lower()):
        raise PaymentVerificationFailed('Invalid payment signature.')


def confirm_payment(
    db: Session,
    event: PaymentEvent,
    dispatcher: NotificationDispatcher | None = None,
) -> Appointment:
    try:
        verify_signature(event)
    except PaymentVerificationFailed as exc:
        logger.warning(
            'Rejected payment event %s for appointment %s: %s',
            event.provider_reference, event.appointment_id, exc.message,
        )
        raise

    appointment = get_appointment(db, event.appointment_id)

    duplicate = db.query(Payment.id).filter(Payment.provider_reference == event.provider_reference).first()
    if duplicate:
        logger.warning('Duplicate payment event %s ignored', event.provider_reference)
        raise PaymentVerificationFailed('This payment has already been processed.')

    amount = _normalize_amount(event.amount)
    expected_amount = payment_amount_for(appointment)
    if amount != expected_amount:
        logger.warning(
            'Payment %s for appointment %s has amount %s, expected %s',
            event.provider_reference, appointment.id, amount, expected_amount,
        )
        raise PaymentVerificationFailed('Payment amount does not match the consultation charge.')

    try:
        notifications = apply_transition(db, appointment, PAYMENT_GATE_ACTOR, AppointmentStatus.CONFIRMED)
        db.add(Payment(
            appointment_id=appointment.id,
            amount=amount,
            provider_reference=event.provider_reference,
            status='completed',
        ))
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning('Duplicate payment event %s lost a race', event.provider_reference)
        raise PaymentVerificationFailed('This payment has already been processed.') from exc
    except Exception:
        db.rollback()
        raise

    db.refresh(appointment)
    logger.info('Payment %s confirmed appointment %s', event.provider_reference, appointment.id)
    dispatch_committed(db, notifications, dispatcher)
    return appointment
