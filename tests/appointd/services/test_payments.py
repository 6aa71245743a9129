from decimal import Decimal

import pytest

from appointd.core.errors import IllegalTransition, NotFound, PaymentVerificationFailed
from appointd.models.notification import Notification
from appointd.models.payment import Payment
from appointd.services import payments
from appointd.services.payments import PaymentEvent


def _signed_event(appointment_id: int, amount='115.00', reference: str = 'pay_001', secret: str | None = None):
    return PaymentEvent(
        appointment_id=appointment_id,
        amount=Decimal(amount),
        provider_reference=reference,
        signature=payments.sign_payment(appointment_id, reference, amount, secret=secret),
    )


def test_payment_amount_includes_platform_fee(make_appointment) -> None:
    assert payments.payment_amount_for(make_appointment()) == Decimal('115.00')


def test_signing_message_normalizes_amount() -> None:
    assert payments.signing_message(7, 'pay_001', 115) == b'7|pay_001|115.00'


def test_confirm_payment_confirms_and_notifies_doctor(
    db, make_appointment, webhook_secret, dispatcher, doctor,
) -> None:
    appointment = make_appointment(status='awaiting_payment')

    confirmed = payments.confirm_payment(db, _signed_event(appointment.id), dispatcher=dispatcher)

    assert confirmed.status == 'confirmed'
    payment = db.query(Payment).one()
    assert payment.provider_reference == 'pay_001'
    assert payment.amount == Decimal('115.00')
    notification = db.query(Notification).one()
    assert notification.recipient_id == doctor.actor_id
    assert notification.kind == 'appointment-confirmed'


def test_confirm_payment_rejects_bad_signature(db, make_appointment, webhook_secret, dispatcher) -> None:
    appointment = make_appointment(status='awaiting_payment')
    event = _signed_event(appointment.id, secret='someone-else')

    with pytest.raises(PaymentVerificationFailed) as exception_info:
        payments.confirm_payment(db, event, dispatcher=dispatcher)

    assert exception_info.value.message == 'Invalid payment signature.'
    db.refresh(appointment)
    assert appointment.status == 'awaiting_payment'
    assert db.query(Notification).count() == 0


def test_confirm_payment_rejects_tampered_amount(db, make_appointment, webhook_secret, dispatcher) -> None:
    appointment = make_appointment(status='awaiting_payment')
    event = _signed_event(appointment.id)
    tampered = PaymentEvent(
        appointment_id=event.appointment_id,
        amount=Decimal('1.00'),
        provider_reference=event.provider_reference,
        signature=event.signature,
    )

    with pytest.raises(PaymentVerificationFailed):
        payments.confirm_payment(db, tampered, dispatcher=dispatcher)


def test_confirm_payment_rejects_wrong_amount(db, make_appointment, webhook_secret, dispatcher) -> None:
    appointment = make_appointment(status='awaiting_payment')

    with pytest.raises(PaymentVerificationFailed) as exception_info:
        payments.confirm_payment(db, _signed_event(appointment.id, amount='100.00'), dispatcher=dispatcher)

    assert exception_info.value.message == 'Payment amount does not match the consultation charge.'
    db.refresh(appointment)
    assert appointment.status == 'awaiting_payment'


def test_duplicate_payment_is_a_verification_failure(db, make_appointment, webhook_secret, dispatcher) -> None:
    appointment = make_appointment(status='awaiting_payment')
    payments.confirm_payment(db, _signed_event(appointment.id), dispatcher=dispatcher)

    with pytest.raises(PaymentVerificationFailed) as exception_info:
        payments.confirm_payment(db, _signed_event(appointment.id), dispatcher=dispatcher)

    assert exception_info.value.message == 'This payment has already been processed.'
    assert db.query(Notification).count() == 1


def test_payment_for_unpaid_status_is_an_illegal_transition(
    db, make_appointment, webhook_secret, dispatcher,
) -> None:
    appointment = make_appointment(status='scheduled')

    with pytest.raises(IllegalTransition):
        payments.confirm_payment(db, _signed_event(appointment.id), dispatcher=dispatcher)

    assert db.query(Payment).count() == 0
    assert db.query(Notification).count() == 0


def test_payment_for_missing_appointment_is_not_found(db, users, webhook_secret, dispatcher) -> None:
    with pytest.raises(NotFound):
        payments.confirm_payment(db, _signed_event(404), dispatcher=dispatcher)


def test_unconfigured_secret_rejects_every_event(db, make_appointment, monkeypatch, dispatcher) -> None:
    monkeypatch.setattr(payments.config, 'PAYMENT_WEBHOOK_SECRET', '')
    appointment = make_appointment(status='awaiting_payment')
    event = PaymentEvent(appointment.id, Decimal('115.00'), 'pay_001', 'deadbeef')

    with pytest.raises(PaymentVerificationFailed) as exception_info:
        payments.confirm_payment(db, event, dispatcher=dispatcher)

    assert exception_info.value.message == 'Payment verification is not configured.'


def test_confirmation_stands_when_dispatch_cannot_be_scheduled(
    db, make_appointment, webhook_secret, closed_dispatcher,
) -> None:
    appointment = make_appointment(status='awaiting_payment')

    confirmed = payments.confirm_payment(db, _signed_event(appointment.id), dispatcher=closed_dispatcher)

    assert confirmed.status == 'confirmed'
    assert db.query(Payment).count() == 1
