from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from appointd.core.errors import AppointdError
from appointd.database import get_db
from appointd.routes.appointment_routes import AppointmentResponse
from appointd.routes.errors import database_unavailable, ensure_database_ready, http_error
from appointd.services import payments
from appointd.services.notifications import NotificationDispatcher, get_dispatcher

router = APIRouter(tags=['payments'])


class PaymentConfirmedRequest(BaseModel):
    """Payment-confirmed event posted by the payment collaborator.

    Authenticated by ``signature`` rather than a bearer token.
    """

    appointment_id: int
    amount: Decimal
    provider_reference: str
    signature: str

    @field_validator('provider_reference', 'signature')
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError('must not be blank')
        return cleaned


@router.post('/confirm', response_model=AppointmentResponse)
def confirm_payment(
    data: PaymentConfirmedRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    ensure_database_ready()

    event = payments.PaymentEvent(
        appointment_id=data.appointment_id,
        amount=data.amount,
        provider_reference=data.provider_reference,
        signature=data.signature,
    )
    try:
        return payments.confirm_payment(db, event, dispatcher=dispatcher)
    except AppointdError as exc:
        raise http_error(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
