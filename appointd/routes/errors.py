from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from appointd.core.errors import (
    AppointdError,
    IllegalTransition,
    NotFound,
    PaymentVerificationFailed,
    SlotConflict,
    SlotNotOffered,
    ValidationError,
)
from appointd.database import ensure_appointment_schema

ERROR_STATUS_CODES: dict[type[AppointdError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    SlotNotOffered: status.HTTP_422_UNPROCESSABLE_CONTENT,
    SlotConflict: status.HTTP_409_CONFLICT,
    IllegalTransition: status.HTTP_409_CONFLICT,
    PaymentVerificationFailed: status.HTTP_402_PAYMENT_REQUIRED,
}

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and database credentials.'


def http_error(exc: AppointdError) -> HTTPException:
    """Translate a service failure; ``detail.error`` names the failure kind for clients."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    return HTTPException(
        status_code=status_code,
        detail={'error': type(exc).__name__, 'message': exc.message},
    )


def database_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_appointment_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
