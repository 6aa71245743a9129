"""Typed failures raised by the booking and lifecycle services."""


class AppointdError(Exception):
    """Base class for expected, caller-visible failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppointdError):
    """The request is malformed."""


class NotFound(AppointdError):
    pass


class SlotNotOffered(AppointdError):
    """The requested start is not one of the doctor's offered slots."""


class SlotConflict(AppointdError):
    """The requested interval overlaps an active appointment of the doctor."""


class IllegalTransition(AppointdError):
    """Wrong actor, wrong originating status, or a missing guard."""


class PaymentVerificationFailed(AppointdError):
    """The payment event is not authentic, is a duplicate, or does not match."""
