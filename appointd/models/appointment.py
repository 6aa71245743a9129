"""Appointment model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text
from appointd.database import Base


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)


class AppointmentType(str, Enum):
    VIDEO = "video"
    IN_PERSON = "in-person"


class Appointment(Base):
    """Represents a booked consultation and its lifecycle status."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_doctor_range", "doctor_id", "start_time", "end_time"),
        Index(
            "uq_appointments_doctor_start_active",
            "doctor_id",
            "start_time",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    appointment_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=AppointmentStatus.SCHEDULED.value)
    consultation_fee = Column(Numeric(10, 2), nullable=False, default=0)
    notes = Column(Text)
    prescription = Column(Text)
    prescription_file = Column(String)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
    status_changed_at = Column(DateTime)
    session_started_at = Column(DateTime)
    doctor_joined_at = Column(DateTime)
    patient_joined_at = Column(DateTime)
