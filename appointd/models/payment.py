"""Payment model definitions."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from appointd.database import Base


class Payment(Base):
    """A verified payment that confirmed an appointment."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    provider_reference = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="completed")
    created_at = Column(DateTime, nullable=False, default=datetime.now)
