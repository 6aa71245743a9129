"""Availability model definitions."""

from sqlalchemy import Boolean, CheckConstraint, Column, ForeignKey, Index, Integer
from appointd.database import Base


class AvailabilityWindow(Base):
    """A recurring weekly interval during which a doctor accepts bookings.

    ``weekday`` is stored 0-based (Monday=0) and ``start_minute``/``end_minute``
    are minutes since midnight, clinic-local.
    """
    __tablename__ = "availability_windows"
    __table_args__ = (
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_availability_weekday"),
        CheckConstraint("start_minute < end_minute", name="ck_availability_range"),
        Index("idx_availability_doctor_weekday", "doctor_id", "weekday"),
    )

    id = Column(Integer, primary_key=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    weekday = Column(Integer, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
