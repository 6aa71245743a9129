"""Notification model definitions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from appointd.database import Base


class NotificationChannel(str, Enum):
    IN_APP = "in-app"
    EMAIL = "email"


class Notification(Base):
    """An in-app record of a transition side effect addressed to one user.

    ``appointment_id`` is a plain reference, not a foreign key.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_recipient_created", "recipient_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    appointment_id = Column(Integer)
    kind = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    channels = Column(JSON, nullable=False, default=list)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.now)
