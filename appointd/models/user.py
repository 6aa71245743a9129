"""User model definitions."""

from enum import Enum

from sqlalchemy import Column, Integer, Numeric, String
from appointd.database import Base


class Role(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class User(Base):
    """Represents a patient, doctor or admin provisioned by the identity provider."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True)
    full_name = Column(String)
    role = Column(String)  # patient/doctor/admin
    consultation_fee = Column(Numeric(10, 2))  # doctors only
