import uuid
from typing import Optional

from sqlalchemy import Float, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hemolink.db.base import GUID, Base, TimestampMixin


class Patient(TimestampMixin, Base):
    """Patient snapshot synced from the patient-profile service."""

    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    full_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    blood_group: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    cohorts = relationship("Cohort", back_populates="patient")
