import uuid
from datetime import date
from typing import Optional

from sqlalchemy import Date, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hemolink.db.base import GUID, Base, TimestampMixin


class Donor(TimestampMixin, Base):
    """Donor snapshot synced from the donor-profile service."""

    __tablename__ = "donors"

    # --- Columns ---
    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    full_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, index=True, nullable=True
    )
    phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    blood_group: Mapped[Optional[str]] = mapped_column(
        String(3), nullable=True, index=True
    )
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    eligibility_status: Mapped[Optional[str]] = mapped_column(
        String(50), nullable=True
    )
    last_donation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    donation_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # --- Relationships ---
    memberships = relationship("CohortMembership", back_populates="donor")

    def __str__(self) -> str:
        return f"{self.full_name or 'Donor'} ({self.blood_group or '?'})"

    __table_args__ = (Index("idx_donor_group_status", "blood_group", "eligibility_status"),)
