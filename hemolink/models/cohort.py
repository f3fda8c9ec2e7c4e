import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hemolink.db.base import GUID, Base, TimestampMixin


class Cohort(TimestampMixin, Base):
    """A patient's fixed rotating donor group."""

    __tablename__ = "cohorts"

    # --- Columns ---
    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False, default="Primary Cohort")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # --- Relationships ---
    patient = relationship("Patient", back_populates="cohorts")
    memberships = relationship(
        "CohortMembership",
        back_populates="cohort",
        cascade="all, delete-orphan",
        order_by="CohortMembership.sequence_order",
    )

    @property
    def donor_ids(self) -> set:
        return {m.donor_id for m in self.memberships if m.donor_id is not None}

    def __repr__(self) -> str:
        return f"<Cohort(id={self.id}, patient_id={self.patient_id}, active={self.is_active})>"

    __table_args__ = (
        # One active cohort per patient
        Index(
            "uq_cohort_active_patient",
            "patient_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class CohortMembership(Base):
    __tablename__ = "cohort_memberships"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    cohort_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("cohorts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    donor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("donors.id", ondelete="SET NULL"), nullable=True, index=True
    )
    sequence_order: Mapped[int] = mapped_column(Integer, nullable=False)
    last_donation_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    next_scheduled_for: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )
    # Donor-declared availability; a paused member needs a backup for their cycle
    donor_available: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=true()
    )

    cohort = relationship("Cohort", back_populates="memberships")
    donor = relationship("Donor", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("cohort_id", "sequence_order", name="uq_membership_order"),
        UniqueConstraint("cohort_id", "donor_id", name="uq_membership_donor"),
    )
