import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hemolink.db.base import GUID, Base, TimestampMixin
from hemolink.schemas.transfusion import ScheduleStatus


class TransfusionSchedule(TimestampMixin, Base):
    """One rotation cycle of a patient's recurring transfusion plan."""

    __tablename__ = "transfusion_schedules"

    # --- Columns ---
    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cohort_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("cohorts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True, index=True
    )
    status: Mapped[ScheduleStatus] = mapped_column(
        Enum(ScheduleStatus), default=ScheduleStatus.PLANNED, nullable=False, index=True
    )
    component: Mapped[str] = mapped_column(String(50), nullable=False, default="Whole Blood")
    units: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    hospital_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("hospitals.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_donor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("donors.id", ondelete="SET NULL"), nullable=True, index=True
    )
    used_emergency_backup: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    # --- Relationships ---
    hospital = relationship("Hospital")
    assigned_donor = relationship("Donor")
    patient = relationship("Patient")
    cohort = relationship("Cohort")

    @property
    def is_open(self) -> bool:
        return self.status in ScheduleStatus.open_statuses()

    def __repr__(self) -> str:
        return (
            f"<TransfusionSchedule(id={self.id}, patient_id={self.patient_id}, "
            f"cycle={self.cycle_number}, status={self.status})>"
        )

    __table_args__ = (
        UniqueConstraint("patient_id", "cycle_number", name="uq_schedule_patient_cycle"),
        # At most one planned/booked slot per patient; Enum columns store member names
        Index(
            "uq_schedule_open_patient",
            "patient_id",
            unique=True,
            sqlite_where=text("status IN ('PLANNED', 'BOOKED')"),
            postgresql_where=text("status IN ('PLANNED', 'BOOKED')"),
        ),
        Index("idx_schedule_patient_date", "patient_id", "scheduled_for"),
    )


class TransfusionRecord(Base):
    """Completed transfusion, written by the completion hook."""

    __tablename__ = "transfusion_records"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    schedule_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("transfusion_schedules.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    component: Mapped[str] = mapped_column(String(50), nullable=False)
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    hospital_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("hospitals.id", ondelete="SET NULL"), nullable=True
    )
    donor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(), ForeignKey("donors.id", ondelete="SET NULL"), nullable=True
    )
    donor_label: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    cycle_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    hospital = relationship("Hospital")
