import uuid
from datetime import date
from typing import Optional

from sqlalchemy import Boolean, Date, Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from hemolink.db.base import GUID, Base, TimestampMixin


class Hospital(TimestampMixin, Base):
    __tablename__ = "hospitals"

    # --- Columns ---
    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # --- Relationships ---
    stock = relationship(
        "HospitalStock", back_populates="hospital", cascade="all, delete-orphan"
    )

    def __str__(self) -> str:
        return self.name


class HospitalStock(TimestampMixin, Base):
    """Units of one component/blood group collected on one day."""

    __tablename__ = "hospital_stock"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    hospital_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("hospitals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    blood_group: Mapped[str] = mapped_column(String(3), nullable=False, index=True)
    component: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    collection_date: Mapped[date] = mapped_column(Date, nullable=False)

    hospital = relationship("Hospital", back_populates="stock")

    @validates("units")
    def validate_units(self, key, value):
        if value < 0:
            raise ValueError("Stock units cannot be negative")
        return value

    def freshness_days(self, today: date) -> int:
        return max(0, (today - self.collection_date).days)

    __table_args__ = (
        Index("idx_stock_component_group", "component", "blood_group"),
        Index("idx_stock_hospital_component", "hospital_id", "component"),
    )
