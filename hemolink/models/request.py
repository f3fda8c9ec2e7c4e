import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from hemolink.db.base import GUID, Base, TimestampMixin, utc_now
from hemolink.schemas.request import DeliveryStatus, RequestStatus, RequestType, Urgency


class BloodRequest(TimestampMixin, Base):
    """A patient's request for blood, created by the patient-facing flow."""

    __tablename__ = "blood_requests"

    # --- Columns ---
    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    request_type: Mapped[RequestType] = mapped_column(
        Enum(RequestType), default=RequestType.EMERGENCY, nullable=False
    )
    blood_group: Mapped[str] = mapped_column(String(3), nullable=False, index=True)
    component: Mapped[str] = mapped_column(String(50), default="Whole Blood")
    quantity_units: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    urgency: Mapped[Urgency] = mapped_column(
        Enum(Urgency), default=Urgency.HIGH, nullable=False, index=True
    )
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False, index=True
    )
    patient_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    patient_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    radius_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # --- Relationships ---
    broadcasts = relationship(
        "RequestBroadcast", back_populates="blood_request", cascade="all, delete-orphan"
    )

    @validates("quantity_units")
    def validate_quantity_units(self, key, value):
        """Validate that requested quantity is positive."""
        if value <= 0:
            raise ValueError("Requested quantity must be greater than 0")
        return value

    def __repr__(self) -> str:
        return f"<BloodRequest(id={self.id}, patient_id={self.patient_id}, status={self.status})>"

    __table_args__ = (
        Index("idx_request_patient_status", "patient_id", "status"),
        Index("idx_request_group_urgency", "blood_group", "urgency", "status"),
    )


class RequestBroadcast(Base):
    """One emergency fan-out of a request to matched donors."""

    __tablename__ = "request_broadcasts"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("blood_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    blood_group: Mapped[str] = mapped_column(String(3), nullable=False)
    radius_km: Mapped[float] = mapped_column(Float, nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    recipient_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now(), index=True
    )

    blood_request = relationship("BloodRequest", back_populates="broadcasts")
    recipients = relationship(
        "BroadcastRecipient", back_populates="broadcast", cascade="all, delete-orphan"
    )


class BroadcastRecipient(Base):
    __tablename__ = "broadcast_recipients"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    broadcast_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("request_broadcasts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    donor_id: Mapped[uuid.UUID] = mapped_column(
        GUID(), ForeignKey("donors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus), default=DeliveryStatus.QUEUED, nullable=False
    )

    broadcast = relationship("RequestBroadcast", back_populates="recipients")
