import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from hemolink.db.base import GUID, Base, utc_now


class EngineEvent(Base):
    """Outbox row describing a committed state change (change feed)."""

    __tablename__ = "engine_events"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    patient_id: Mapped[Optional[uuid.UUID]] = mapped_column(GUID(), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, server_default=func.now(), index=True
    )

    __table_args__ = (Index("idx_event_patient_created", "patient_id", "created_at"),)
