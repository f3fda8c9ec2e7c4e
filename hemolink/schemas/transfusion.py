from datetime import datetime
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import Field, StringConstraints

from hemolink.schemas.base_schema import BaseSchema, ResponseSchema


class ScheduleStatus(str, Enum):
    PLANNED = "planned"
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def open_statuses(cls):
        return (cls.PLANNED, cls.BOOKED)


class PlanNextRequest(BaseSchema):
    component: Annotated[
        str, StringConstraints(min_length=2, max_length=50, strip_whitespace=True)
    ] = "Whole Blood"
    units: int = Field(1, gt=0, le=10)


class BookTransfusionRequest(BaseSchema):
    hospital_id: UUID
    scheduled_for: datetime


class CompleteTransfusionRequest(BaseSchema):
    occurred_at: Optional[datetime] = None


class TransfusionScheduleResponse(ResponseSchema):
    schedule_id: UUID
    patient_id: UUID
    patient_name: Optional[str] = None
    cohort_id: Optional[UUID] = None
    cycle_number: int
    scheduled_for: Optional[datetime] = None
    status: ScheduleStatus
    component: str
    units: int
    hospital_id: Optional[UUID] = None
    hospital_name: Optional[str] = None
    assigned_donor_id: Optional[UUID] = None
    donor_name: Optional[str] = None
    used_emergency_backup: bool = False


class TransfusionRecordResponse(ResponseSchema):
    id: UUID
    schedule_id: Optional[UUID] = None
    occurred_at: datetime
    component: str
    units: int
    hospital_id: Optional[UUID] = None
    hospital_name: Optional[str] = None
    donor_label: Optional[str] = None
    cycle_number: Optional[int] = None


class EngineEventResponse(ResponseSchema):
    id: UUID
    event_type: str
    aggregate_id: UUID
    patient_id: Optional[UUID] = None
    payload: dict = {}
    created_at: Optional[datetime] = None
