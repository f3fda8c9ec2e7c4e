from datetime import datetime
from enum import Enum
from typing import Annotated, List, Optional
from uuid import UUID

from pydantic import Field, StringConstraints, model_validator

from hemolink.schemas.base_schema import BLOOD_GROUP_PATTERN, BaseSchema, ResponseSchema


class RequestType(str, Enum):
    EMERGENCY = "emergency"
    SCHEDULED = "scheduled"


class Urgency(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


class BroadcastCreate(BaseSchema):
    blood_group: Optional[
        Annotated[str, StringConstraints(pattern=BLOOD_GROUP_PATTERN)]
    ] = Field(None, description="Defaults to the request's blood group")
    patient_lat: Optional[float] = Field(None, ge=-90, le=90)
    patient_lng: Optional[float] = Field(None, ge=-180, le=180)
    radius_km: Optional[float] = Field(
        None, gt=0, le=500, description="Defaults to the request's last broadcast radius"
    )

    @model_validator(mode="after")
    def check_coordinates_pair(self):
        if (self.patient_lat is None) != (self.patient_lng is None):
            raise ValueError("patient_lat and patient_lng must be given together")
        return self


class BroadcastRecipientResponse(ResponseSchema):
    donor_id: UUID
    distance_km: Optional[float] = None


class BroadcastResult(ResponseSchema):
    broadcast_id: UUID
    request_id: UUID
    blood_group: str
    radius_km: float
    recipient_count: int
    recipients: List[BroadcastRecipientResponse] = []
    created_at: Optional[datetime] = None
