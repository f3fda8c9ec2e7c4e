from enum import Enum
from typing import Annotated, List, Optional
from uuid import UUID

from pydantic import Field, StringConstraints, model_validator

from hemolink.schemas.base_schema import BLOOD_GROUP_PATTERN, BaseSchema, ResponseSchema
from hemolink.schemas.request import Urgency


class HospitalSort(str, Enum):
    UNITS = "units"
    FRESHNESS = "freshness"
    DISTANCE = "distance"


class Compatibility(str, Enum):
    PERFECT = "perfect"
    GOOD = "good"


class HospitalSearchParams(BaseSchema):
    blood_group: Optional[
        Annotated[str, StringConstraints(pattern=BLOOD_GROUP_PATTERN)]
    ] = None
    component: Optional[
        Annotated[str, StringConstraints(min_length=2, max_length=50)]
    ] = None
    location: Optional[Annotated[str, StringConstraints(max_length=255)]] = None
    urgency: Urgency = Urgency.MEDIUM
    patient_lat: Optional[float] = Field(None, ge=-90, le=90)
    patient_lng: Optional[float] = Field(None, ge=-180, le=180)
    radius_km: Optional[float] = Field(
        None, gt=0, le=20000, description="Defaults to DEFAULT_SEARCH_RADIUS_KM"
    )
    min_units: int = Field(1, ge=1, le=1000)
    sort: Optional[HospitalSort] = None

    @model_validator(mode="after")
    def check_coordinates_pair(self):
        if (self.patient_lat is None) != (self.patient_lng is None):
            raise ValueError("patient_lat and patient_lng must be given together")
        return self


class HospitalMatch(ResponseSchema):
    hospital_id: UUID
    name: str
    address: Optional[str] = None
    contact: Optional[str] = None
    verified: bool = False
    units: int
    freshness_days: Optional[int] = None
    distance_km: Optional[float] = None
    components: List[str] = []
    compatibility: Compatibility


class HospitalSummary(ResponseSchema):
    id: UUID
    name: str
    address: Optional[str] = None
    contact: Optional[str] = None
    verified: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
