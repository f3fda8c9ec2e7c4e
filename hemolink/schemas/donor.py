from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import Field, StringConstraints, model_validator

from hemolink.schemas.base_schema import BLOOD_GROUP_PATTERN, BaseSchema, ResponseSchema


class Availability(str, Enum):
    NOW = "now"
    ANY = "any"


class DonorSearchParams(BaseSchema):
    blood_group: Annotated[
        str, StringConstraints(pattern=BLOOD_GROUP_PATTERN, strip_whitespace=True)
    ] = Field(..., description="Recipient blood group (e.g. A+, O-)")
    patient_lat: Optional[float] = Field(None, ge=-90, le=90)
    patient_lng: Optional[float] = Field(None, ge=-180, le=180)
    radius_km: Optional[float] = Field(
        None, gt=0, le=20000, description="Defaults to DEFAULT_SEARCH_RADIUS_KM"
    )
    availability: Availability = Field(
        Availability.ANY, description="`now` keeps only donors ready to give today"
    )

    @model_validator(mode="after")
    def check_coordinates_pair(self):
        if (self.patient_lat is None) != (self.patient_lng is None):
            raise ValueError("patient_lat and patient_lng must be given together")
        return self


class DonorMatch(ResponseSchema):
    donor_id: UUID
    full_name: Optional[str] = None
    phone: Optional[str] = None
    blood_group: Optional[str] = None
    location: Optional[str] = None
    eligibility_status: Optional[str] = None
    eligibility_label: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    distance_km: Optional[float] = None
    donation_count: Optional[int] = None
    ready: bool
