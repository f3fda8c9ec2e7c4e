from datetime import date, datetime
from typing import Annotated, List, Optional
from uuid import UUID

from pydantic import EmailStr, Field, StringConstraints, field_validator

from hemolink.schemas.base_schema import BaseSchema, ResponseSchema


class CohortCreate(BaseSchema):
    donor_emails: List[EmailStr] = Field(
        ..., description="Donor emails in rotation order"
    )
    start_date: Optional[date] = Field(
        None, description="Rotation anchor, defaults to today"
    )
    name: Annotated[
        str, StringConstraints(min_length=1, max_length=100, strip_whitespace=True)
    ] = "Primary Cohort"

    @field_validator("donor_emails")
    def normalize_emails(cls, v):
        return [str(email).strip().lower() for email in v]


class CohortMembershipResponse(ResponseSchema):
    donor_id: Optional[UUID] = None
    sequence_order: int


class CohortResponse(ResponseSchema):
    id: UUID
    patient_id: UUID
    name: str
    start_date: date
    is_active: bool
    created_at: Optional[datetime] = None
    memberships: List[CohortMembershipResponse] = []


class CohortMembershipView(ResponseSchema):
    cohort_id: UUID
    cohort_name: str
    start_date: date
    sequence_order: int
    donor_id: Optional[UUID] = None
    donor_name: Optional[str] = None
    donor_phone: Optional[str] = None
    donor_blood_group: Optional[str] = None
    donor_location: Optional[str] = None
    donor_available: bool = False
    last_donation_date: Optional[date] = None
    next_scheduled_for: Optional[datetime] = None
    next_transfusion_for: Optional[datetime] = None


class DonorCohortAssignment(ResponseSchema):
    """A cohort seen from the donor's side."""

    cohort_id: UUID
    cohort_name: str
    patient_id: UUID
    patient_name: Optional[str] = None
    sequence_order: int
    next_scheduled_for: Optional[datetime] = None
    last_donation_date: Optional[date] = None
    days_until_eligible: Optional[int] = None
    donor_available: bool = True
    hospital_id: Optional[UUID] = None
    hospital_name: Optional[str] = None
    hospital_address: Optional[str] = None


class DonorAvailabilityUpdate(BaseSchema):
    available: bool
