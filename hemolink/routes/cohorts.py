import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.dependencies import get_db
from hemolink.schemas.base_schema import DataWrapper
from hemolink.schemas.cohort import CohortCreate, CohortMembershipView, CohortResponse
from hemolink.services.cohort_service import CohortService
from hemolink.utils.security import CallerIdentity, ensure_patient_scope, get_current_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/patients", tags=["cohorts"])


@router.post(
    "/{patient_id}/cohort",
    response_model=DataWrapper[CohortResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_cohort(
    patient_id: UUID,
    cohort_data: CohortCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """
    Create the patient's rotating donor cohort.

    Donor emails are taken in rotation order. Re-submitting the same
    donors returns the cohort that already exists.
    """
    ensure_patient_scope(identity, patient_id, request)

    cohort = await CohortService(db).create_cohort_by_email(
        patient_id=patient_id,
        donor_emails=cohort_data.donor_emails,
        start_date=cohort_data.start_date,
        name=cohort_data.name,
    )
    return DataWrapper(data=CohortResponse.model_validate(cohort))


@router.get("/{patient_id}/cohort", response_model=DataWrapper[List[CohortMembershipView]])
async def get_cohort_details(
    patient_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    ensure_patient_scope(identity, patient_id, request)

    members = await CohortService(db).get_cohort_details(patient_id)
    return DataWrapper(data=members)
