import logging
from typing import Annotated, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.dependencies import get_db
from hemolink.schemas.base_schema import DataWrapper
from hemolink.schemas.cohort import DonorAvailabilityUpdate, DonorCohortAssignment
from hemolink.schemas.donor import Availability, DonorMatch, DonorSearchParams
from hemolink.schemas.transfusion import TransfusionScheduleResponse
from hemolink.services.cohort_service import CohortService
from hemolink.services.donor_matcher import DonorMatcherService
from hemolink.services.transfusion_service import TransfusionService
from hemolink.utils.security import CallerIdentity, ensure_owner_scope, get_current_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/donors", tags=["donors"])


@router.get("/search", response_model=DataWrapper[List[DonorMatch]])
async def search_donors(
    params: Annotated[DonorSearchParams, Query()],
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """
    Rank donors for a blood group around the patient's location.

    Donors without coordinates are listed after every located donor.
    """
    matches = await DonorMatcherService(db).search_donors(
        blood_group=params.blood_group,
        patient_lat=params.patient_lat,
        patient_lng=params.patient_lng,
        radius_km=params.radius_km,
        only_ready=params.availability == Availability.NOW,
    )
    return DataWrapper(data=matches)


@router.get(
    "/{donor_id}/cohorts", response_model=DataWrapper[List[DonorCohortAssignment]]
)
async def list_donor_cohorts(
    donor_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    ensure_owner_scope(identity, donor_id, "donor", request)
    assignments = await CohortService(db).list_donor_assignments(donor_id)
    return DataWrapper(data=assignments)


@router.patch(
    "/{donor_id}/availability", response_model=DataWrapper[List[DonorCohortAssignment]]
)
async def set_donor_availability(
    donor_id: UUID,
    update: DonorAvailabilityUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """Pause or resume the donor in all of their active cohorts."""
    ensure_owner_scope(identity, donor_id, "donor", request)
    assignments = await CohortService(db).set_donor_availability(donor_id, update.available)
    return DataWrapper(data=assignments)


@router.get(
    "/{donor_id}/transfusions",
    response_model=DataWrapper[List[TransfusionScheduleResponse]],
)
async def list_donor_transfusions(
    donor_id: UUID,
    request: Request,
    only_upcoming: bool = Query(True),
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    ensure_owner_scope(identity, donor_id, "donor", request)
    schedules = await TransfusionService(db).list_donor_schedules(
        donor_id, only_upcoming=only_upcoming
    )
    return DataWrapper(data=schedules)
