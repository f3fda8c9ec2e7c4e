from typing import Annotated, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.dependencies import get_db
from hemolink.schemas.base_schema import DataWrapper
from hemolink.schemas.hospital import HospitalMatch, HospitalSearchParams, HospitalSummary
from hemolink.schemas.transfusion import TransfusionScheduleResponse
from hemolink.services.hospital_matcher import HospitalMatcherService
from hemolink.services.transfusion_service import TransfusionService
from hemolink.utils.security import CallerIdentity, ensure_owner_scope, get_current_identity

router = APIRouter(prefix="/hospitals", tags=["hospitals"])


@router.get("/matches", response_model=DataWrapper[List[HospitalMatch]])
async def find_matching_hospitals(
    params: Annotated[HospitalSearchParams, Query()],
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    matches = await HospitalMatcherService(db).find_matching_hospitals(
        blood_group=params.blood_group,
        component=params.component,
        location=params.location,
        urgency=params.urgency,
        patient_lat=params.patient_lat,
        patient_lng=params.patient_lng,
        radius_km=params.radius_km,
        min_units=params.min_units,
        sort=params.sort,
    )
    return DataWrapper(data=matches)


@router.get("", response_model=DataWrapper[List[HospitalSummary]])
async def list_hospitals(
    q: Optional[str] = Query(None, max_length=255),
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    hospitals = await HospitalMatcherService(db).list_hospitals(q)
    return DataWrapper(data=hospitals)


@router.get(
    "/{hospital_id}/transfusions",
    response_model=DataWrapper[List[TransfusionScheduleResponse]],
)
async def list_hospital_transfusions(
    hospital_id: UUID,
    request: Request,
    only_upcoming: bool = Query(True),
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """Transfusions booked at the hospital."""
    ensure_owner_scope(identity, hospital_id, "hospital", request)
    schedules = await TransfusionService(db).list_hospital_transfusions(
        hospital_id, only_upcoming=only_upcoming
    )
    return DataWrapper(data=schedules)
