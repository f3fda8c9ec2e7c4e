import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.dependencies import get_db
from hemolink.schemas.base_schema import DataWrapper
from hemolink.schemas.transfusion import (
    BookTransfusionRequest,
    CompleteTransfusionRequest,
    PlanNextRequest,
    TransfusionRecordResponse,
    TransfusionScheduleResponse,
)
from hemolink.services.transfusion_service import TransfusionService
from hemolink.utils.security import (
    CallerIdentity,
    ensure_patient_scope,
    get_current_identity,
    require_role,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transfusions"])


@router.post(
    "/patients/{patient_id}/transfusions/plan",
    response_model=DataWrapper[TransfusionScheduleResponse],
)
async def plan_next_transfusion(
    patient_id: UUID,
    request: Request,
    plan: Optional[PlanNextRequest] = None,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """
    Plan the next rotation slot, or return the one already open.

    Safe to call repeatedly; the UI calls it on every page load.
    """
    ensure_patient_scope(identity, patient_id, request)
    plan = plan or PlanNextRequest()

    schedule = await TransfusionService(db).plan_next(
        patient_id, component=plan.component, units=plan.units
    )
    return DataWrapper(data=schedule)


@router.get(
    "/patients/{patient_id}/transfusions",
    response_model=DataWrapper[List[TransfusionScheduleResponse]],
)
async def list_transfusion_schedule(
    patient_id: UUID,
    request: Request,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    ensure_patient_scope(identity, patient_id, request)
    return DataWrapper(data=await TransfusionService(db).list_schedule(patient_id))


@router.get(
    "/patients/{patient_id}/transfusions/history",
    response_model=DataWrapper[List[TransfusionRecordResponse]],
)
async def list_transfusion_history(
    patient_id: UUID,
    request: Request,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    ensure_patient_scope(identity, patient_id, request)
    history = await TransfusionService(db).list_history(patient_id, limit=limit)
    return DataWrapper(data=history)


@router.post(
    "/transfusions/{schedule_id}/book",
    response_model=DataWrapper[TransfusionScheduleResponse],
)
async def book_transfusion(
    schedule_id: UUID,
    booking: BookTransfusionRequest,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    schedule = await TransfusionService(db).book_transfusion(
        schedule_id,
        hospital_id=booking.hospital_id,
        scheduled_for=booking.scheduled_for,
        patient_id=identity.subject,
    )
    return DataWrapper(data=schedule)


@router.post(
    "/transfusions/{schedule_id}/cancel",
    response_model=DataWrapper[TransfusionScheduleResponse],
)
async def cancel_transfusion(
    schedule_id: UUID,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    schedule = await TransfusionService(db).cancel_schedule(
        schedule_id, patient_id=identity.subject
    )
    return DataWrapper(data=schedule)


@router.post(
    "/transfusions/{schedule_id}/complete",
    response_model=DataWrapper[TransfusionRecordResponse],
    status_code=status.HTTP_201_CREATED,
)
async def complete_transfusion(
    schedule_id: UUID,
    completion: Optional[CompleteTransfusionRequest] = None,
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(require_role("hospital", "admin")),
):
    """Hospital-side hook recording that a slot actually took place."""
    occurred_at = completion.occurred_at if completion else None
    record = await TransfusionService(db).complete_transfusion(schedule_id, occurred_at)
    logger.info(f"Transfusion {schedule_id} completed by {identity.role} {identity.subject}")
    return DataWrapper(data=record)
