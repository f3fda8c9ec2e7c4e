import logging
from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hemolink.dependencies import get_db, get_session_factory
from hemolink.schemas.base_schema import DataWrapper
from hemolink.schemas.request import BroadcastCreate, BroadcastResult
from hemolink.services.broadcast_service import BroadcastService
from hemolink.services.notification_service import (
    NotificationGateway,
    get_notification_gateway,
)
from hemolink.utils.security import CallerIdentity, get_current_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/requests", tags=["requests"])

STAFF_ROLES = ("admin", "hospital")


@router.post(
    "/{request_id}/broadcast",
    response_model=DataWrapper[BroadcastResult],
    status_code=status.HTTP_201_CREATED,
)
async def broadcast_request(
    request_id: UUID,
    payload: BroadcastCreate,
    db: AsyncSession = Depends(get_db),
    gateway: NotificationGateway = Depends(get_notification_gateway),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """Notify ready donors near the patient about a pending request."""
    # Patients may only broadcast their own requests
    owner = None if identity.has_role(*STAFF_ROLES) else identity.subject

    service = BroadcastService(db, gateway=gateway, session_factory=session_factory)
    result = await service.broadcast_request(
        request_id=request_id,
        blood_group=payload.blood_group,
        patient_lat=payload.patient_lat,
        patient_lng=payload.patient_lng,
        radius_km=payload.radius_km,
        patient_id=owner,
    )
    return DataWrapper(data=result)
