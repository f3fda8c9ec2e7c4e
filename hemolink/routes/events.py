from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.dependencies import get_db
from hemolink.schemas.base_schema import DataWrapper
from hemolink.schemas.transfusion import EngineEventResponse
from hemolink.services.event_service import EventRecorder
from hemolink.utils.security import CallerIdentity, ensure_patient_scope, get_current_identity

router = APIRouter(prefix="/patients", tags=["events"])


@router.get("/{patient_id}/events", response_model=DataWrapper[List[EngineEventResponse]])
async def list_patient_events(
    patient_id: UUID,
    request: Request,
    since: Optional[datetime] = Query(None, description="Only events after this time"),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    identity: CallerIdentity = Depends(get_current_identity),
):
    """Change feed of cohort and schedule events, oldest first."""
    ensure_patient_scope(identity, patient_id, request)

    if since is not None and since.tzinfo is not None:
        since = since.replace(tzinfo=None) - since.utcoffset()

    events = await EventRecorder(db).list_events(patient_id, since=since, limit=limit)
    return DataWrapper(data=[EngineEventResponse.model_validate(e) for e in events])
