import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from hemolink.models.event import EngineEvent

logger = logging.getLogger(__name__)

COHORT_CHANGED = "CohortChanged"
SCHEDULE_CHANGED = "ScheduleChanged"
BROADCAST_DISPATCHED = "BroadcastDispatched"


class EventRecorder:
    """
    Writes domain events to the ``engine_events`` outbox.

    Events are added to the caller's session and commit with the state
    change they describe; the recorder never commits on its own.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        event_type: str,
        aggregate_id: UUID,
        patient_id: Optional[UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> EngineEvent:
        event = EngineEvent(
            event_type=event_type,
            aggregate_id=aggregate_id,
            patient_id=patient_id,
            payload=payload or {},
        )
        self.db.add(event)
        logger.debug(f"Recorded {event_type} for {aggregate_id}")
        return event

    async def list_events(
        self,
        patient_id: UUID,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[EngineEvent]:
        query = select(EngineEvent).where(EngineEvent.patient_id == patient_id)
        if since is not None:
            query = query.where(EngineEvent.created_at > since)
        query = query.order_by(EngineEvent.created_at.asc()).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())
