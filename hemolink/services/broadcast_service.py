import asyncio
import logging
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.database import async_session
from hemolink.exceptions import (
    AccessDenied,
    PreconditionFailed,
    UpstreamUnavailable,
    ValidationError,
)
from hemolink.models.request import BloodRequest, BroadcastRecipient, RequestBroadcast
from hemolink.schemas.donor import DonorMatch
from hemolink.schemas.request import (
    BroadcastRecipientResponse,
    BroadcastResult,
    DeliveryStatus,
    RequestStatus,
)
from hemolink.services.donor_matcher import DonorMatcherService
from hemolink.services.event_service import BROADCAST_DISPATCHED, EventRecorder
from hemolink.services.notification_service import (
    DonorNotification,
    NotificationGateway,
    get_notification_gateway,
)
from hemolink.utils.performance_monitor import performance_monitor

logger = logging.getLogger(__name__)

DEFAULT_BROADCAST_RADIUS_KM = 10.0

# Strong references to in-flight fan-out tasks
_pending_deliveries: set = set()


class BroadcastService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[NotificationGateway] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.db = db
        self.gateway = gateway or get_notification_gateway()
        self.session_factory = session_factory or async_session
        self.donor_matcher = DonorMatcherService(db)
        self.events = EventRecorder(db)
        # Handle on the most recent fan-out task
        self.last_delivery: Optional[asyncio.Task] = None

    @performance_monitor
    async def broadcast_request(
        self,
        request_id: UUID,
        blood_group: Optional[str] = None,
        patient_lat: Optional[float] = None,
        patient_lng: Optional[float] = None,
        radius_km: Optional[float] = None,
        patient_id: Optional[UUID] = None,
    ) -> BroadcastResult:
        """
        Fan a pending request out to ready donors around the patient.

        The broadcast and its recipients are committed before any
        notification is attempted; delivery outcomes never undo it.
        """
        request = await self.db.get(BloodRequest, request_id)
        if request is None:
            raise PreconditionFailed("Blood request does not exist")

        if patient_id is not None and request.patient_id != patient_id:
            raise AccessDenied("You can only broadcast your own requests")

        if request.status != RequestStatus.PENDING:
            raise PreconditionFailed(
                f"Only pending requests can be broadcast (status: {RequestStatus(request.status).value})"
            )

        group = blood_group or request.blood_group
        if patient_lat is None or patient_lng is None:
            patient_lat, patient_lng = request.patient_latitude, request.patient_longitude
        if radius_km is not None:
            radius = radius_km
        else:
            radius = request.radius_km or DEFAULT_BROADCAST_RADIUS_KM
        if radius <= 0:
            raise ValidationError("radius_km must be greater than 0")

        matches = await self.donor_matcher.search_donors(
            blood_group=group,
            patient_lat=patient_lat,
            patient_lng=patient_lng,
            radius_km=radius,
            only_ready=True,
        )

        try:
            broadcast = RequestBroadcast(
                request_id=request.id,
                blood_group=group,
                radius_km=radius,
                latitude=patient_lat,
                longitude=patient_lng,
                recipient_count=len(matches),
            )
            self.db.add(broadcast)
            await self.db.flush()

            self.db.add_all(
                BroadcastRecipient(
                    broadcast_id=broadcast.id,
                    donor_id=match.donor_id,
                    distance_km=match.distance_km,
                    delivery_status=DeliveryStatus.QUEUED,
                )
                for match in matches
            )
            request.radius_km = radius

            self.events.record(
                BROADCAST_DISPATCHED,
                aggregate_id=broadcast.id,
                patient_id=request.patient_id,
                payload={
                    "request_id": str(request.id),
                    "blood_group": group,
                    "radius_km": radius,
                    "recipient_count": len(matches),
                },
            )
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to persist broadcast for request {request_id}: {e}")
            raise UpstreamUnavailable("Could not record broadcast, please retry")

        logger.info(
            f"Broadcast {broadcast.id} for request {request_id}: "
            f"{len(matches)} donors within {radius}km"
        )

        if matches:
            notifications = self._build_notifications(request, broadcast, matches)
            self.last_delivery = asyncio.create_task(
                self._deliver(broadcast.id, notifications)
            )
            _pending_deliveries.add(self.last_delivery)
            self.last_delivery.add_done_callback(_pending_deliveries.discard)

        return BroadcastResult(
            broadcast_id=broadcast.id,
            request_id=request.id,
            blood_group=group,
            radius_km=radius,
            recipient_count=len(matches),
            recipients=[
                BroadcastRecipientResponse(donor_id=m.donor_id, distance_km=m.distance_km)
                for m in matches
            ],
            created_at=broadcast.created_at,
        )

    @staticmethod
    def _build_notifications(
        request: BloodRequest, broadcast: RequestBroadcast, matches: List[DonorMatch]
    ) -> List[DonorNotification]:
        return [
            DonorNotification(
                donor_id=match.donor_id,
                phone=match.phone,
                title="Urgent blood request nearby",
                message=(
                    f"A patient needs {broadcast.blood_group} blood"
                    + (f" about {match.distance_km:.1f} km from you" if match.distance_km is not None else "")
                    + ". Please respond if you can donate."
                ),
                data={
                    "request_id": str(request.id),
                    "broadcast_id": str(broadcast.id),
                    "type": "emergency_broadcast",
                },
            )
            for match in matches
        ]

    async def _deliver(
        self, broadcast_id: UUID, notifications: List[DonorNotification]
    ) -> None:
        """Send notifications and record per-recipient delivery status."""
        try:
            results = await self.gateway.send_many(notifications)
        except Exception as e:
            logger.error(f"Notification fan-out for broadcast {broadcast_id} failed: {e}")
            results = [e] * len(notifications)

        sent, failed = [], []
        for notification, outcome in zip(notifications, results):
            if isinstance(outcome, Exception):
                logger.warning(
                    f"Notification to donor {notification.donor_id} failed: {outcome}"
                )
                failed.append(notification.donor_id)
            else:
                sent.append(notification.donor_id)

        try:
            async with self.session_factory() as session:
                for donor_ids, delivery_status in (
                    (sent, DeliveryStatus.SENT),
                    (failed, DeliveryStatus.FAILED),
                ):
                    if not donor_ids:
                        continue
                    await session.execute(
                        update(BroadcastRecipient)
                        .where(
                            BroadcastRecipient.broadcast_id == broadcast_id,
                            BroadcastRecipient.donor_id.in_(donor_ids),
                        )
                        .values(delivery_status=delivery_status)
                    )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record delivery status for broadcast {broadcast_id}: {e}")
