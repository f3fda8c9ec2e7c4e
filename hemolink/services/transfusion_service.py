import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from hemolink.config import settings
from hemolink.db.base import utc_now
from hemolink.exceptions import (
    AccessDenied,
    Conflict,
    InvalidState,
    NoActiveCohort,
    NotFound,
    UpstreamUnavailable,
)
from hemolink.models.cohort import Cohort, CohortMembership
from hemolink.models.hospital import Hospital
from hemolink.models.patient import Patient
from hemolink.models.transfusion import TransfusionRecord, TransfusionSchedule
from hemolink.schemas.transfusion import (
    ScheduleStatus,
    TransfusionRecordResponse,
    TransfusionScheduleResponse,
)
from hemolink.services.cohort_service import CohortService, RotationSlot
from hemolink.services.donor_matcher import DonorMatcherService
from hemolink.services.event_service import SCHEDULE_CHANGED, EventRecorder
from hemolink.utils.performance_monitor import performance_monitor

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def next_slot_date(
    start_date: date, previous: Optional[datetime], cadence_days: int
) -> datetime:
    """Cadence added to the later of the cohort start and the previous slot."""
    anchor = start_date
    if previous is not None and previous.date() > anchor:
        anchor = previous.date()
    return datetime.combine(anchor + timedelta(days=cadence_days), time.min)


def planned_cutoff(today: date) -> datetime:
    """Planned slots dated before this are stale."""
    return datetime.combine(today, time.min) - timedelta(
        days=settings.PLANNED_SLOT_GRACE_DAYS
    )


class TransfusionService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.cohorts = CohortService(db)
        self.donor_matcher = DonorMatcherService(db)
        self.events = EventRecorder(db)

    def _schedule_query(self):
        return select(TransfusionSchedule).options(
            selectinload(TransfusionSchedule.hospital),
            selectinload(TransfusionSchedule.assigned_donor),
            selectinload(TransfusionSchedule.patient),
        )

    async def _get_schedule(self, schedule_id: UUID) -> Optional[TransfusionSchedule]:
        result = await self.db.execute(
            self._schedule_query()
            .where(TransfusionSchedule.id == schedule_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_open_schedule(self, patient_id: UUID) -> Optional[TransfusionSchedule]:
        result = await self.db.execute(
            self._schedule_query()
            .where(
                TransfusionSchedule.patient_id == patient_id,
                TransfusionSchedule.status.in_(ScheduleStatus.open_statuses()),
            )
            .order_by(TransfusionSchedule.cycle_number.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_latest_schedule(self, patient_id: UUID) -> Optional[TransfusionSchedule]:
        result = await self.db.execute(
            select(TransfusionSchedule)
            .where(TransfusionSchedule.patient_id == patient_id)
            .order_by(TransfusionSchedule.cycle_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_membership(
        self, cohort_id: Optional[UUID], donor_id: Optional[UUID]
    ) -> Optional[CohortMembership]:
        if cohort_id is None or donor_id is None:
            return None
        result = await self.db.execute(
            select(CohortMembership).where(
                CohortMembership.cohort_id == cohort_id,
                CohortMembership.donor_id == donor_id,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _is_expired(schedule: TransfusionSchedule, cutoff: datetime) -> bool:
        return (
            schedule.status == ScheduleStatus.PLANNED
            and schedule.scheduled_for is not None
            and schedule.scheduled_for < cutoff
        )

    def _mark_expired(self, schedule: TransfusionSchedule) -> None:
        schedule.status = ScheduleStatus.CANCELLED
        self.events.record(
            SCHEDULE_CHANGED,
            aggregate_id=schedule.id,
            patient_id=schedule.patient_id,
            payload={"action": "expired", "cycle_number": schedule.cycle_number},
        )

    async def _expire_before_replanning(self, schedule: TransfusionSchedule) -> None:
        # Flushed first so the open-slot index is free for the replacement row
        try:
            self._mark_expired(schedule)
            membership = await self._get_membership(schedule.cohort_id, schedule.assigned_donor_id)
            if membership is not None and membership.next_scheduled_for == schedule.scheduled_for:
                membership.next_scheduled_for = None
            await self.db.flush()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to expire schedule {schedule.id}: {e}")
            raise UpstreamUnavailable("Could not plan transfusion, please retry")
        logger.info(
            f"Schedule {schedule.id} (cycle {schedule.cycle_number}) expired unbooked, replanning"
        )

    @staticmethod
    def to_response(schedule: TransfusionSchedule) -> TransfusionScheduleResponse:
        return TransfusionScheduleResponse(
            schedule_id=schedule.id,
            patient_id=schedule.patient_id,
            patient_name=schedule.patient.full_name if schedule.patient else None,
            cohort_id=schedule.cohort_id,
            cycle_number=schedule.cycle_number,
            scheduled_for=schedule.scheduled_for,
            status=schedule.status,
            component=schedule.component,
            units=schedule.units,
            hospital_id=schedule.hospital_id,
            hospital_name=schedule.hospital.name if schedule.hospital else None,
            assigned_donor_id=schedule.assigned_donor_id,
            donor_name=schedule.assigned_donor.full_name if schedule.assigned_donor else None,
            used_emergency_backup=schedule.used_emergency_backup,
        )

    async def _select_backup(
        self, patient_id: UUID, cohort: Cohort, slot: RotationSlot, today: Optional[date]
    ) -> Optional[UUID]:
        patient = await self.db.get(Patient, patient_id)
        blood_group = patient.blood_group if patient else None
        if not blood_group and slot.donor is not None:
            blood_group = slot.donor.blood_group
        if not blood_group:
            logger.warning(f"No blood group known for patient {patient_id}, cannot pick a backup")
            return None

        matches = await self.donor_matcher.search_donors(
            blood_group=blood_group,
            patient_lat=patient.latitude if patient else None,
            patient_lng=patient.longitude if patient else None,
            radius_km=settings.BACKUP_SEARCH_RADIUS_KM,
            only_ready=True,
            exclude_donor_ids=cohort.donor_ids,
            today=today,
        )
        return matches[0].donor_id if matches else None

    @performance_monitor
    async def plan_next(
        self,
        patient_id: UUID,
        component: str = "Whole Blood",
        units: int = 1,
        today: Optional[date] = None,
    ) -> TransfusionScheduleResponse:
        """
        Plan the patient's next rotation slot.

        Idempotent: while a booked slot, or a planned slot still within the
        grace period, exists it is returned unchanged and nothing is written.
        A planned slot left unbooked past the grace period is cancelled in
        the same transaction and the following cycle is planned instead.
        """
        today = today or date.today()
        open_schedule = await self._get_open_schedule(patient_id)
        if open_schedule is not None:
            if not self._is_expired(open_schedule, planned_cutoff(today)):
                return self.to_response(open_schedule)
            await self._expire_before_replanning(open_schedule)

        cohort = await self.cohorts.get_active_cohort(patient_id)
        if cohort is None:
            raise NoActiveCohort("Patient has no active cohort")

        previous = await self._get_latest_schedule(patient_id)
        cycle_number = previous.cycle_number + 1 if previous else 0

        slot = await self.cohorts.resolve_rotation_donor(cohort.id, cycle_number, today)

        assigned_donor_id = slot.donor_id
        used_backup = False
        if slot.requires_backup:
            backup_id = await self._select_backup(patient_id, cohort, slot, today)
            if backup_id is not None:
                assigned_donor_id = backup_id
                used_backup = True
                logger.info(
                    f"Cycle {cycle_number} for patient {patient_id}: "
                    f"slot {slot.sequence_order} not ready, backup donor {backup_id}"
                )
            else:
                assigned_donor_id = None
                logger.warning(
                    f"Cycle {cycle_number} for patient {patient_id}: "
                    f"slot {slot.sequence_order} not ready and no backup donor found"
                )

        scheduled_for = next_slot_date(
            cohort.start_date,
            previous.scheduled_for if previous else None,
            settings.ROTATION_CADENCE_DAYS,
        )

        try:
            schedule = TransfusionSchedule(
                patient_id=patient_id,
                cohort_id=cohort.id,
                cycle_number=cycle_number,
                scheduled_for=scheduled_for,
                status=ScheduleStatus.PLANNED,
                component=component,
                units=units,
                assigned_donor_id=assigned_donor_id,
                used_emergency_backup=used_backup,
            )
            self.db.add(schedule)
            await self.db.flush()

            membership = await self.db.get(CohortMembership, slot.membership_id)
            if membership is not None:
                membership.next_scheduled_for = scheduled_for

            self.events.record(
                SCHEDULE_CHANGED,
                aggregate_id=schedule.id,
                patient_id=patient_id,
                payload={
                    "action": "planned",
                    "cycle_number": cycle_number,
                    "scheduled_for": scheduled_for.isoformat(),
                    "assigned_donor_id": str(assigned_donor_id) if assigned_donor_id else None,
                    "used_emergency_backup": used_backup,
                },
            )
            await self.db.commit()

        except IntegrityError:
            # A concurrent call planned first; hand back its slot
            await self.db.rollback()
            winner = await self._get_open_schedule(patient_id)
            if winner is None:
                raise Conflict("Transfusion slot was planned concurrently, please retry")
            logger.info(f"Concurrent plan for patient {patient_id}, returning {winner.id}")
            return self.to_response(winner)

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to plan transfusion for patient {patient_id}: {e}")
            raise UpstreamUnavailable("Could not plan transfusion, please retry")

        logger.info(
            f"Planned cycle {cycle_number} for patient {patient_id} on {scheduled_for.date()}"
        )
        return self.to_response(await self._get_schedule(schedule.id))

    @performance_monitor
    async def book_transfusion(
        self,
        schedule_id: UUID,
        hospital_id: UUID,
        scheduled_for: datetime,
        patient_id: Optional[UUID] = None,
    ) -> TransfusionScheduleResponse:
        schedule = await self._get_schedule(schedule_id)
        if schedule is None:
            raise NotFound("Transfusion schedule not found")
        if patient_id is not None and schedule.patient_id != patient_id:
            raise AccessDenied("You can only book your own transfusions")
        if schedule.status != ScheduleStatus.PLANNED:
            raise InvalidState(
                f"Only planned transfusions can be booked (status: {ScheduleStatus(schedule.status).value})"
            )

        hospital = await self.db.get(Hospital, hospital_id)
        if hospital is None:
            raise NotFound("Hospital not found")

        scheduled_for = to_naive_utc(scheduled_for)
        previous_date = schedule.scheduled_for

        try:
            schedule.scheduled_for = scheduled_for
            schedule.hospital_id = hospital.id
            schedule.status = ScheduleStatus.BOOKED

            membership = await self._get_membership(schedule.cohort_id, schedule.assigned_donor_id)
            if membership is not None:
                membership.next_scheduled_for = scheduled_for

            self.events.record(
                SCHEDULE_CHANGED,
                aggregate_id=schedule.id,
                patient_id=schedule.patient_id,
                payload={
                    "action": "booked",
                    "hospital_id": str(hospital.id),
                    "scheduled_for": scheduled_for.isoformat(),
                    "rescheduled": previous_date is None or previous_date.date() != scheduled_for.date(),
                },
            )
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to book schedule {schedule_id}: {e}")
            raise UpstreamUnavailable("Could not book transfusion, please retry")

        logger.info(f"Booked schedule {schedule_id} at {hospital.name} for {scheduled_for}")
        return self.to_response(await self._get_schedule(schedule_id))

    async def cancel_schedule(
        self, schedule_id: UUID, patient_id: Optional[UUID] = None
    ) -> TransfusionScheduleResponse:
        schedule = await self._get_schedule(schedule_id)
        if schedule is None:
            raise NotFound("Transfusion schedule not found")
        if patient_id is not None and schedule.patient_id != patient_id:
            raise AccessDenied("You can only cancel your own transfusions")
        if not schedule.is_open:
            raise InvalidState("Only planned or booked transfusions can be cancelled")

        try:
            schedule.status = ScheduleStatus.CANCELLED
            membership = await self._get_membership(schedule.cohort_id, schedule.assigned_donor_id)
            if membership is not None and membership.next_scheduled_for == schedule.scheduled_for:
                membership.next_scheduled_for = None

            self.events.record(
                SCHEDULE_CHANGED,
                aggregate_id=schedule.id,
                patient_id=schedule.patient_id,
                payload={"action": "cancelled", "cycle_number": schedule.cycle_number},
            )
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to cancel schedule {schedule_id}: {e}")
            raise UpstreamUnavailable("Could not cancel transfusion, please retry")

        logger.info(f"Cancelled schedule {schedule_id}")
        return self.to_response(await self._get_schedule(schedule_id))

    @performance_monitor
    async def complete_transfusion(
        self, schedule_id: UUID, occurred_at: Optional[datetime] = None
    ) -> TransfusionRecordResponse:
        """Mark a slot as done and write it to the patient's history."""
        schedule = await self._get_schedule(schedule_id)
        if schedule is None:
            raise NotFound("Transfusion schedule not found")
        if not schedule.is_open:
            raise InvalidState(
                f"Only planned or booked transfusions can be completed (status: {ScheduleStatus(schedule.status).value})"
            )

        occurred_at = to_naive_utc(occurred_at) if occurred_at else utc_now()

        donor = schedule.assigned_donor
        donor_label = donor.full_name if donor and donor.full_name else None
        if donor_label and schedule.used_emergency_backup:
            donor_label = f"{donor_label} (backup)"

        try:
            schedule.status = ScheduleStatus.COMPLETED
            record = TransfusionRecord(
                patient_id=schedule.patient_id,
                schedule_id=schedule.id,
                occurred_at=occurred_at,
                component=schedule.component,
                units=schedule.units,
                hospital_id=schedule.hospital_id,
                donor_id=schedule.assigned_donor_id,
                donor_label=donor_label,
                cycle_number=schedule.cycle_number,
            )
            self.db.add(record)

            membership = await self._get_membership(schedule.cohort_id, schedule.assigned_donor_id)
            if membership is not None:
                membership.last_donation_date = occurred_at.date()
                membership.next_scheduled_for = None

            self.events.record(
                SCHEDULE_CHANGED,
                aggregate_id=schedule.id,
                patient_id=schedule.patient_id,
                payload={
                    "action": "completed",
                    "cycle_number": schedule.cycle_number,
                    "occurred_at": occurred_at.isoformat(),
                },
            )
            await self.db.commit()

        except IntegrityError:
            await self.db.rollback()
            raise Conflict("Transfusion was already recorded")

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to complete schedule {schedule_id}: {e}")
            raise UpstreamUnavailable("Could not complete transfusion, please retry")

        logger.info(f"Completed schedule {schedule_id} (cycle {schedule.cycle_number})")
        return TransfusionRecordResponse(
            id=record.id,
            schedule_id=record.schedule_id,
            occurred_at=record.occurred_at,
            component=record.component,
            units=record.units,
            hospital_id=record.hospital_id,
            hospital_name=schedule.hospital.name if schedule.hospital else None,
            donor_label=record.donor_label,
            cycle_number=record.cycle_number,
        )

    async def list_schedule(self, patient_id: UUID) -> List[TransfusionScheduleResponse]:
        result = await self.db.execute(
            self._schedule_query()
            .where(TransfusionSchedule.patient_id == patient_id)
            .order_by(
                TransfusionSchedule.scheduled_for.desc(),
                TransfusionSchedule.cycle_number.desc(),
            )
        )
        return [self.to_response(s) for s in result.scalars().all()]

    async def list_history(
        self, patient_id: UUID, limit: int = 20
    ) -> List[TransfusionRecordResponse]:
        result = await self.db.execute(
            select(TransfusionRecord)
            .options(selectinload(TransfusionRecord.hospital))
            .where(TransfusionRecord.patient_id == patient_id)
            .order_by(TransfusionRecord.occurred_at.desc())
            .limit(limit)
        )
        return [
            TransfusionRecordResponse(
                id=r.id,
                schedule_id=r.schedule_id,
                occurred_at=r.occurred_at,
                component=r.component,
                units=r.units,
                hospital_id=r.hospital_id,
                hospital_name=r.hospital.name if r.hospital else None,
                donor_label=r.donor_label,
                cycle_number=r.cycle_number,
            )
            for r in result.scalars().all()
        ]

    async def _list_assigned(self, condition, only_upcoming: bool, today: Optional[date]):
        query = self._schedule_query().where(condition)
        if only_upcoming:
            today = today or date.today()
            query = query.where(
                TransfusionSchedule.status.in_(ScheduleStatus.open_statuses()),
                TransfusionSchedule.scheduled_for >= datetime.combine(today, time.min),
            ).order_by(TransfusionSchedule.scheduled_for.asc())
        else:
            query = query.order_by(TransfusionSchedule.scheduled_for.desc())
        result = await self.db.execute(query)
        return [self.to_response(s) for s in result.scalars().all()]

    async def list_donor_schedules(
        self, donor_id: UUID, only_upcoming: bool = True, today: Optional[date] = None
    ) -> List[TransfusionScheduleResponse]:
        """Slots the donor is assigned to, as a cohort member or as a backup."""
        return await self._list_assigned(
            TransfusionSchedule.assigned_donor_id == donor_id, only_upcoming, today
        )

    async def list_hospital_transfusions(
        self, hospital_id: UUID, only_upcoming: bool = True, today: Optional[date] = None
    ) -> List[TransfusionScheduleResponse]:
        return await self._list_assigned(
            TransfusionSchedule.hospital_id == hospital_id, only_upcoming, today
        )

    async def sweep_stale_schedules(self, now: Optional[datetime] = None) -> int:
        """Cancel planned slots left unbooked past the grace period."""
        now = now or utc_now()
        cutoff = now - timedelta(days=settings.PLANNED_SLOT_GRACE_DAYS)

        result = await self.db.execute(
            select(TransfusionSchedule).where(
                TransfusionSchedule.status == ScheduleStatus.PLANNED,
                TransfusionSchedule.scheduled_for < cutoff,
            )
        )
        stale = list(result.scalars().all())
        if not stale:
            return 0

        for schedule in stale:
            self._mark_expired(schedule)

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Stale schedule sweep failed: {e}")
            raise UpstreamUnavailable("Could not expire stale schedules")

        logger.info(f"Expired {len(stale)} stale planned schedules older than {cutoff.date()}")
        return len(stale)
