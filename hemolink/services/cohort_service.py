import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from hemolink.config import settings
from hemolink.exceptions import NotFound, UpstreamUnavailable, ValidationError
from hemolink.models.cohort import Cohort, CohortMembership
from hemolink.models.donor import Donor
from hemolink.models.patient import Patient
from hemolink.models.transfusion import TransfusionSchedule
from hemolink.schemas.cohort import CohortMembershipView, DonorCohortAssignment
from hemolink.schemas.transfusion import ScheduleStatus
from hemolink.services.event_service import COHORT_CHANGED, EventRecorder
from hemolink.utils.eligibility import classify_eligibility
from hemolink.utils.performance_monitor import performance_monitor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationSlot:
    """The cohort member due for a given cycle."""

    cohort_id: UUID
    cycle_number: int
    sequence_order: int
    membership_id: UUID
    donor_id: Optional[UUID]
    donor: Optional[Donor]
    requires_backup: bool


class CohortService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.events = EventRecorder(db)

    async def get_active_cohort(self, patient_id: UUID) -> Optional[Cohort]:
        result = await self.db.execute(
            select(Cohort)
            .options(selectinload(Cohort.memberships).selectinload(CohortMembership.donor))
            .where(Cohort.patient_id == patient_id, Cohort.is_active.is_(True))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_cohort(self, cohort_id: UUID) -> Optional[Cohort]:
        result = await self.db.execute(
            select(Cohort)
            .options(selectinload(Cohort.memberships).selectinload(CohortMembership.donor))
            .where(Cohort.id == cohort_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _ordered_donor_ids(cohort: Cohort) -> List[Optional[UUID]]:
        return [m.donor_id for m in sorted(cohort.memberships, key=lambda m: m.sequence_order)]

    def _validate_donor_ids(self, donor_ids: Sequence[UUID]) -> List[UUID]:
        size = settings.COHORT_SIZE
        if len(donor_ids) != size:
            raise ValidationError(f"A cohort needs exactly {size} donors, got {len(donor_ids)}")
        if len(set(donor_ids)) != size:
            raise ValidationError("Cohort donors must be distinct")
        return list(donor_ids)

    @performance_monitor
    async def create_cohort(
        self,
        patient_id: UUID,
        donor_ids: Sequence[UUID],
        start_date: Optional[date] = None,
        name: str = "Primary Cohort",
    ) -> Cohort:
        """
        Create the patient's active cohort with donors in rotation order.

        Repeating the call with the same donors in the same order returns
        the existing cohort; any other composition is rejected while a
        cohort is active.
        """
        donor_ids = self._validate_donor_ids(donor_ids)

        patient = await self.db.get(Patient, patient_id)
        if patient is None:
            raise NotFound("Patient not found")

        existing = await self.get_active_cohort(patient_id)
        if existing is not None:
            if self._ordered_donor_ids(existing) == donor_ids:
                logger.info(f"Cohort {existing.id} already active for patient {patient_id}")
                return existing
            raise ValidationError("Patient already has an active cohort")

        result = await self.db.execute(select(Donor).where(Donor.id.in_(donor_ids)))
        donors = {d.id: d for d in result.scalars().all()}
        missing = [str(d) for d in donor_ids if d not in donors]
        if missing:
            raise ValidationError(f"Unknown donors: {', '.join(missing)}")

        try:
            cohort = Cohort(
                patient_id=patient_id,
                name=name,
                start_date=start_date or date.today(),
                is_active=True,
            )
            self.db.add(cohort)
            await self.db.flush()

            for position, donor_id in enumerate(donor_ids):
                self.db.add(
                    CohortMembership(
                        cohort_id=cohort.id,
                        donor_id=donor_id,
                        sequence_order=position,
                        last_donation_date=donors[donor_id].last_donation_date,
                    )
                )

            self.events.record(
                COHORT_CHANGED,
                aggregate_id=cohort.id,
                patient_id=patient_id,
                payload={
                    "action": "created",
                    "start_date": cohort.start_date.isoformat(),
                    "donor_ids": [str(d) for d in donor_ids],
                },
            )
            await self.db.commit()

        except IntegrityError:
            # Lost a race with a concurrent create; return the winner
            await self.db.rollback()
            winner = await self.get_active_cohort(patient_id)
            if winner is None:
                raise UpstreamUnavailable("Cohort creation conflicted, please retry")
            logger.info(f"Concurrent cohort creation for patient {patient_id}, returning {winner.id}")
            return winner

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to create cohort for patient {patient_id}: {e}")
            raise UpstreamUnavailable("Could not create cohort, please retry")

        logger.info(f"Created cohort {cohort.id} for patient {patient_id}")
        return await self._get_cohort(cohort.id)

    async def create_cohort_by_email(
        self,
        patient_id: UUID,
        donor_emails: Sequence[str],
        start_date: Optional[date] = None,
        name: str = "Primary Cohort",
    ) -> Cohort:
        emails = [e.strip().lower() for e in donor_emails]
        if len(emails) != settings.COHORT_SIZE:
            raise ValidationError(
                f"A cohort needs exactly {settings.COHORT_SIZE} donor emails, got {len(emails)}"
            )
        if len(set(emails)) != len(emails):
            raise ValidationError("Cohort donor emails must be distinct")

        result = await self.db.execute(
            select(Donor.id, func.lower(Donor.email).label("email")).where(
                func.lower(Donor.email).in_(emails)
            )
        )
        by_email = {row.email: row.id for row in result.all()}

        unknown = [e for e in emails if e not in by_email]
        if unknown:
            raise NotFound(f"No donor registered with email: {', '.join(unknown)}")

        return await self.create_cohort(
            patient_id, [by_email[e] for e in emails], start_date, name
        )

    async def get_cohort_details(
        self, patient_id: UUID, today: Optional[date] = None
    ) -> List[CohortMembershipView]:
        cohort = await self.get_active_cohort(patient_id)
        if cohort is None:
            return []

        result = await self.db.execute(
            select(TransfusionSchedule.scheduled_for)
            .where(
                TransfusionSchedule.patient_id == patient_id,
                TransfusionSchedule.status.in_(ScheduleStatus.open_statuses()),
            )
            .order_by(TransfusionSchedule.cycle_number.desc())
            .limit(1)
        )
        next_transfusion_for = result.scalar_one_or_none()

        views = []
        for membership in sorted(cohort.memberships, key=lambda m: m.sequence_order):
            donor = membership.donor
            ready = False
            if donor is not None:
                ready = classify_eligibility(
                    donor.eligibility_status,
                    donor.last_donation_date,
                    today,
                    settings.DONATION_COOLDOWN_DAYS,
                ).ready

            views.append(
                CohortMembershipView(
                    cohort_id=cohort.id,
                    cohort_name=cohort.name,
                    start_date=cohort.start_date,
                    sequence_order=membership.sequence_order,
                    donor_id=membership.donor_id,
                    donor_name=donor.full_name if donor else None,
                    donor_phone=donor.phone if donor else None,
                    donor_blood_group=donor.blood_group if donor else None,
                    donor_location=donor.location if donor else None,
                    donor_available=membership.donor_available and ready,
                    last_donation_date=membership.last_donation_date,
                    next_scheduled_for=membership.next_scheduled_for,
                    next_transfusion_for=next_transfusion_for,
                )
            )
        return views

    async def resolve_rotation_donor(
        self,
        cohort_id: UUID,
        cycle_number: int,
        today: Optional[date] = None,
    ) -> RotationSlot:
        """
        Member due for ``cycle_number``.

        Never substitutes: an empty slot, a donor who is not ready or a
        member who paused their availability only sets ``requires_backup``.
        """
        if cycle_number < 0:
            raise ValidationError("cycle_number must not be negative")

        cohort = await self._get_cohort(cohort_id)
        if cohort is None:
            raise NotFound("Cohort not found")
        if not cohort.memberships:
            raise ValidationError("Cohort has no members")

        memberships = sorted(cohort.memberships, key=lambda m: m.sequence_order)
        membership = memberships[cycle_number % len(memberships)]
        donor = membership.donor

        ready = donor is not None and classify_eligibility(
            donor.eligibility_status,
            donor.last_donation_date,
            today,
            settings.DONATION_COOLDOWN_DAYS,
        ).ready

        return RotationSlot(
            cohort_id=cohort.id,
            cycle_number=cycle_number,
            sequence_order=membership.sequence_order,
            membership_id=membership.id,
            donor_id=membership.donor_id,
            donor=donor,
            requires_backup=not ready or not membership.donor_available,
        )

    async def _active_memberships_for_donor(self, donor_id: UUID) -> List[CohortMembership]:
        result = await self.db.execute(
            select(CohortMembership)
            .join(Cohort, Cohort.id == CohortMembership.cohort_id)
            .options(selectinload(CohortMembership.cohort).selectinload(Cohort.patient))
            .where(CohortMembership.donor_id == donor_id, Cohort.is_active.is_(True))
            .order_by(Cohort.start_date, CohortMembership.sequence_order)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_donor_assignments(
        self, donor_id: UUID, today: Optional[date] = None
    ) -> List[DonorCohortAssignment]:
        """Active cohorts the donor belongs to, with the slot they are booked for."""
        donor = await self.db.get(Donor, donor_id)
        if donor is None:
            raise NotFound("Donor not found")

        today = today or date.today()
        memberships = await self._active_memberships_for_donor(donor_id)
        if not memberships:
            return []

        result = await self.db.execute(
            select(TransfusionSchedule)
            .options(selectinload(TransfusionSchedule.hospital))
            .where(
                TransfusionSchedule.assigned_donor_id == donor_id,
                TransfusionSchedule.cohort_id.in_([m.cohort_id for m in memberships]),
                TransfusionSchedule.status.in_(ScheduleStatus.open_statuses()),
            )
        )
        open_slots = {s.cohort_id: s for s in result.scalars().all()}

        assignments = []
        for membership in memberships:
            cohort = membership.cohort
            patient = cohort.patient
            hospital = None
            slot = open_slots.get(cohort.id)
            if slot is not None:
                hospital = slot.hospital

            known = [d for d in (membership.last_donation_date, donor.last_donation_date) if d]
            days_until_eligible = None
            if known:
                eligible_on = max(known) + timedelta(days=settings.DONATION_COOLDOWN_DAYS)
                days_until_eligible = max(0, (eligible_on - today).days)

            assignments.append(
                DonorCohortAssignment(
                    cohort_id=cohort.id,
                    cohort_name=cohort.name,
                    patient_id=cohort.patient_id,
                    patient_name=patient.full_name if patient else None,
                    sequence_order=membership.sequence_order,
                    next_scheduled_for=membership.next_scheduled_for,
                    last_donation_date=membership.last_donation_date,
                    days_until_eligible=days_until_eligible,
                    donor_available=membership.donor_available,
                    hospital_id=hospital.id if hospital else None,
                    hospital_name=hospital.name if hospital else None,
                    hospital_address=hospital.address if hospital else None,
                )
            )
        return assignments

    async def set_donor_availability(
        self, donor_id: UUID, available: bool, today: Optional[date] = None
    ) -> List[DonorCohortAssignment]:
        """
        Pause or resume the donor in every active cohort.

        Slots already planned keep their donor; the flag only affects
        cycles planned afterwards.
        """
        donor = await self.db.get(Donor, donor_id)
        if donor is None:
            raise NotFound("Donor not found")

        memberships = await self._active_memberships_for_donor(donor_id)
        changed = [m for m in memberships if m.donor_available != available]

        try:
            for membership in changed:
                membership.donor_available = available
                self.events.record(
                    COHORT_CHANGED,
                    aggregate_id=membership.cohort_id,
                    patient_id=membership.cohort.patient_id,
                    payload={
                        "action": "availability_changed",
                        "donor_id": str(donor_id),
                        "available": available,
                    },
                )
            await self.db.commit()

        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to update availability for donor {donor_id}: {e}")
            raise UpstreamUnavailable("Could not update availability, please retry")

        logger.info(
            f"Donor {donor_id} marked {'available' if available else 'unavailable'} "
            f"in {len(changed)} cohort(s)"
        )
        return await self.list_donor_assignments(donor_id, today)
