"""
Cohort creation and rotation tests.
"""

from datetime import date, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from hemolink.exceptions import NotFound, ValidationError
from hemolink.models.cohort import Cohort
from hemolink.models.event import EngineEvent
from hemolink.services.cohort_service import CohortService
from hemolink.services.event_service import COHORT_CHANGED
from hemolink.services.transfusion_service import TransfusionService

TODAY = date(2024, 1, 10)


class TestCreateCohort:
    async def test_members_get_sequential_slots(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)

        cohort = await factory.create_cohort(db_session, patient, donors)

        assert cohort.is_active is True
        assert cohort.start_date == date(2024, 1, 1)
        assert sorted(m.sequence_order for m in cohort.memberships) == [0, 1, 2, 3, 4]
        assert [m.donor_id for m in cohort.memberships] == [d.id for d in donors]

        events = (await db_session.execute(select(EngineEvent))).scalars().all()
        assert [e.event_type for e in events] == [COHORT_CHANGED]

    @pytest.mark.parametrize("count", [4, 6])
    async def test_wrong_member_count_is_rejected(self, db_session, factory, count):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=count)

        with pytest.raises(ValidationError):
            await CohortService(db_session).create_cohort(patient.id, [d.id for d in donors])

    async def test_duplicate_donors_are_rejected(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=4)
        donor_ids = [d.id for d in donors] + [donors[0].id]

        with pytest.raises(ValidationError):
            await CohortService(db_session).create_cohort(patient.id, donor_ids)

    async def test_unknown_donor_is_rejected(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=4)

        with pytest.raises(ValidationError):
            await CohortService(db_session).create_cohort(
                patient.id, [d.id for d in donors] + [uuid4()]
            )

    async def test_unknown_patient(self, db_session, factory):
        donors = await factory.create_donors(db_session, count=5)

        with pytest.raises(NotFound):
            await CohortService(db_session).create_cohort(uuid4(), [d.id for d in donors])

    async def test_repeated_create_returns_existing_cohort(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)

        first = await factory.create_cohort(db_session, patient, donors)
        second = await factory.create_cohort(db_session, patient, donors)

        assert second.id == first.id
        total = await db_session.scalar(select(func.count()).select_from(Cohort))
        assert total == 1

    async def test_different_composition_while_active_is_rejected(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        await factory.create_cohort(db_session, patient, donors)

        with pytest.raises(ValidationError):
            await factory.create_cohort(db_session, patient, list(reversed(donors)))


class TestCreateCohortByEmail:
    async def test_emails_resolve_case_insensitively(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)

        cohort = await CohortService(db_session).create_cohort_by_email(
            patient.id, [f"  {d.email.upper()} " for d in donors], start_date=TODAY
        )

        assert [m.donor_id for m in cohort.memberships] == [d.id for d in donors]
        assert cohort.start_date == TODAY

    async def test_unknown_email(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=4)
        emails = [d.email for d in donors] + ["nobody@hemolink.org"]

        with pytest.raises(NotFound):
            await CohortService(db_session).create_cohort_by_email(patient.id, emails)


class TestRotation:
    async def test_rotation_has_period_five(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        cohort = await factory.create_cohort(db_session, patient, donors)
        service = CohortService(db_session)

        for cycle in range(5):
            slot = await service.resolve_rotation_donor(cohort.id, cycle, TODAY)
            later = await service.resolve_rotation_donor(cohort.id, cycle + 5, TODAY)

            assert slot.sequence_order == cycle
            assert slot.donor_id == donors[cycle].id
            assert later.donor_id == slot.donor_id
            assert later.cycle_number == cycle + 5
            assert slot.requires_backup is False

    async def test_unready_member_requires_backup(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=4)
        resting = await factory.create_donor(
            db_session, last_donation_date=TODAY - timedelta(days=10)
        )
        cohort = await factory.create_cohort(db_session, patient, [resting] + donors)

        slot = await CohortService(db_session).resolve_rotation_donor(cohort.id, 0, TODAY)

        assert slot.donor_id == resting.id
        assert slot.requires_backup is True

    async def test_unknown_cohort(self, db_session):
        with pytest.raises(NotFound):
            await CohortService(db_session).resolve_rotation_donor(uuid4(), 0)

    async def test_negative_cycle(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        cohort = await factory.create_cohort(
            db_session, patient, await factory.create_donors(db_session, count=5)
        )

        with pytest.raises(ValidationError):
            await CohortService(db_session).resolve_rotation_donor(cohort.id, -1)


class TestCohortDetails:
    async def test_details_follow_rotation_order(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=4)
        deferred = await factory.create_donor(db_session, eligibility_status="deferred")
        ordered = [donors[2], deferred, donors[0], donors[3], donors[1]]
        await factory.create_cohort(db_session, patient, ordered)

        details = await CohortService(db_session).get_cohort_details(patient.id, TODAY)

        assert [d.donor_id for d in details] == [d.id for d in ordered]
        assert [d.sequence_order for d in details] == [0, 1, 2, 3, 4]
        assert [d.donor_available for d in details] == [True, False, True, True, True]
        assert all(d.next_transfusion_for is None for d in details)

    async def test_no_cohort_is_empty(self, db_session, factory):
        patient = await factory.create_patient(db_session)

        assert await CohortService(db_session).get_cohort_details(patient.id) == []


class TestDonorAssignments:
    async def test_assignment_shows_booked_hospital(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        hospital = await factory.create_hospital(db_session, name="Korle Bu", address="Guggisberg Ave")
        cohort = await factory.create_cohort(db_session, patient, donors)
        transfusions = TransfusionService(db_session)
        planned = await transfusions.plan_next(patient.id, today=TODAY)
        booked = await transfusions.book_transfusion(
            planned.schedule_id, hospital.id, planned.scheduled_for
        )

        assignments = await CohortService(db_session).list_donor_assignments(donors[0].id, TODAY)

        assert len(assignments) == 1
        assignment = assignments[0]
        assert assignment.cohort_id == cohort.id
        assert assignment.cohort_name == "Primary Cohort"
        assert assignment.patient_id == patient.id
        assert assignment.patient_name == patient.full_name
        assert assignment.sequence_order == 0
        assert assignment.next_scheduled_for == booked.scheduled_for
        assert assignment.hospital_name == "Korle Bu"
        assert assignment.hospital_address == "Guggisberg Ave"
        assert assignment.donor_available is True
        assert assignment.days_until_eligible is None

    async def test_days_until_eligible_counts_down_the_cooldown(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        recent = await factory.create_donor(
            db_session, last_donation_date=TODAY - timedelta(days=30)
        )
        donors = await factory.create_donors(db_session, count=4)
        await factory.create_cohort(db_session, patient, donors + [recent])

        service = CohortService(db_session)
        soon = (await service.list_donor_assignments(recent.id, TODAY))[0]
        later = (await service.list_donor_assignments(recent.id, TODAY + timedelta(days=200)))[0]

        assert soon.sequence_order == 4
        assert soon.days_until_eligible == 60
        assert soon.hospital_id is None
        assert later.days_until_eligible == 0

    async def test_donor_without_cohorts(self, db_session, factory):
        donor = await factory.create_donor(db_session)

        assert await CohortService(db_session).list_donor_assignments(donor.id, TODAY) == []

    async def test_unknown_donor(self, db_session):
        with pytest.raises(NotFound):
            await CohortService(db_session).list_donor_assignments(uuid4(), TODAY)


class TestDonorAvailability:
    async def test_paused_member_requires_backup(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        cohort = await factory.create_cohort(db_session, patient, donors)
        service = CohortService(db_session)

        assignments = await service.set_donor_availability(donors[0].id, False, TODAY)

        assert [a.donor_available for a in assignments] == [False]
        slot = await service.resolve_rotation_donor(cohort.id, 0, TODAY)
        assert slot.donor_id == donors[0].id
        assert slot.requires_backup is True
        details = await service.get_cohort_details(patient.id, TODAY)
        assert [d.donor_available for d in details] == [False, True, True, True, True]

        await service.set_donor_availability(donors[0].id, True, TODAY)

        slot = await service.resolve_rotation_donor(cohort.id, 0, TODAY)
        assert slot.requires_backup is False

    async def test_paused_member_is_covered_when_planning(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        await factory.create_cohort(db_session, patient, donors)
        backup = await factory.create_donor(db_session, km_from_origin=3)
        await CohortService(db_session).set_donor_availability(donors[0].id, False, TODAY)

        schedule = await TransfusionService(db_session).plan_next(patient.id, today=TODAY)

        assert schedule.assigned_donor_id == backup.id
        assert schedule.used_emergency_backup is True

    async def test_unchanged_flag_records_no_event(self, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        await factory.create_cohort(db_session, patient, donors)
        service = CohortService(db_session)

        await service.set_donor_availability(donors[2].id, False, TODAY)
        await service.set_donor_availability(donors[2].id, False, TODAY)

        payloads = (
            await db_session.execute(
                select(EngineEvent.payload).where(EngineEvent.event_type == COHORT_CHANGED)
            )
        ).scalars().all()
        assert [p["action"] for p in payloads].count("availability_changed") == 1

    async def test_unknown_donor(self, db_session):
        with pytest.raises(NotFound):
            await CohortService(db_session).set_donor_availability(uuid4(), False)
