"""
Hospital availability matching tests.
"""

from datetime import date

import pytest

from hemolink.exceptions import ValidationError
from hemolink.schemas.hospital import Compatibility, HospitalSort
from hemolink.schemas.request import Urgency
from hemolink.services.hospital_matcher import HospitalMatcherService, default_sort_for
from tests.conftest import ORIGIN_LAT, ORIGIN_LNG

TODAY = date(2024, 6, 1)


class TestFreshness:
    async def test_stale_stock_is_never_a_match(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(
            db_session, hospital, component="Whole Blood", units=20, age_days=40, today=TODAY
        )

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            blood_group="A+", component="Whole Blood", today=TODAY
        )

        assert matches == []

    async def test_stale_rows_do_not_count_toward_min_units(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(db_session, hospital, units=2, age_days=3, today=TODAY)
        await factory.add_stock(db_session, hospital, units=10, age_days=36, today=TODAY)

        service = HospitalMatcherService(db_session)
        enough = await service.find_matching_hospitals(blood_group="A+", min_units=2, today=TODAY)
        too_few = await service.find_matching_hospitals(blood_group="A+", min_units=3, today=TODAY)

        assert [m.units for m in enough] == [2]
        assert too_few == []

    async def test_platelets_have_a_short_shelf_life(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(
            db_session, hospital, component="Platelets", units=4, age_days=6, today=TODAY
        )

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            component="platelets", today=TODAY
        )

        assert matches == []

    async def test_units_and_freshness_are_aggregated(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(db_session, hospital, units=3, age_days=10, today=TODAY)
        await factory.add_stock(db_session, hospital, units=4, age_days=2, today=TODAY)
        await factory.add_stock(
            db_session, hospital, component="Plasma", units=1, age_days=100, today=TODAY
        )

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            blood_group="A+", today=TODAY
        )

        assert len(matches) == 1
        assert matches[0].units == 8
        assert matches[0].freshness_days == 2
        assert matches[0].components == ["Plasma", "Whole Blood"]


class TestFiltering:
    async def test_component_match_is_case_insensitive(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(db_session, hospital, component="Whole Blood", today=TODAY)

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            component="WHOLE BLOOD", today=TODAY
        )

        assert [m.hospital_id for m in matches] == [hospital.id]

    async def test_distant_hospitals_are_dropped(self, db_session, factory):
        near = await factory.create_hospital(db_session, km_from_origin=5)
        far = await factory.create_hospital(db_session, km_from_origin=80)
        unknown = await factory.create_hospital(db_session, km_from_origin=None)
        for hospital in (near, far, unknown):
            await factory.add_stock(db_session, hospital, today=TODAY)

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            blood_group="A+",
            patient_lat=ORIGIN_LAT,
            patient_lng=ORIGIN_LNG,
            radius_km=25,
            sort=HospitalSort.DISTANCE,
            today=TODAY,
        )

        assert [m.hospital_id for m in matches] == [near.id, unknown.id]

    async def test_location_text_applies_without_coordinates(self, db_session, factory):
        korle = await factory.create_hospital(
            db_session, name="Korle Bu Teaching Hospital", address="Guggisberg Ave, Accra"
        )
        kath = await factory.create_hospital(
            db_session, name="Komfo Anokye", address="Bantama, Kumasi"
        )
        for hospital in (korle, kath):
            await factory.add_stock(db_session, hospital, today=TODAY)

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            location="kumasi", today=TODAY
        )

        assert [m.hospital_id for m in matches] == [kath.id]

    async def test_invalid_min_units(self, db_session):
        with pytest.raises(ValidationError):
            await HospitalMatcherService(db_session).find_matching_hospitals(min_units=0)


class TestCompatibilityAndSorting:
    async def test_perfect_requires_group_and_component(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(db_session, hospital, today=TODAY)

        service = HospitalMatcherService(db_session)
        both = await service.find_matching_hospitals(
            blood_group="A+", component="Whole Blood", today=TODAY
        )
        group_only = await service.find_matching_hospitals(blood_group="A+", today=TODAY)

        assert both[0].compatibility == Compatibility.PERFECT
        assert group_only[0].compatibility == Compatibility.GOOD

    async def test_compatible_substitute_stock_is_good(self, db_session, factory):
        hospital = await factory.create_hospital(db_session)
        await factory.add_stock(db_session, hospital, blood_group="O-", today=TODAY)

        matches = await HospitalMatcherService(db_session).find_matching_hospitals(
            blood_group="A+", component="Whole Blood", compatibility="abo_rh", today=TODAY
        )

        assert len(matches) == 1
        assert matches[0].compatibility == Compatibility.GOOD

    async def test_sort_modes(self, db_session, factory):
        big_far = await factory.create_hospital(db_session, name="Big", km_from_origin=20)
        fresh_mid = await factory.create_hospital(db_session, name="Fresh", km_from_origin=10)
        close_small = await factory.create_hospital(db_session, name="Close", km_from_origin=1)
        await factory.add_stock(db_session, big_far, units=30, age_days=20, today=TODAY)
        await factory.add_stock(db_session, fresh_mid, units=10, age_days=1, today=TODAY)
        await factory.add_stock(db_session, close_small, units=2, age_days=15, today=TODAY)

        service = HospitalMatcherService(db_session)
        common = dict(
            blood_group="A+", patient_lat=ORIGIN_LAT, patient_lng=ORIGIN_LNG, radius_km=50, today=TODAY
        )

        by_units = await service.find_matching_hospitals(sort="units", **common)
        by_freshness = await service.find_matching_hospitals(sort="freshness", **common)
        by_distance = await service.find_matching_hospitals(sort="distance", **common)
        critical = await service.find_matching_hospitals(urgency=Urgency.CRITICAL, **common)
        routine = await service.find_matching_hospitals(urgency="low", **common)

        assert [m.name for m in by_units] == ["Big", "Fresh", "Close"]
        assert [m.name for m in by_freshness] == ["Fresh", "Close", "Big"]
        assert [m.name for m in by_distance] == ["Close", "Fresh", "Big"]
        assert [m.name for m in critical] == ["Close", "Fresh", "Big"]
        assert [m.name for m in routine] == ["Big", "Fresh", "Close"]

    def test_default_sort_for_urgency(self):
        assert default_sort_for("critical") == HospitalSort.DISTANCE
        assert default_sort_for(Urgency.HIGH) == HospitalSort.DISTANCE
        assert default_sort_for("medium") == HospitalSort.UNITS
        assert default_sort_for("whenever") == HospitalSort.UNITS


class TestListHospitals:
    async def test_only_verified_hospitals_are_listed(self, db_session, factory):
        verified = await factory.create_hospital(db_session, name="Ridge Hospital")
        await factory.create_hospital(db_session, name="Ridge Clinic", verified=False)

        hospitals = await HospitalMatcherService(db_session).list_hospitals("ridge")

        assert [h.id for h in hospitals] == [verified.id]
