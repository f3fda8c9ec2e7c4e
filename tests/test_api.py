"""
API tests covering authentication, envelopes and the patient flow end to end.
"""

import asyncio
from datetime import date, datetime, timedelta
from uuid import uuid4

from sqlalchemy.exc import OperationalError

from hemolink.services.broadcast_service import _pending_deliveries
from tests.conftest import (
    ORIGIN_LAT,
    ORIGIN_LNG,
    assert_engine_error,
    assert_response_success,
    auth_headers,
)


async def wait_for(predicate, attempts: int = 100):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestHealthAndAuth:
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"
        assert "X-Request-ID" in response.headers

    async def test_missing_token(self, client):
        response = await client.get("/api/donors/search", params={"blood_group": "A+"})
        assert response.status_code == 401

    async def test_garbage_token(self, client):
        response = await client.get(
            "/api/donors/search",
            params={"blood_group": "A+"},
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401


class TestSearchEndpoints:
    async def test_donor_search_envelope(self, client, db_session, factory):
        donor = await factory.create_donor(db_session, blood_group="O-", km_from_origin=3)

        response = await client.get(
            "/api/donors/search",
            params={
                "blood_group": "O-",
                "patient_lat": ORIGIN_LAT,
                "patient_lng": ORIGIN_LNG,
                "radius_km": 10,
            },
            headers=auth_headers(uuid4()),
        )

        data = assert_response_success(response)
        assert [d["donor_id"] for d in data] == [str(donor.id)]
        assert 2.9 < data[0]["distance_km"] < 3.1

    async def test_donor_search_default_radius(self, client, db_session, factory):
        inside = await factory.create_donor(db_session, km_from_origin=20)
        await factory.create_donor(db_session, km_from_origin=30)

        response = await client.get(
            "/api/donors/search",
            params={"blood_group": "A+", "patient_lat": ORIGIN_LAT, "patient_lng": ORIGIN_LNG},
            headers=auth_headers(uuid4()),
        )

        assert [d["donor_id"] for d in assert_response_success(response)] == [str(inside.id)]

    async def test_donor_search_availability_filter(self, client, db_session, factory):
        ready = await factory.create_donor(db_session, km_from_origin=2)
        deferred = await factory.create_donor(
            db_session, km_from_origin=1, eligibility_status="deferred"
        )
        base = {"blood_group": "A+", "patient_lat": ORIGIN_LAT, "patient_lng": ORIGIN_LNG}

        now = await client.get(
            "/api/donors/search",
            params={**base, "availability": "now"},
            headers=auth_headers(uuid4()),
        )
        anyone = await client.get("/api/donors/search", params=base, headers=auth_headers(uuid4()))

        assert [d["donor_id"] for d in assert_response_success(now)] == [str(ready.id)]
        assert {d["donor_id"] for d in assert_response_success(anyone)} == {
            str(ready.id),
            str(deferred.id),
        }

    async def test_donor_search_rejects_bad_group(self, client):
        response = await client.get(
            "/api/donors/search",
            params={"blood_group": "C+"},
            headers=auth_headers(uuid4()),
        )
        assert response.status_code == 422

    async def test_hospital_matches_and_listing(self, client, db_session, factory):
        hospital = await factory.create_hospital(db_session, name="Ridge Hospital")
        await factory.add_stock(db_session, hospital, units=6)

        matches = await client.get(
            "/api/hospitals/matches",
            params={"blood_group": "A+", "component": "Whole Blood"},
            headers=auth_headers(uuid4()),
        )
        listing = await client.get(
            "/api/hospitals", params={"q": "ridge"}, headers=auth_headers(uuid4())
        )

        data = assert_response_success(matches)
        assert data[0]["units"] == 6
        assert data[0]["compatibility"] == "perfect"
        assert [h["name"] for h in assert_response_success(listing)] == ["Ridge Hospital"]


class TestPatientScope:
    async def test_foreign_patient_is_forbidden(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)

        response = await client.get(
            f"/api/patients/{patient.id}/cohort", headers=auth_headers(uuid4())
        )

        assert_engine_error(response, 403, "AccessDenied")

    async def test_plan_without_cohort(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)

        response = await client.post(
            f"/api/patients/{patient.id}/transfusions/plan",
            headers=auth_headers(patient.id),
        )

        assert_engine_error(response, 409, "NoActiveCohort")

    async def test_unknown_donor_email(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=4)

        response = await client.post(
            f"/api/patients/{patient.id}/cohort",
            json={"donor_emails": [d.email for d in donors] + ["ghost@hemolink.org"]},
            headers=auth_headers(patient.id),
        )

        assert_engine_error(response, 404, "NotFound")


class TestTransfusionFlow:
    async def test_cohort_plan_book_complete(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        hospital = await factory.create_hospital(db_session, name="Korle Bu")
        headers = auth_headers(patient.id)
        start = date.today()

        created = await client.post(
            f"/api/patients/{patient.id}/cohort",
            json={"donor_emails": [d.email for d in donors], "start_date": start.isoformat()},
            headers=headers,
        )
        cohort = assert_response_success(created, 201)
        assert [m["sequence_order"] for m in cohort["memberships"]] == [0, 1, 2, 3, 4]

        details = assert_response_success(
            await client.get(f"/api/patients/{patient.id}/cohort", headers=headers)
        )
        assert [d["donor_id"] for d in details] == [str(d.id) for d in donors]

        planned = assert_response_success(
            await client.post(f"/api/patients/{patient.id}/transfusions/plan", headers=headers)
        )
        assert planned["cycle_number"] == 0
        assert planned["assigned_donor_id"] == str(donors[0].id)
        assert planned["scheduled_for"].startswith((start + timedelta(days=21)).isoformat())

        again = assert_response_success(
            await client.post(f"/api/patients/{patient.id}/transfusions/plan", headers=headers)
        )
        assert again["schedule_id"] == planned["schedule_id"]

        booking_time = datetime.combine(start + timedelta(days=21), datetime.min.time()).replace(
            hour=9
        )
        booked = assert_response_success(
            await client.post(
                f"/api/transfusions/{planned['schedule_id']}/book",
                json={"hospital_id": str(hospital.id), "scheduled_for": booking_time.isoformat()},
                headers=headers,
            )
        )
        assert booked["status"] == "booked"
        assert booked["hospital_name"] == "Korle Bu"

        rebook = await client.post(
            f"/api/transfusions/{planned['schedule_id']}/book",
            json={"hospital_id": str(hospital.id), "scheduled_for": booking_time.isoformat()},
            headers=headers,
        )
        assert_engine_error(rebook, 409, "InvalidState")

        schedule = assert_response_success(
            await client.get(f"/api/patients/{patient.id}/transfusions", headers=headers)
        )
        assert [s["schedule_id"] for s in schedule] == [planned["schedule_id"]]

        as_patient = await client.post(
            f"/api/transfusions/{planned['schedule_id']}/complete", headers=headers
        )
        assert_engine_error(as_patient, 403, "AccessDenied")

        completed = await client.post(
            f"/api/transfusions/{planned['schedule_id']}/complete",
            headers=auth_headers(hospital.id, role="hospital"),
        )
        record = assert_response_success(completed, 201)
        assert record["hospital_name"] == "Korle Bu"

        history = assert_response_success(
            await client.get(
                f"/api/patients/{patient.id}/transfusions/history",
                params={"limit": 5},
                headers=headers,
            )
        )
        assert [h["id"] for h in history] == [record["id"]]

        events = assert_response_success(
            await client.get(f"/api/patients/{patient.id}/events", headers=headers)
        )
        assert [e["event_type"] for e in events] == [
            "CohortChanged",
            "ScheduleChanged",
            "ScheduleChanged",
            "ScheduleChanged",
        ]
        assert [e["payload"].get("action") for e in events[1:]] == [
            "planned",
            "booked",
            "completed",
        ]

    async def test_booking_another_patients_slot(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        hospital = await factory.create_hospital(db_session)
        await factory.create_cohort(db_session, patient, donors, start_date=date.today())
        planned = assert_response_success(
            await client.post(
                f"/api/patients/{patient.id}/transfusions/plan",
                headers=auth_headers(patient.id),
            )
        )

        response = await client.post(
            f"/api/transfusions/{planned['schedule_id']}/book",
            json={"hospital_id": str(hospital.id), "scheduled_for": "2030-01-01T09:00:00"},
            headers=auth_headers(uuid4()),
        )

        assert_engine_error(response, 403, "AccessDenied")


class TestBroadcastEndpoint:
    async def test_broadcast_notifies_nearby_donors(self, client, db_session, gateway, factory):
        patient = await factory.create_patient(db_session)
        near = await factory.create_donor(db_session, km_from_origin=2)
        await factory.create_donor(db_session, km_from_origin=60)
        request = await factory.create_request(db_session, patient)

        response = await client.post(
            f"/api/requests/{request.id}/broadcast",
            json={"radius_km": 15},
            headers=auth_headers(patient.id),
        )

        data = assert_response_success(response, 201)
        assert data["recipient_count"] == 1
        assert data["recipients"][0]["donor_id"] == str(near.id)
        assert await wait_for(lambda: not _pending_deliveries)
        assert [n.donor_id for n in gateway.sent] == [near.id]

        events = assert_response_success(
            await client.get(
                f"/api/patients/{patient.id}/events", headers=auth_headers(patient.id)
            )
        )
        assert [e["event_type"] for e in events] == ["BroadcastDispatched"]

    async def test_foreign_request_is_refused(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        request = await factory.create_request(db_session, patient)

        response = await client.post(
            f"/api/requests/{request.id}/broadcast", json={}, headers=auth_headers(uuid4())
        )

        assert_engine_error(response, 403, "AccessDenied")

    async def test_staff_can_broadcast_any_request(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        request = await factory.create_request(db_session, patient)

        response = await client.post(
            f"/api/requests/{request.id}/broadcast",
            json={},
            headers=auth_headers(uuid4(), role="admin"),
        )

        assert_response_success(response, 201)

    async def test_zero_radius_is_rejected(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        request = await factory.create_request(db_session, patient)

        response = await client.post(
            f"/api/requests/{request.id}/broadcast",
            json={"radius_km": 0},
            headers=auth_headers(patient.id),
        )

        assert response.status_code == 422


class TestStorageErrors:
    async def test_read_failure_renders_engine_error(self, client, db_session, factory, monkeypatch):
        patient = await factory.create_patient(db_session)

        async def locked(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "execute", locked)

        response = await client.get(
            f"/api/patients/{patient.id}/transfusions", headers=auth_headers(patient.id)
        )

        assert_engine_error(response, 503, "UpstreamUnavailable")


class TestDonorAndHospitalViews:
    async def plan_and_book(self, client, db_session, factory):
        patient = await factory.create_patient(db_session)
        donors = await factory.create_donors(db_session, count=5)
        hospital = await factory.create_hospital(db_session, name="Korle Bu")
        await factory.create_cohort(db_session, patient, donors, start_date=date.today())
        planned = assert_response_success(
            await client.post(
                f"/api/patients/{patient.id}/transfusions/plan",
                headers=auth_headers(patient.id),
            )
        )
        slot = datetime.combine(date.today() + timedelta(days=21), datetime.min.time())
        assert_response_success(
            await client.post(
                f"/api/transfusions/{planned['schedule_id']}/book",
                json={"hospital_id": str(hospital.id), "scheduled_for": slot.replace(hour=9).isoformat()},
                headers=auth_headers(patient.id),
            )
        )
        return patient, donors, hospital, planned

    async def test_donor_cohorts_and_availability(self, client, db_session, factory):
        patient, donors, _, _ = await self.plan_and_book(client, db_session, factory)
        headers = auth_headers(donors[0].id, role="donor")

        cohorts = assert_response_success(
            await client.get(f"/api/donors/{donors[0].id}/cohorts", headers=headers)
        )
        assert cohorts[0]["patient_id"] == str(patient.id)
        assert cohorts[0]["hospital_name"] == "Korle Bu"
        assert cohorts[0]["donor_available"] is True

        paused = assert_response_success(
            await client.patch(
                f"/api/donors/{donors[0].id}/availability",
                json={"available": False},
                headers=headers,
            )
        )
        assert [c["donor_available"] for c in paused] == [False]

        details = assert_response_success(
            await client.get(f"/api/patients/{patient.id}/cohort", headers=auth_headers(patient.id))
        )
        assert details[0]["donor_available"] is False

    async def test_donor_transfusions(self, client, db_session, factory):
        patient, donors, _, planned = await self.plan_and_book(client, db_session, factory)

        response = await client.get(
            f"/api/donors/{donors[0].id}/transfusions",
            headers=auth_headers(donors[0].id, role="donor"),
        )

        data = assert_response_success(response)
        assert [s["schedule_id"] for s in data] == [planned["schedule_id"]]
        assert data[0]["patient_name"] == patient.full_name
        assert data[0]["hospital_name"] == "Korle Bu"

    async def test_other_donor_is_forbidden(self, client, db_session, factory):
        donor = await factory.create_donor(db_session)

        response = await client.get(
            f"/api/donors/{donor.id}/cohorts", headers=auth_headers(uuid4(), role="donor")
        )

        assert_engine_error(response, 403, "AccessDenied")

    async def test_hospital_transfusions(self, client, db_session, factory):
        patient, donors, hospital, planned = await self.plan_and_book(client, db_session, factory)

        response = await client.get(
            f"/api/hospitals/{hospital.id}/transfusions",
            headers=auth_headers(hospital.id, role="hospital"),
        )
        as_admin = await client.get(
            f"/api/hospitals/{hospital.id}/transfusions",
            params={"only_upcoming": "false"},
            headers=auth_headers(uuid4(), role="admin"),
        )

        data = assert_response_success(response)
        assert [s["schedule_id"] for s in data] == [planned["schedule_id"]]
        assert data[0]["patient_id"] == str(patient.id)
        assert data[0]["assigned_donor_id"] == str(donors[0].id)
        assert len(assert_response_success(as_admin)) == 1

    async def test_hospital_transfusions_need_hospital_role(self, client, db_session, factory):
        hospital = await factory.create_hospital(db_session)

        response = await client.get(
            f"/api/hospitals/{hospital.id}/transfusions", headers=auth_headers(hospital.id)
        )

        assert_engine_error(response, 403, "AccessDenied")
